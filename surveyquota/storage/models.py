"""Data models for the quota engine storage layer."""

from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from surveyquota.errors import ConfigurationError


class RespondentStatus(str, Enum):
    QUALIFIED = "QUALIFIED"
    TERMINATED = "TERMINATED"
    QUOTA_FULL = "QUOTA_FULL"
    COMPLETED = "COMPLETED"


class Operator(str, Enum):
    BETWEEN = "BETWEEN"
    IN = "IN"
    EQ = "EQ"
    GTE = "GTE"
    LTE = "LTE"
    INTERSECTS = "INTERSECTS"
    GEO = "GEO"


OPERATOR_ALIASES = {"RANGE": Operator.BETWEEN}

GEO_FIELDS = ("country", "state", "city", "postal_code")


class RuleKind(str, Enum):
    RANGE = "range"
    CATEGORICAL = "categorical"
    GEO = "geo"
    SET = "set"
    UNKNOWN = "unknown"


# --- Bucket rules (tagged union) ---

@dataclass(frozen=True)
class RangeRule:
    """Numeric rule: BETWEEN (inclusive both ends), GTE or LTE."""

    kind: ClassVar[RuleKind] = RuleKind.RANGE

    operator: Operator
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def operand(self) -> Any:
        if self.operator is Operator.BETWEEN:
            return {"min": _plain_number(self.minimum), "max": _plain_number(self.maximum)}
        if self.operator is Operator.GTE:
            return _plain_number(self.minimum)
        return _plain_number(self.maximum)


@dataclass(frozen=True)
class CategoricalRule:
    """Discrete rule: EQ (single value) or IN (membership)."""

    kind: ClassVar[RuleKind] = RuleKind.CATEGORICAL

    operator: Operator
    values: Tuple[str, ...]

    def operand(self) -> Any:
        if self.operator is Operator.EQ:
            return self.values[0]
        return list(self.values)


@dataclass(frozen=True)
class GeoRule:
    """Hierarchical location rule. Unset fields act as wildcards."""

    kind: ClassVar[RuleKind] = RuleKind.GEO

    country: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None

    operator: ClassVar[Operator] = Operator.GEO

    @property
    def specificity(self) -> int:
        return sum(1 for f in GEO_FIELDS if getattr(self, f))

    def operand(self) -> Any:
        return {f: getattr(self, f) for f in GEO_FIELDS if getattr(self, f)}


@dataclass(frozen=True)
class SetRule:
    """Multi-select rule: INTERSECTS."""

    kind: ClassVar[RuleKind] = RuleKind.SET

    values: Tuple[str, ...]

    operator: ClassVar[Operator] = Operator.INTERSECTS

    def operand(self) -> Any:
        return list(self.values)


@dataclass(frozen=True)
class UnknownRule:
    """Rule loaded from storage whose operator or operand is not understood."""

    kind: ClassVar[RuleKind] = RuleKind.UNKNOWN

    operator: str
    raw_operand: Any = None

    def operand(self) -> Any:
        return self.raw_operand


BucketRule = Union[RangeRule, CategoricalRule, GeoRule, SetRule, UnknownRule]


def parse_rule(operator: Any, operand: Any, strict: bool = True) -> BucketRule:
    """Build a rule from an operator name and its operand.

    With ``strict`` a malformed rule raises ConfigurationError (bucket
    creation time). Without it the rule degrades to UnknownRule, which never
    matches (rows already in storage).
    """
    try:
        return _parse_rule(operator, operand)
    except ConfigurationError:
        if strict:
            raise
        return UnknownRule(operator=str(operator), raw_operand=operand)


def _parse_rule(operator: Any, operand: Any) -> BucketRule:
    name = str(operator or "").strip().upper()
    op = OPERATOR_ALIASES.get(name)
    if op is None:
        try:
            op = Operator(name)
        except ValueError:
            raise ConfigurationError(f"Unknown bucket operator: {operator!r}")

    if op is Operator.BETWEEN:
        if not isinstance(operand, Mapping) or "min" not in operand or "max" not in operand:
            raise ConfigurationError("BETWEEN operand must be a mapping with 'min' and 'max'")
        lo = _operand_number(operand["min"], "BETWEEN min")
        hi = _operand_number(operand["max"], "BETWEEN max")
        if lo > hi:
            raise ConfigurationError(f"BETWEEN min ({lo}) is greater than max ({hi})")
        return RangeRule(operator=op, minimum=lo, maximum=hi)

    if op is Operator.GTE:
        return RangeRule(operator=op, minimum=_operand_number(operand, "GTE operand"))

    if op is Operator.LTE:
        return RangeRule(operator=op, maximum=_operand_number(operand, "LTE operand"))

    if op is Operator.EQ:
        if not _is_scalar(operand):
            raise ConfigurationError("EQ operand must be a single string or number")
        return CategoricalRule(operator=op, values=(stringify(operand),))

    if op in (Operator.IN, Operator.INTERSECTS):
        if not isinstance(operand, (list, tuple)) or not operand:
            raise ConfigurationError(f"{op.value} operand must be a non-empty list")
        if not all(_is_scalar(v) for v in operand):
            raise ConfigurationError(f"{op.value} operand must contain only strings or numbers")
        values = tuple(stringify(v) for v in operand)
        if op is Operator.IN:
            return CategoricalRule(operator=op, values=values)
        return SetRule(values=values)

    # GEO
    if not isinstance(operand, Mapping):
        raise ConfigurationError("GEO operand must be a mapping")
    unknown = set(operand) - set(GEO_FIELDS)
    if unknown:
        raise ConfigurationError(f"GEO operand has unknown fields: {sorted(unknown)}")
    fields = {f: str(operand[f]).strip() for f in GEO_FIELDS if operand.get(f)}
    if not fields:
        raise ConfigurationError("GEO operand needs at least one of " + ", ".join(GEO_FIELDS))
    return GeoRule(**fields)


def stringify(value: Any) -> str:
    """Stringify a scalar the way answer values are compared."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def _operand_number(value: Any, what: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{what} must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        raise ConfigurationError(f"{what} must be numeric, got {value!r}")
    if math.isnan(number) or math.isinf(number):
        raise ConfigurationError(f"{what} must be finite")
    return number


def _plain_number(value: Optional[float]) -> Any:
    if value is not None and float(value).is_integer():
        return int(value)
    return value


# --- Quota configuration ---

@dataclass
class QuotaConfig:
    """One quota per survey: overall ceiling, counters and master switch."""

    id: str
    survey_id: str
    total_target: int
    current_count: int = 0
    qualified_count: int = 0
    terminated_count: int = 0
    quota_full_count: int = 0
    is_active: bool = True
    vendor_id: Optional[str] = None
    country_code: Optional[str] = None
    language: Optional[str] = None
    completed_url: Optional[str] = None
    terminated_url: Optional[str] = None
    quota_full_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def callback_template(self, status: RespondentStatus) -> Optional[str]:
        return {
            RespondentStatus.COMPLETED: self.completed_url,
            RespondentStatus.TERMINATED: self.terminated_url,
            RespondentStatus.QUOTA_FULL: self.quota_full_url,
        }.get(status)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.survey_id,
            self.total_target,
            self.current_count,
            self.qualified_count,
            self.terminated_count,
            self.quota_full_count,
            int(self.is_active),
            self.vendor_id,
            self.country_code,
            self.language,
            self.completed_url,
            self.terminated_url,
            self.quota_full_url,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> QuotaConfig:
        return cls(
            id=row["id"],
            survey_id=row["survey_id"],
            total_target=row["total_target"],
            current_count=row.get("current_count", 0),
            qualified_count=row.get("qualified_count", 0),
            terminated_count=row.get("terminated_count", 0),
            quota_full_count=row.get("quota_full_count", 0),
            is_active=bool(row.get("is_active", 1)),
            vendor_id=row.get("vendor_id"),
            country_code=row.get("country_code"),
            language=row.get("language"),
            completed_url=row.get("completed_url"),
            terminated_url=row.get("terminated_url"),
            quota_full_url=row.get("quota_full_url"),
            created_at=_parse_ts(row.get("created_at")),
            updated_at=_parse_ts(row.get("updated_at")),
        )


@dataclass
class QuotaDimension:
    """A screening dimension of a quota and its vendor-facing identity."""

    quota_id: str
    dimension_key: str
    position: int = 0
    question_key: Optional[str] = None
    vendor_question_id: Optional[str] = None

    def to_row(self) -> tuple:
        return (
            self.quota_id,
            self.dimension_key,
            self.position,
            self.question_key,
            self.vendor_question_id,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> QuotaDimension:
        return cls(
            quota_id=row["quota_id"],
            dimension_key=row["dimension_key"],
            position=row.get("position", 0),
            question_key=row.get("question_key"),
            vendor_question_id=row.get("vendor_question_id"),
        )


@dataclass
class QuotaBucket:
    """A sub-quota: one matching rule inside one dimension."""

    id: str
    quota_id: str
    dimension_key: str
    rule: BucketRule
    position: int = 0
    label: Optional[str] = None
    target_count: Optional[int] = None
    target_percentage: Optional[float] = None
    current_count: int = 0
    is_active: bool = True
    vendor_option_id: Optional[str] = None

    @property
    def operator(self) -> str:
        op = self.rule.operator
        return op.value if isinstance(op, Operator) else str(op)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.quota_id,
            self.dimension_key,
            self.position,
            self.label,
            self.operator,
            json.dumps(self.rule.operand()),
            self.target_count,
            self.target_percentage,
            self.current_count,
            int(self.is_active),
            self.vendor_option_id,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> QuotaBucket:
        operand = _parse_json(row.get("operand"))
        return cls(
            id=row["id"],
            quota_id=row["quota_id"],
            dimension_key=row["dimension_key"],
            rule=parse_rule(row["operator"], operand, strict=False),
            position=row.get("position", 0),
            label=row.get("label"),
            target_count=row.get("target_count"),
            target_percentage=row.get("target_percentage"),
            current_count=row.get("current_count", 0),
            is_active=bool(row.get("is_active", 1)),
            vendor_option_id=row.get("vendor_option_id"),
        )


@dataclass
class QuotaSnapshot:
    """A consistent read of one quota and its active buckets."""

    config: QuotaConfig
    buckets: List[QuotaBucket] = field(default_factory=list)

    def buckets_for(self, dimension_key: str) -> List[QuotaBucket]:
        """Active buckets of a dimension in configuration order."""
        return [b for b in self.buckets if b.dimension_key == dimension_key and b.is_active]


# --- Respondents ---

AttributeValue = Union[str, int, float, List[Any], Dict[str, Any]]


@dataclass
class Answer:
    """One dimension→value pair supplied at admission time."""

    dimension_key: str
    value: AttributeValue

    def to_dict(self) -> Dict[str, Any]:
        return {"dimension_key": self.dimension_key, "value": self.value}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Answer:
        return cls(dimension_key=d["dimension_key"], value=d.get("value"))


@dataclass
class MatchedBucket:
    """Which bucket a respondent matched for one dimension."""

    dimension_key: str
    bucket_id: str
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"dimension_key": self.dimension_key, "bucket_id": self.bucket_id, "label": self.label}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MatchedBucket:
        return cls(dimension_key=d["dimension_key"], bucket_id=d["bucket_id"], label=d.get("label"))


@dataclass
class Respondent:
    """One admission attempt and its lifecycle."""

    id: str
    quota_id: str
    vendor_respondent_id: str
    status: RespondentStatus
    answers: List[Answer] = field(default_factory=list)
    matched_buckets: List[MatchedBucket] = field(default_factory=list)
    reason: Optional[str] = None
    external_response_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @staticmethod
    def make_id() -> str:
        return str(uuid.uuid4())

    def to_row(self) -> tuple:
        return (
            self.id,
            self.quota_id,
            self.vendor_respondent_id,
            self.status.value,
            json.dumps([a.to_dict() for a in self.answers]),
            json.dumps([m.to_dict() for m in self.matched_buckets]),
            self.reason,
            self.external_response_id,
            (self.created_at or utcnow()).isoformat(),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Respondent:
        return cls(
            id=row["id"],
            quota_id=row["quota_id"],
            vendor_respondent_id=row["vendor_respondent_id"],
            status=RespondentStatus(row["status"]),
            answers=[Answer.from_dict(a) for a in _parse_json(row.get("answers")) or []],
            matched_buckets=[
                MatchedBucket.from_dict(m) for m in _parse_json(row.get("matched_buckets")) or []
            ],
            reason=row.get("reason"),
            external_response_id=row.get("external_response_id"),
            created_at=_parse_ts(row.get("created_at")),
            updated_at=_parse_ts(row.get("updated_at")),
        )


# --- Helpers ---

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(val: Any) -> Optional[datetime]:
    """Parse a timestamp string or return None."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    try:
        from dateutil.parser import parse
        return parse(str(val))
    except (ValueError, TypeError, OverflowError):
        return None


def _parse_json(val: Any) -> Any:
    """Parse a JSON string or return None."""
    if val is None:
        return None
    if not isinstance(val, (str, bytes)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError):
        return None
