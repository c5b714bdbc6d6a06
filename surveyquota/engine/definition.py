"""Quota definitions: parse a YAML/dict definition into storable models."""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from surveyquota.engine.targets import TargetReport, check_targets
from surveyquota.errors import ConfigurationError
from surveyquota.storage.models import (
    Operator,
    QuotaBucket,
    QuotaConfig,
    QuotaDimension,
    parse_rule,
)

logger = logging.getLogger(__name__)


@dataclass
class QuotaDefinition:
    """A survey's complete quota setup, ready to be saved."""

    config: QuotaConfig
    dimensions: list[QuotaDimension] = field(default_factory=list)
    buckets: list[QuotaBucket] = field(default_factory=list)
    report: TargetReport = field(default_factory=TargetReport)


def parse_quota_definition(data: Mapping[str, Any]) -> QuotaDefinition:
    """Build and validate a quota definition.

    Expected shape::

        survey_id: survey-1
        total_target: 100
        is_active: true
        vendor_id: innovate        # optional, enables vendor callbacks
        callbacks: {completed: ..., terminated: ..., quota_full: ...}
        dimensions:
          - key: AGE
            question_key: AGE
            vendor_question_id: "1"
            buckets:
              - {label: 18-25, operator: BETWEEN, value: {min: 18, max: 25}, target_count: 50}
            options:                # shorthand for EQ buckets on option ids
              - {option_id: opt-1, target: 20, vendor_option_id: "11"}

    Buckets and options with a non-positive target are dropped. Any remaining
    problem raises ConfigurationError listing all of them.
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError("Quota definition must be a mapping")
    survey_id = data.get("survey_id")
    if not survey_id:
        raise ConfigurationError("Quota definition needs a survey_id")

    callbacks = data.get("callbacks") or {}
    if not isinstance(callbacks, Mapping):
        raise ConfigurationError("Quota definition callbacks must be a mapping")
    config = QuotaConfig(
        id=str(data.get("id") or uuid.uuid4()),
        survey_id=str(survey_id),
        total_target=data.get("total_target"),
        is_active=bool(data.get("is_active", True)),
        vendor_id=_opt_str(data.get("vendor_id")),
        country_code=_opt_str(data.get("country_code")),
        language=_opt_str(data.get("language")),
        completed_url=_opt_str(callbacks.get("completed")),
        terminated_url=_opt_str(callbacks.get("terminated")),
        quota_full_url=_opt_str(callbacks.get("quota_full")),
    )

    problems: list[str] = []
    dimensions: list[QuotaDimension] = []
    buckets: list[QuotaBucket] = []
    seen_keys: set[str] = set()

    raw_dimensions = data.get("dimensions") or []
    if not isinstance(raw_dimensions, list):
        raise ConfigurationError("Quota definition dimensions must be a list")

    for dim_pos, dim in enumerate(raw_dimensions):
        if not isinstance(dim, Mapping):
            problems.append(f"dimension #{dim_pos + 1}: expected a mapping, got {dim!r}")
            continue
        key = str(dim.get("key") or "").strip()
        if not key:
            problems.append(f"dimension #{dim_pos + 1}: missing key")
            continue
        if key in seen_keys:
            problems.append(f"dimension {key}: defined more than once")
            continue
        seen_keys.add(key)
        dimensions.append(
            QuotaDimension(
                quota_id=config.id,
                dimension_key=key,
                position=dim_pos,
                question_key=_opt_str(dim.get("question_key")),
                vendor_question_id=_opt_str(dim.get("vendor_question_id")),
            )
        )

        entries = _bucket_entries(dim, key, problems)
        for entry in entries:
            target_problem = _target_problem(entry)
            if target_problem:
                problems.append(f"dimension {key}, bucket {entry.get('label')!r}: {target_problem}")
                continue
            if _non_positive_target(entry):
                logger.info("Dropping bucket %r of %s: no positive target", entry.get("label"), key)
                continue
            try:
                rule = parse_rule(entry.get("operator"), entry.get("value"), strict=True)
            except ConfigurationError as e:
                problems.append(f"dimension {key}, bucket {entry.get('label')!r}: {e.message}")
                continue
            buckets.append(
                QuotaBucket(
                    id=str(entry.get("id") or uuid.uuid4()),
                    quota_id=config.id,
                    dimension_key=key,
                    rule=rule,
                    position=len(buckets),
                    label=_opt_str(entry.get("label")),
                    target_count=entry.get("target_count"),
                    target_percentage=entry.get("target_percentage"),
                    is_active=bool(entry.get("is_active", True)),
                    vendor_option_id=_opt_str(entry.get("vendor_option_id")),
                )
            )

    definition = QuotaDefinition(config=config, dimensions=dimensions, buckets=buckets)
    definition.report = validate_quota_definition(definition, problems)
    return definition


def validate_quota_definition(
    definition: QuotaDefinition, problems: list[str] | None = None
) -> TargetReport:
    """Check a definition's targets; raise ConfigurationError listing every problem.

    ``problems`` carries parse errors found earlier so they are reported together.
    """
    report = check_targets(definition.config.total_target, definition.buckets)
    problems = list(problems or []) + report.errors
    if problems:
        raise ConfigurationError(
            f"Invalid quota definition for survey {definition.config.survey_id}: "
            f"{len(problems)} problem(s)",
            problems=problems,
        )
    return report


def _bucket_entries(
    dim: Mapping[str, Any], key: str, problems: list[str]
) -> list[Mapping[str, Any]]:
    entries: list[Mapping[str, Any]] = []
    for field_name in ("buckets", "options"):
        raw = dim.get(field_name) or []
        if not isinstance(raw, list):
            problems.append(f"dimension {key}: {field_name} must be a list")
            continue
        for pos, entry in enumerate(raw):
            if not isinstance(entry, Mapping):
                problems.append(
                    f"dimension {key}, {field_name} #{pos + 1}: expected a mapping, got {entry!r}"
                )
            elif field_name == "options":
                entries.append(_option_to_bucket(entry))
            else:
                entries.append(entry)
    return entries


def _target_problem(entry: Mapping[str, Any]) -> str | None:
    count = entry.get("target_count")
    pct = entry.get("target_percentage")
    if count is not None and (isinstance(count, bool) or not isinstance(count, int)):
        return f"target_count must be an integer, got {count!r}"
    if pct is not None and (
        isinstance(pct, bool) or not isinstance(pct, (int, float)) or not math.isfinite(pct)
    ):
        return f"target_percentage must be a number, got {pct!r}"
    return None


def _option_to_bucket(option: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": option.get("id"),
        "label": option.get("label") or option.get("option_id"),
        "operator": Operator.EQ.value,
        "value": option.get("option_id"),
        "target_count": option.get("target"),
        "vendor_option_id": option.get("vendor_option_id"),
    }


def _non_positive_target(entry: Mapping[str, Any]) -> bool:
    count = entry.get("target_count")
    pct = entry.get("target_percentage")
    if count is None and pct is None:
        return False
    return all(v is None or (isinstance(v, (int, float)) and v <= 0) for v in (count, pct))


def _opt_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
