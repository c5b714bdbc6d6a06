"""Bucket matching: route an attribute value to at most one bucket of a dimension."""

from __future__ import annotations

import math
import re
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from surveyquota.storage.models import (
    GEO_FIELDS,
    CategoricalRule,
    GeoRule,
    Operator,
    QuotaBucket,
    RangeRule,
    RuleKind,
    SetRule,
    stringify,
)

DECIMAL_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")


def to_number(value: Any) -> Optional[float]:
    """Numeric view of an answer value, or None when it is not a number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        number = value
    elif isinstance(value, int):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str) and DECIMAL_RE.fullmatch(value.strip()):
        number = float(value.strip())
    else:
        return None
    return number if math.isfinite(number) else None


def _match_range(rule: RangeRule, value: Any) -> bool:
    number = to_number(value)
    if number is None:
        return False
    if rule.operator is Operator.BETWEEN:
        return rule.minimum <= number <= rule.maximum
    if rule.operator is Operator.GTE:
        return number >= rule.minimum
    return number <= rule.maximum


def _match_categorical(rule: CategoricalRule, value: Any) -> bool:
    if isinstance(value, (list, tuple, dict)) or value is None:
        return False
    return stringify(value) in rule.values


def _match_set(rule: SetRule, value: Any) -> bool:
    if not isinstance(value, (list, tuple)):
        return False
    answered = {stringify(v) for v in value}
    return any(v in answered for v in rule.values)


def _match_geo(rule: GeoRule, value: Any) -> bool:
    if not isinstance(value, Mapping):
        return False
    for f in GEO_FIELDS:
        expected = getattr(rule, f)
        if not expected:
            continue
        actual = value.get(f)
        if actual is None or str(actual).strip().lower() != expected.lower():
            return False
    return True


_MATCHERS: Dict[RuleKind, Callable[[Any, Any], bool]] = {
    RuleKind.RANGE: _match_range,
    RuleKind.CATEGORICAL: _match_categorical,
    RuleKind.SET: _match_set,
    RuleKind.GEO: _match_geo,
}


def rule_matches(bucket: QuotaBucket, value: Any) -> bool:
    """True if the bucket's rule accepts ``value``. Unknown rules never match."""
    matcher = _MATCHERS.get(bucket.rule.kind)
    if matcher is None:
        return False
    return matcher(bucket.rule, value)


def match(buckets: Sequence[QuotaBucket], value: Any) -> Optional[QuotaBucket]:
    """Return the bucket ``value`` falls into, or None.

    Buckets are tried in the given (configuration) order and the first hit
    wins, except for geo buckets where the most specific hit wins so that a
    city bucket takes precedence over its country bucket.
    """
    best_geo: Optional[QuotaBucket] = None
    for bucket in buckets:
        if not rule_matches(bucket, value):
            continue
        if bucket.rule.kind is not RuleKind.GEO:
            if best_geo is None:
                return bucket
            continue
        if best_geo is None or bucket.rule.specificity > best_geo.rule.specificity:
            best_geo = bucket
    return best_geo

