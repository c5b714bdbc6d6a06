"""Vendor payload builders: targets, quota conditions, tokens and callback URLs.

Pure functions, no HTTP. The shapes follow the sample vendor's quota API.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from surveyquota.storage.models import (
    CategoricalRule,
    Operator,
    QuotaBucket,
    QuotaDimension,
    RangeRule,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_SEPARATOR = "_BR_"

# Vendor question ids with a named quota condition.
QUESTION_CONDITIONS = {1: "AGE", 2: "GENDER", 3: "ZIPCODES"}


def vendor_token(vendor_respondent_id: str, separator: str = DEFAULT_TOKEN_SEPARATOR) -> str:
    """The vendor's own respondent token: everything before the first separator."""
    if not separator:
        return vendor_respondent_id
    return vendor_respondent_id.split(separator)[0]


def process_callback_url(
    template: Optional[str],
    vendor_respondent_id: str,
    survey_id: str,
    status: str,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Fill a callback template. Returns None when there is no template."""
    if not template:
        return None
    timestamp = (now or utcnow()).isoformat()
    return (
        template.replace("{respondent_id}", vendor_respondent_id or "")
        .replace("{survey_id}", survey_id or "")
        .replace("{status}", status or "")
        .replace("{timestamp}", timestamp)
    )


def build_target_payload(
    dimensions: Sequence[QuotaDimension],
    buckets: Sequence[QuotaBucket],
) -> List[Dict[str, Any]]:
    """Vendor targeting, one entry per dimension that maps to a vendor question.

    AGE dimensions send their range buckets as ``"min-max"`` strings,
    ZIPCODES dimensions send the flattened postal codes, and any other
    dimension sends the vendor option ids of its buckets. Dimensions with
    nothing to send are left out.
    """
    payload: List[Dict[str, Any]] = []
    for dim in sorted(dimensions, key=lambda d: d.position):
        question_id = _int_or_none(dim.vendor_question_id)
        if question_id is None:
            continue
        dim_buckets = [b for b in buckets if b.dimension_key == dim.dimension_key and b.is_active]
        family = (dim.question_key or dim.dimension_key).upper()

        if family == "AGE":
            options: List[Any] = _age_ranges(dim_buckets)
        elif family == "ZIPCODES":
            options = _postal_codes(dim_buckets)
        else:
            options = [
                opt for opt in (_int_or_none(b.vendor_option_id) for b in dim_buckets)
                if opt is not None
            ]

        if not options:
            logger.debug("Dimension %s has nothing to send to the vendor", dim.dimension_key)
            continue
        payload.append({"questionId": question_id, "Options": options})
    return payload


def build_quota_conditions(targets: Sequence[Mapping[str, Any]]) -> Dict[str, List[Any]]:
    conditions: Dict[str, List[Any]] = {}
    for item in targets:
        key = QUESTION_CONDITIONS.get(item.get("questionId"))
        options = item.get("Options")
        if key and isinstance(options, list) and options:
            conditions[key] = options
    return conditions


def build_quota_payload(
    title: str,
    n: int,
    group_id: Any,
    conditions: Mapping[str, List[Any]],
) -> Dict[str, Any]:
    return {
        "Title": title,
        "HardStop": True,
        "HardStopType": 0,
        "N": n,
        "GroupId": group_id,
        "Conditions": dict(conditions),
    }


def _age_ranges(buckets: Sequence[QuotaBucket]) -> List[str]:
    out = []
    for b in buckets:
        rule = b.rule
        if isinstance(rule, RangeRule) and rule.operator is Operator.BETWEEN:
            operand = rule.operand()
            out.append(f"{operand['min']}-{operand['max']}")
    return out


def _postal_codes(buckets: Sequence[QuotaBucket]) -> List[str]:
    out: List[str] = []
    for b in buckets:
        if isinstance(b.rule, CategoricalRule):
            out.extend(v for v in b.rule.values if v not in out)
    return out


def _int_or_none(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None
