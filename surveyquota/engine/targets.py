"""Quota targets: ceiling resolution, configuration checks, status formatting."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Sequence

from surveyquota.storage.models import QuotaBucket, RuleKind

logger = logging.getLogger(__name__)

PERCENT_TOLERANCE = 0.01


def resolve_target(bucket: QuotaBucket, total_target: int) -> int:
    """Integer ceiling of a bucket.

    A count target is returned as is. A percentage target is resolved against
    ``total_target`` and rounded up, using exact rational arithmetic so the
    same inputs always give the same ceiling.
    """
    if bucket.target_count is not None:
        return int(bucket.target_count)
    if bucket.target_percentage is None:
        return 0
    share = Fraction(str(bucket.target_percentage)) * int(total_target) / 100
    return math.ceil(share)


def format_bucket_status(bucket: QuotaBucket, total_target: int) -> dict[str, Any]:
    """Progress of one bucket for dashboards."""
    target = resolve_target(bucket, total_target)
    current = bucket.current_count or 0
    filled = (current / target) * 100 if target > 0 else 0.0
    return {
        "target": target,
        "current": current,
        "remaining": max(0, target - current),
        "percentage_filled": round(filled, 2),
        "is_full": current >= target,
    }


@dataclass
class TargetReport:
    """Problems found in a quota's targets. Errors block saving; warnings are logged."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def check_targets(total_target: int, buckets: Sequence[QuotaBucket]) -> TargetReport:
    """Check bucket targets and routing of one quota."""
    report = TargetReport()
    if not isinstance(total_target, int) or isinstance(total_target, bool) or total_target < 1:
        report.errors.append(f"total_target must be a positive integer, got {total_target!r}")
        return report

    by_dimension: dict[str, list[QuotaBucket]] = defaultdict(list)
    for bucket in buckets:
        name = _bucket_name(bucket)
        has_count = bucket.target_count is not None
        has_pct = bucket.target_percentage is not None
        if has_count == has_pct:
            report.errors.append(f"{name}: set exactly one of target_count or target_percentage")
            continue
        if has_count and not _is_int(bucket.target_count):
            report.errors.append(
                f"{name}: target_count must be an integer, got {bucket.target_count!r}"
            )
            continue
        if has_pct and not _is_number(bucket.target_percentage):
            report.errors.append(
                f"{name}: target_percentage must be a number, got {bucket.target_percentage!r}"
            )
            continue
        by_dimension[bucket.dimension_key].append(bucket)
        if has_count and bucket.target_count < 1:
            report.errors.append(f"{name}: target_count must be >= 1")
        if has_pct and not (0 < bucket.target_percentage <= 100):
            report.errors.append(f"{name}: target_percentage must be in (0, 100]")

    for dimension_key, dim_buckets in by_dimension.items():
        _check_dimension_sums(report, dimension_key, dim_buckets, total_target)
        report.warnings.extend(find_overlaps(dim_buckets))

    for warning in report.warnings:
        logger.warning("Quota configuration: %s", warning)
    return report


def _check_dimension_sums(
    report: TargetReport,
    dimension_key: str,
    buckets: list[QuotaBucket],
    total_target: int,
) -> None:
    pct_total = sum(b.target_percentage for b in buckets if b.target_percentage is not None)
    if pct_total > 100 + PERCENT_TOLERANCE:
        report.errors.append(
            f"dimension {dimension_key}: percentage targets sum to {pct_total:g}% (max 100%)"
        )

    counts = [b.target_count for b in buckets if b.target_count is not None]
    if counts and len(counts) == len(buckets) and sum(counts) != total_target:
        report.warnings.append(
            f"dimension {dimension_key}: count targets sum to {sum(counts)}, "
            f"total target is {total_target}"
        )


def find_overlaps(buckets: Sequence[QuotaBucket]) -> list[str]:
    """Pairs of buckets in one dimension that a single value could both match.

    Routing stays deterministic (first match wins) but the later bucket can
    then only fill from values the earlier one rejects.
    """
    found: list[str] = []
    for i, a in enumerate(buckets):
        for b in buckets[i + 1:]:
            if _overlaps(a, b):
                found.append(
                    f"dimension {a.dimension_key}: {_bucket_name(a)} overlaps {_bucket_name(b)}"
                )
    return found


def _overlaps(a: QuotaBucket, b: QuotaBucket) -> bool:
    ra, rb = a.rule, b.rule
    if ra.kind is not rb.kind:
        return False
    if ra.kind is RuleKind.RANGE:
        lo_a, hi_a = _interval(ra)
        lo_b, hi_b = _interval(rb)
        return lo_a <= hi_b and lo_b <= hi_a
    if ra.kind in (RuleKind.CATEGORICAL, RuleKind.SET):
        return bool(set(ra.values) & set(rb.values))
    if ra.kind is RuleKind.GEO:
        return ra == rb
    return False


def _interval(rule: Any) -> tuple[float, float]:
    lo = rule.minimum if rule.minimum is not None else -math.inf
    hi = rule.maximum if rule.maximum is not None else math.inf
    return lo, hi


def _bucket_name(bucket: QuotaBucket) -> str:
    return f"bucket {bucket.label or bucket.id}"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
