"""Admission evaluation as an explicit finite-state machine.

The checks run in a fixed precedence, each state either handing over to the
next one or ending in a verdict:

    CHECK_ACTIVE -> CHECK_TOTAL -> CHECK_DIMENSION (once per answer) -> QUALIFY

The evaluator is pure: it reads a QuotaSnapshot and the respondent's answers
and never touches the store, the clock or a random source.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from surveyquota.engine.matcher import match
from surveyquota.engine.targets import resolve_target
from surveyquota.storage.models import Answer, MatchedBucket, QuotaSnapshot, RespondentStatus

logger = logging.getLogger(__name__)


class State(str, Enum):
    CHECK_ACTIVE = "CHECK_ACTIVE"
    CHECK_TOTAL = "CHECK_TOTAL"
    CHECK_DIMENSION = "CHECK_DIMENSION"
    QUALIFY = "QUALIFY"
    DONE = "DONE"


class Reason(str, Enum):
    """Why a verdict was reached. Every failure path has its own member."""

    QUALIFIED = "QUALIFIED"
    QUOTA_INACTIVE = "QUOTA_INACTIVE"
    TOTAL_QUOTA_FULL = "TOTAL_QUOTA_FULL"
    NO_BUCKET_MATCH = "NO_BUCKET_MATCH"
    BUCKET_FULL = "BUCKET_FULL"


REASON_STATUS = {
    Reason.QUALIFIED: RespondentStatus.QUALIFIED,
    Reason.QUOTA_INACTIVE: RespondentStatus.TERMINATED,
    Reason.TOTAL_QUOTA_FULL: RespondentStatus.QUOTA_FULL,
    Reason.NO_BUCKET_MATCH: RespondentStatus.TERMINATED,
    Reason.BUCKET_FULL: RespondentStatus.QUOTA_FULL,
}

REASON_MESSAGES = {
    Reason.QUALIFIED: "qualified",
    Reason.QUOTA_INACTIVE: "quota inactive",
    Reason.TOTAL_QUOTA_FULL: "total quota full",
    Reason.NO_BUCKET_MATCH: "disqualified: no bucket match",
    Reason.BUCKET_FULL: "bucket full",
}


@dataclass
class Verdict:
    """Outcome of one evaluation."""

    reason: Reason
    matched: list[MatchedBucket] = field(default_factory=list)
    failed_dimension: Optional[str] = None

    @property
    def status(self) -> RespondentStatus:
        return REASON_STATUS[self.reason]

    @property
    def message(self) -> str:
        return REASON_MESSAGES[self.reason]

    @property
    def qualified(self) -> bool:
        return self.reason is Reason.QUALIFIED


@dataclass
class _Run:
    """Mutable state of a single evaluation."""

    snapshot: QuotaSnapshot
    answers: Sequence[Answer]
    index: int = 0
    matched: list[MatchedBucket] = field(default_factory=list)
    verdict: Optional[Verdict] = None

    def finish(self, reason: Reason, failed_dimension: Optional[str] = None) -> State:
        self.verdict = Verdict(
            reason=reason,
            matched=list(self.matched) if reason is Reason.QUALIFIED else [],
            failed_dimension=failed_dimension,
        )
        return State.DONE


class AdmissionEvaluator:
    """Decide QUALIFIED / TERMINATED / QUOTA_FULL for one respondent."""

    def __init__(self) -> None:
        self._handlers = {
            State.CHECK_ACTIVE: self._check_active,
            State.CHECK_TOTAL: self._check_total,
            State.CHECK_DIMENSION: self._check_dimension,
            State.QUALIFY: self._qualify,
        }

    def evaluate(self, snapshot: QuotaSnapshot, answers: Sequence[Answer]) -> Verdict:
        run = _Run(snapshot=snapshot, answers=answers)
        state = State.CHECK_ACTIVE
        while state is not State.DONE:
            state = self._handlers[state](run)
        assert run.verdict is not None
        logger.debug(
            "Quota %s verdict: %s (%s)",
            snapshot.config.id, run.verdict.reason.value, run.verdict.failed_dimension or "-",
        )
        return run.verdict

    # --- States ---

    def _check_active(self, run: _Run) -> State:
        config = run.snapshot.config
        if not config.is_active or config.total_target <= 0:
            return run.finish(Reason.QUOTA_INACTIVE)
        return State.CHECK_TOTAL

    def _check_total(self, run: _Run) -> State:
        config = run.snapshot.config
        if config.current_count >= config.total_target:
            return run.finish(Reason.TOTAL_QUOTA_FULL)
        return State.CHECK_DIMENSION

    def _check_dimension(self, run: _Run) -> State:
        if run.index >= len(run.answers):
            return State.QUALIFY
        answer = run.answers[run.index]
        run.index += 1

        buckets = run.snapshot.buckets_for(answer.dimension_key)
        if not buckets:
            # Unscreened dimension
            return State.CHECK_DIMENSION

        bucket = match(buckets, answer.value)
        if bucket is None:
            return run.finish(Reason.NO_BUCKET_MATCH, answer.dimension_key)
        if bucket.current_count >= resolve_target(bucket, run.snapshot.config.total_target):
            return run.finish(Reason.BUCKET_FULL, answer.dimension_key)

        run.matched.append(
            MatchedBucket(dimension_key=answer.dimension_key, bucket_id=bucket.id, label=bucket.label)
        )
        return State.CHECK_DIMENSION

    def _qualify(self, run: _Run) -> State:
        return run.finish(Reason.QUALIFIED)
