"""Atomic admission: evaluate, persist the respondent, and count the verdict."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from surveyquota.engine.evaluator import REASON_MESSAGES, AdmissionEvaluator, Reason
from surveyquota.errors import InvalidRequestError, NotFoundError
from surveyquota.storage.db import QuotaStore
from surveyquota.storage.models import (
    Answer,
    MatchedBucket,
    QuotaConfig,
    Respondent,
    RespondentStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

# Tally counter bumped for each admission verdict.
VERDICT_COUNTERS = {
    RespondentStatus.QUALIFIED: "qualified_count",
    RespondentStatus.TERMINATED: "terminated_count",
    RespondentStatus.QUOTA_FULL: "quota_full_count",
}


@dataclass
class AdmissionRequest:
    """A validated inbound admission request."""

    vendor_respondent_id: str
    answers: List[Answer] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AdmissionRequest:
        """Parse ``{vendorRespondentId, attributes: [{dimensionKey, value}]}``.

        snake_case keys are accepted too. Dimension keys must be unique within
        one request.
        """
        if not isinstance(payload, Mapping):
            raise InvalidRequestError("Admission request must be an object")
        vendor_id = payload.get("vendorRespondentId", payload.get("vendor_respondent_id"))
        if not isinstance(vendor_id, str) or not vendor_id.strip():
            raise InvalidRequestError("vendorRespondentId is required")

        attributes = payload.get("attributes") or []
        if not isinstance(attributes, list):
            raise InvalidRequestError("attributes must be a list")

        answers: List[Answer] = []
        seen: set = set()
        for i, attr in enumerate(attributes):
            if not isinstance(attr, Mapping):
                raise InvalidRequestError(f"attributes[{i}] must be an object")
            key = attr.get("dimensionKey", attr.get("dimension_key"))
            if not isinstance(key, str) or not key.strip():
                raise InvalidRequestError(f"attributes[{i}].dimensionKey is required")
            if key in seen:
                raise InvalidRequestError(f"dimension {key} answered more than once")
            seen.add(key)
            value = attr.get("value")
            if not _valid_value(value):
                raise InvalidRequestError(f"attributes[{i}].value has an unsupported type")
            answers.append(Answer(dimension_key=key, value=value))
        return cls(vendor_respondent_id=vendor_id, answers=answers)


def _valid_value(value: Any) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, (str, int, float)):
        return True
    if isinstance(value, list):
        return all(isinstance(v, (str, int, float)) and not isinstance(v, bool) for v in value)
    if isinstance(value, Mapping):
        return all(isinstance(v, (str, int)) or v is None for v in value.values())
    return False


@dataclass
class AdmissionResult:
    """What the caller gets back from an admission."""

    status: RespondentStatus
    respondent_id: str
    reason: Reason
    matched_buckets: List[MatchedBucket] = field(default_factory=list)
    failed_dimension: Optional[str] = None
    quota: Optional[QuotaConfig] = field(default=None, repr=False)
    vendor_respondent_id: Optional[str] = None

    @property
    def matched_bucket_dimensions(self) -> List[str]:
        return [m.dimension_key for m in self.matched_buckets]

    @property
    def message(self) -> str:
        return REASON_MESSAGES[self.reason]

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "status": self.status.value,
            "respondentId": self.respondent_id,
            "matchedBucketDimensions": self.matched_bucket_dimensions,
            "reason": self.reason.value,
            "message": self.message,
        }
        if self.failed_dimension:
            out["failedDimension"] = self.failed_dimension
        return out


class AdmissionTransaction:
    """Run one admission as a single atomic unit against the store.

    Inside one write transaction: load the quota snapshot, evaluate, insert
    the respondent row and bump the tally counter of the verdict. Ceiling
    counters (``current_count``) are left alone until completion.
    """

    def __init__(self, store: QuotaStore, evaluator: Optional[AdmissionEvaluator] = None):
        self.store = store
        self.evaluator = evaluator or AdmissionEvaluator()

    async def admit(self, quota_id: str, request: AdmissionRequest) -> AdmissionResult:
        async with self.store.transaction() as conn:
            snapshot = await self.store.load_snapshot(conn, quota_id)
            if snapshot is None:
                raise NotFoundError(f"Quota {quota_id} not found")

            verdict = self.evaluator.evaluate(snapshot, request.answers)
            respondent = Respondent(
                id=Respondent.make_id(),
                quota_id=quota_id,
                vendor_respondent_id=request.vendor_respondent_id,
                status=verdict.status,
                answers=list(request.answers),
                matched_buckets=verdict.matched,
                reason=verdict.reason.value,
                created_at=utcnow(),
            )
            await self.store.insert_respondent(conn, respondent)
            await self.store.increment_quota_counter(
                conn, quota_id, VERDICT_COUNTERS[verdict.status]
            )

        logger.info(
            "Admission %s for quota %s (vendor respondent %s): %s",
            respondent.id, quota_id, request.vendor_respondent_id, verdict.reason.value,
        )
        return AdmissionResult(
            status=verdict.status,
            respondent_id=respondent.id,
            reason=verdict.reason,
            matched_buckets=verdict.matched,
            failed_dimension=verdict.failed_dimension,
            quota=snapshot.config,
            vendor_respondent_id=request.vendor_respondent_id,
        )
