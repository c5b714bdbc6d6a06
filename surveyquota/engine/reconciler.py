"""Completion reconciliation: close out a QUALIFIED respondent exactly once."""

from __future__ import annotations

import logging
from typing import Optional

import aiosqlite

from surveyquota.engine.targets import resolve_target
from surveyquota.errors import CeilingReachedError, ConflictError, NotFoundError, WrongQuotaError
from surveyquota.storage.db import QuotaStore
from surveyquota.storage.models import QuotaConfig, Respondent, RespondentStatus

logger = logging.getLogger(__name__)


class CompletionReconciler:
    """Turn QUALIFIED respondents into COMPLETED or TERMINATED.

    Completion is where ceiling counters move: the quota's ``current_count``
    and every bucket recorded at admission are incremented, each guarded by
    its ceiling, all in the transaction that flips the respondent's status.
    A second completion of the same respondent finds it no longer QUALIFIED
    and is rejected, so nothing is counted twice.
    """

    def __init__(self, store: QuotaStore):
        self.store = store

    async def complete(
        self,
        respondent_id: str,
        external_response_id: Optional[str] = None,
        expected_quota_id: Optional[str] = None,
        expected_survey_id: Optional[str] = None,
    ) -> Respondent:
        async with self.store.transaction() as conn:
            respondent = await self._claim(
                conn, respondent_id, expected_quota_id, expected_survey_id,
                RespondentStatus.COMPLETED, external_response_id=external_response_id,
            )
            config = await self._quota(conn, respondent.quota_id)

            if not await self.store.increment_current_with_ceiling(conn, config.id):
                raise CeilingReachedError(
                    f"Quota {config.id} already has {config.total_target} completes",
                    details={"quota_id": config.id},
                )

            for matched in respondent.matched_buckets:
                bucket = await self.store.fetch_bucket(conn, matched.bucket_id)
                if bucket is None:
                    logger.warning(
                        "Respondent %s matched bucket %s which no longer exists; skipping",
                        respondent_id, matched.bucket_id,
                    )
                    continue
                ceiling = resolve_target(bucket, config.total_target)
                if not await self.store.increment_bucket_with_ceiling(conn, bucket.id, ceiling):
                    raise CeilingReachedError(
                        f"Bucket {bucket.label or bucket.id} of {bucket.dimension_key} is full",
                        details={"bucket_id": bucket.id, "dimension_key": bucket.dimension_key},
                    )

            updated = await self.store.fetch_respondent(conn, respondent_id)

        logger.info("Respondent %s completed on quota %s", respondent_id, config.id)
        return updated

    async def terminate(
        self,
        respondent_id: str,
        reason: Optional[str] = None,
        expected_quota_id: Optional[str] = None,
        expected_survey_id: Optional[str] = None,
    ) -> Respondent:
        """Terminate a QUALIFIED respondent after screening (e.g. failed quality checks)."""
        async with self.store.transaction() as conn:
            respondent = await self._claim(
                conn, respondent_id, expected_quota_id, expected_survey_id,
                RespondentStatus.TERMINATED, reason=reason or "TERMINATED_AFTER_QUALIFY",
            )
            await self.store.increment_quota_counter(conn, respondent.quota_id, "terminated_count")
            updated = await self.store.fetch_respondent(conn, respondent_id)

        logger.info("Respondent %s terminated on quota %s", respondent_id, respondent.quota_id)
        return updated

    async def _claim(
        self,
        conn: aiosqlite.Connection,
        respondent_id: str,
        expected_quota_id: Optional[str],
        expected_survey_id: Optional[str],
        to_status: RespondentStatus,
        reason: Optional[str] = None,
        external_response_id: Optional[str] = None,
    ) -> Respondent:
        respondent = await self.store.fetch_respondent(conn, respondent_id)
        if respondent is None:
            raise NotFoundError(f"Respondent {respondent_id} not found")
        if expected_quota_id and respondent.quota_id != expected_quota_id:
            raise WrongQuotaError(
                f"Respondent {respondent_id} belongs to another quota",
                details={"respondent_quota_id": respondent.quota_id},
            )
        if expected_survey_id:
            config = await self._quota(conn, respondent.quota_id)
            if config.survey_id != expected_survey_id:
                raise WrongQuotaError(
                    f"Respondent {respondent_id} belongs to another survey",
                    details={"respondent_survey_id": config.survey_id},
                )
        if respondent.status is not RespondentStatus.QUALIFIED:
            raise ConflictError(
                f"Respondent {respondent_id} is {respondent.status.value}, not QUALIFIED",
                details={"status": respondent.status.value},
            )
        moved = await self.store.transition_respondent(
            conn, respondent_id, to_status,
            reason=reason, external_response_id=external_response_id,
        )
        if not moved:
            raise ConflictError(f"Respondent {respondent_id} was already closed out")
        return respondent

    async def _quota(self, conn: aiosqlite.Connection, quota_id: str) -> QuotaConfig:
        snapshot = await self.store.load_snapshot(conn, quota_id)
        if snapshot is None:
            raise NotFoundError(f"Quota {quota_id} not found")
        return snapshot.config
