"""Quota service: the entry point tying the store, engine and vendor notifier together.

Admission and completion commit first; vendor callbacks run afterwards as
background tasks and can never undo or block a committed decision.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Set, Union

from surveyquota.engine.admission import AdmissionRequest, AdmissionResult, AdmissionTransaction
from surveyquota.engine.definition import QuotaDefinition, parse_quota_definition
from surveyquota.engine.reconciler import CompletionReconciler
from surveyquota.engine.targets import format_bucket_status
from surveyquota.errors import NotFoundError, QuotaEngineError
from surveyquota.service.config import DEFAULTS, load_config
from surveyquota.storage.db import QuotaStore
from surveyquota.storage.models import QuotaConfig, Respondent, RespondentStatus
from surveyquota.vendors.base import VendorEvent, VendorNotifier
from surveyquota.vendors.factory import build_notifier
from surveyquota.vendors.payload import (
    build_quota_conditions,
    build_quota_payload,
    build_target_payload,
)

logger = logging.getLogger(__name__)

# Admission verdicts reported to the vendor right away. QUALIFIED respondents
# are reported when they complete or get terminated.
NOTIFY_ON_ADMISSION = frozenset({RespondentStatus.TERMINATED, RespondentStatus.QUOTA_FULL})


class QuotaService:
    """Survey quota operations.

    Usage:
        service = QuotaService.from_config_file("config.yaml")
        await service.initialize()
        result = await service.handle_admission(quota_id, payload)
        await service.close()
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        store: Optional[QuotaStore] = None,
        notifier: Optional[VendorNotifier] = None,
    ):
        self.config = config or DEFAULTS
        db_config = self.config.get("database") or {}
        self.store = store or QuotaStore(
            db_config.get("path", DEFAULTS["database"]["path"]),
            busy_timeout_ms=int(db_config.get("busy_timeout_ms", 5000)),
        )
        self.notifier = notifier or build_notifier(self.config.get("vendor"))
        self.admissions = AdmissionTransaction(self.store)
        self.reconciler = CompletionReconciler(self.store)
        self._notifications: Set[asyncio.Task] = set()

    @classmethod
    def from_config_file(cls, path: Optional[str] = None) -> QuotaService:
        return cls(config=load_config(path))

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        """Wait for pending vendor callbacks, then release resources."""
        await self.drain_notifications()
        await self.notifier.close()
        await self.store.close()

    # --- Configuration ---

    async def configure(self, definition: Mapping[str, Any]) -> QuotaDefinition:
        """Validate and save a survey's quota definition (replacing any previous one)."""
        parsed = parse_quota_definition(definition)
        parsed.config = await self.store.save_quota(
            parsed.config, parsed.dimensions, parsed.buckets
        )
        return parsed

    # --- Respondent lifecycle ---

    async def admit(
        self,
        quota_id: str,
        request: Union[AdmissionRequest, Mapping[str, Any]],
    ) -> AdmissionResult:
        if not isinstance(request, AdmissionRequest):
            request = AdmissionRequest.from_dict(request)
        result = await self.admissions.admit(quota_id, request)
        if result.status in NOTIFY_ON_ADMISSION and result.quota is not None:
            self._notify(result.quota, result.respondent_id, request.vendor_respondent_id, result.status)
        return result

    async def complete(
        self,
        respondent_id: str,
        external_response_id: Optional[str] = None,
        expected_quota_id: Optional[str] = None,
        expected_survey_id: Optional[str] = None,
    ) -> Respondent:
        respondent = await self.reconciler.complete(
            respondent_id,
            external_response_id=external_response_id,
            expected_quota_id=expected_quota_id,
            expected_survey_id=expected_survey_id,
        )
        await self._notify_respondent(respondent)
        return respondent

    async def terminate(
        self,
        respondent_id: str,
        reason: Optional[str] = None,
        expected_quota_id: Optional[str] = None,
        expected_survey_id: Optional[str] = None,
    ) -> Respondent:
        respondent = await self.reconciler.terminate(
            respondent_id,
            reason=reason,
            expected_quota_id=expected_quota_id,
            expected_survey_id=expected_survey_id,
        )
        await self._notify_respondent(respondent)
        return respondent

    # --- Typed results ---
    # Wire-level entry points: never raise engine errors, return them as dicts.

    async def handle_admission(self, quota_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            result = await self.admit(quota_id, payload)
        except QuotaEngineError as e:
            logger.warning("Admission on quota %s rejected: %s (%s)", quota_id, e.message, e.code)
            return e.to_dict()
        return result.to_dict()

    async def handle_completion(
        self,
        respondent_id: str,
        external_response_id: Optional[str] = None,
        expected_quota_id: Optional[str] = None,
        expected_survey_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            respondent = await self.complete(
                respondent_id, external_response_id, expected_quota_id, expected_survey_id
            )
        except QuotaEngineError as e:
            logger.warning("Completion of %s rejected: %s (%s)", respondent_id, e.message, e.code)
            return e.to_dict()
        return _respondent_result(respondent)

    async def handle_termination(
        self,
        respondent_id: str,
        reason: Optional[str] = None,
        expected_quota_id: Optional[str] = None,
        expected_survey_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            respondent = await self.terminate(
                respondent_id, reason, expected_quota_id, expected_survey_id
            )
        except QuotaEngineError as e:
            logger.warning("Termination of %s rejected: %s (%s)", respondent_id, e.message, e.code)
            return e.to_dict()
        return _respondent_result(respondent)

    # --- Reporting ---

    async def get_status(self, survey_id: str) -> Dict[str, Any]:
        """Dashboard view of a survey's quota.

        Read outside any transaction: the numbers may lag concurrent
        admissions and are never used for decisions.
        """
        quota = await self._quota_for_survey(survey_id)
        dimensions = await self.store.get_dimensions(quota.id)
        buckets = await self.store.get_buckets(quota.id)
        respondents = await self.store.count_respondents_by_status(quota.id)

        total = quota.total_target
        progress = (quota.current_count / total) * 100 if total > 0 else 0.0
        return {
            "survey_id": quota.survey_id,
            "quota_id": quota.id,
            "is_active": quota.is_active,
            "total_target": total,
            "completed": quota.current_count,
            "remaining": max(0, total - quota.current_count),
            "qualified": quota.qualified_count,
            "terminated": quota.terminated_count,
            "quota_full": quota.quota_full_count,
            "overall_progress": round(progress, 2),
            "respondents": respondents,
            "dimensions": [
                {
                    "key": dim.dimension_key,
                    "vendor_question_id": dim.vendor_question_id,
                    "buckets": [
                        {
                            "id": b.id,
                            "label": b.label,
                            "operator": b.operator,
                            "is_active": b.is_active,
                            **format_bucket_status(b, total),
                        }
                        for b in buckets
                        if b.dimension_key == dim.dimension_key
                    ],
                }
                for dim in dimensions
            ],
        }

    async def vendor_payload(self, survey_id: str, group_id: Any = None) -> Dict[str, Any]:
        """Targets and quota payload to push to the sample vendor."""
        quota = await self._quota_for_survey(survey_id)
        dimensions = await self.store.get_dimensions(quota.id)
        buckets = await self.store.get_buckets(quota.id, active_only=True)
        targets = build_target_payload(dimensions, buckets)
        conditions = build_quota_conditions(targets)
        return {
            "targets": targets,
            "quota": build_quota_payload(
                title=f"Survey {survey_id}",
                n=quota.total_target,
                group_id=group_id,
                conditions=conditions,
            ),
        }

    # --- Vendor callbacks ---

    async def drain_notifications(self) -> None:
        """Wait for all in-flight vendor callbacks."""
        while self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    async def _notify_respondent(self, respondent: Respondent) -> None:
        try:
            quota = await self.store.get_quota(respondent.quota_id)
        except Exception as e:
            logger.warning(
                "Skipping vendor callback for respondent %s: quota lookup failed: %s",
                respondent.id, e,
            )
            return
        if quota is not None:
            self._notify(quota, respondent.id, respondent.vendor_respondent_id, respondent.status)

    def _notify(
        self,
        quota: QuotaConfig,
        respondent_id: str,
        vendor_respondent_id: str,
        status: RespondentStatus,
    ) -> None:
        if not quota.vendor_id:
            return
        event = VendorEvent(
            respondent_id=respondent_id,
            vendor_respondent_id=vendor_respondent_id,
            survey_id=quota.survey_id,
            vendor_id=quota.vendor_id,
            status=status,
            callback_template=quota.callback_template(status),
        )
        task = asyncio.create_task(self._deliver(event))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _deliver(self, event: VendorEvent) -> None:
        try:
            result = await self.notifier.notify(event)
        except Exception as e:
            logger.warning(
                "Vendor callback for respondent %s (%s) failed: %s",
                event.respondent_id, event.status.value, e,
            )
            return
        if not result.success:
            logger.warning(
                "Vendor callback for respondent %s (%s) not delivered: %s",
                event.respondent_id, event.status.value, result.error or result.status,
            )

    async def _quota_for_survey(self, survey_id: str) -> QuotaConfig:
        quota = await self.store.get_quota_by_survey(survey_id)
        if quota is None:
            raise NotFoundError(f"No quota configured for survey {survey_id}")
        return quota


def _respondent_result(respondent: Respondent) -> Dict[str, Any]:
    return {
        "status": respondent.status.value,
        "respondentId": respondent.id,
        "quotaId": respondent.quota_id,
        "matchedBucketDimensions": [m.dimension_key for m in respondent.matched_buckets],
        "reason": respondent.reason,
    }
