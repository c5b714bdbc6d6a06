"""Quota engine: bucket matching, admission evaluation and completion reconciliation."""

from surveyquota.engine.admission import AdmissionRequest, AdmissionResult, AdmissionTransaction
from surveyquota.engine.definition import (
    QuotaDefinition,
    parse_quota_definition,
    validate_quota_definition,
)
from surveyquota.engine.evaluator import AdmissionEvaluator, Reason, Verdict
from surveyquota.engine.matcher import match
from surveyquota.engine.reconciler import CompletionReconciler
from surveyquota.engine.targets import check_targets, resolve_target

__all__ = [
    "AdmissionRequest",
    "AdmissionResult",
    "AdmissionTransaction",
    "QuotaDefinition",
    "parse_quota_definition",
    "validate_quota_definition",
    "AdmissionEvaluator",
    "Reason",
    "Verdict",
    "match",
    "CompletionReconciler",
    "check_targets",
    "resolve_target",
]
