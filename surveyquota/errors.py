"""Error taxonomy for the quota engine.

Every error carries a stable ``code`` (returned to callers in typed error
results) and a ``retryable`` flag telling the caller whether re-issuing the
whole call is safe.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class QuotaEngineError(Exception):
    """Base class for all engine errors."""

    code = "quota_engine_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            out["details"] = self.details
        return out


class ConfigurationError(QuotaEngineError):
    """Quota setup is unusable: malformed rule, bad targets, inactive quota."""

    code = "configuration_error"

    def __init__(self, message: str, problems: Optional[List[str]] = None) -> None:
        super().__init__(message, {"problems": problems} if problems else None)
        self.problems = problems or []


class NotFoundError(QuotaEngineError):
    """Referenced quota, respondent or survey does not exist."""

    code = "not_found"


class ConflictError(QuotaEngineError):
    """State conflict, e.g. completing a respondent that is no longer QUALIFIED."""

    code = "conflict"


class WrongQuotaError(ConflictError):
    """Respondent does not belong to the quota or survey the caller expected."""

    code = "wrong_quota"


class CeilingReachedError(ConflictError):
    """A conditional increment was refused because the ceiling is reached."""

    code = "ceiling_reached"


class TransientStoreError(QuotaEngineError):
    """The store aborted the transaction for infrastructure reasons."""

    code = "transient_store_error"
    retryable = True


class InvalidRequestError(QuotaEngineError):
    """Inbound payload is malformed."""

    code = "invalid_request"
