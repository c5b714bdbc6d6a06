"""Storage layer - SQLite with WAL mode, serialized write transactions and conditional counters."""

from surveyquota.storage.db import QuotaStore
from surveyquota.storage.models import (
    Answer,
    MatchedBucket,
    QuotaBucket,
    QuotaConfig,
    QuotaDimension,
    QuotaSnapshot,
    Respondent,
    RespondentStatus,
)

__all__ = [
    "QuotaStore",
    "Answer",
    "MatchedBucket",
    "QuotaBucket",
    "QuotaConfig",
    "QuotaDimension",
    "QuotaSnapshot",
    "Respondent",
    "RespondentStatus",
]
