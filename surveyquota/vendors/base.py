"""Base notifier interface for vendor callbacks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from surveyquota.storage.models import RespondentStatus


@dataclass
class VendorEvent:
    """A terminal respondent outcome to report to the sample vendor."""

    respondent_id: str
    vendor_respondent_id: str
    survey_id: str
    vendor_id: str
    status: RespondentStatus
    callback_template: Optional[str] = None


@dataclass
class NotificationResult:
    url: Optional[str]
    success: bool
    status: Optional[int] = None
    error: Optional[str] = None


class VendorNotifier(ABC):
    """Abstract base for vendor notifiers.

    Notifiers run after the admission or completion has committed. A
    failure is reported in the result or raised, never rolled back into
    the quota counters.
    """

    @abstractmethod
    async def notify(self, event: VendorEvent) -> NotificationResult:
        ...

    async def close(self) -> None:
        """Release any held resources."""
        return None
