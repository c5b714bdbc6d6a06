"""Vendor integration: outcome callbacks and quota payloads for sample vendors."""

from surveyquota.vendors.base import NotificationResult, VendorEvent, VendorNotifier
from surveyquota.vendors.factory import build_notifier
from surveyquota.vendors.payload import (
    build_quota_conditions,
    build_quota_payload,
    build_target_payload,
    process_callback_url,
    vendor_token,
)
from surveyquota.vendors.redirect import LoggingNotifier, NullNotifier, RedirectNotifier

__all__ = [
    "NotificationResult",
    "VendorEvent",
    "VendorNotifier",
    "build_notifier",
    "build_quota_conditions",
    "build_quota_payload",
    "build_target_payload",
    "process_callback_url",
    "vendor_token",
    "LoggingNotifier",
    "NullNotifier",
    "RedirectNotifier",
]
