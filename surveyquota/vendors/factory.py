"""Notifier factory: build the right notifier from the config.yaml vendor section."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from surveyquota.vendors.base import VendorNotifier
from surveyquota.vendors.redirect import LoggingNotifier, NullNotifier, RedirectNotifier

logger = logging.getLogger(__name__)


def build_notifier(config: Optional[Dict[str, Any]]) -> VendorNotifier:
    """Return a notifier for the given vendor config.

    config 'type' is redirect | log | none. Missing config means none.
    """
    config = config or {}
    notifier_type = str(config.get("type") or "none").lower().strip()
    if notifier_type == "redirect":
        return RedirectNotifier(config)
    if notifier_type == "log":
        return LoggingNotifier(config)
    if notifier_type != "none":
        logger.warning("Unknown vendor notifier type %r, callbacks disabled", notifier_type)
    return NullNotifier()
