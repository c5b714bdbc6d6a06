"""Vendor notifiers: HTTP redirect callbacks, log-only and no-op."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from surveyquota.vendors.base import NotificationResult, VendorEvent, VendorNotifier
from surveyquota.vendors.payload import DEFAULT_TOKEN_SEPARATOR, process_callback_url, vendor_token

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_RETRY_ATTEMPTS = 3


def resolve_callback_url(
    event: VendorEvent,
    redirect_urls: Dict[str, str],
    separator: str = DEFAULT_TOKEN_SEPARATOR,
) -> Optional[str]:
    """URL to call for an event.

    The quota's own callback template wins. Otherwise the configured base
    URL for the status is suffixed with the vendor token.
    """
    url = process_callback_url(
        event.callback_template,
        event.vendor_respondent_id,
        event.survey_id,
        event.status.value,
    )
    if url:
        return url
    base = redirect_urls.get(event.status.value)
    if not base:
        return None
    return base + vendor_token(event.vendor_respondent_id, separator)


class RedirectNotifier(VendorNotifier):
    """Report outcomes by GETting the vendor's redirect URL."""

    def __init__(self, config: Dict[str, Any]) -> None:
        urls = config.get("redirect_urls") or {}
        self.redirect_urls = {str(k).upper(): str(v) for k, v in urls.items() if v}
        self.separator = config.get("token_separator") or DEFAULT_TOKEN_SEPARATOR
        self.timeout = float(config.get("timeout", DEFAULT_TIMEOUT_SECONDS))
        self.retry_attempts = max(1, int(config.get("retry_attempts", DEFAULT_RETRY_ATTEMPTS)))
        wait = config.get("retry_wait") or {}
        self.retry_wait_min = float(wait.get("min", 2))
        self.retry_wait_max = float(wait.get("max", 60))

    async def notify(self, event: VendorEvent) -> NotificationResult:
        url = resolve_callback_url(event, self.redirect_urls, self.separator)
        if not url:
            logger.debug("No callback URL for %s respondent %s", event.status.value, event.respondent_id)
            return NotificationResult(url=None, success=False, error="no callback url")

        status: Optional[int] = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError, OSError)),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=self.retry_wait_min, max=self.retry_wait_max),
            reraise=True,
        ):
            with attempt:
                status = await self._get(url)

        success = status is not None and 200 <= status < 400
        if success:
            logger.info("Vendor %s notified of %s for %s", event.vendor_id, event.status.value, event.respondent_id)
        else:
            logger.warning("Vendor callback %s returned %s", url, status)
        return NotificationResult(url=url, success=success, status=status)

    async def _get(self, url: str) -> int:
        """GET the URL; server errors raise so they are retried."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as resp:
                if resp.status >= 500:
                    resp.raise_for_status()
                return resp.status


class LoggingNotifier(VendorNotifier):
    """Log the callback that would be made. Useful in staging."""

    def __init__(self, config: Dict[str, Any]) -> None:
        urls = config.get("redirect_urls") or {}
        self.redirect_urls = {str(k).upper(): str(v) for k, v in urls.items() if v}
        self.separator = config.get("token_separator") or DEFAULT_TOKEN_SEPARATOR

    async def notify(self, event: VendorEvent) -> NotificationResult:
        url = resolve_callback_url(event, self.redirect_urls, self.separator)
        logger.info(
            "Vendor %s callback for %s (%s): %s",
            event.vendor_id, event.respondent_id, event.status.value, url or "-",
        )
        return NotificationResult(url=url, success=url is not None)


class NullNotifier(VendorNotifier):
    async def notify(self, event: VendorEvent) -> NotificationResult:
        return NotificationResult(url=None, success=True)
