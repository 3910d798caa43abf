from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from pimify_identity.logging import get_logger
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result

logger = get_logger(__name__)


def build_payload(url: str, message: str, *, title: Optional[str] = None) -> Dict[str, Any]:
    """Slack and Teams incoming webhooks accept different JSON shapes."""
    host = urlparse(url).hostname or ""
    if host.endswith("office.com") or host.endswith("office365.com") or "logic.azure.com" in host:
        payload: Dict[str, Any] = {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "summary": title or message[:80],
            "text": message,
        }
        if title:
            payload["title"] = title
        return payload
    text = f"*{title}*\n{message}" if title else message
    return {"text": text}


class WebhookDispatcher:
    """Posts operational notifications to Slack or Teams."""

    def __init__(self, *, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport

    async def send_webhook(self, url: str, message: str, *, title: Optional[str] = None) -> Result:
        if not url:
            return Result.fail(ErrorKind.NOT_CONFIGURED, "webhook url is not configured")
        payload = build_payload(url, message, title=title)
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("webhook_rejected", status_code=exc.response.status_code, host=urlparse(url).hostname)
            return Result.fail(ErrorKind.INTERNAL_ERROR, "webhook rejected")
        except httpx.HTTPError as exc:
            logger.error("webhook_send_failed", error_type=type(exc).__name__, host=urlparse(url).hostname)
            return Result.fail(ErrorKind.INTERNAL_ERROR, "webhook delivery failed")
        logger.info("webhook_sent", host=urlparse(url).hostname)
        return Result.ok({"delivered": True})


__all__ = ["WebhookDispatcher", "build_payload"]
