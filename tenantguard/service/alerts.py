from __future__ import annotations

from typing import Any, Optional

import httpx

from tenantguard.logging import get_logger, sanitize_detail
from tenantguard.storage.models import utcnow

logger = get_logger(__name__)


class SecurityAlerter:
    """Out-of-band escalation used when the audit trail itself is failing.

    Always writes a ``critical`` log line; additionally POSTs to a webhook when
    one is configured. Never raises.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        timeout_seconds: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def alert(self, event: str, **context: Any) -> bool:
        """Escalate ``event``; returns True when every configured channel accepted it."""
        context = sanitize_detail(context)
        logger.critical(event, **context)
        if not self.webhook_url:
            return True
        payload = {"event": event, "ts": utcnow().isoformat(), "context": context}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.post(self.webhook_url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("security_alert_webhook_failed", alert_event=event, error=str(exc))
            return False
        return True
