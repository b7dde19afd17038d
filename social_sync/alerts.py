"""
Outbound alert channel for unrecoverable sync failures.

Fire-and-forget: alerts are posted to ALERT_WEBHOOK_URL in the background
and delivery failures are only logged. Without a URL, alerts are logged.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from social_sync.utils import isoformat, utcnow

logger = logging.getLogger(__name__)


class AlertChannel:
    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    def send(self, title: str, details: Optional[dict[str, Any]] = None) -> None:
        payload = {"title": title, "details": details or {}, "ts": isoformat(utcnow())}
        logger.error(f"Sync alert: {title}", extra={"alert": payload})
        if not self.webhook_url:
            return
        task = asyncio.get_running_loop().create_task(self._post(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, payload: dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Alert delivery failed: {e}")
