import logging
from typing import Dict, Optional

import aiohttp

from backup_scheduler.domain.notification import NotificationMessage
from backup_scheduler.notifications.protocol import NotificationGateway

logger = logging.getLogger(__name__)


class WebhookNotificationGateway(NotificationGateway):
    """
    Posts the notification payload as JSON to an HTTP endpoint using aiohttp.
    """

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, timeout: float = 10.0):
        self.url = url
        self.headers = headers or {}
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def send(self, message: NotificationMessage) -> None:
        payload = message.model_dump(mode="json")
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.url, json=payload, headers=self.headers) as response:
                if response.status >= 300:
                    body = await response.text()
                    raise RuntimeError(f"Webhook returned HTTP {response.status}: {body[:200]}")
        logger.info("Posted notification for %s to %s", message.recipient, self.url)
