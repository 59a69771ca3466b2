import logging
from datetime import datetime
from typing import Iterable, Optional

from backup_scheduler.domain.notification import NotificationMessage, NotificationSettings
from backup_scheduler.notifications.protocol import NotificationGateway

logger = logging.getLogger(__name__)


async def dispatch_job_notification(
    gateway: NotificationGateway,
    recipients: Iterable[NotificationSettings],
    job_name: str,
    success: bool,
    message: str,
    timestamp: Optional[datetime] = None,
) -> int:
    """
    Send the outcome of a job to every recipient that asked for it. A failing recipient is
    logged and skipped; the number of messages actually sent is returned.
    """
    sent = 0
    for settings in recipients:
        if not settings.wants(success):
            continue
        if not settings.email:
            logger.warning("Skipping notification recipient %s without email address", settings.id)
            continue

        notification = NotificationMessage.for_outcome(settings.email, job_name, success, message, timestamp)
        try:
            await gateway.send(notification)
            sent += 1
        except Exception as e:
            logger.error("Failed to send notification to %s for job %s: %s", settings.email, job_name, e)
    return sent
