from typing import Protocol

from backup_scheduler.domain.notification import NotificationMessage


class NotificationGateway(Protocol):
    """
    Protocol class for anything that can deliver a job outcome message to a recipient.
    """

    async def send(self, message: NotificationMessage) -> None:
        """
        Deliver one message. Raise on failure; callers decide whether that matters.
        """
        ...
