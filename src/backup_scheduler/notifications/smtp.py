import email.mime.multipart
import email.mime.text
import logging

import aiosmtplib

from backup_scheduler.config import SmtpSettings
from backup_scheduler.domain.notification import NotificationMessage
from backup_scheduler.notifications.protocol import NotificationGateway

logger = logging.getLogger(__name__)


class SmtpNotificationGateway(NotificationGateway):
    """
    Sends job outcome emails through an SMTP server using aiosmtplib. A fresh connection is
    opened per message so a dropped connection never poisons later sends.
    """

    def __init__(self, settings: SmtpSettings):
        self.settings = settings

    @property
    def sender(self) -> str:
        return self.settings.sender or self.settings.username or "noreply@localhost"

    def build_mime(self, message: NotificationMessage) -> email.mime.multipart.MIMEMultipart:
        mime = email.mime.multipart.MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = self.sender
        mime["To"] = message.recipient
        mime.attach(email.mime.text.MIMEText(message.text, "plain", "utf-8"))
        mime.attach(email.mime.text.MIMEText(message.html, "html", "utf-8"))
        return mime

    async def send(self, message: NotificationMessage) -> None:
        await aiosmtplib.send(
            self.build_mime(message),
            hostname=self.settings.host,
            port=self.settings.port,
            username=self.settings.username,
            password=self.settings.password,
            use_tls=self.settings.use_tls,
            start_tls=self.settings.start_tls,
            timeout=self.settings.timeout,
        )
        logger.info("Sent notification email to %s: %s", message.recipient, message.subject)
