import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .job import utcnow


class NotificationSettings(BaseModel):
    """
    One notification recipient and which outcomes it wants to hear about.
    """
    id: str = Field(default_factory=lambda: f"ns_{uuid.uuid4().hex[:8]}")
    email: Optional[str] = Field(None, description="Recipient address")
    on_success: bool = True
    on_failure: bool = True

    def wants(self, success: bool) -> bool:
        return self.on_success if success else self.on_failure


class NotificationBody(BaseModel):
    job_name: str
    status: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class NotificationMessage(BaseModel):
    recipient: str
    subject: str
    body: NotificationBody

    @classmethod
    def for_outcome(cls, recipient: str, job_name: str, success: bool, message: str,
                    timestamp: Optional[datetime] = None) -> "NotificationMessage":
        outcome = "Succeeded" if success else "Failed"
        return cls(
            recipient=recipient,
            subject=f"Backup Job {outcome}: {job_name}",
            body=NotificationBody(
                job_name=job_name,
                status="success" if success else "failed",
                message=message,
                timestamp=timestamp or utcnow(),
            ),
        )

    @property
    def text(self) -> str:
        return (
            f"Backup Job: {self.body.job_name}\n"
            f"Status: {self.body.status}\n"
            f"Time: {self.body.timestamp.isoformat()}\n"
            f"\n{self.body.message}\n"
        )

    @property
    def html(self) -> str:
        return (
            f"<h2>{self.subject}</h2>"
            f"<p><strong>Job Name:</strong> {self.body.job_name}</p>"
            f"<p><strong>Status:</strong> {self.body.status}</p>"
            f"<p><strong>Message:</strong> {self.body.message}</p>"
            f"<p><strong>Time:</strong> {self.body.timestamp.isoformat()}</p>"
        )
