"""
Notification/Audit Sink
Side effects recorded after every committed workflow or job change.

Both operations are best-effort: a failure is logged and swallowed so that
the transition which triggered it stays committed.
"""
import logging
from typing import Optional

from beanie import PydanticObjectId
from pydantic import BaseModel

from lms.models.audit import AuditEntry, AuditLog
from lms.models.notification import Notification, NotificationType
from lms.models.user import User
from lms.services.email import EmailService, email_service

logger = logging.getLogger(__name__)


class NotificationEvent(BaseModel):
    type: NotificationType
    title: str
    message: str
    leave_id: Optional[PydanticObjectId] = None
    link: Optional[str] = None


class AuditSink:
    """Writes audit log entries and in-app notifications, optionally mailing them"""

    def __init__(self, mailer: Optional[EmailService] = email_service):
        self.mailer = mailer

    async def record_audit(self, entry: AuditEntry) -> Optional[AuditLog]:
        try:
            log = AuditLog(**entry.model_dump())
            await log.insert()
            return log
        except Exception:
            logger.exception("Failed to record audit entry %s on %s", entry.action, entry.target)
            return None

    async def notify(self, user: User, event: NotificationEvent) -> Optional[Notification]:
        try:
            notification = Notification(
                recipient_id=user.id,
                recipient_email=user.email,
                title=event.title,
                message=event.message,
                type=event.type,
                leave_id=event.leave_id,
                link=event.link,
            )
            await notification.insert()
        except Exception:
            logger.exception("Failed to store notification %s for %s", event.type.value, user.email)
            return None

        if self.mailer is not None:
            try:
                await self.mailer.send_leave_notification(user.email, user.name, event.title, event.message)
            except Exception:
                logger.exception("Failed to mail notification %s to %s", event.type.value, user.email)
        return notification


sink = AuditSink()
