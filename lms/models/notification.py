from beanie import Document, PydanticObjectId
from pydantic import Field
from datetime import datetime
from typing import Optional
from enum import Enum

class NotificationType(str, Enum):
    LEAVE_SUBMITTED = "leave_submitted"
    LEAVE_FORWARDED = "leave_forwarded"
    LEAVE_APPROVED = "leave_approved"
    LEAVE_REJECTED = "leave_rejected"
    LEAVE_RETURNED = "leave_returned"
    LEAVE_CANCELLED = "leave_cancelled"
    LEAVE_RECALLED = "leave_recalled"
    CANCELLATION_REQUESTED = "cancellation_requested"
    LEAVE_SHORTENED = "leave_shortened"
    FITNESS_REVIEW = "fitness_review"
    GENERAL = "general"


class Notification(Document):
    recipient_id: PydanticObjectId
    recipient_email: Optional[str] = None
    title: str
    message: str
    type: NotificationType
    leave_id: Optional[PydanticObjectId] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    link: Optional[str] = None

    class Settings:
        name = "notifications"
        indexes = ["recipient_id"]
