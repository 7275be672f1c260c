"""
Notification Routes
In-app leave notifications of the current user
"""
from fastapi import APIRouter, Depends
from typing import List, Optional
from beanie import PydanticObjectId

from lms.core.exceptions import NotFound
from lms.models.notification import Notification, NotificationType
from lms.models.user import User
from lms.api.routes.auth import get_current_user

router = APIRouter()


@router.get("/", response_model=List[Notification])
async def get_my_notifications(
    unread_only: bool = False,
    type: Optional[NotificationType] = None,
    leave_id: Optional[PydanticObjectId] = None,
    limit: int = 20,
    current_user: User = Depends(get_current_user)
):
    """Newest notifications first, optionally only unread ones or those of one request"""
    query = Notification.find(Notification.recipient_id == current_user.id)
    if unread_only:
        query = query.find(Notification.is_read == False)  # noqa: E712
    if type:
        query = query.find(Notification.type == type)
    if leave_id:
        query = query.find(Notification.leave_id == leave_id)

    return await query.sort("-created_at").limit(min(limit, 100)).to_list()


@router.get("/unread-count")
async def get_unread_count(current_user: User = Depends(get_current_user)):
    count = await Notification.find(
        Notification.recipient_id == current_user.id,
        Notification.is_read == False  # noqa: E712
    ).count()
    return {"unread": count}


@router.put("/read-all")
async def mark_all_as_read(current_user: User = Depends(get_current_user)):
    await Notification.find(
        Notification.recipient_id == current_user.id,
        Notification.is_read == False  # noqa: E712
    ).update({"$set": {"is_read": True}})

    return {"message": "All notifications marked as read"}


@router.put("/{notification_id}/read", response_model=Notification)
async def mark_as_read(
    notification_id: PydanticObjectId,
    current_user: User = Depends(get_current_user)
):
    notification = await Notification.get(notification_id)
    # another user's notification is reported as missing
    if not notification or notification.recipient_id != current_user.id:
        raise NotFound("Notification not found")

    notification.is_read = True
    await notification.save()
    return notification
