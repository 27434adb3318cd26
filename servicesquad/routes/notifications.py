from typing import List

from fastapi import APIRouter, Depends

from dtos.dtos import APIResponse, NotificationOut
from routes.deps import get_container
from services.container import Container
from services.exceptions import NotFound

router = APIRouter(tags=["notifications"])


@router.get("/users/{user_id}/notifications", response_model=APIResponse[List[NotificationOut]])
async def list_notifications(user_id: str, unread_only: bool = False, container: Container = Depends(get_container)):
    notifications = await container.notifications.list_for_user(user_id, unread_only=unread_only)
    return APIResponse(success=True, data=[NotificationOut.model_validate(n) for n in notifications])


@router.post("/notifications/{notification_id}/read", response_model=APIResponse[None])
async def mark_notification_read(notification_id: int, container: Container = Depends(get_container)):
    if not await container.notifications.mark_read(notification_id):
        raise NotFound(f"Notification {notification_id} not found")
    return APIResponse(success=True)
