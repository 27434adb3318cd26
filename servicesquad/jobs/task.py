from services.notification_service import NotificationService
import logging


logger = logging.getLogger(__name__)
noti_service = NotificationService()


async def _dispatch_notification_task(message_send_id: str) -> bool:
    try:
        return await noti_service.dispatch(message_send_id)
    except Exception:
        logger.exception("Error in dispatch_notification task for %s", message_send_id)
        raise
