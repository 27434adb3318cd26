import logging
from typing import Protocol, Any

from taskiq import AsyncBroker, InMemoryBroker
from taskiq_aio_pika import AioPikaBroker

from config.conf import settings, MEMORY_BACKEND

logger = logging.getLogger(__name__)


class HasKiq(Protocol):
    def kiq(self, *args: Any, **kwargs: Any) -> Any: ...


def create_broker() -> AsyncBroker:
    if settings.broker == MEMORY_BACKEND:
        # runs tasks in-process as soon as they are kicked
        return InMemoryBroker(await_inplace=True)
    rabbitmq_url = settings.resolved_rabbitmq_url()
    logger.info("Using RabbitMQ broker at %s", rabbitmq_url.rsplit("@", 1)[-1])
    return AioPikaBroker(rabbitmq_url)


# Define the broker
broker = create_broker()


# Import task after broker to avoid circular imports
from jobs.task import _dispatch_notification_task  # noqa: E402


dispatch_notification_task: HasKiq = broker.task(
    task_name="dispatch_notification",
    retry_count=5,
    retry_delay=10,
)(_dispatch_notification_task)
