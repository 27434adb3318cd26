import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from services.container import Container
from utils.streams import Subscription

logger = logging.getLogger(__name__)

router = APIRouter(tags=["streams"])


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def _forward(websocket: WebSocket, subscription: Subscription, first: Optional[BaseModel] = None) -> None:
    if first is not None:
        await websocket.send_json(first.model_dump(mode="json"))
    async for item in subscription:
        await websocket.send_json(item.model_dump(mode="json"))


async def _stream(websocket: WebSocket, subscription: Subscription, first: Optional[BaseModel] = None) -> None:
    """Pump a subscription into the socket until either side ends; the subscription is always closed."""
    sender = asyncio.create_task(_forward(websocket, subscription, first))
    receiver = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if sender in done and sender.exception() is None:
            await websocket.close()
    finally:
        subscription.close()


@router.websocket("/ws/tracking/{booking_id}")
async def tracking_stream(websocket: WebSocket, booking_id: int):
    container: Container = websocket.app.state.container
    await websocket.accept()
    subscription = container.tracking.subscribe(booking_id)
    latest = await container.publisher.latest(booking_id)
    logger.debug("Tracking subscriber attached to booking %s", booking_id)
    await _stream(websocket, subscription, latest)


@router.websocket("/ws/bookings/{booking_id}")
async def booking_stream(websocket: WebSocket, booking_id: int):
    container: Container = websocket.app.state.container
    await websocket.accept()
    subscription = container.bookings.subscribe("booking", booking_id)
    await _stream(websocket, subscription)
