import asyncio

from fastapi import WebSocketDisconnect

from dtos.dtos import ReasonRequest
from routes.streams import _stream
from utils.streams import Broadcaster


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.closed = False
        self.disconnect = asyncio.Event()

    async def send_json(self, data):
        self.sent.append(data)

    async def receive_text(self):
        await self.disconnect.wait()
        raise WebSocketDisconnect(code=1000)

    async def close(self):
        self.closed = True


async def test_stream_forwards_until_source_ends():
    hub = Broadcaster()
    websocket = FakeWebSocket()
    subscription = hub.subscribe("k")

    pump = asyncio.create_task(_stream(websocket, subscription, first=ReasonRequest(reason="latest")))
    await asyncio.sleep(0.01)
    hub.publish("k", ReasonRequest(reason="next"))
    await asyncio.sleep(0.01)
    hub.close_key("k")
    await asyncio.wait_for(pump, 1)

    assert websocket.sent == [{"reason": "latest"}, {"reason": "next"}]
    assert websocket.closed


async def test_client_disconnect_releases_subscription():
    hub = Broadcaster()
    websocket = FakeWebSocket()
    subscription = hub.subscribe("k")

    pump = asyncio.create_task(_stream(websocket, subscription))
    await asyncio.sleep(0.01)
    websocket.disconnect.set()
    await asyncio.wait_for(pump, 1)

    assert subscription.closed
    assert hub.subscriber_count("k") == 0
    assert not websocket.closed
