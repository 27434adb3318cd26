import os

# must be set before anything imports config.conf / db.db / jobs.worker
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["BROKER"] = "memory"
os.environ["TRACKING_BACKEND"] = "memory"
os.environ["GOOGLE_MAPS_API_KEY"] = "test-key"

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from db.db import create_engine_for, make_session_factory
from db.init_db import init_db
from jobs.worker import broker


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, user_id, kind, title, body, booking_id=None, data=None):
        self.sent.append(SimpleNamespace(user_id=user_id, kind=kind, title=title, body=body,
                                         booking_id=booking_id, data=data))

    def kinds(self):
        return [n.kind for n in self.sent]


@pytest.fixture(autouse=True)
async def start_broker():
    await broker.startup()
    yield
    await broker.shutdown()


@pytest.fixture
async def engine():
    engine = create_engine_for("sqlite+aiosqlite://")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def local_clock():
    # Wednesday 5 June 2030, 10:30 local wall-clock
    return FrozenClock(datetime(2030, 6, 5, 10, 30))


@pytest.fixture
def utc_clock():
    return FrozenClock(datetime(2030, 6, 5, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return RecordingNotifier()
