import asyncio
from datetime import timedelta
from types import SimpleNamespace

import pytest

from db.models import BookingStatus
from dtos.dtos import BookingEvent, BookingOut, LocationSample, RouteData
from services import notification_service as messages
from services.exceptions import DirectionsError, InputRejected, NotFound
from services.tracking_publisher import InMemoryTrackingPublisher
from services.tracking_service import TrackingService
from utils.geo import encode_polyline, format_distance

METERS_PER_DEGREE = 111_194.93
CUSTOMER = (12.9716, 77.5946)


def north_of_customer(meters):
    return (CUSTOMER[0] + meters / METERS_PER_DEGREE, CUSTOMER[1])


START = north_of_customer(1000)


class FakeDirections:
    def __init__(self, route=None, error=None, gate=None):
        self.route = route
        self.error = error
        self.gate = gate
        self.calls = []

    async def fetch_route(self, origin, destination):
        self.calls.append((origin, destination))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.route


GOOD_ROUTE = RouteData(distance_meters=1200, duration_seconds=240, polyline=encode_polyline([START, CUSTOMER]))


class RecordingPublisher(InMemoryTrackingPublisher):
    def __init__(self):
        super().__init__()
        self.published = []

    async def publish(self, booking_id, update):
        self.published.append(update)
        await super().publish(booking_id, update)


def booking(booking_id=1, lat=CUSTOMER[0], lng=CUSTOMER[1]):
    return SimpleNamespace(
        id=booking_id,
        provider_id="prov-1",
        customer_id="cust-1",
        provider_name="Ravi",
        service_name="Deep Cleaning",
        lat=lat,
        lng=lng,
    )


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def make_tracker(publisher, notifier, utc_clock):
    def factory(directions=None, **kwargs):
        return TrackingService(publisher, directions=directions, notifier=notifier, clock=utc_clock, **kwargs)
    return factory


def sample(point, utc_clock, seconds=0):
    return LocationSample(lat=point[0], lng=point[1], timestamp=utc_clock.now + timedelta(seconds=seconds))


async def test_start_requires_customer_location(make_tracker):
    tracker = make_tracker()
    with pytest.raises(InputRejected):
        await tracker.start_tracking(booking(lat=None, lng=None))


async def test_start_is_idempotent_while_active(make_tracker):
    tracker = make_tracker()
    first = await tracker.start_tracking(booking())
    second = await tracker.start_tracking(booking())
    assert first is second
    assert tracker.active_sessions() == [1]


async def test_ingest_without_session(make_tracker, utc_clock):
    tracker = make_tracker()
    with pytest.raises(NotFound):
        await tracker.ingest(1, sample(START, utc_clock))


async def test_first_sample_uses_straight_line_until_route_arrives(make_tracker, utc_clock):
    directions = FakeDirections(route=GOOD_ROUTE)
    tracker = make_tracker(directions)
    await tracker.start_tracking(booking())

    update = await tracker.ingest(1, sample(START, utc_clock))

    assert update.distance_meters == pytest.approx(1000, rel=1e-4)
    assert update.duration_seconds == pytest.approx(120, rel=1e-4)
    assert update.route_coordinates == []
    # the lookup runs as a background task
    await asyncio.sleep(0)
    assert directions.calls == [(START, CUSTOMER)]

    await tracker.wait_for_route(1)
    session = tracker.get_session(1)
    assert session.distance_meters == 1200
    assert session.duration_seconds == 240
    assert session.eta == utc_clock.now + timedelta(seconds=144)
    assert session.route_coordinates == [pytest.approx(START, abs=1e-5), pytest.approx(CUSTOMER, abs=1e-5)]
    assert not session.route_error


@pytest.mark.parametrize(
    "route",
    [
        RouteData(distance_meters=5000, duration_seconds=600, polyline=""),
        RouteData(distance_meters=300, duration_seconds=60, polyline=""),
        RouteData(distance_meters=0, duration_seconds=60, polyline=""),
        RouteData(distance_meters=1000, duration_seconds=0, polyline=""),
    ],
)
async def test_implausible_route_falls_back_to_straight_line(make_tracker, utc_clock, route):
    tracker = make_tracker(FakeDirections(route=route))
    await tracker.start_tracking(booking())

    await tracker.ingest(1, sample(START, utc_clock))
    await tracker.wait_for_route(1)

    session = tracker.get_session(1)
    assert session.route_error
    assert session.route_coordinates == []
    assert session.distance_meters == pytest.approx(1000, rel=1e-4)
    assert session.duration_seconds == pytest.approx(120, rel=1e-4)
    assert session.eta == utc_clock.now + timedelta(seconds=session.duration_seconds)


async def test_directions_failure_clears_previous_route(make_tracker, utc_clock):
    directions = FakeDirections(route=GOOD_ROUTE)
    tracker = make_tracker(directions)
    await tracker.start_tracking(booking())
    await tracker.ingest(1, sample(START, utc_clock))
    await tracker.wait_for_route(1)
    assert tracker.get_session(1).route_coordinates

    directions.error = DirectionsError("OVER_QUERY_LIMIT")
    await tracker.ingest(1, sample(START, utc_clock, seconds=20))
    await tracker.wait_for_route(1)

    session = tracker.get_session(1)
    assert session.route_error
    assert session.route_coordinates == []


async def test_failed_lookup_falls_back_to_latest_position(make_tracker, publisher, utc_clock):
    gate = asyncio.Event()
    tracker = make_tracker(FakeDirections(error=DirectionsError("UNKNOWN_ERROR"), gate=gate))
    await tracker.start_tracking(booking())

    await tracker.ingest(1, sample(START, utc_clock))
    await asyncio.sleep(0)
    # the provider moves on while the lookup is still pending
    await tracker.ingest(1, sample(north_of_customer(400), utc_clock, seconds=30))
    gate.set()
    await tracker.wait_for_route(1)

    session = tracker.get_session(1)
    assert session.route_error
    assert session.distance_meters == pytest.approx(400, rel=1e-3)
    assert session.duration_seconds == pytest.approx(48, rel=1e-3)
    assert publisher.published[-1].distance_meters == pytest.approx(400, rel=1e-3)


async def test_route_lookup_is_debounced(make_tracker, utc_clock):
    directions = FakeDirections(route=GOOD_ROUTE)
    tracker = make_tracker(directions)
    await tracker.start_tracking(booking())

    await tracker.ingest(1, sample(START, utc_clock, seconds=0))
    await tracker.wait_for_route(1)

    # 20 m and 5 s later: neither threshold crossed
    await tracker.ingest(1, sample(north_of_customer(980), utc_clock, seconds=5))
    assert len(directions.calls) == 1

    # 15 s since the last lookup
    await tracker.ingest(1, sample(north_of_customer(980), utc_clock, seconds=15))
    await tracker.wait_for_route(1)
    assert len(directions.calls) == 2

    # moved 60 m from the last lookup location after 2 s
    await tracker.ingest(1, sample(north_of_customer(920), utc_clock, seconds=17))
    await tracker.wait_for_route(1)
    assert len(directions.calls) == 3


async def test_no_overlapping_lookups(make_tracker, utc_clock):
    gate = asyncio.Event()
    directions = FakeDirections(route=GOOD_ROUTE, gate=gate)
    tracker = make_tracker(directions)
    await tracker.start_tracking(booking())

    await tracker.ingest(1, sample(START, utc_clock))
    await asyncio.sleep(0)
    assert tracker.get_session(1).fetch_in_flight
    update = await tracker.ingest(1, sample(north_of_customer(900), utc_clock, seconds=30))
    await asyncio.sleep(0)

    assert len(directions.calls) == 1
    assert update.distance_meters == pytest.approx(900, rel=1e-4)

    gate.set()
    await tracker.wait_for_route(1)
    assert tracker.get_session(1).distance_meters == 1200


async def test_no_lookup_when_already_close(make_tracker, utc_clock):
    directions = FakeDirections(route=GOOD_ROUTE)
    tracker = make_tracker(directions)
    await tracker.start_tracking(booking())

    await tracker.ingest(1, sample(north_of_customer(8), utc_clock))

    assert directions.calls == []


async def test_travel_path_skips_small_moves_and_is_capped(make_tracker, utc_clock):
    tracker = make_tracker(path_max_points=3)
    await tracker.start_tracking(booking())

    await tracker.ingest(1, sample(north_of_customer(500), utc_clock))
    await tracker.ingest(1, sample(north_of_customer(497), utc_clock, seconds=10))
    assert len(tracker.get_session(1).travel_path) == 1

    for i, meters in enumerate((480, 460, 440), start=2):
        await tracker.ingest(1, sample(north_of_customer(meters), utc_clock, seconds=10 * i))

    path = tracker.get_session(1).travel_path
    assert len(path) == 3
    assert path[0] == pytest.approx(north_of_customer(480))
    assert path[-1] == pytest.approx(north_of_customer(440))


async def test_zero_distance_keeps_previous_value(make_tracker, utc_clock):
    tracker = make_tracker()
    await tracker.start_tracking(booking())

    await tracker.ingest(1, sample(north_of_customer(30), utc_clock))
    update = await tracker.ingest(1, sample(CUSTOMER, utc_clock, seconds=10))

    assert update.distance_meters == pytest.approx(30, rel=1e-3)


async def test_arrival_is_sticky_and_notified_once(make_tracker, notifier, utc_clock):
    tracker = make_tracker()
    await tracker.start_tracking(booking())

    first = await tracker.ingest(1, sample(north_of_customer(200), utc_clock))
    assert not first.has_arrived

    arrived = await tracker.ingest(1, sample(north_of_customer(40), utc_clock, seconds=10))
    again = await tracker.ingest(1, sample(north_of_customer(20), utc_clock, seconds=20))
    away = await tracker.ingest(1, sample(north_of_customer(300), utc_clock, seconds=30))

    assert arrived.has_arrived and again.has_arrived and away.has_arrived
    arrivals = [n for n in notifier.sent if n.kind == messages.PROVIDER_ARRIVED]
    assert len(arrivals) == 1
    assert arrivals[0].user_id == "cust-1"
    assert arrivals[0].body == "Ravi has arrived for Deep Cleaning"


async def test_arrival_fence_boundary(make_tracker, notifier, utc_clock):
    tracker = make_tracker()
    await tracker.start_tracking(booking())

    arrived = []
    for i, meters in enumerate((80, 55, 45, 60)):
        update = await tracker.ingest(1, sample(north_of_customer(meters), utc_clock, seconds=10 * i))
        arrived.append(update.has_arrived)

    assert arrived == [False, False, True, True]
    assert notifier.kinds().count(messages.PROVIDER_ARRIVED) == 1


async def test_updates_are_published_and_stop_ends_stream(make_tracker, publisher, utc_clock):
    tracker = make_tracker()
    await tracker.start_tracking(booking())
    stream = tracker.subscribe(1)

    await tracker.ingest(1, sample(START, utc_clock))
    update = await stream.get(timeout=1)
    assert update.booking_id == 1
    assert update.distance_text == format_distance(update.distance_meters)
    assert update.active

    snapshot = await tracker.stop_tracking(1)

    assert not snapshot.active
    assert snapshot.ended_at is not None
    assert not publisher.published[-1].active
    assert [u async for u in stream] == []
    assert await publisher.latest(1) is None
    with pytest.raises(NotFound):
        await tracker.ingest(1, sample(START, utc_clock, seconds=10))
    with pytest.raises(NotFound):
        tracker.snapshot(1)


async def test_stop_cancels_lookup_in_flight(make_tracker, utc_clock):
    gate = asyncio.Event()
    tracker = make_tracker(FakeDirections(route=GOOD_ROUTE, gate=gate))
    await tracker.start_tracking(booking())
    await tracker.ingest(1, sample(START, utc_clock))
    task = tracker.get_session(1).fetch_task

    await tracker.stop_tracking(1)
    await asyncio.gather(task, return_exceptions=True)

    assert task.cancelled()
    assert tracker.active_sessions() == []


async def test_result_for_replaced_session_is_dropped(make_tracker, utc_clock):
    gate = asyncio.Event()
    tracker = make_tracker(FakeDirections(route=GOOD_ROUTE, gate=gate))
    await tracker.start_tracking(booking())
    await tracker.ingest(1, sample(START, utc_clock))
    old = tracker.get_session(1)
    task = old.fetch_task

    # a new session replaces the old one without cancelling its lookup
    old.active = False
    fresh = await tracker.start_tracking(booking())
    gate.set()
    await asyncio.gather(task, return_exceptions=True)

    assert fresh is not old
    assert fresh.distance_meters is None
    assert old.distance_meters == pytest.approx(1000, rel=1e-4)


async def test_follows_booking_events(make_tracker):
    tracker = make_tracker()
    out = BookingOut(
        id=7, customer_id="cust-1", customer_name="Asha", provider_id="prov-1", provider_name="Ravi",
        service_id="svc-1", service_name="Deep Cleaning", status=BookingStatus.on_the_way,
        scheduled_date="2030-06-06", scheduled_slot="10:00 AM - 11:00 AM", street="", city="", state="",
        pincode="", lat=CUSTOMER[0], lng=CUSTOMER[1], price=0, created_at="2030-06-01T10:00:00Z",
        updated_at="2030-06-01T10:00:00Z",
    )
    event = BookingEvent(booking_id=7, customer_id="cust-1", provider_id="prov-1",
                         previous_status=BookingStatus.accepted, status=BookingStatus.on_the_way, booking=out)

    await tracker.on_booking_event(event)
    assert tracker.active_sessions() == [7]

    done = event.model_copy(update={"status": BookingStatus.completed})
    await tracker.on_booking_event(done)
    assert tracker.active_sessions() == []

    # terminal event without a session is a no-op
    await tracker.on_booking_event(done)


async def test_aclose_cancels_pending_lookups(make_tracker, utc_clock):
    gate = asyncio.Event()
    tracker = make_tracker(FakeDirections(route=GOOD_ROUTE, gate=gate))
    await tracker.start_tracking(booking())
    await tracker.ingest(1, sample(START, utc_clock))
    task = tracker.get_session(1).fetch_task

    await tracker.aclose()

    assert task.cancelled()
    assert tracker.active_sessions() == []
