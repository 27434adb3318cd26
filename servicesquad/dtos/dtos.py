from datetime import date, datetime, time, timezone
from typing import Dict, Generic, List, Literal, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from db.models import BookingStatus
from utils.utils import utcnow

T = TypeVar("T")


class APIError(BaseModel):
    code: str
    message: str


class APIResponse(BaseModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[APIError] = None


# ---- Time slots ----

# "08:00 AM - 09:00 AM" ... "07:00 PM - 08:00 PM"
def _label_hour(hour: int) -> str:
    suffix = "AM" if hour < 12 else "PM"
    display = hour % 12 or 12
    return f"{display:02d}:00 {suffix}"


def slot_label(start_hour: int) -> str:
    return f"{_label_hour(start_hour)} - {_label_hour(start_hour + 1)}"


CANONICAL_SLOTS: Tuple[str, ...] = tuple(slot_label(h) for h in range(8, 20))
_SLOT_ORDER: Dict[str, int] = {label: i for i, label in enumerate(CANONICAL_SLOTS)}

DAY_NAMES: Tuple[str, ...] = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


def is_canonical_slot(label: str) -> bool:
    return label in _SLOT_ORDER


def sort_slots(slots) -> List[str]:
    """Deduplicate and order slots chronologically; unknown labels raise ValueError."""
    unknown = [s for s in slots if s not in _SLOT_ORDER]
    if unknown:
        raise ValueError(f"Unknown time slot(s): {', '.join(unknown)}")
    return sorted(set(slots), key=_SLOT_ORDER.__getitem__)


def slot_start(label: str) -> time:
    """Start of a slot label as a 24-hour time, e.g. "02:00 PM - 03:00 PM" -> 14:00."""
    start = label.split(" - ", 1)[0]
    return datetime.strptime(start, "%I:%M %p").time()


def day_name(value: date) -> str:
    # date.weekday() is Monday=0; the schedule is keyed Sunday=0..Saturday=6
    return DAY_NAMES[(value.weekday() + 1) % 7]


# ---- Availability ----

class DaySchedule(BaseModel):
    is_available: bool = False
    slots: List[str] = Field(default_factory=list)

    @field_validator("slots")
    @classmethod
    def canonical_slots(cls, value: List[str]) -> List[str]:
        return sort_slots(value)


_WEEKDAY_SLOTS = [slot_label(h) for h in (9, 10, 11, 12, 14, 15, 16, 17)]
_SATURDAY_SLOTS = [slot_label(h) for h in (10, 11, 12, 14, 15, 16)]


def _weekday() -> DaySchedule:
    return DaySchedule(is_available=True, slots=list(_WEEKDAY_SLOTS))


class WeeklySchedule(BaseModel):
    monday: DaySchedule = Field(default_factory=_weekday)
    tuesday: DaySchedule = Field(default_factory=_weekday)
    wednesday: DaySchedule = Field(default_factory=_weekday)
    thursday: DaySchedule = Field(default_factory=_weekday)
    friday: DaySchedule = Field(default_factory=_weekday)
    saturday: DaySchedule = Field(default_factory=lambda: DaySchedule(is_available=True, slots=list(_SATURDAY_SLOTS)))
    sunday: DaySchedule = Field(default_factory=DaySchedule)

    def for_day(self, name: str) -> DaySchedule:
        return getattr(self, name)


class AvailabilityCheckResult(BaseModel):
    is_available: bool
    slots: List[str] = Field(default_factory=list)
    reason: Optional[str] = None


class AvailabilityUpdate(BaseModel):
    weekly_schedule: Optional[WeeklySchedule] = None
    custom_days_off: Optional[List[date]] = None
    booking_buffer: Optional[int] = Field(default=None, ge=0)
    advance_booking_days: Optional[int] = Field(default=None, ge=0)
    is_accepting_bookings: Optional[bool] = None


class AvailabilityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_id: str
    weekly_schedule: WeeklySchedule
    custom_days_off: List[str]
    booking_buffer: int
    advance_booking_days: int
    is_accepting_bookings: bool


# ---- Bookings ----

class Address(BaseModel):
    street: str = ""
    apartment: Optional[str] = None
    city: str = ""
    state: str = ""
    pincode: str = ""
    landmark: Optional[str] = None
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)


class BookingCreate(BaseModel):
    customer_id: str = Field(min_length=1)
    customer_name: str = ""
    provider_id: str = Field(min_length=1)
    provider_name: str = ""
    service_id: str = Field(min_length=1)
    service_name: str = ""
    scheduled_date: date
    scheduled_slot: str
    address: Address = Field(default_factory=Address)
    price: float = Field(default=0.0, ge=0)
    notes: Optional[str] = None


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: str
    customer_name: str
    provider_id: str
    provider_name: str
    service_id: str
    service_name: str
    status: BookingStatus
    scheduled_date: date
    scheduled_slot: str
    street: str
    apartment: Optional[str] = None
    city: str
    state: str
    pincode: str
    landmark: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    price: float
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ReasonRequest(BaseModel):
    reason: str = ""


class CancelRequest(ReasonRequest):
    cancelled_by: Literal["customer", "provider"]


class RescheduleRequest(BaseModel):
    scheduled_date: date
    scheduled_slot: str


class BookingCounts(BaseModel):
    total: int
    by_status: Dict[str, int]


class BookingEvent(BaseModel):
    booking_id: int
    customer_id: str
    provider_id: str
    previous_status: Optional[BookingStatus] = None
    status: BookingStatus
    occurred_at: datetime = Field(default_factory=utcnow)
    booking: BookingOut


# ---- Tracking ----

class LocationSample(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        # naive timestamps from devices are taken as UTC
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)

    @property
    def point(self) -> Tuple[float, float]:
        return (self.lat, self.lng)


class RouteData(BaseModel):
    distance_meters: float
    duration_seconds: float
    polyline: str = ""


class TrackingUpdate(BaseModel):
    booking_id: int
    provider_id: str
    lat: float
    lng: float
    timestamp: datetime
    distance_meters: Optional[float] = None
    duration_seconds: Optional[float] = None
    eta: Optional[datetime] = None
    distance_text: Optional[str] = None
    duration_text: Optional[str] = None
    has_arrived: bool = False
    route_error: bool = False
    route_coordinates: List[Tuple[float, float]] = Field(default_factory=list)
    active: bool = True


class TrackingSnapshot(BaseModel):
    booking_id: int
    provider_id: str
    customer_id: str
    provider_name: str
    service_name: str
    customer_location: Tuple[float, float]
    current: Optional[Tuple[float, float]] = None
    travel_path: List[Tuple[float, float]] = Field(default_factory=list)
    route_coordinates: List[Tuple[float, float]] = Field(default_factory=list)
    distance_meters: Optional[float] = None
    duration_seconds: Optional[float] = None
    eta: Optional[datetime] = None
    has_arrived: bool = False
    route_error: bool = False
    active: bool = True
    started_at: datetime
    ended_at: Optional[datetime] = None


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    booking_id: Optional[int] = None
    kind: str
    title: str
    body: str
    data: Dict = Field(default_factory=dict)
    is_read: bool
    dispatched_at: Optional[datetime] = None
    created_at: datetime
