from fastapi import APIRouter, Depends

from dtos.dtos import APIResponse, LocationSample, TrackingSnapshot, TrackingUpdate
from routes.deps import get_container
from services.container import Container
from services.exceptions import InvalidTransition

router = APIRouter(prefix="/tracking", tags=["tracking"])


@router.post("/{booking_id}/start", response_model=APIResponse[TrackingSnapshot])
async def start_tracking(booking_id: int, container: Container = Depends(get_container)):
    booking = await container.bookings.get_booking(booking_id)
    if booking.status.is_terminal:
        raise InvalidTransition(f"Booking {booking_id} is {booking.status.value}; tracking is closed")
    await container.tracking.start_tracking(booking)
    return APIResponse(success=True, data=container.tracking.snapshot(booking_id))


@router.post("/{booking_id}/samples", response_model=APIResponse[TrackingUpdate])
async def ingest_sample(booking_id: int, sample: LocationSample, container: Container = Depends(get_container)):
    update = await container.tracking.ingest(booking_id, sample)
    return APIResponse(success=True, data=update)


@router.get("/{booking_id}", response_model=APIResponse[TrackingSnapshot])
async def get_tracking(booking_id: int, container: Container = Depends(get_container)):
    return APIResponse(success=True, data=container.tracking.snapshot(booking_id))


@router.delete("/{booking_id}", response_model=APIResponse[TrackingSnapshot])
async def stop_tracking(booking_id: int, container: Container = Depends(get_container)):
    snapshot = await container.tracking.stop_tracking(booking_id)
    return APIResponse(success=True, data=snapshot)
