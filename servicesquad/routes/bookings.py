from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from db.models import BookingStatus
from dtos.dtos import (
    APIResponse,
    BookingCounts,
    BookingCreate,
    BookingOut,
    CancelRequest,
    ReasonRequest,
    RescheduleRequest,
)
from routes.deps import get_container
from services.container import Container

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _out(booking) -> BookingOut:
    return BookingOut.model_validate(booking)


@router.post("", status_code=201, response_model=APIResponse[BookingOut])
async def create_booking(payload: BookingCreate, container: Container = Depends(get_container)):
    booking = await container.bookings.create_booking(payload)
    return APIResponse(success=True, data=_out(booking))


@router.get("/customers/{customer_id}", response_model=APIResponse[List[BookingOut]])
async def list_customer_bookings(
    customer_id: str,
    status: Optional[List[BookingStatus]] = Query(default=None),
    container: Container = Depends(get_container),
):
    bookings = await container.bookings.list_customer_bookings(customer_id, status)
    return APIResponse(success=True, data=[_out(b) for b in bookings])


@router.get("/customers/{customer_id}/counts", response_model=APIResponse[BookingCounts])
async def count_customer_bookings(
    customer_id: str,
    status: Optional[List[BookingStatus]] = Query(default=None),
    container: Container = Depends(get_container),
):
    counts = await container.bookings.count_customer_bookings(customer_id, status)
    return APIResponse(success=True, data=counts)


@router.get("/providers/{provider_id}", response_model=APIResponse[List[BookingOut]])
async def list_provider_bookings(
    provider_id: str,
    status: Optional[List[BookingStatus]] = Query(default=None),
    container: Container = Depends(get_container),
):
    bookings = await container.bookings.list_provider_bookings(provider_id, status)
    return APIResponse(success=True, data=[_out(b) for b in bookings])


@router.get("/providers/{provider_id}/counts", response_model=APIResponse[BookingCounts])
async def count_provider_bookings(
    provider_id: str,
    status: Optional[List[BookingStatus]] = Query(default=None),
    container: Container = Depends(get_container),
):
    counts = await container.bookings.count_provider_bookings(provider_id, status)
    return APIResponse(success=True, data=counts)


@router.get("/{booking_id}", response_model=APIResponse[BookingOut])
async def get_booking(booking_id: int, container: Container = Depends(get_container)):
    return APIResponse(success=True, data=_out(await container.bookings.get_booking(booking_id)))


@router.post("/{booking_id}/accept", response_model=APIResponse[BookingOut])
async def accept_booking(booking_id: int, container: Container = Depends(get_container)):
    return APIResponse(success=True, data=_out(await container.bookings.accept(booking_id)))


@router.post("/{booking_id}/reject", response_model=APIResponse[BookingOut])
async def reject_booking(booking_id: int, payload: ReasonRequest, container: Container = Depends(get_container)):
    return APIResponse(success=True, data=_out(await container.bookings.reject(booking_id, payload.reason)))


@router.post("/{booking_id}/on-the-way", response_model=APIResponse[BookingOut])
async def mark_on_the_way(booking_id: int, container: Container = Depends(get_container)):
    return APIResponse(success=True, data=_out(await container.bookings.mark_on_the_way(booking_id)))


@router.post("/{booking_id}/start", response_model=APIResponse[BookingOut])
async def start_service(booking_id: int, container: Container = Depends(get_container)):
    return APIResponse(success=True, data=_out(await container.bookings.start_service(booking_id)))


@router.post("/{booking_id}/complete", response_model=APIResponse[BookingOut])
async def complete_booking(booking_id: int, container: Container = Depends(get_container)):
    return APIResponse(success=True, data=_out(await container.bookings.complete(booking_id)))


@router.post("/{booking_id}/cancel", response_model=APIResponse[BookingOut])
async def cancel_booking(booking_id: int, payload: CancelRequest, container: Container = Depends(get_container)):
    booking = await container.bookings.cancel(booking_id, payload.reason, payload.cancelled_by)
    return APIResponse(success=True, data=_out(booking))


@router.post("/{booking_id}/reschedule", response_model=APIResponse[BookingOut])
async def reschedule_booking(booking_id: int, payload: RescheduleRequest, container: Container = Depends(get_container)):
    booking = await container.bookings.reschedule(booking_id, payload.scheduled_date, payload.scheduled_slot)
    return APIResponse(success=True, data=_out(booking))


@router.delete("/{booking_id}", response_model=APIResponse[None])
async def purge_booking(booking_id: int, container: Container = Depends(get_container)):
    if container.tracking.get_session(booking_id) is not None:
        await container.tracking.stop_tracking(booking_id)
    await container.bookings.purge_booking(booking_id)
    return APIResponse(success=True)
