from datetime import date

from fastapi import APIRouter, Depends, Query

from dtos.dtos import APIResponse, AvailabilityCheckResult, AvailabilityOut, AvailabilityUpdate
from routes.deps import get_container
from services.container import Container

router = APIRouter(prefix="/providers/{provider_id}/availability", tags=["availability"])


@router.get("/slots", response_model=APIResponse[AvailabilityCheckResult])
async def available_slots(
    provider_id: str,
    day: date = Query(alias="date"),
    container: Container = Depends(get_container),
):
    result = await container.availability.get_available_slots(provider_id, day)
    return APIResponse(success=True, data=result)


@router.get("", response_model=APIResponse[AvailabilityOut])
async def get_availability(provider_id: str, container: Container = Depends(get_container)):
    record = await container.availability.get_or_create_availability(provider_id)
    return APIResponse(success=True, data=AvailabilityOut.model_validate(record))


@router.patch("", response_model=APIResponse[AvailabilityOut])
async def update_availability(
    provider_id: str,
    changes: AvailabilityUpdate,
    container: Container = Depends(get_container),
):
    record = await container.availability.update_availability(provider_id, changes)
    return APIResponse(success=True, data=AvailabilityOut.model_validate(record))


@router.post("/days-off/{day}", response_model=APIResponse[AvailabilityOut])
async def add_day_off(provider_id: str, day: date, container: Container = Depends(get_container)):
    record = await container.availability.add_custom_day_off(provider_id, day)
    return APIResponse(success=True, data=AvailabilityOut.model_validate(record))


@router.delete("/days-off/{day}", response_model=APIResponse[AvailabilityOut])
async def remove_day_off(provider_id: str, day: date, container: Container = Depends(get_container)):
    record = await container.availability.remove_custom_day_off(provider_id, day)
    return APIResponse(success=True, data=AvailabilityOut.model_validate(record))
