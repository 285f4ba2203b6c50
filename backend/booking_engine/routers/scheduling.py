from typing import NoReturn, Optional

from fastapi import APIRouter, HTTPException, Query

from booking_engine.models import (
    AvailableDay,
    Booking,
    DateOverrideRequest,
    DeliveryMethod,
    ProviderSchedule,
    ScheduleUpsertRequest,
    ServiceOffering,
    ServiceUpsertRequest,
)
from booking_engine.services.engine import booking_engine
from booking_engine.services.errors import SchedulingError

router = APIRouter(prefix="/providers", tags=["scheduling"])

STATUS_BY_CODE = {
    "VALIDATION": 400,
    "UNAVAILABLE": 409,
    "NOT_FOUND": 404,
    "FORBIDDEN": 403,
    "PAYMENT_ERROR": 402,
    "STATE_CONFLICT": 409,
    "POLICY_MISSING": 422,
}


def raise_scheduling_http_error(exc: SchedulingError) -> NoReturn:
    raise HTTPException(
        status_code=STATUS_BY_CODE.get(exc.code, 400),
        detail={"code": exc.code, "message": str(exc)},
    ) from exc


@router.put("/{provider_id}/schedule", response_model=ProviderSchedule)
def set_schedule(provider_id: str, payload: ScheduleUpsertRequest):
    try:
        return booking_engine.set_schedule(provider_id, payload)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.get("/{provider_id}/schedule", response_model=ProviderSchedule)
def get_schedule(provider_id: str, viewer_id: Optional[str] = Query(default=None)):
    try:
        return booking_engine.get_schedule(provider_id, viewer_id=viewer_id)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.put("/{provider_id}/schedule/overrides", response_model=ProviderSchedule)
def set_date_override(provider_id: str, payload: DateOverrideRequest):
    try:
        return booking_engine.set_date_override(provider_id, payload)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.delete("/{provider_id}/schedule/overrides/{override_date}", response_model=ProviderSchedule)
def remove_date_override(provider_id: str, override_date: str, actor_user_id: str = Query(...)):
    try:
        return booking_engine.remove_date_override(provider_id, actor_user_id, override_date)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.put("/{provider_id}/services/{service_id}", response_model=ServiceOffering)
def upsert_service(provider_id: str, service_id: str, payload: ServiceUpsertRequest):
    try:
        return booking_engine.upsert_service(provider_id, service_id, payload)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.get("/{provider_id}/services/{service_id}/slots", response_model=list[AvailableDay])
def get_available_slots(
    provider_id: str,
    service_id: str,
    date_from: str = Query(...),
    date_to: str = Query(...),
    customer_timezone: Optional[str] = Query(default=None),
    delivery_method: Optional[DeliveryMethod] = Query(default=None),
):
    try:
        return booking_engine.get_available_slots(
            provider_id,
            service_id,
            date_from,
            date_to,
            customer_timezone=customer_timezone,
            delivery_method=delivery_method,
        )
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.get("/{provider_id}/bookings/pending", response_model=list[Booking])
def list_pending_confirmations(provider_id: str):
    return booking_engine.list_pending_confirmations(provider_id)
