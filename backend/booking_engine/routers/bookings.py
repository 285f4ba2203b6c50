from typing import Optional

from fastapi import APIRouter, Query

from booking_engine.models import (
    Booking,
    BookingCancelRequest,
    BookingConfirmRequest,
    BookingHistoryEntry,
    BookingRejectRequest,
    BookingRequest,
    BookingRescheduleRequest,
    ExpirySweepResult,
    RefundCalculation,
    ReminderDispatchResult,
)
from booking_engine.routers.scheduling import raise_scheduling_http_error
from booking_engine.services.engine import booking_engine
from booking_engine.services.errors import SchedulingError

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=Booking, status_code=201)
def create_booking(payload: BookingRequest):
    try:
        return booking_engine.create_booking(payload)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.post("/expire-overdue", response_model=ExpirySweepResult)
def expire_overdue_bookings():
    return booking_engine.expire_overdue_bookings()


@router.post("/reminders/dispatch", response_model=ReminderDispatchResult)
def dispatch_reminders():
    return booking_engine.dispatch_reminders()


@router.get("/{booking_id}", response_model=Booking)
def get_booking(booking_id: str, viewer_id: Optional[str] = Query(default=None)):
    try:
        return booking_engine.get_booking(booking_id, viewer_id=viewer_id)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.get("/{booking_id}/history", response_model=list[BookingHistoryEntry])
def get_booking_history(booking_id: str):
    try:
        return booking_engine.get_booking_history(booking_id)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/confirm", response_model=Booking)
def confirm_booking(booking_id: str, payload: BookingConfirmRequest):
    try:
        return booking_engine.confirm_booking(booking_id, payload)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/reject", response_model=Booking)
def reject_booking(booking_id: str, payload: BookingRejectRequest):
    try:
        return booking_engine.reject_booking(booking_id, payload)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/cancel", response_model=Booking)
def cancel_booking(booking_id: str, payload: BookingCancelRequest):
    try:
        return booking_engine.cancel_booking(booking_id, payload)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/reschedule", response_model=Booking)
def reschedule_booking(booking_id: str, payload: BookingRescheduleRequest):
    try:
        return booking_engine.reschedule_booking(booking_id, payload)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/expire", response_model=Booking)
def expire_booking(booking_id: str):
    try:
        return booking_engine.expire_booking(booking_id)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)


@router.get("/{booking_id}/refund-quote", response_model=RefundCalculation)
def quote_refund(booking_id: str, actor_id: str = Query(...)):
    try:
        return booking_engine.quote_refund(booking_id, actor_id)
    except SchedulingError as exc:
        raise_scheduling_http_error(exc)
