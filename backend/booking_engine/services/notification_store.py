import logging
from datetime import datetime, timezone
from string import Formatter
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from booking_engine.models import NotificationRecord
from booking_engine.services.push_sender import PushSender, push_sender

logger = logging.getLogger(__name__)

# template id -> (title, body, deep link)
NOTIFICATION_TEMPLATES: Dict[str, Tuple[str, str, str]] = {
    "booking-pending-provider": (
        "New booking request",
        "{customer_id} requested {service_name} on {date} at {start_time}. Please confirm by {deadline}.",
        "/bookings/{booking_id}",
    ),
    "booking-confirmed-customer": (
        "Booking confirmed",
        "Your {service_name} on {date} at {start_time} is confirmed.",
        "/bookings/{booking_id}",
    ),
    "booking-confirmed-provider": (
        "Booking confirmed",
        "You confirmed {service_name} with {customer_id} on {date} at {start_time}.",
        "/bookings/{booking_id}",
    ),
    "booking-rejected-customer": (
        "Booking declined",
        "Your {service_name} request for {date} was declined. {reason}",
        "/bookings/{booking_id}",
    ),
    "booking-expired-customer": (
        "Booking request expired",
        "The provider did not respond to your {service_name} request for {date}. Your card was not charged.",
        "/bookings/{booking_id}",
    ),
    "booking-expired-provider": (
        "Booking request expired",
        "The {service_name} request from {customer_id} for {date} expired before it was confirmed.",
        "/bookings/{booking_id}",
    ),
    "booking-cancelled-customer": (
        "Booking cancelled",
        "Your {service_name} on {date} at {start_time} was cancelled. Refund: {refund_amount} {currency}.",
        "/bookings/{booking_id}",
    ),
    "booking-cancelled-provider": (
        "Booking cancelled",
        "{service_name} with {customer_id} on {date} at {start_time} was cancelled.",
        "/bookings/{booking_id}",
    ),
    "booking-rescheduled-provider": (
        "Booking rescheduled",
        "{customer_id} moved {service_name} to {date} at {start_time}.",
        "/bookings/{booking_id}",
    ),
    "booking-reminder-24h": (
        "Upcoming booking tomorrow",
        "Reminder: {service_name} on {date} at {start_time}.",
        "/bookings/{booking_id}",
    ),
    "booking-reminder-1h": (
        "Booking starts soon",
        "{service_name} starts at {start_time}.",
        "/bookings/{booking_id}",
    ),
}


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(template: str, variables: Mapping[str, Any]) -> str:
    values = _Blank({key: "" if value is None else value for key, value in variables.items()})
    return Formatter().vformat(template, (), values).strip()


class NotificationStore:
    def __init__(self, sender: Optional[PushSender] = None):
        self._lock = Lock()
        self._sender = sender or push_sender
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def send(self, template_id: str, recipient: str, variables: Mapping[str, Any]) -> NotificationRecord:
        if template_id not in NOTIFICATION_TEMPLATES:
            raise KeyError(f"Unknown notification template: {template_id}")
        title_template, body_template, link_template = NOTIFICATION_TEMPLATES[template_id]
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=recipient,
            template_id=template_id,
            title=render(title_template, variables),
            body=render(body_template, variables),
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=render(link_template, variables) or None,
            variables={key: str(value) for key, value in variables.items() if value is not None},
        )
        with self._lock:
            self._notifications.insert(0, record)
            tokens = list(self._device_tokens.get(recipient, set()))
        invalid_tokens = self._sender.send_booking_notification(tokens, record)
        if invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(recipient, set())
                for token in invalid_tokens:
                    current.discard(token)
            logger.info("Dropped %d stale device tokens for %s", len(invalid_tokens), recipient)
        return record

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()
