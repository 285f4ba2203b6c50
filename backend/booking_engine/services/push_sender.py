"""Booking push notifications over Firebase Cloud Messaging.

Pushes are keyed by booking: each carries the booking id and deep link in its
data payload and collapses onto earlier pushes for the same booking, so a
device that was offline only shows the latest status.
"""

import logging
from threading import Lock
from typing import Any, Dict, List, Tuple

from booking_engine.models import NotificationRecord
from booking_engine.settings import settings

logger = logging.getLogger(__name__)

# Pushes that must arrive even on a dozing Android device.
URGENT_TEMPLATES = {"booking-pending-provider", "booking-reminder-1h"}
DATA_VARIABLES = ("booking_id", "date", "start_time", "end_time")


def booking_push_data(record: NotificationRecord) -> Dict[str, str]:
    """FCM data payload for ``record``; every value is a string."""
    data = {
        "notification_id": record.id,
        "template_id": record.template_id,
        "deep_link": record.deep_link or "",
    }
    for name in DATA_VARIABLES:
        value = record.variables.get(name)
        if value:
            data[name] = str(value)
    return data


class PushSender:
    """Sends booking notifications to device tokens; a no-op without credentials."""

    def __init__(self, credentials_path: str = "", messaging_module: Any = None):
        self._credentials_path = credentials_path.strip()
        self._lock = Lock()
        self._messaging = messaging_module
        self._initialized = messaging_module is not None
        self._dead_token_errors: Tuple[type, ...] = ()
        if messaging_module is not None:
            self._load_error_types()

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._messaging is not None

    def _load_error_types(self) -> None:
        from firebase_admin import exceptions, messaging

        self._dead_token_errors = (messaging.UnregisteredError, exceptions.InvalidArgumentError)

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            if not self._credentials_path:
                logger.info("Booking pushes disabled: FIREBASE_CREDENTIALS_PATH not set")
                return

            import firebase_admin
            from firebase_admin import credentials, messaging

            try:
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(credentials.Certificate(self._credentials_path))
            except (ValueError, OSError):
                logger.exception("Booking pushes disabled: cannot load %s", self._credentials_path)
                return
            self._load_error_types()
            self._messaging = messaging
            logger.info("Booking pushes enabled")

    def _build_message(self, tokens: List[str], record: NotificationRecord) -> Any:
        messaging = self._messaging
        booking_id = record.variables.get("booking_id")
        android = messaging.AndroidConfig(
            collapse_key=str(booking_id) if booking_id else None,
            priority="high" if record.template_id in URGENT_TEMPLATES else "normal",
        )
        return messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=record.title, body=record.body),
            data=booking_push_data(record),
            android=android,
        )

    def send_booking_notification(self, tokens: List[str], record: NotificationRecord) -> List[str]:
        """Push ``record`` to ``tokens``; returns the tokens Firebase no longer accepts."""
        self._ensure_initialized()
        if self._messaging is None or not tokens:
            return []
        from firebase_admin.exceptions import FirebaseError

        try:
            batch = self._messaging.send_each_for_multicast(self._build_message(tokens, record))
        except (FirebaseError, ValueError):
            logger.exception("Push for notification %s (%s) failed", record.id, record.template_id)
            return []
        dead: List[str] = []
        for token, response in zip(tokens, batch.responses):
            if response.success:
                continue
            if isinstance(response.exception, self._dead_token_errors):
                dead.append(token)
            else:
                logger.warning("Push to one device failed for %s: %s", record.id, response.exception)
        return dead


push_sender = PushSender(settings.firebase_credentials_path)
