import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Iterator, List, Optional
from uuid import uuid4

from booking_engine.models import (
    ACTIVE_BOOKING_STATES,
    Booking,
    BookingHistoryEntry,
    BookingLifecycleState,
    Place,
    ProviderSchedule,
    ServiceOffering,
)
from booking_engine.services.conflicts import TimeRange, find_conflict
from booking_engine.services.errors import (
    SchedulingNotFoundError,
    SlotUnavailableError,
    StateConflictError,
)
from booking_engine.settings import settings

DATETIME_FIELDS = {
    "start_utc",
    "end_utc",
    "confirmation_deadline",
    "last_rescheduled_at",
    "confirmed_at",
    "rejected_at",
    "expired_at",
    "cancelled_at",
    "created_at",
    "updated_at",
}
BOOL_FIELDS = {"reminder_24h_sent", "reminder_1h_sent"}
JSON_FIELDS = {"add_on_ids", "customer_address"}
BOOKING_COLUMNS = list(Booking.model_fields)


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _encode(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field in DATETIME_FIELDS:
        return _ts(value)
    if field in BOOL_FIELDS:
        return 1 if value else 0
    if field == "confirmation_status":
        return BookingLifecycleState(value).value
    if field == "customer_address":
        return value.model_dump_json() if isinstance(value, Place) else json.dumps(value)
    if field in JSON_FIELDS:
        return json.dumps(list(value))
    return value


def _booking_to_row(booking: Booking) -> Dict[str, Any]:
    return {name: _encode(name, getattr(booking, name)) for name in BOOKING_COLUMNS}


def _row_to_booking(row: sqlite3.Row) -> Booking:
    data: Dict[str, Any] = {}
    for name in BOOKING_COLUMNS:
        value = row[name]
        if value is not None and name in DATETIME_FIELDS:
            value = datetime.fromisoformat(value)
        elif name in BOOL_FIELDS:
            value = bool(value)
        elif value is not None and name in JSON_FIELDS:
            value = json.loads(value)
        data[name] = value
    return Booking(**data)


@dataclass
class SchedulingStore:
    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                if immediate:
                    # Take the write lock up front so a check-then-insert is
                    # atomic across processes sharing the file.
                    conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schedules (
                    provider_id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS services (
                    id TEXT PRIMARY KEY,
                    provider_id TEXT NOT NULL,
                    document TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                    id TEXT PRIMARY KEY,
                    provider_id TEXT NOT NULL,
                    service_id TEXT NOT NULL,
                    customer_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    start_utc TEXT NOT NULL,
                    end_utc TEXT NOT NULL,
                    provider_timezone TEXT NOT NULL,
                    customer_timezone TEXT,
                    delivery_method TEXT NOT NULL,
                    confirmation_status TEXT NOT NULL,
                    confirmation_deadline TEXT NOT NULL,
                    payment_intent_id TEXT NOT NULL,
                    amount REAL NOT NULL,
                    currency TEXT NOT NULL,
                    platform_fee_cents INTEGER NOT NULL DEFAULT 0,
                    add_on_ids TEXT NOT NULL DEFAULT '[]',
                    customer_address TEXT,
                    provider_address TEXT,
                    meeting_link TEXT,
                    meeting_passcode TEXT,
                    rejection_reason TEXT,
                    cancelled_by TEXT,
                    cancellation_reason TEXT,
                    refund_amount REAL,
                    refund_percentage REAL,
                    reschedule_count INTEGER NOT NULL DEFAULT 0,
                    last_rescheduled_at TEXT,
                    reminder_24h_sent INTEGER NOT NULL DEFAULT 0,
                    reminder_1h_sent INTEGER NOT NULL DEFAULT 0,
                    confirmed_at TEXT,
                    rejected_at TEXT,
                    expired_at TEXT,
                    cancelled_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bookings_provider_start ON bookings (provider_id, start_utc)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bookings_status_deadline ON bookings (confirmation_status, confirmation_deadline)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS booking_status_history (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL,
                    actor_user_id TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    note TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

    def _record_history(
        self,
        conn: sqlite3.Connection,
        booking_id: str,
        actor: str,
        from_status: str,
        to_status: str,
        note: str,
        at: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"bsh_{uuid4().hex[:10]}", booking_id, actor, from_status, to_status, note, _ts(at)),
        )

    # Schedules and services

    def get_schedule(self, provider_id: str) -> Optional[ProviderSchedule]:
        with self._session() as conn:
            row = conn.execute("SELECT document FROM schedules WHERE provider_id = ?", (provider_id,)).fetchone()
        return ProviderSchedule.model_validate_json(row["document"]) if row else None

    def save_schedule(self, schedule: ProviderSchedule) -> ProviderSchedule:
        updated_at = schedule.updated_at or datetime.now(timezone.utc)
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO schedules (provider_id, document, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(provider_id) DO UPDATE SET document = excluded.document, updated_at = excluded.updated_at
                """,
                (schedule.provider_id, schedule.model_dump_json(), _ts(updated_at)),
            )
        return schedule

    def get_service(self, service_id: str) -> Optional[ServiceOffering]:
        with self._session() as conn:
            row = conn.execute("SELECT document FROM services WHERE id = ?", (service_id,)).fetchone()
        return ServiceOffering.model_validate_json(row["document"]) if row else None

    def save_service(self, service: ServiceOffering) -> ServiceOffering:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO services (id, provider_id, document) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET provider_id = excluded.provider_id, document = excluded.document
                """,
                (service.id, service.provider_id, service.model_dump_json()),
            )
        return service

    # Bookings

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return _row_to_booking(row) if row else None

    def list_bookings(
        self,
        *,
        provider_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        start_from: Optional[datetime] = None,
        start_before: Optional[datetime] = None,
        statuses: Optional[Iterable[BookingLifecycleState]] = None,
    ) -> List[Booking]:
        clauses: List[str] = []
        params: List[Any] = []
        if provider_id is not None:
            clauses.append("provider_id = ?")
            params.append(provider_id)
        if customer_id is not None:
            clauses.append("customer_id = ?")
            params.append(customer_id)
        if start_from is not None:
            clauses.append("start_utc >= ?")
            params.append(_ts(start_from))
        if start_before is not None:
            clauses.append("start_utc < ?")
            params.append(_ts(start_before))
        if statuses is not None:
            values = [BookingLifecycleState(status).value for status in statuses]
            if not values:
                return []
            clauses.append(f"confirmation_status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._session() as conn:
            rows = conn.execute(f"SELECT * FROM bookings {where} ORDER BY start_utc, id", params).fetchall()
        return [_row_to_booking(row) for row in rows]

    def list_active_for_provider(
        self, provider_id: str, start: datetime, end: datetime, *, buffer_minutes: int = 0
    ) -> List[Booking]:
        """Active bookings that could conflict with ``[start, end)`` under ``buffer_minutes``."""
        with self._session() as conn:
            return self._active_near(conn, provider_id, TimeRange(start, end), buffer_minutes)

    def _active_near(
        self, conn: sqlite3.Connection, provider_id: str, window: TimeRange, buffer_minutes: int = 0
    ) -> List[Booking]:
        # An earlier booking blocks until its end plus the buffer.
        lookback = timedelta(days=1) + timedelta(minutes=max(buffer_minutes, 0))
        statuses = [status.value for status in ACTIVE_BOOKING_STATES]
        rows = conn.execute(
            f"""
            SELECT * FROM bookings
            WHERE provider_id = ?
              AND confirmation_status IN ({', '.join('?' for _ in statuses)})
              AND start_utc < ? AND end_utc > ?
            ORDER BY start_utc
            """,
            (
                provider_id,
                *statuses,
                _ts(window.end + timedelta(days=1)),
                _ts(window.start - lookback),
            ),
        ).fetchall()
        return [_row_to_booking(row) for row in rows]

    def list_overdue_pending(self, now: datetime) -> List[Booking]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM bookings
                WHERE confirmation_status = ? AND confirmation_deadline < ?
                ORDER BY confirmation_deadline, id
                """,
                (BookingLifecycleState.PENDING_CONFIRMATION.value, _ts(now)),
            ).fetchall()
        return [_row_to_booking(row) for row in rows]

    def list_confirmed_between(self, start_utc: datetime, end_utc: datetime) -> List[Booking]:
        return self.list_bookings(
            start_from=start_utc,
            start_before=end_utc,
            statuses=[BookingLifecycleState.CONFIRMED],
        )

    def insert_booking_if_free(self, booking: Booking, buffer_minutes: int, actor: str) -> Booking:
        candidate = TimeRange(booking.start_utc, booking.end_utc)
        row = _booking_to_row(booking)
        with self._session(immediate=True) as conn:
            existing = self._active_near(conn, booking.provider_id, candidate, buffer_minutes)
            if find_conflict(candidate, existing, buffer_minutes) is not None:
                raise SlotUnavailableError("The requested time conflicts with an existing booking")
            conn.execute(
                f"INSERT INTO bookings ({', '.join(BOOKING_COLUMNS)}) VALUES ({', '.join('?' for _ in BOOKING_COLUMNS)})",
                [row[name] for name in BOOKING_COLUMNS],
            )
            self._record_history(
                conn,
                booking.id,
                actor,
                "none",
                booking.confirmation_status.value,
                "booking requested",
                booking.created_at,
            )
        return booking

    def _write_conditionally(
        self,
        conn: sqlite3.Connection,
        booking_id: str,
        guard_sql: str,
        guard_value: Any,
        changes: Dict[str, Any],
    ) -> Booking:
        assignments = {name: _encode(name, value) for name, value in changes.items()}
        unknown = set(assignments) - set(BOOKING_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown booking fields: {sorted(unknown)}")
        set_sql = ", ".join([f"{name} = ?" for name in assignments] + ["version = version + 1"])
        cursor = conn.execute(
            f"UPDATE bookings SET {set_sql} WHERE id = ? AND {guard_sql}",
            [*assignments.values(), booking_id, guard_value],
        )
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if row is None:
            raise SchedulingNotFoundError("Booking not found")
        if cursor.rowcount == 0:
            raise StateConflictError(
                f"Booking {booking_id} changed concurrently (now {row['confirmation_status']}, version {row['version']})"
            )
        return _row_to_booking(row)

    def transition_booking(
        self,
        booking_id: str,
        expected_status: BookingLifecycleState,
        new_status: BookingLifecycleState,
        changes: Dict[str, Any],
        actor: str,
        note: str = "",
    ) -> Booking:
        at = changes.get("updated_at") or datetime.now(timezone.utc)
        with self._session(immediate=True) as conn:
            updated = self._write_conditionally(
                conn,
                booking_id,
                "confirmation_status = ?",
                BookingLifecycleState(expected_status).value,
                {**changes, "confirmation_status": new_status, "updated_at": at},
            )
            self._record_history(conn, booking_id, actor, expected_status.value, new_status.value, note, at)
        return updated

    def patch_booking(self, booking_id: str, expected_version: int, changes: Dict[str, Any]) -> Booking:
        at = changes.get("updated_at") or datetime.now(timezone.utc)
        with self._session(immediate=True) as conn:
            return self._write_conditionally(
                conn, booking_id, "version = ?", expected_version, {**changes, "updated_at": at}
            )

    def reschedule_booking_if_free(
        self,
        booking: Booking,
        changes: Dict[str, Any],
        buffer_minutes: int,
        actor: str,
    ) -> Booking:
        candidate = TimeRange(changes["start_utc"], changes["end_utc"])
        at = changes.get("updated_at") or datetime.now(timezone.utc)
        with self._session(immediate=True) as conn:
            existing = self._active_near(conn, booking.provider_id, candidate, buffer_minutes)
            if find_conflict(candidate, existing, buffer_minutes, ignore_booking_id=booking.id) is not None:
                raise SlotUnavailableError("The requested time conflicts with an existing booking")
            updated = self._write_conditionally(
                conn, booking.id, "version = ?", booking.version, {**changes, "updated_at": at}
            )
            status = updated.confirmation_status.value
            self._record_history(
                conn,
                booking.id,
                actor,
                status,
                status,
                f"rescheduled from {booking.date} {booking.start_time} to {updated.date} {updated.start_time}",
                at,
            )
        return updated

    def list_history(self, booking_id: str) -> List[BookingHistoryEntry]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT booking_id, actor_user_id, from_status, to_status, note, created_at
                FROM booking_status_history WHERE booking_id = ?
                ORDER BY created_at, rowid
                """,
                (booking_id,),
            ).fetchall()
        return [BookingHistoryEntry(**dict(row)) for row in rows]


scheduling_store = SchedulingStore(db_path=settings.db_path)
