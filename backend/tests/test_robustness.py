import json

import pytest

from booking_engine import settings as settings_module
from booking_engine.models import NotificationRecord
from booking_engine.services.cancellation_policy import PolicyBook
from booking_engine.services.errors import SchedulingValidationError
from booking_engine.services.notification_store import NotificationStore, render
from booking_engine.services.push_sender import PushSender


def test_invalid_numeric_env_falls_back(monkeypatch):
    monkeypatch.setenv("CONFIRMATION_WINDOW_HOURS", "not-a-number")
    monkeypatch.setenv("MAX_SLOT_QUERY_DAYS", "0")
    monkeypatch.setenv("PLATFORM_FEE_PERCENT", "-5")
    monkeypatch.setenv("PLATFORM_FEE_FIXED_CENTS", "30")
    loaded = settings_module.load_settings()
    assert loaded.confirmation_window_hours == 24
    assert loaded.max_slot_query_days == 62
    assert loaded.fees.percent == 0.0
    assert loaded.fees.fixed_cents == 30


def test_csv_and_string_env_are_normalized(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", " https://a.example , ,https://b.example")
    monkeypatch.setenv("DEFAULT_CURRENCY", " EUR ")
    monkeypatch.setenv("STRIPE_API_KEY", "  ")
    loaded = settings_module.load_settings()
    assert loaded.cors_origins == ["https://a.example", "https://b.example"]
    assert loaded.default_currency == "eur"
    assert loaded.stripe_api_key == ""


def test_push_sender_without_credentials_is_a_no_op():
    sender = PushSender("")
    assert sender.enabled is False
    record = NotificationRecord(
        id="ntf_1", user_id="u1", template_id="booking-reminder-1h", title="t", body="b", created_at=""
    )
    assert sender.send_booking_notification(["tok"], record) == []


def test_render_blanks_missing_variables():
    assert render("Refund: {refund_amount} {currency}.", {"currency": "USD", "refund_amount": None}) == "Refund:  USD."
    assert render("{reason}", {}) == ""


class _StaleTokenSender:
    def __init__(self):
        self.pushed = []

    def send_booking_notification(self, tokens, record):
        self.pushed.append(sorted(tokens))
        return [token for token in tokens if token.startswith("stale")]


def test_notification_store_drops_stale_tokens():
    sender = _StaleTokenSender()
    store = NotificationStore(sender=sender)
    store.register_device_token("u1", "stale-1")
    store.register_device_token("u1", "fresh-1")
    store.register_device_token("u1", "   ")
    store.send("booking-reminder-1h", "u1", {"service_name": "Reading", "start_time": "10:00", "booking_id": "b"})
    store.send("booking-reminder-1h", "u1", {"service_name": "Reading", "start_time": "10:00", "booking_id": "b"})
    assert sender.pushed == [["fresh-1", "stale-1"], ["fresh-1"]]
    assert len(store.list_for_user("u1")) == 2
    assert store.mark_read("someone-else", store.list_for_user("u1")[0].id) is None


def test_unknown_notification_template_is_rejected():
    with pytest.raises(KeyError):
        NotificationStore(sender=_StaleTokenSender()).send("no-such-template", "u1", {})


def test_policy_file_errors(tmp_path):
    path = tmp_path / "policies.json"
    path.write_text(json.dumps({"reading": "LENIENT"}), encoding="utf-8")
    with pytest.raises(SchedulingValidationError):
        PolicyBook.from_file(str(path))
    path.write_text(json.dumps(["STRICT"]), encoding="utf-8")
    with pytest.raises(SchedulingValidationError):
        PolicyBook.from_file(str(path))
