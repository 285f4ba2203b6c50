#!/usr/bin/env python3
import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from booking_engine.services.clock import FixedClock  # noqa: E402
from booking_engine.services.engine import BookingEngine, booking_engine  # noqa: E402


def run(engine: BookingEngine, *, reminders: bool = False) -> Dict[str, Any]:
    sweep = engine.expire_overdue_bookings()
    payload: Dict[str, Any] = {
        "expired": sweep.expired_booking_ids,
        "skipped": sweep.skipped_booking_ids,
    }
    if reminders:
        dispatched = engine.dispatch_reminders()
        payload["reminders_24h"] = dispatched.reminders_24h
        payload["reminders_1h"] = dispatched.reminders_1h
    return payload


def main() -> int:
    parser = argparse.ArgumentParser(description="Expire pending bookings past their confirmation deadline.")
    parser.add_argument("--now", type=str, default="", help="Evaluate as of this ISO timestamp instead of the clock.")
    parser.add_argument("--reminders", action="store_true", help="Also dispatch 24h and 1h booking reminders.")
    parser.add_argument("--json-out", type=str, default="", help="Optional output path for machine-readable results.")
    args = parser.parse_args()

    if args.now:
        try:
            booking_engine.clock = FixedClock(datetime.fromisoformat(args.now))
        except ValueError:
            print(f"Invalid --now timestamp: {args.now!r}")
            return 2

    payload = run(booking_engine, reminders=args.reminders)
    print(f"Expired {len(payload['expired'])} bookings, skipped {len(payload['skipped'])}")
    for booking_id in payload["expired"]:
        print(f"- expired {booking_id}")
    if args.reminders:
        print(f"Reminders sent: 24h={len(payload['reminders_24h'])} 1h={len(payload['reminders_1h'])}")

    if args.json_out:
        output_path = Path(args.json_out)
        output_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
