#!/usr/bin/env python3
"""Convert legacy provider schedule documents into the weekday/override model.

Input is a JSON object keyed by provider id, or a list of documents that each
carry ``providerId``. Providers that already have a schedule are left alone
unless ``--overwrite`` is given.
"""
import argparse
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from booking_engine.services.availability import convert_legacy_schedule  # noqa: E402
from booking_engine.services.errors import SchedulingValidationError  # noqa: E402
from booking_engine.services.schedule_store import SchedulingStore  # noqa: E402
from booking_engine.settings import ScheduleDefaults, settings  # noqa: E402


@dataclass
class MigrationReport:
    migrated: List[str] = field(default_factory=list)
    kept_existing: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


def _documents(raw: Any) -> Dict[str, Dict[str, Any]]:
    if isinstance(raw, dict):
        return {str(key): value for key, value in raw.items() if isinstance(value, dict)}
    if isinstance(raw, list):
        documents: Dict[str, Dict[str, Any]] = {}
        for item in raw:
            if not isinstance(item, dict):
                continue
            provider_id = item.get("providerId") or item.get("vendorId") or item.get("provider_id")
            if provider_id:
                documents[str(provider_id)] = item
        return documents
    raise SchedulingValidationError("Legacy schedule file must hold a JSON object or list")


def migrate(
    raw: Any,
    store: SchedulingStore,
    defaults: ScheduleDefaults,
    *,
    overwrite: bool = False,
    dry_run: bool = False,
) -> MigrationReport:
    report = MigrationReport()
    now = datetime.now(timezone.utc)
    for provider_id, document in _documents(raw).items():
        if store.get_schedule(provider_id) is not None and not overwrite:
            report.kept_existing.append(provider_id)
            continue
        try:
            schedule = convert_legacy_schedule(provider_id, document, defaults, now)
        except (SchedulingValidationError, ValueError) as exc:
            report.failed[provider_id] = str(exc)
            continue
        if not dry_run:
            store.save_schedule(schedule)
        report.migrated.append(provider_id)
    return report


def main() -> int:
    parser = argparse.ArgumentParser(description="Migrate legacy provider schedules.")
    parser.add_argument("path", type=str, help="JSON file with legacy schedule documents.")
    parser.add_argument("--overwrite", action="store_true", help="Replace schedules that already exist.")
    parser.add_argument("--dry-run", action="store_true", help="Convert and validate without saving.")
    parser.add_argument("--db-path", type=str, default=settings.db_path, help="Target sqlite database.")
    args = parser.parse_args()

    raw = json.loads(Path(args.path).read_text(encoding="utf-8"))
    store = SchedulingStore(db_path=args.db_path)
    report = migrate(raw, store, settings.schedule_defaults, overwrite=args.overwrite, dry_run=args.dry_run)

    mode = "dry-run" if args.dry_run else "write"
    print(
        f"Legacy schedule migration mode={mode} migrated={len(report.migrated)} "
        f"kept_existing={len(report.kept_existing)} failed={len(report.failed)}"
    )
    for provider_id, reason in sorted(report.failed.items()):
        print(f"- {provider_id}: {reason}")
    return 1 if report.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
