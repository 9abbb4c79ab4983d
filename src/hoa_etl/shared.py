"""hoa_etl.shared

Shared pieces used by every transform stage: outcome constants,
RunCounters, the per-record savepoint loop, and report writing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

import psycopg

from hoa_etl.staging import StagedRecord

log = logging.getLogger(__name__)

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"
MISSING_PARENT = "missing_parent"

MAX_WARNINGS = 50


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RecordUpsertError(Exception):
    """A store error while writing one record, tagged with its natural key."""

    def __init__(self, natural_key: Any, cause: Exception) -> None:
        self.natural_key = natural_key
        self.cause = cause
        super().__init__(f"natural_key={natural_key!r}: {type(cause).__name__}: {cause}")


# ---------------------------------------------------------------------------
# Outcomes + counters
# ---------------------------------------------------------------------------

@dataclass
class RecordOutcome:
    status: str
    target_id: str | None = None
    mapped: bool = False
    vehicle_status: str | None = None
    multi_parent: bool = False


@dataclass
class RunCounters:
    records_read: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    missing_parent: int = 0
    errors: int = 0
    mapped: int = 0
    # Sticker stage: vehicles are a side product of sticker rows
    vehicles_inserted: int = 0
    vehicles_updated: int = 0
    multi_parent_links: int = 0
    warnings: list[str] = field(default_factory=list)

    def apply(self, outcome: RecordOutcome) -> None:
        if outcome.status == INSERTED:
            self.inserted += 1
        elif outcome.status == UPDATED:
            self.updated += 1
        elif outcome.status == SKIPPED:
            self.skipped += 1
        elif outcome.status == MISSING_PARENT:
            self.missing_parent += 1
        if outcome.mapped:
            self.mapped += 1
        if outcome.vehicle_status == INSERTED:
            self.vehicles_inserted += 1
        elif outcome.vehicle_status == UPDATED:
            self.vehicles_updated += 1
        if outcome.multi_parent:
            self.multi_parent_links += 1

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.warn(message)

    def warn(self, message: str) -> None:
        if len(self.warnings) < MAX_WARNINGS:
            self.warnings.append(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recordsRead": self.records_read,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "missingParent": self.missing_parent,
            "errors": self.errors,
            "mapped": self.mapped,
            "vehiclesInserted": self.vehicles_inserted,
            "vehiclesUpdated": self.vehicles_updated,
            "multiParentLinks": self.multi_parent_links,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Per-record savepoint loop
# ---------------------------------------------------------------------------

RecordHandler = Callable[[psycopg.Connection, StagedRecord], RecordOutcome]


def process_staged_records(
    conn: psycopg.Connection,
    records: Iterable[StagedRecord],
    handler: RecordHandler,
    counters: RunCounters,
    *,
    dry_run: bool,
    run_id: str,
    label: str,
) -> None:
    """Run `handler` for each staged record inside its own SAVEPOINT.

    A failing record is rolled back to its savepoint, logged with its
    record id and natural key, counted, and skipped; the loop continues.
    Outside dry-run each record commits on its own so a crash keeps the
    work already done.  Dry-run keeps everything in one transaction (so
    later records still see earlier ones, keeping counts exact) and rolls
    it back at the end.
    """
    try:
        for idx, record in enumerate(records):
            counters.records_read += 1
            sp = f"rec_{idx}"
            conn.execute(f"SAVEPOINT {sp}")
            try:
                outcome = handler(conn, record)
                conn.execute(f"RELEASE SAVEPOINT {sp}")
            except Exception as exc:
                conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
                natural_key = getattr(exc, "natural_key", None)
                log.warning(
                    "%s record %s failed (natural_key=%r): %s",
                    label, record.record_id, natural_key, exc,
                )
                counters.record_error(
                    f"[{run_id}] {label}[{record.record_id}]: {type(exc).__name__}: {exc}"
                )
                if not dry_run:
                    conn.commit()
                continue

            counters.apply(outcome)
            if outcome.multi_parent:
                counters.warn(
                    f"[{run_id}] {label}[{record.record_id}]: multiple linked parents; "
                    "only the first was followed"
                )
            if not dry_run:
                conn.commit()
    finally:
        if dry_run:
            conn.rollback()


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_summary(
    run_id: str,
    command: str,
    started_at: str,
    dry_run: bool,
    params: dict[str, Any],
    counts: dict[str, Any],
) -> dict[str, Any]:
    return {
        "runId": run_id,
        "command": command,
        "startedAt": started_at,
        "finishedAt": utc_now_iso(),
        "dryRun": dry_run,
        **params,
        **counts,
    }


def write_run_report(report_dir: Path, run_id: str, summary: dict[str, Any]) -> Path:
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps({"summary": summary}, indent=2, default=str))
    return report_path
