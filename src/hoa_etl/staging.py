"""hoa_etl.staging

Staging layer: faithful, idempotent capture of Airtable records into
airtable_raw_records, keyed by (base_id, table_name, record_id).

Re-staging a record overwrites its fields and created_time in place; no
duplicate rows are ever created.  Writes go out in chunks of 200, each
committed on its own: chunk boundaries carry no meaning, and a failure
part-way leaves the earlier chunks in place.  Field contents are not
validated here.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Iterator, TypeVar

import psycopg

from hoa_etl.fields import RecordFields

if TYPE_CHECKING:
    from hoa_etl.airtable_client import AirtableClient, SourceRecord

log = logging.getLogger(__name__)

CHUNK_SIZE = 200

T = TypeVar("T")

_UPSERT_STAGED_SQL = """
    INSERT INTO airtable_raw_records
      (base_id, table_id, table_name, record_id, created_time, fields)
    VALUES (%s, %s, %s, %s, %s, %s::jsonb)
    ON CONFLICT (base_id, table_name, record_id) DO UPDATE SET
      table_id = EXCLUDED.table_id,
      created_time = EXCLUDED.created_time,
      fields = EXCLUDED.fields,
      imported_at = now()
"""


# ---------------------------------------------------------------------------
# Staged record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StagedRecord:
    base_id: str
    table_name: str
    record_id: str
    table_id: str | None
    created_time: datetime | None
    fields: dict[str, Any]

    @property
    def values(self) -> RecordFields:
        return RecordFields(self.fields)


def parse_created_time(value: str | None) -> datetime | None:
    """Airtable createdTime ('2024-01-05T08:30:00.000Z') → aware datetime, or None."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

def _chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    chunk: list[T] = []
    for item in items:
        chunk.append(item)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def stage_records(
    conn: psycopg.Connection,
    base_id: str,
    table_name: str,
    records: Iterable[SourceRecord],
    table_id: str | None = None,
    chunk_size: int = CHUNK_SIZE,
    dry_run: bool = False,
) -> int:
    """Upsert source records into staging.  Returns the number of rows written.

    `records` may be a lazy iterator; each chunk commits as soon as it is
    full.  In dry-run every chunk is rolled back instead.
    """
    staged = 0
    for chunk in _chunked(records, chunk_size):
        rows = [
            (
                base_id,
                table_id,
                table_name,
                rec.record_id,
                parse_created_time(rec.created_time),
                json.dumps(dict(rec.fields), ensure_ascii=False),
            )
            for rec in chunk
        ]
        with conn.cursor() as cur:
            cur.executemany(_UPSERT_STAGED_SQL, rows)
        if dry_run:
            conn.rollback()
        else:
            conn.commit()
        staged += len(rows)
        log.info("Upserted %d record(s) into staging for %s", staged, table_name)
    return staged


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

def fetch_staged_records(
    conn: psycopg.Connection,
    base_id: str,
    table_name: str,
) -> list[StagedRecord]:
    rows = conn.execute(
        """
        SELECT record_id, table_id, created_time, fields
        FROM airtable_raw_records
        WHERE base_id = %s AND table_name = %s
        ORDER BY record_id
        """,
        (base_id, table_name),
    ).fetchall()
    return [
        StagedRecord(
            base_id=base_id,
            table_name=table_name,
            record_id=row[0],
            table_id=row[1],
            created_time=row[2],
            fields=dict(row[3] or {}),
        )
        for row in rows
    ]


def count_staged_records(conn: psycopg.Connection, base_id: str, table_name: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM airtable_raw_records WHERE base_id = %s AND table_name = %s",
        (base_id, table_name),
    ).fetchone()
    return int(row[0])


# ---------------------------------------------------------------------------
# Table selection
# ---------------------------------------------------------------------------

def table_selected(
    table_name: str,
    include: re.Pattern[str] | None,
    exclude: re.Pattern[str] | None,
) -> bool:
    if include is not None and not include.search(table_name):
        return False
    if exclude is not None and exclude.search(table_name):
        return False
    return True


# ---------------------------------------------------------------------------
# Stage runs
# ---------------------------------------------------------------------------

@dataclass
class TableImportSummary:
    table_name: str
    table_id: str | None = None
    fetched: int = 0
    upserted: int = 0
    staging_count: int | None = None
    verified: bool | None = None
    filtered_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "tableName": self.table_name,
            "tableId": self.table_id,
            "fetched": self.fetched,
            "upserted": self.upserted,
        }
        if self.filtered_out:
            d["filteredOut"] = True
        if self.staging_count is not None:
            d["stagingCount"] = self.staging_count
            d["verified"] = self.verified
        return d


def run_stage_table(
    conn: psycopg.Connection,
    client: AirtableClient,
    base_id: str,
    table_name: str,
    table_id: str | None = None,
    view: str | None = None,
    verify: bool = False,
    dry_run: bool = False,
) -> TableImportSummary:
    """Fetch one table and stage it as the pages arrive."""
    summary = TableImportSummary(table_name=table_name, table_id=table_id)

    def counted() -> Iterator[SourceRecord]:
        for rec in client.iter_records(base_id, table_name, view=view):
            summary.fetched += 1
            yield rec

    summary.upserted = stage_records(
        conn, base_id, table_name, counted(), table_id=table_id, dry_run=dry_run,
    )
    log.info("Fetched %d record(s) from %s", summary.fetched, table_name)

    if verify:
        if dry_run:
            log.info("Skipping verify for %s: dry-run staged nothing", table_name)
        else:
            summary.staging_count = count_staged_records(conn, base_id, table_name)
            # Records deleted at the source stay staged, so staging may hold more.
            summary.verified = summary.staging_count >= summary.fetched
            conn.rollback()
            if not summary.verified:
                log.error(
                    "Verify failed for %s: fetched=%d staged=%d",
                    table_name, summary.fetched, summary.staging_count,
                )
    return summary


def run_import_all(
    conn: psycopg.Connection,
    client: AirtableClient,
    base_id: str,
    include: re.Pattern[str] | None = None,
    exclude: re.Pattern[str] | None = None,
    verify: bool = False,
    dry_run: bool = False,
) -> list[TableImportSummary]:
    """Stage every table of a base that passes the include/exclude filters."""
    tables = client.list_tables(base_id)
    log.info("Base %s has %d table(s)", base_id, len(tables))

    summaries: list[TableImportSummary] = []
    for table in tables:
        name = str(table.get("name") or "")
        table_id = table.get("id")
        if not name:
            continue
        if not table_selected(name, include, exclude):
            log.info("Skipping table %s due to include/exclude filter", name)
            summaries.append(
                TableImportSummary(table_name=name, table_id=table_id, filtered_out=True)
            )
            continue
        log.info("Importing table %s (%s)", name, table_id)
        summaries.append(
            run_stage_table(
                conn, client, base_id, name,
                table_id=table_id, verify=verify, dry_run=dry_run,
            )
        )
    return summaries
