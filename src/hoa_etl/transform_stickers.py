"""hoa_etl.transform_stickers

Staged "STICKER_TABLE 2" records → vehicles + stickers.

One sticker row carries both the vehicle (keyed by plate_no) and the
sticker itself (keyed by code).  The vehicle is upserted whenever a plate
is present, even when the homeowner link cannot be resolved: a known
owner, make or model is never cleared by a later row that lacks them.
The sticker is only written once its homeowner resolves; otherwise the
record counts as missing_parent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

import psycopg

from hoa_etl import identity_map
from hoa_etl.fields import RecordFields, first_value
from hoa_etl.normalize import normalize_space
from hoa_etl.shared import (
    INSERTED,
    MISSING_PARENT,
    SKIPPED,
    UPDATED,
    RecordOutcome,
    RecordUpsertError,
    RunCounters,
    process_staged_records,
)
from hoa_etl.staging import StagedRecord, fetch_staged_records
from hoa_etl.transform_homeowners import DEFAULT_TABLE as HOMEOWNERS_TABLE
from hoa_etl.transform_homeowners import build_notes
from hoa_etl.vocabulary import DEFAULT_VOCABULARY, EntityVocabulary, Vocabulary

log = logging.getLogger(__name__)

DEFAULT_TABLE = "STICKER_TABLE 2"
TARGET_TABLE = "stickers"
VEHICLES_TABLE = "vehicles"

STICKER_NOTE_RULES: tuple[tuple[str, str], ...] = (
    ("amount_paid", "Amount Pd"),
    ("released", "Released"),
    ("category", "Category"),
)


@dataclass(frozen=True)
class StickerFields:
    code: str
    homeowner_link: str | None
    link_count: int
    plate_no: str | None
    make: str | None
    model: str | None
    issued_at: date | None
    notes: str | None


def build_sticker_notes(values: RecordFields, vocab: EntityVocabulary) -> str | None:
    return build_notes(values, vocab, STICKER_NOTE_RULES)


def build_sticker(values: RecordFields, vocab: EntityVocabulary) -> StickerFields | None:
    """Returns None when the record has no sticker code."""

    def text(key: str) -> str | None:
        return normalize_space(first_value(vocab.alternatives(key), values.text))

    code = text("code")
    if not code:
        return None
    links = values.first_links(*vocab.alternatives("homeowner_link"))
    return StickerFields(
        code=code,
        homeowner_link=links[0] if links else None,
        link_count=len(links),
        plate_no=text("plate_no"),
        make=text("make"),
        model=text("model"),
        issued_at=first_value(vocab.alternatives("date_issued"), values.date),
        notes=build_sticker_notes(values, vocab),
    )


def upsert_vehicle(
    conn: psycopg.Connection,
    sf: StickerFields,
    homeowner_id: str | None,
) -> tuple[str, str]:
    row = conn.execute(
        """
        INSERT INTO vehicles (plate_no, make, model, homeowner_id)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (plate_no) DO UPDATE SET
          make = COALESCE(EXCLUDED.make, vehicles.make),
          model = COALESCE(EXCLUDED.model, vehicles.model),
          homeowner_id = COALESCE(EXCLUDED.homeowner_id, vehicles.homeowner_id)
        RETURNING id, (xmax = 0) AS inserted
        """,
        (sf.plate_no, sf.make, sf.model, homeowner_id),
    ).fetchone()
    return str(row[0]), INSERTED if row[1] else UPDATED


def upsert_sticker(
    conn: psycopg.Connection,
    sf: StickerFields,
    homeowner_id: str,
    vehicle_id: str | None,
) -> tuple[str, str]:
    row = conn.execute(
        """
        INSERT INTO stickers (code, homeowner_id, vehicle_id, issued_at, notes)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (code) DO UPDATE SET
          homeowner_id = EXCLUDED.homeowner_id,
          vehicle_id = EXCLUDED.vehicle_id,
          issued_at = EXCLUDED.issued_at,
          notes = EXCLUDED.notes
        RETURNING id, (xmax = 0) AS inserted
        """,
        (sf.code, homeowner_id, vehicle_id, sf.issued_at, sf.notes),
    ).fetchone()
    return str(row[0]), INSERTED if row[1] else UPDATED


def run_transform_stickers(
    conn: psycopg.Connection,
    base_id: str,
    counters: RunCounters,
    run_id: str,
    table: str = DEFAULT_TABLE,
    parent_table: str = HOMEOWNERS_TABLE,
    dry_run: bool = False,
    vocabulary: Vocabulary = DEFAULT_VOCABULARY,
) -> RunCounters:
    vocab = vocabulary.for_entity(TARGET_TABLE)

    records = fetch_staged_records(conn, base_id, table)
    log.info("Loaded %d staged record(s) for %s", len(records), table)

    def handle(conn: psycopg.Connection, record: StagedRecord) -> RecordOutcome:
        sf = build_sticker(record.values, vocab)
        if sf is None:
            return RecordOutcome(SKIPPED)
        multi_parent = sf.link_count > 1

        homeowner_id = None
        if sf.homeowner_link:
            homeowner_id = identity_map.resolve(
                conn, base_id, parent_table, sf.homeowner_link, "homeowners",
            )

        try:
            vehicle_id, vehicle_status = None, None
            if sf.plate_no:
                vehicle_id, vehicle_status = upsert_vehicle(conn, sf, homeowner_id)
                identity_map.record(
                    conn, base_id, table, record.record_id, VEHICLES_TABLE, vehicle_id,
                )

            if homeowner_id is None:
                log.info(
                    "Sticker %s (%s): homeowner link %s not migrated",
                    record.record_id, sf.code, sf.homeowner_link,
                )
                return RecordOutcome(
                    MISSING_PARENT,
                    mapped=vehicle_id is not None,
                    vehicle_status=vehicle_status,
                    multi_parent=multi_parent,
                )

            sticker_id, status = upsert_sticker(conn, sf, homeowner_id, vehicle_id)
            identity_map.record(
                conn, base_id, table, record.record_id, TARGET_TABLE, sticker_id,
            )
        except psycopg.Error as exc:
            raise RecordUpsertError(sf.code, exc) from exc
        return RecordOutcome(
            status,
            target_id=sticker_id,
            mapped=True,
            vehicle_status=vehicle_status,
            multi_parent=multi_parent,
        )

    process_staged_records(
        conn, records, handle, counters,
        dry_run=dry_run, run_id=run_id, label=table,
    )
    return counters
