"""hoa_etl.transform_homeowners

Staged HOA_TABLE records → homeowners.

Natural key is the normalized property address.  Matching order:
  1. property_address equality
  2. block + lot (+ phase, + street when known), only when block and lot
     are both present
  3. the identity map for this same source record, when the record has
     no derivable address at all

A record with neither a derivable name nor a derivable address is
skipped.  residency_start_date is set on insert and kept on update; the
address and its block/lot/phase/street parts are written on insert only.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

import psycopg

from hoa_etl import identity_map
from hoa_etl.fields import RecordFields, first_value
from hoa_etl.normalize import (
    build_address,
    label_equals,
    resolve_name,
    sanitize_street,
    years_before,
)
from hoa_etl.shared import (
    INSERTED,
    SKIPPED,
    UPDATED,
    RecordOutcome,
    RecordUpsertError,
    RunCounters,
    process_staged_records,
)
from hoa_etl.staging import StagedRecord, fetch_staged_records
from hoa_etl.vocabulary import DEFAULT_VOCABULARY, EntityVocabulary, Vocabulary

log = logging.getLogger(__name__)

DEFAULT_TABLE = "HOA_TABLE"
TARGET_TABLE = "homeowners"

# (vocabulary key, label) in output order.
NOTE_RULES: tuple[tuple[str, str], ...] = (
    ("contact_number", "Contact"),
    ("contact_no", "Contact"),
    ("facebook_profile", "FB"),
    ("lot_owner", "Lot Owner"),
    ("length_of_residency", "Years"),
    ("date_paid", "Date Paid"),
    ("amount_paid", "Amount Paid"),
)

NAME_COLUMNS = ("first_name", "last_name", "middle_initial", "suffix", "full_name")


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HomeownerFields:
    property_address: str | None
    is_owner: bool | None
    notes: str | None
    first_name: str | None
    last_name: str | None
    middle_initial: str | None
    suffix: str | None
    full_name: str | None
    block: str | None
    lot: str | None
    phase: str | None
    street: str | None
    contact_number: str | None
    length_of_residency: int | None
    residency_start_date: date | None
    email: str | None
    facebook_profile: str | None
    date_paid: date | None
    amount_paid: Decimal | None

    def columns(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def build_notes(
    values: RecordFields,
    vocab: EntityVocabulary,
    rules: tuple[tuple[str, str], ...] = NOTE_RULES,
) -> str | None:
    """Join 'Label: value' for each non-empty source field with ' | '."""
    parts: list[str] = []
    for key, label in rules:
        text = first_value(vocab.alternatives(key), values.text)
        if text is not None:
            parts.append(f"{label}: {text}")
    return " | ".join(parts) or None


def build_homeowner(
    values: RecordFields,
    vocab: EntityVocabulary,
    today: date,
) -> HomeownerFields | None:
    """Normalize one staged record.  Returns None when it should be skipped."""

    def text(key: str) -> str | None:
        return first_value(vocab.alternatives(key), values.text)

    block, lot, phase = text("block"), text("lot"), text("phase")
    street = sanitize_street(text("street"))
    address = build_address(text("full_address"), block, lot, phase, street)

    parts, display_name = resolve_name(
        text("first_name"), text("last_name"), text("middle_initial"), text("full_name"),
    )
    has_name = bool(display_name or parts.first_name or parts.last_name)
    if address is None and not has_name:
        return None

    years = first_value(vocab.alternatives("length_of_residency"), values.integer)
    return HomeownerFields(
        property_address=address,
        is_owner=label_equals(
            first_value(vocab.alternatives("status"), values.select_label), "owner",
        ),
        notes=build_notes(values, vocab),
        first_name=parts.first_name,
        last_name=parts.last_name,
        middle_initial=parts.middle_initial,
        suffix=parts.suffix,
        full_name=display_name,
        block=block,
        lot=lot,
        phase=phase,
        street=street,
        contact_number=text("contact_number") or text("contact_no"),
        length_of_residency=years,
        residency_start_date=years_before(today, years) if years is not None else None,
        email=text("email"),
        facebook_profile=text("facebook_profile"),
        date_paid=first_value(vocab.alternatives("date_paid"), values.date),
        amount_paid=first_value(vocab.alternatives("amount_paid"), values.amount),
    )


# ---------------------------------------------------------------------------
# Upserter
# ---------------------------------------------------------------------------

def find_homeowner(
    conn: psycopg.Connection,
    hf: HomeownerFields,
    base_id: str,
    table_name: str,
    record_id: str,
) -> str | None:
    if hf.property_address:
        row = conn.execute(
            """
            SELECT id FROM homeowners WHERE property_address = %s
            ORDER BY created_at, id LIMIT 1
            """,
            (hf.property_address,),
        ).fetchone()
        if row:
            return str(row[0])

    if hf.block and hf.lot:
        row = conn.execute(
            """
            SELECT id FROM homeowners
            WHERE block = %s AND lot = %s
              AND (%s::text IS NULL OR phase = %s)
              AND (%s::text IS NULL OR street = %s)
            ORDER BY created_at, id LIMIT 1
            """,
            (hf.block, hf.lot, hf.phase, hf.phase, hf.street, hf.street),
        ).fetchone()
        if row:
            return str(row[0])

    if hf.property_address is None:
        return identity_map.resolve(conn, base_id, table_name, record_id, TARGET_TABLE)
    return None


def _insert_homeowner(conn: psycopg.Connection, hf: HomeownerFields) -> str:
    row = conn.execute(
        """
        INSERT INTO homeowners (
          property_address, is_owner, notes,
          first_name, last_name, middle_initial, suffix, full_name,
          block, lot, phase, street,
          contact_number, length_of_residency, residency_start_date,
          email, facebook_profile, date_paid, amount_paid
        ) VALUES (
          %(property_address)s, %(is_owner)s, %(notes)s,
          %(first_name)s, %(last_name)s, %(middle_initial)s, %(suffix)s, %(full_name)s,
          %(block)s, %(lot)s, %(phase)s, %(street)s,
          %(contact_number)s, %(length_of_residency)s, %(residency_start_date)s,
          %(email)s, %(facebook_profile)s, %(date_paid)s, %(amount_paid)s
        )
        RETURNING id
        """,
        hf.columns(),
    ).fetchone()
    return str(row[0])


def _update_homeowner(conn: psycopg.Connection, homeowner_id: str, hf: HomeownerFields) -> None:
    # property_address and the block/lot/phase/street it was composed from
    # form the natural key and are never rewritten.
    conn.execute(
        """
        UPDATE homeowners SET
          is_owner = %(is_owner)s,
          notes = %(notes)s,
          first_name = %(first_name)s,
          last_name = %(last_name)s,
          middle_initial = %(middle_initial)s,
          suffix = %(suffix)s,
          full_name = %(full_name)s,
          contact_number = %(contact_number)s,
          length_of_residency = %(length_of_residency)s,
          residency_start_date = COALESCE(residency_start_date, %(residency_start_date)s),
          email = %(email)s,
          facebook_profile = %(facebook_profile)s,
          date_paid = %(date_paid)s,
          amount_paid = %(amount_paid)s
        WHERE id = %(id)s
        """,
        {**hf.columns(), "id": homeowner_id},
    )


def _update_homeowner_names(conn: psycopg.Connection, homeowner_id: str, hf: HomeownerFields) -> None:
    conn.execute(
        """
        UPDATE homeowners SET
          first_name = %(first_name)s,
          last_name = %(last_name)s,
          middle_initial = %(middle_initial)s,
          suffix = %(suffix)s,
          full_name = %(full_name)s
        WHERE id = %(id)s
        """,
        {**{c: getattr(hf, c) for c in NAME_COLUMNS}, "id": homeowner_id},
    )


def upsert_homeowner(
    conn: psycopg.Connection,
    hf: HomeownerFields,
    base_id: str,
    table_name: str,
    record_id: str,
    update_only: bool = False,
    names_only: bool = False,
) -> tuple[str | None, str]:
    """Return (homeowner_id, status).  homeowner_id is None only when skipped."""
    existing_id = find_homeowner(conn, hf, base_id, table_name, record_id)
    if existing_id is None:
        if update_only:
            return None, SKIPPED
        return _insert_homeowner(conn, hf), INSERTED

    if names_only:
        _update_homeowner_names(conn, existing_id, hf)
    else:
        _update_homeowner(conn, existing_id, hf)
    return existing_id, UPDATED


# ---------------------------------------------------------------------------
# Stage runner
# ---------------------------------------------------------------------------

def run_transform_homeowners(
    conn: psycopg.Connection,
    base_id: str,
    counters: RunCounters,
    run_id: str,
    table: str = DEFAULT_TABLE,
    dry_run: bool = False,
    update_only: bool = False,
    names_only: bool = False,
    vocabulary: Vocabulary = DEFAULT_VOCABULARY,
    today: date | None = None,
) -> RunCounters:
    vocab = vocabulary.for_entity(TARGET_TABLE)
    today = today or date.today()

    records = fetch_staged_records(conn, base_id, table)
    log.info("Loaded %d staged record(s) for %s", len(records), table)

    def handle(conn: psycopg.Connection, record: StagedRecord) -> RecordOutcome:
        hf = build_homeowner(record.values, vocab, today)
        if hf is None:
            log.debug("Skipping %s: no derivable name or address", record.record_id)
            return RecordOutcome(SKIPPED)
        try:
            homeowner_id, status = upsert_homeowner(
                conn, hf, base_id, table, record.record_id,
                update_only=update_only, names_only=names_only,
            )
            if homeowner_id is None:
                return RecordOutcome(status)
            identity_map.record(
                conn, base_id, table, record.record_id, TARGET_TABLE, homeowner_id,
            )
        except psycopg.Error as exc:
            raise RecordUpsertError(hf.property_address or hf.full_name, exc) from exc
        return RecordOutcome(status, target_id=homeowner_id, mapped=True)

    process_staged_records(
        conn, records, handle, counters,
        dry_run=dry_run, run_id=run_id, label=table,
    )
    return counters
