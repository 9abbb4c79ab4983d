"""hoa_etl.transform_members

Staged "Household Members" records → members.

Each member links to its homeowner through the 'Member Name' linked-record
field; the linked Airtable id is resolved through the identity map written
by the homeowners stage.  Natural key: (homeowner_id, full_name).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

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
from hoa_etl.vocabulary import DEFAULT_VOCABULARY, EntityVocabulary, Vocabulary

log = logging.getLogger(__name__)

DEFAULT_TABLE = "Household Members"
TARGET_TABLE = "members"


@dataclass(frozen=True)
class MemberFields:
    full_name: str
    relation: str | None
    homeowner_link: str | None
    link_count: int


def build_member(values: RecordFields, vocab: EntityVocabulary) -> MemberFields | None:
    """Returns None when the record has no member name."""
    name = normalize_space(first_value(vocab.alternatives("name"), values.text))
    if not name:
        return None
    links = values.first_links(*vocab.alternatives("homeowner_link"))
    return MemberFields(
        full_name=name,
        relation=first_value(vocab.alternatives("relationship"), values.select_label),
        homeowner_link=links[0] if links else None,
        link_count=len(links),
    )


def upsert_member(
    conn: psycopg.Connection,
    homeowner_id: str,
    mf: MemberFields,
) -> tuple[str, str]:
    row = conn.execute(
        """
        SELECT id FROM members WHERE homeowner_id = %s AND full_name = %s
        ORDER BY created_at, id LIMIT 1
        """,
        (homeowner_id, mf.full_name),
    ).fetchone()
    if row:
        member_id = str(row[0])
        conn.execute(
            "UPDATE members SET relation = %s WHERE id = %s",
            (mf.relation, member_id),
        )
        return member_id, UPDATED

    row = conn.execute(
        """
        INSERT INTO members (homeowner_id, full_name, relation, is_active)
        VALUES (%s, %s, %s, true)
        RETURNING id
        """,
        (homeowner_id, mf.full_name, mf.relation),
    ).fetchone()
    return str(row[0]), INSERTED


def run_transform_members(
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
        mf = build_member(record.values, vocab)
        if mf is None:
            return RecordOutcome(SKIPPED)
        multi_parent = mf.link_count > 1

        homeowner_id = None
        if mf.homeowner_link:
            homeowner_id = identity_map.resolve(
                conn, base_id, parent_table, mf.homeowner_link, "homeowners",
            )
        if homeowner_id is None:
            log.info(
                "Member %s (%s): homeowner link %s not migrated",
                record.record_id, mf.full_name, mf.homeowner_link,
            )
            return RecordOutcome(MISSING_PARENT, multi_parent=multi_parent)

        try:
            member_id, status = upsert_member(conn, homeowner_id, mf)
            identity_map.record(
                conn, base_id, table, record.record_id, TARGET_TABLE, member_id,
            )
        except psycopg.Error as exc:
            raise RecordUpsertError((homeowner_id, mf.full_name), exc) from exc
        return RecordOutcome(status, target_id=member_id, mapped=True, multi_parent=multi_parent)

    process_staged_records(
        conn, records, handle, counters,
        dry_run=dry_run, run_id=run_id, label=table,
    )
    return counters
