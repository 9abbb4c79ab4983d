"""hoa_etl.transform_roles

Staged Roles records → users.role.

Airtable role labels map onto application roles (admin → ADMIN,
editor → STAFF, viewer → PUBLIC).  Users are matched by lower-cased email.
A user that does not exist yet is counted as missing_parent unless
create_missing is set, in which case a placeholder account is inserted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import psycopg

from hoa_etl import identity_map
from hoa_etl.fields import RecordFields, first_value
from hoa_etl.normalize import normalize_email
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
from hoa_etl.vocabulary import DEFAULT_VOCABULARY, EntityVocabulary, Vocabulary

log = logging.getLogger(__name__)

DEFAULT_TABLE = "Roles"
TARGET_TABLE = "users"
MIGRATED_PASSWORD_HASH = "migrated"

ROLE_MAP = {
    "admin": "ADMIN",
    "editor": "STAFF",
    "viewer": "PUBLIC",
}


@dataclass(frozen=True)
class RoleAssignment:
    email: str
    role: str


def map_role(label: str | None) -> str | None:
    if not label:
        return None
    return ROLE_MAP.get(label.strip().lower())


def build_role(values: RecordFields, vocab: EntityVocabulary) -> RoleAssignment | None:
    """Returns None when the email is missing or the role label is unknown."""
    email = normalize_email(first_value(vocab.alternatives("email"), values.text))
    role = map_role(first_value(vocab.alternatives("role"), values.select_label))
    if not email or not role:
        return None
    return RoleAssignment(email=email, role=role)


def apply_role(
    conn: psycopg.Connection,
    ra: RoleAssignment,
    create_missing: bool = False,
) -> tuple[str | None, str]:
    """Return (user_id, status).  user_id is None when nothing was written."""
    row = conn.execute(
        "SELECT id, role FROM users WHERE lower(email) = %s ORDER BY created_at LIMIT 1",
        (ra.email,),
    ).fetchone()

    if row is None:
        if not create_missing:
            return None, MISSING_PARENT
        row = conn.execute(
            """
            INSERT INTO users (email, role, first_name, last_name, password_hash)
            VALUES (%s, %s, %s, '', %s)
            ON CONFLICT (email) DO UPDATE SET role = EXCLUDED.role
            RETURNING id, (xmax = 0) AS inserted
            """,
            (ra.email, ra.role, ra.email.split("@")[0], MIGRATED_PASSWORD_HASH),
        ).fetchone()
        return str(row[0]), INSERTED if row[1] else UPDATED

    user_id, current_role = str(row[0]), row[1]
    if current_role == ra.role:
        return user_id, SKIPPED
    conn.execute("UPDATE users SET role = %s WHERE id = %s", (ra.role, user_id))
    return user_id, UPDATED


def run_transform_roles(
    conn: psycopg.Connection,
    base_id: str,
    counters: RunCounters,
    run_id: str,
    table: str = DEFAULT_TABLE,
    dry_run: bool = False,
    create_missing: bool = False,
    vocabulary: Vocabulary = DEFAULT_VOCABULARY,
) -> RunCounters:
    vocab = vocabulary.for_entity("roles")

    records = fetch_staged_records(conn, base_id, table)
    log.info("Loaded %d staged record(s) for %s", len(records), table)

    def handle(conn: psycopg.Connection, record: StagedRecord) -> RecordOutcome:
        ra = build_role(record.values, vocab)
        if ra is None:
            return RecordOutcome(SKIPPED)
        try:
            user_id, status = apply_role(conn, ra, create_missing=create_missing)
            if user_id is None:
                log.info("Role %s: no user with email %s", record.record_id, ra.email)
                return RecordOutcome(status)
            identity_map.record(
                conn, base_id, table, record.record_id, TARGET_TABLE, user_id,
            )
        except psycopg.Error as exc:
            raise RecordUpsertError(ra.email, exc) from exc
        return RecordOutcome(status, target_id=user_id, mapped=True)

    process_staged_records(
        conn, records, handle, counters,
        dry_run=dry_run, run_id=run_id, label=table,
    )
    return counters
