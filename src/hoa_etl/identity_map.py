"""hoa_etl.identity_map

Persistent map from an Airtable record to the target row it became:
(base_id, table_name, record_id, target_table) → target_id.

One source record may map into several target tables (a sticker row
becomes both a sticker and a vehicle).  Entries are created the first time
a record is upserted into a target table; afterwards only target_id is
repointed, and updated_at moves only when it actually changes.
"""

from __future__ import annotations

import psycopg


def resolve(
    conn: psycopg.Connection,
    base_id: str,
    table_name: str,
    record_id: str,
    target_table: str,
) -> str | None:
    row = conn.execute(
        """
        SELECT target_id FROM airtable_record_map
        WHERE base_id = %s AND table_name = %s AND record_id = %s AND target_table = %s
        """,
        (base_id, table_name, record_id, target_table),
    ).fetchone()
    return str(row[0]) if row else None


def record(
    conn: psycopg.Connection,
    base_id: str,
    table_name: str,
    record_id: str,
    target_table: str,
    target_id: str,
) -> bool:
    """Upsert one mapping.  Returns True when a row was inserted or repointed."""
    row = conn.execute(
        """
        INSERT INTO airtable_record_map
          (base_id, table_name, record_id, target_table, target_id)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (base_id, table_name, record_id, target_table) DO UPDATE SET
          target_id = EXCLUDED.target_id,
          updated_at = now()
        WHERE airtable_record_map.target_id IS DISTINCT FROM EXCLUDED.target_id
        RETURNING id
        """,
        (base_id, table_name, record_id, target_table, target_id),
    ).fetchone()
    return row is not None


def count_mappings(
    conn: psycopg.Connection,
    base_id: str,
    table_name: str,
    target_table: str | None = None,
) -> int:
    if target_table is None:
        row = conn.execute(
            "SELECT COUNT(*) FROM airtable_record_map WHERE base_id = %s AND table_name = %s",
            (base_id, table_name),
        ).fetchone()
    else:
        row = conn.execute(
            """
            SELECT COUNT(*) FROM airtable_record_map
            WHERE base_id = %s AND table_name = %s AND target_table = %s
            """,
            (base_id, table_name, target_table),
        ).fetchone()
    return int(row[0])
