"""Integration test fixtures.

Applies migrations 0001–0002 against an ephemeral PostgreSQL database
provided by pytest-postgresql before each integration test runs.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import psycopg
import pytest
from pytest_postgresql import factories

from hoa_etl.airtable_client import SourceRecord
from hoa_etl.staging import stage_records

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_target_entities.sql",
    PROJECT_ROOT / "migrations" / "0002_airtable_staging.sql",
]

BASE_ID = "appTEST0000000001"

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (psycopg connection, dsn) with the schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Staging helpers
# ---------------------------------------------------------------------------

def make_record(record_id: str, fields: dict[str, Any], table_name: str = "HOA_TABLE") -> SourceRecord:
    return SourceRecord(
        table_name=table_name,
        record_id=record_id,
        created_time="2024-01-05T08:30:00.000Z",
        fields=fields,
    )


@pytest.fixture
def stage():
    """stage(conn, table_name, {record_id: fields, ...}) → rows staged."""

    def _stage(conn: psycopg.Connection, table_name: str, records: dict[str, dict[str, Any]]) -> int:
        return stage_records(
            conn,
            BASE_ID,
            table_name,
            [make_record(rid, fields, table_name) for rid, fields in records.items()],
            table_id=f"tbl{table_name.replace(' ', '')}",
        )

    return _stage
