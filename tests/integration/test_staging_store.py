"""Integration tests for the staging store (airtable_raw_records)."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from hoa_etl.airtable_client import SourceRecord
from hoa_etl.staging import (
    count_staged_records,
    fetch_staged_records,
    run_stage_table,
    stage_records,
)

BASE_ID = "appTEST0000000001"


def _rec(rid: str, **fields) -> SourceRecord:
    return SourceRecord("HOA_TABLE", rid, "2024-01-05T08:30:00.000Z", fields)


def _client(records: list[SourceRecord]) -> MagicMock:
    client = MagicMock()
    client.iter_records.side_effect = lambda *a, **kw: iter(records)
    return client


class TestStageRecords:
    def test_one_row_per_key_second_content_wins(self, db_conn):
        conn, _ = db_conn
        stage_records(conn, BASE_ID, "HOA_TABLE", [_rec("rec1", Block=1)], table_id="tbl1")
        stage_records(conn, BASE_ID, "HOA_TABLE", [_rec("rec1", Block=7, Lot=3)], table_id="tbl1")

        assert count_staged_records(conn, BASE_ID, "HOA_TABLE") == 1
        staged = fetch_staged_records(conn, BASE_ID, "HOA_TABLE")
        assert staged[0].fields == {"Block": 7, "Lot": 3}
        assert staged[0].table_id == "tbl1"
        assert staged[0].created_time is not None

    def test_same_record_id_in_other_table_is_separate(self, db_conn):
        conn, _ = db_conn
        stage_records(conn, BASE_ID, "HOA_TABLE", [_rec("rec1")])
        stage_records(conn, BASE_ID, "Roles", [_rec("rec1")])
        assert count_staged_records(conn, BASE_ID, "HOA_TABLE") == 1
        assert count_staged_records(conn, BASE_ID, "Roles") == 1

    def test_fetch_is_ordered_by_record_id(self, db_conn):
        conn, _ = db_conn
        stage_records(conn, BASE_ID, "HOA_TABLE", [_rec("recB"), _rec("recA"), _rec("recC")])
        assert [r.record_id for r in fetch_staged_records(conn, BASE_ID, "HOA_TABLE")] == [
            "recA", "recB", "recC",
        ]

    def test_unicode_and_nested_fields_round_trip(self, db_conn):
        conn, _ = db_conn
        fields = {"Name": "Ñoño", "Status": {"id": "sel1", "name": "Owner"}, "Member Name": ["recX"]}
        stage_records(conn, BASE_ID, "HOA_TABLE", [_rec("rec1", **fields)])
        assert fetch_staged_records(conn, BASE_ID, "HOA_TABLE")[0].fields == fields

    def test_dry_run_writes_nothing(self, db_conn):
        conn, _ = db_conn
        staged = stage_records(conn, BASE_ID, "HOA_TABLE", [_rec("rec1")], dry_run=True)
        assert staged == 1
        assert count_staged_records(conn, BASE_ID, "HOA_TABLE") == 0


class TestRunStageTable:
    def test_verify_passes(self, db_conn):
        conn, _ = db_conn
        client = _client([_rec("rec1"), _rec("rec2")])

        summary = run_stage_table(conn, client, BASE_ID, "HOA_TABLE", verify=True)

        assert summary.fetched == 2
        assert summary.upserted == 2
        assert summary.staging_count == 2
        assert summary.verified is True

    def test_rows_deleted_at_source_still_verify(self, db_conn):
        conn, _ = db_conn
        run_stage_table(conn, _client([_rec("rec1"), _rec("rec2")]), BASE_ID, "HOA_TABLE")

        summary = run_stage_table(conn, _client([_rec("rec1")]), BASE_ID, "HOA_TABLE", verify=True)

        assert summary.staging_count == 2
        assert summary.verified is True

    def test_failure_keeps_committed_chunks(self, db_conn):
        conn, _ = db_conn

        def failing(*args, **kwargs):
            for i in range(250):
                yield _rec(f"rec{i:04d}")
            raise RuntimeError("connection reset")

        client = MagicMock()
        client.iter_records.side_effect = failing
        with pytest.raises(RuntimeError):
            run_stage_table(conn, client, BASE_ID, "HOA_TABLE")
        conn.rollback()

        # first chunk of 200 committed; the unfinished second chunk is not
        assert count_staged_records(conn, BASE_ID, "HOA_TABLE") == 200
