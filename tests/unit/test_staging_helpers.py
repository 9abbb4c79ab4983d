"""Unit tests for the database-free parts of hoa_etl.staging."""

import json
import re
from datetime import datetime, timezone
from unittest.mock import MagicMock

from hoa_etl.airtable_client import SourceRecord
from hoa_etl.staging import (
    TableImportSummary,
    _chunked,
    parse_created_time,
    run_import_all,
    stage_records,
    table_selected,
)


def _rec(rid: str, **fields) -> SourceRecord:
    return SourceRecord("HOA_TABLE", rid, "2024-01-05T08:30:00.000Z", fields)


class TestTableSelected:
    def test_no_filters(self):
        assert table_selected("HOA_TABLE", None, None)

    def test_include_uses_search(self):
        assert table_selected("STICKER_TABLE 2", re.compile("STICKER"), None)
        assert not table_selected("Roles", re.compile("STICKER"), None)

    def test_exclude_wins(self):
        assert not table_selected("Archive HOA", re.compile("HOA"), re.compile("^Archive"))


class TestParseCreatedTime:
    def test_zulu(self):
        assert parse_created_time("2024-01-05T08:30:00.000Z") == datetime(
            2024, 1, 5, 8, 30, tzinfo=timezone.utc,
        )

    def test_missing(self):
        assert parse_created_time(None) is None

    def test_garbage(self):
        assert parse_created_time("yesterday") is None


def test_chunked():
    assert list(_chunked(range(5), 2)) == [[0, 1], [2, 3], [4]]


class TestStageRecords:
    def test_chunks_commit_separately(self):
        conn = MagicMock()
        cur = conn.cursor.return_value.__enter__.return_value

        staged = stage_records(
            conn, "appBASE", "HOA_TABLE",
            [_rec("rec1", Block=1), _rec("rec2"), _rec("rec3", Name="Ñoño")],
            table_id="tbl1", chunk_size=2,
        )

        assert staged == 3
        assert cur.executemany.call_count == 2
        assert conn.commit.call_count == 2
        first_rows = cur.executemany.call_args_list[0].args[1]
        assert first_rows[0][:4] == ("appBASE", "tbl1", "HOA_TABLE", "rec1")
        assert json.loads(first_rows[0][5]) == {"Block": 1}
        last_rows = cur.executemany.call_args_list[1].args[1]
        assert "Ñoño" in last_rows[0][5]

    def test_dry_run_rolls_back(self):
        conn = MagicMock()
        stage_records(conn, "appBASE", "HOA_TABLE", [_rec("rec1")], dry_run=True)
        conn.commit.assert_not_called()
        conn.rollback.assert_called_once()

    def test_empty_input_touches_nothing(self):
        conn = MagicMock()
        assert stage_records(conn, "appBASE", "HOA_TABLE", []) == 0
        conn.cursor.assert_not_called()


class TestImportAllFilters:
    def test_filtered_tables_are_reported_not_fetched(self):
        conn = MagicMock()
        client = MagicMock()
        client.list_tables.return_value = [
            {"id": "tbl1", "name": "HOA_TABLE"},
            {"id": "tbl2", "name": "Archive 2019"},
        ]
        client.iter_records.return_value = iter([_rec("rec1")])

        summaries = run_import_all(conn, client, "appBASE", exclude=re.compile("^Archive"))

        assert [s.table_name for s in summaries] == ["HOA_TABLE", "Archive 2019"]
        assert summaries[0].fetched == 1
        assert summaries[1].filtered_out is True
        client.iter_records.assert_called_once_with("appBASE", "HOA_TABLE", view=None)


def test_summary_to_dict_omits_verify_when_not_requested():
    d = TableImportSummary("HOA_TABLE", "tbl1", fetched=3, upserted=3).to_dict()
    assert d == {"tableName": "HOA_TABLE", "tableId": "tbl1", "fetched": 3, "upserted": 3}
