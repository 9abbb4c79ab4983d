"""Integration tests for the stickers + vehicles transform stage."""

from __future__ import annotations

from datetime import date

from hoa_etl import identity_map
from hoa_etl.shared import RunCounters
from hoa_etl.transform_homeowners import run_transform_homeowners
from hoa_etl.transform_stickers import run_transform_stickers

BASE_ID = "appTEST0000000001"
TABLE = "STICKER_TABLE 2"


def _migrate_homeowners(conn, stage) -> None:
    stage(conn, "HOA_TABLE", {"recHO1": {"Block": 1, "Lot": 2, "Full Name": "Juan Dela Cruz"}})
    run_transform_homeowners(conn, BASE_ID, RunCounters(), "setup")


def _run(conn, **kwargs) -> RunCounters:
    counters = RunCounters()
    run_transform_stickers(conn, BASE_ID, counters, "test-run", **kwargs)
    return counters


def test_sticker_and_vehicle_created_and_mapped(db_conn, stage):
    conn, _ = db_conn
    _migrate_homeowners(conn, stage)
    stage(conn, TABLE, {
        "recS1": {
            "Sticker No": 1024, "Full Name": ["recHO1"], "Plate No": "ABC 1234",
            "Maker": "Toyota", "Model": "Vios", "Date Issued": "2024-01-10",
            "Amount Pd": 500, "Category": {"name": "Car"},
        },
    })

    counters = _run(conn)

    assert counters.inserted == 1
    assert counters.vehicles_inserted == 1
    sticker = conn.execute(
        "SELECT code, homeowner_id, vehicle_id, issued_at, notes FROM stickers"
    ).fetchone()
    vehicle = conn.execute("SELECT id, plate_no, make, model, homeowner_id FROM vehicles").fetchone()
    assert sticker[0] == "1024"
    assert sticker[1] == vehicle[4]
    assert sticker[2] == vehicle[0]
    assert sticker[3] == date(2024, 1, 10)
    assert sticker[4] == "Amount Pd: 500 | Category: Car"
    assert vehicle[1:4] == ("ABC 1234", "Toyota", "Vios")
    assert identity_map.resolve(conn, BASE_ID, TABLE, "recS1", "stickers") is not None
    assert identity_map.resolve(conn, BASE_ID, TABLE, "recS1", "vehicles") == str(vehicle[0])


def test_unresolved_homeowner_keeps_vehicle_skips_sticker(db_conn, stage):
    conn, _ = db_conn
    stage(conn, TABLE, {"recS1": {"Sticker No": "77", "Full Name": ["recNEVER"], "Plate No": "XYZ 999"}})

    counters = _run(conn)

    assert counters.missing_parent == 1
    assert counters.vehicles_inserted == 1
    assert conn.execute("SELECT COUNT(*) FROM stickers").fetchone()[0] == 0
    row = conn.execute("SELECT plate_no, homeowner_id FROM vehicles").fetchone()
    assert row == ("XYZ 999", None)


def test_vehicle_owner_and_make_never_cleared(db_conn, stage):
    conn, _ = db_conn
    _migrate_homeowners(conn, stage)
    stage(conn, TABLE, {
        "recS1": {"Sticker No": "1", "Full Name": ["recHO1"], "Plate No": "ABC 1234", "Maker": "Toyota"},
    })
    _run(conn)
    stage(conn, TABLE, {"recS2": {"Sticker No": "2", "Full Name": ["recNEVER"], "Plate No": "ABC 1234"}})

    counters = _run(conn)

    assert counters.vehicles_updated == 2
    row = conn.execute("SELECT make, homeowner_id FROM vehicles").fetchone()
    assert row[0] == "Toyota"
    assert str(row[1]) == identity_map.resolve(conn, BASE_ID, "HOA_TABLE", "recHO1", "homeowners")


def test_rerun_converges(db_conn, stage):
    conn, _ = db_conn
    _migrate_homeowners(conn, stage)
    stage(conn, TABLE, {
        "recS1": {"Sticker No": "1", "Full Name": ["recHO1"], "Plate No": "ABC 1234"},
        "recS2": {"Sticker No": "2", "Full Name": ["recHO1"]},
    })
    _run(conn)

    counters = _run(conn)

    assert counters.inserted == 0
    assert counters.updated == 2
    assert conn.execute("SELECT COUNT(*) FROM stickers").fetchone()[0] == 2
    assert conn.execute("SELECT COUNT(*) FROM vehicles").fetchone()[0] == 1


def test_missing_code_is_skipped(db_conn, stage):
    conn, _ = db_conn
    stage(conn, TABLE, {"recS1": {"Plate No": "ABC 1234"}})
    counters = _run(conn)
    assert counters.skipped == 1
    assert conn.execute("SELECT COUNT(*) FROM vehicles").fetchone()[0] == 0
