"""Integration tests for the members transform stage."""

from __future__ import annotations

from hoa_etl import identity_map
from hoa_etl.shared import RunCounters
from hoa_etl.transform_homeowners import run_transform_homeowners
from hoa_etl.transform_members import run_transform_members

BASE_ID = "appTEST0000000001"


def _migrate_homeowners(conn, stage) -> None:
    stage(conn, "HOA_TABLE", {
        "recHO1": {"Block": 1, "Lot": 2, "Full Name": "Juan Dela Cruz"},
        "recHO2": {"Block": 3, "Lot": 4, "Full Name": "Ana Reyes"},
    })
    run_transform_homeowners(conn, BASE_ID, RunCounters(), "setup")


def _run(conn, **kwargs) -> RunCounters:
    counters = RunCounters()
    run_transform_members(conn, BASE_ID, counters, "test-run", **kwargs)
    return counters


def test_members_link_to_migrated_homeowner(db_conn, stage):
    conn, _ = db_conn
    _migrate_homeowners(conn, stage)
    stage(conn, "Household Members", {
        "recM1": {"Name": "Maria Dela Cruz", "Relationship to Homeowner/Tenant": "Spouse", "Member Name": ["recHO1"]},
        "recM2": {"Name": "Jose Reyes", "Member Name": ["recHO2"]},
    })

    counters = _run(conn)

    assert counters.inserted == 2
    assert counters.mapped == 2
    ho1 = identity_map.resolve(conn, BASE_ID, "HOA_TABLE", "recHO1", "homeowners")
    row = conn.execute(
        "SELECT homeowner_id, relation, is_active FROM members WHERE full_name = %s",
        ("Maria Dela Cruz",),
    ).fetchone()
    assert str(row[0]) == ho1
    assert row[1] == "Spouse"
    assert row[2] is True


def test_missing_parent_writes_nothing(db_conn, stage):
    conn, _ = db_conn
    _migrate_homeowners(conn, stage)
    stage(conn, "Household Members", {
        "recM1": {"Name": "Orphan", "Member Name": ["recNEVER"]},
        "recM2": {"Name": "No Link"},
    })

    counters = _run(conn)

    assert counters.missing_parent == 2
    assert counters.errors == 0
    assert conn.execute("SELECT COUNT(*) FROM members").fetchone()[0] == 0


def test_rerun_updates_relation_and_maps_updates(db_conn, stage):
    conn, _ = db_conn
    _migrate_homeowners(conn, stage)
    stage(conn, "Household Members", {
        "recM1": {"Name": "Maria", "Relationship to Homeowner/Tenant": "Spouse", "Member Name": ["recHO1"]},
    })
    _run(conn)
    stage(conn, "Household Members", {
        "recM1": {"Name": "Maria", "Relationship to Homeowner/Tenant": "Wife", "Member Name": ["recHO1"]},
        "recM2": {"Name": "Maria", "Member Name": ["recHO1"]},
    })

    counters = _run(conn)

    assert counters.updated == 2
    assert conn.execute("SELECT COUNT(*) FROM members").fetchone()[0] == 1
    # both source records point at the one member row
    assert identity_map.count_mappings(conn, BASE_ID, "Household Members") == 2


def test_missing_name_is_skipped(db_conn, stage):
    conn, _ = db_conn
    _migrate_homeowners(conn, stage)
    stage(conn, "Household Members", {"recM1": {"Member Name": ["recHO1"]}})
    counters = _run(conn)
    assert counters.skipped == 1


def test_multi_parent_follows_first_link(db_conn, stage):
    conn, _ = db_conn
    _migrate_homeowners(conn, stage)
    stage(conn, "Household Members", {"recM1": {"Name": "Lito", "Member Name": ["recHO2", "recHO1"]}})

    counters = _run(conn)

    assert counters.multi_parent_links == 1
    ho2 = identity_map.resolve(conn, BASE_ID, "HOA_TABLE", "recHO2", "homeowners")
    assert str(conn.execute("SELECT homeowner_id FROM members").fetchone()[0]) == ho2
