"""hoa_etl.cli

hoa-etl command line: one command per pipeline stage.

    hoa-etl stage-table appXXXX --table HOA_TABLE
    hoa-etl import-all appXXXX --exclude '^Archive' --verify
    hoa-etl transform-homeowners appXXXX
    hoa-etl transform-members appXXXX
    hoa-etl transform-stickers appXXXX
    hoa-etl transform-roles appXXXX --create-missing

Secrets come from the environment (see hoa_etl.config).  Every stage
prints a JSON {"summary": {...}} and writes it to <report-dir>/<run_id>.json.
Exit status is 1 on any fatal error; per-record errors are counted in the
summary and do not change the exit status.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import uuid
from pathlib import Path
from typing import Any, Callable, NoReturn, TypeVar

import click
import psycopg
import requests
import yaml

from hoa_etl.airtable_client import (
    AirtableApiError,
    AirtableClient,
    default_export_path,
    export_table as export_airtable_table,
)
from hoa_etl.config import ConfigError, MigrationConfig
from hoa_etl.shared import RunCounters, build_summary, utc_now_iso, write_run_report
from hoa_etl.staging import run_import_all, run_stage_table
from hoa_etl.transform_homeowners import DEFAULT_TABLE as HOMEOWNERS_TABLE
from hoa_etl.transform_homeowners import run_transform_homeowners
from hoa_etl.transform_members import DEFAULT_TABLE as MEMBERS_TABLE
from hoa_etl.transform_members import run_transform_members
from hoa_etl.transform_roles import DEFAULT_TABLE as ROLES_TABLE
from hoa_etl.transform_roles import run_transform_roles
from hoa_etl.transform_stickers import DEFAULT_TABLE as STICKERS_TABLE
from hoa_etl.transform_stickers import run_transform_stickers
from hoa_etl.vocabulary import DEFAULT_VOCABULARY, Vocabulary, VocabularyError, load_vocabulary

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REPORT_DIR = "./artifacts/reports"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

# Errors that end a run: everything else is either per-record (counted)
# or a bug (traceback).
FATAL_ERRORS = (ConfigError, AirtableApiError, requests.RequestException, psycopg.Error)


# ---------------------------------------------------------------------------
# Option helpers
# ---------------------------------------------------------------------------

def _log_level_option(fn: Callable) -> Callable:
    return click.option(
        "--log-level",
        default="INFO",
        show_default=True,
        type=click.Choice(LOG_LEVELS, case_sensitive=False),
    )(fn)


def _run_options(fn: Callable) -> Callable:
    fn = _log_level_option(fn)
    fn = click.option(
        "--report-dir",
        default=DEFAULT_REPORT_DIR,
        show_default=True,
        type=click.Path(file_okay=False, path_type=Path),
    )(fn)
    fn = click.option("--run-id", default=None, help="Override UUID for log correlation")(fn)
    fn = click.option("--dry-run", is_flag=True, default=False, help="Roll back every write")(fn)
    return fn


def _field_map_option(fn: Callable) -> Callable:
    return click.option(
        "--field-map",
        default=None,
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="YAML file overriding the Airtable field names",
    )(fn)


def _compile_regex(ctx: click.Context, param: click.Parameter, value: str | None) -> re.Pattern[str] | None:
    if value is None:
        return None
    try:
        return re.compile(value)
    except re.error as exc:
        raise click.BadParameter(f"invalid regular expression: {exc}") from exc


# ---------------------------------------------------------------------------
# Run helpers
# ---------------------------------------------------------------------------

def _fatal(run_id: str, message: str) -> NoReturn:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _begin(run_id: str | None, log_level: str, command: str, dry_run: bool = False) -> str:
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    click.echo(f"[{run_id}] Starting {command} (dry_run={dry_run})")
    return run_id


def _load_config(run_id: str, **need: bool) -> MigrationConfig:
    try:
        return MigrationConfig.from_env(**need)
    except ConfigError as exc:
        _fatal(run_id, str(exc))


def _load_vocabulary(run_id: str, field_map: Path | None) -> Vocabulary:
    if field_map is None:
        return DEFAULT_VOCABULARY
    try:
        vocabulary = load_vocabulary(field_map)
    except (VocabularyError, yaml.YAMLError, OSError) as exc:
        _fatal(run_id, f"invalid field map {field_map}: {exc}")
    click.echo(f"[{run_id}] Field map {field_map} (sha256={vocabulary.source_hash})")
    return vocabulary


def _with_connection(run_id: str, config: MigrationConfig, fn: Callable[[psycopg.Connection], T]) -> T:
    try:
        conn = config.connect()
    except FATAL_ERRORS as exc:
        _fatal(run_id, f"could not connect to target store: {exc}")
    try:
        return fn(conn)
    except FATAL_ERRORS as exc:
        _fatal(run_id, f"{type(exc).__name__}: {exc}")
    finally:
        conn.close()


def _finish(
    run_id: str,
    command: str,
    started_at: str,
    dry_run: bool,
    params: dict[str, Any],
    counts: dict[str, Any],
    report_dir: Path,
) -> dict[str, Any]:
    summary = build_summary(run_id, command, started_at, dry_run, params, counts)
    click.echo(json.dumps({"summary": summary}, indent=2, default=str))
    report_path = write_run_report(report_dir, run_id, summary)
    click.echo(f"[{run_id}] Run report: {report_path}")
    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
    return summary


def _echo_counters(run_id: str, counters: RunCounters) -> None:
    click.echo(
        f"[{run_id}] read={counters.records_read} inserted={counters.inserted} "
        f"updated={counters.updated} skipped={counters.skipped} "
        f"missing_parent={counters.missing_parent} errors={counters.errors}"
    )
    if counters.errors:
        click.echo(f"[{run_id}] {counters.errors} record(s) failed; see warnings", err=True)


# ---------------------------------------------------------------------------
# Command group
# ---------------------------------------------------------------------------

@click.group()
def main() -> None:
    """HOA Airtable migration pipeline."""


# -- staging ---------------------------------------------------------------

@main.command("stage-table")
@click.argument("base_id")
@click.option("--table", "table_name", required=True, help="Airtable table name")
@click.option("--view", default=None, help="Airtable view to read through")
@click.option("--verify", is_flag=True, default=False, help="Check staged count against fetched count")
@_run_options
def stage_table(
    base_id: str,
    table_name: str,
    view: str | None,
    verify: bool,
    dry_run: bool,
    run_id: str | None,
    report_dir: Path,
    log_level: str,
) -> None:
    """Fetch one Airtable table into airtable_raw_records."""
    run_id = _begin(run_id, log_level, "stage-table", dry_run)
    started_at = utc_now_iso()
    config = _load_config(run_id)
    client = AirtableClient.from_config(config)

    summary = _with_connection(
        run_id, config,
        lambda conn: run_stage_table(
            conn, client, base_id, table_name, view=view, verify=verify, dry_run=dry_run,
        ),
    )
    click.echo(f"[{run_id}] {table_name}: fetched={summary.fetched} upserted={summary.upserted}")
    _finish(
        run_id, "stage-table", started_at, dry_run,
        {"baseId": base_id, "table": table_name, "view": view},
        {**summary.to_dict(), "rateLimitHits": client.rate_limiter.rate_limit_hits},
        report_dir,
    )
    if summary.verified is False:
        _fatal(run_id, f"verify failed for {table_name}")


@main.command("import-all")
@click.argument("base_id")
@click.option("--include", default=None, callback=_compile_regex, help="Only tables matching this regex")
@click.option("--exclude", default=None, callback=_compile_regex, help="Skip tables matching this regex")
@click.option("--verify", is_flag=True, default=False, help="Check staged count against fetched count")
@_run_options
def import_all(
    base_id: str,
    include: re.Pattern[str] | None,
    exclude: re.Pattern[str] | None,
    verify: bool,
    dry_run: bool,
    run_id: str | None,
    report_dir: Path,
    log_level: str,
) -> None:
    """Stage every table of a base."""
    run_id = _begin(run_id, log_level, "import-all", dry_run)
    started_at = utc_now_iso()
    config = _load_config(run_id)
    client = AirtableClient.from_config(config)

    summaries = _with_connection(
        run_id, config,
        lambda conn: run_import_all(
            conn, client, base_id,
            include=include, exclude=exclude, verify=verify, dry_run=dry_run,
        ),
    )
    for s in summaries:
        if s.filtered_out:
            continue
        click.echo(f"[{run_id}] {s.table_name}: fetched={s.fetched} upserted={s.upserted}")

    failed = [s.table_name for s in summaries if s.verified is False]
    _finish(
        run_id, "import-all", started_at, dry_run,
        {
            "baseId": base_id,
            "include": include.pattern if include else None,
            "exclude": exclude.pattern if exclude else None,
            "verify": verify,
        },
        {
            "tables": [s.to_dict() for s in summaries],
            "totalFetched": sum(s.fetched for s in summaries),
            "totalUpserted": sum(s.upserted for s in summaries),
            "verifyFailures": failed,
            "rateLimitHits": client.rate_limiter.rate_limit_hits,
        },
        report_dir,
    )
    if failed:
        _fatal(run_id, f"verify failed for: {', '.join(failed)}")


# -- transforms ------------------------------------------------------------

@main.command("transform-homeowners")
@click.argument("base_id")
@click.option("--table", default=HOMEOWNERS_TABLE, show_default=True)
@click.option("--update-only", is_flag=True, default=False, help="Never insert; skip unmatched records")
@click.option("--names-only", is_flag=True, default=False, help="Only update the name columns")
@_field_map_option
@_run_options
def transform_homeowners(
    base_id: str,
    table: str,
    update_only: bool,
    names_only: bool,
    field_map: Path | None,
    dry_run: bool,
    run_id: str | None,
    report_dir: Path,
    log_level: str,
) -> None:
    """Staged homeowner records → homeowners."""
    run_id = _begin(run_id, log_level, "transform-homeowners", dry_run)
    started_at = utc_now_iso()
    config = _load_config(run_id, need_airtable=False)
    vocabulary = _load_vocabulary(run_id, field_map)
    counters = RunCounters()

    _with_connection(
        run_id, config,
        lambda conn: run_transform_homeowners(
            conn, base_id, counters, run_id,
            table=table, dry_run=dry_run,
            update_only=update_only, names_only=names_only,
            vocabulary=vocabulary,
        ),
    )
    _echo_counters(run_id, counters)
    _finish(
        run_id, "transform-homeowners", started_at, dry_run,
        {
            "baseId": base_id,
            "table": table,
            "updateOnly": update_only,
            "namesOnly": names_only,
            "fieldMap": str(field_map) if field_map else None,
        },
        counters.to_dict(),
        report_dir,
    )


@main.command("transform-members")
@click.argument("base_id")
@click.option("--table", default=MEMBERS_TABLE, show_default=True)
@click.option("--parent-table", default=HOMEOWNERS_TABLE, show_default=True)
@_field_map_option
@_run_options
def transform_members(
    base_id: str,
    table: str,
    parent_table: str,
    field_map: Path | None,
    dry_run: bool,
    run_id: str | None,
    report_dir: Path,
    log_level: str,
) -> None:
    """Staged household-member records → members."""
    run_id = _begin(run_id, log_level, "transform-members", dry_run)
    started_at = utc_now_iso()
    config = _load_config(run_id, need_airtable=False)
    vocabulary = _load_vocabulary(run_id, field_map)
    counters = RunCounters()

    _with_connection(
        run_id, config,
        lambda conn: run_transform_members(
            conn, base_id, counters, run_id,
            table=table, parent_table=parent_table, dry_run=dry_run,
            vocabulary=vocabulary,
        ),
    )
    _echo_counters(run_id, counters)
    _finish(
        run_id, "transform-members", started_at, dry_run,
        {
            "baseId": base_id,
            "table": table,
            "parentTable": parent_table,
            "fieldMap": str(field_map) if field_map else None,
        },
        counters.to_dict(),
        report_dir,
    )


@main.command("transform-stickers")
@click.argument("base_id")
@click.option("--table", default=STICKERS_TABLE, show_default=True)
@click.option("--parent-table", default=HOMEOWNERS_TABLE, show_default=True)
@_field_map_option
@_run_options
def transform_stickers(
    base_id: str,
    table: str,
    parent_table: str,
    field_map: Path | None,
    dry_run: bool,
    run_id: str | None,
    report_dir: Path,
    log_level: str,
) -> None:
    """Staged sticker records → vehicles + stickers."""
    run_id = _begin(run_id, log_level, "transform-stickers", dry_run)
    started_at = utc_now_iso()
    config = _load_config(run_id, need_airtable=False)
    vocabulary = _load_vocabulary(run_id, field_map)
    counters = RunCounters()

    _with_connection(
        run_id, config,
        lambda conn: run_transform_stickers(
            conn, base_id, counters, run_id,
            table=table, parent_table=parent_table, dry_run=dry_run,
            vocabulary=vocabulary,
        ),
    )
    _echo_counters(run_id, counters)
    _finish(
        run_id, "transform-stickers", started_at, dry_run,
        {
            "baseId": base_id,
            "table": table,
            "parentTable": parent_table,
            "fieldMap": str(field_map) if field_map else None,
        },
        counters.to_dict(),
        report_dir,
    )


@main.command("transform-roles")
@click.argument("base_id")
@click.option("--table", default=ROLES_TABLE, show_default=True)
@click.option("--create-missing", is_flag=True, default=False, help="Insert users that do not exist yet")
@_field_map_option
@_run_options
def transform_roles(
    base_id: str,
    table: str,
    create_missing: bool,
    field_map: Path | None,
    dry_run: bool,
    run_id: str | None,
    report_dir: Path,
    log_level: str,
) -> None:
    """Staged role records → users.role."""
    run_id = _begin(run_id, log_level, "transform-roles", dry_run)
    started_at = utc_now_iso()
    config = _load_config(run_id, need_airtable=False)
    vocabulary = _load_vocabulary(run_id, field_map)
    counters = RunCounters()

    _with_connection(
        run_id, config,
        lambda conn: run_transform_roles(
            conn, base_id, counters, run_id,
            table=table, dry_run=dry_run, create_missing=create_missing,
            vocabulary=vocabulary,
        ),
    )
    _echo_counters(run_id, counters)
    _finish(
        run_id, "transform-roles", started_at, dry_run,
        {
            "baseId": base_id,
            "table": table,
            "createMissing": create_missing,
            "fieldMap": str(field_map) if field_map else None,
        },
        counters.to_dict(),
        report_dir,
    )


# -- metadata + export -----------------------------------------------------

def _client_or_exit(run_id: str) -> AirtableClient:
    config = _load_config(run_id, need_database=False)
    return AirtableClient.from_config(config)


@main.command("list-bases")
@_log_level_option
def list_bases(log_level: str) -> None:
    """List the Airtable bases the API key can see."""
    run_id = _begin(None, log_level, "list-bases")
    client = _client_or_exit(run_id)
    try:
        bases = client.list_bases()
    except FATAL_ERRORS as exc:
        _fatal(run_id, str(exc))
    click.echo(json.dumps(
        [{"id": b.get("id"), "name": b.get("name"), "permissionLevel": b.get("permissionLevel")}
         for b in bases],
        indent=2,
    ))


@main.command("list-tables")
@click.argument("base_id")
@_log_level_option
def list_tables(base_id: str, log_level: str) -> None:
    """List the tables (and their fields) of one base."""
    run_id = _begin(None, log_level, "list-tables")
    client = _client_or_exit(run_id)
    try:
        tables = client.list_tables(base_id)
    except FATAL_ERRORS as exc:
        _fatal(run_id, str(exc))
    click.echo(json.dumps(
        [
            {
                "id": t.get("id"),
                "name": t.get("name"),
                "fields": [f.get("name") for f in t.get("fields") or []],
            }
            for t in tables
        ],
        indent=2,
        ensure_ascii=False,
    ))


@main.command("export-table")
@click.argument("base_id")
@click.argument("table_name")
@click.argument("output_path", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.option("--view", default=None)
@_log_level_option
def export_table(
    base_id: str,
    table_name: str,
    output_path: Path | None,
    view: str | None,
    log_level: str,
) -> None:
    """Dump one Airtable table to a JSON file."""
    run_id = _begin(None, log_level, "export-table")
    client = _client_or_exit(run_id)
    output_path = output_path or default_export_path(table_name)
    try:
        count = export_airtable_table(client, base_id, table_name, output_path, view=view)
    except (*FATAL_ERRORS, OSError) as exc:
        _fatal(run_id, str(exc))
    click.echo(f"[{run_id}] Exported {count} record(s) to {output_path}")


if __name__ == "__main__":
    main()
