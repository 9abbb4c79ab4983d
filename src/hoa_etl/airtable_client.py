"""hoa_etl.airtable_client

Airtable REST API client: paginated record listing with rate-limit backoff,
plus the metadata endpoints used to enumerate bases and tables.

Design principles:
  - Lazy: iter_records() yields records page by page; callers that stage
    as they go keep what they already received if a later page fails.
  - Polite: fixed 0.22s pause between pages (Airtable allows 5 req/s per base).
  - Never skips a page: HTTP 429 sleeps for Retry-After (default 2s) and
    re-requests the same page, without a retry cap.
  - Any other non-2xx aborts with AirtableApiError carrying the status,
    table name and verbatim response body.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping
from urllib.parse import quote

import requests

from hoa_etl.config import DEFAULT_AIRTABLE_API_URL, MigrationConfig

log = logging.getLogger(__name__)

PAGE_SIZE = 100
PAGE_DELAY_SECONDS = 0.22
DEFAULT_RETRY_AFTER_SECONDS = 2.0


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class AirtableApiError(Exception):
    """Raised for any non-2xx, non-429 Airtable response."""

    def __init__(self, status: int, table_name: str | None, url: str, body: str) -> None:
        self.status = status
        self.table_name = table_name
        self.url = url
        self.body = body
        target = f"table {table_name!r}" if table_name else "metadata request"
        super().__init__(f"Airtable API error {status} for {target} -> {url}\n{body}")


# ---------------------------------------------------------------------------
# Source record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceRecord:
    table_name: str
    record_id: str
    created_time: str | None
    fields: Mapping[str, Any]

    @classmethod
    def from_api(cls, table_name: str, payload: Mapping[str, Any]) -> SourceRecord:
        return cls(
            table_name=table_name,
            record_id=str(payload["id"]),
            created_time=payload.get("createdTime") or None,
            fields=dict(payload.get("fields") or {}),
        )

    def to_api(self) -> dict[str, Any]:
        return {"id": self.record_id, "createdTime": self.created_time, "fields": dict(self.fields)}


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """Single-thread pacing: fixed inter-page pause plus Retry-After backoff."""

    page_delay: float = PAGE_DELAY_SECONDS
    default_retry_after: float = DEFAULT_RETRY_AFTER_SECONDS
    sleep_fn: Callable[[float], None] = field(default=time.sleep, repr=False)
    rate_limit_hits: int = field(default=0, init=False)

    def pause(self) -> None:
        """Block between two successful page fetches."""
        if self.page_delay > 0:
            self.sleep_fn(self.page_delay)

    def retry_after_seconds(self, header: str | None) -> float:
        try:
            seconds = float(header) if header is not None else None
        except ValueError:
            seconds = None
        if seconds is None or not math.isfinite(seconds) or seconds <= 0:
            return self.default_retry_after
        return seconds

    def backoff(self, header: str | None) -> float:
        """Record a 429 and sleep for the advertised duration.  Returns the delay."""
        delay = self.retry_after_seconds(header)
        self.rate_limit_hits += 1
        log.info("Rate limited by Airtable; retrying in %.2fs", delay)
        self.sleep_fn(delay)
        return delay


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class AirtableClient:
    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_AIRTABLE_API_URL,
        rate_limiter: RateLimiter | None = None,
        session: requests.Session | None = None,
        timeout: int = 30,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.rate_limiter = rate_limiter or RateLimiter()
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "User-Agent": "hoa-etl/1.0 (airtable migration)",
        })

    @classmethod
    def from_config(cls, config: MigrationConfig, **kwargs: Any) -> AirtableClient:
        return cls(config.airtable_api_key or "", api_url=config.airtable_api_url, **kwargs)

    # ------------------------------------------------------------------ #
    # HTTP                                                                 #
    # ------------------------------------------------------------------ #

    def _get_json(
        self,
        url: str,
        params: Mapping[str, Any] | None,
        table_name: str | None,
    ) -> dict[str, Any]:
        while True:
            resp = self._session.get(url, params=params, timeout=self.timeout)
            if resp.status_code == 429:
                self.rate_limiter.backoff(resp.headers.get("retry-after"))
                continue
            if not 200 <= resp.status_code < 300:
                raise AirtableApiError(resp.status_code, table_name, url, resp.text or "")
            return resp.json()

    def table_url(self, base_id: str, table_name: str) -> str:
        return f"{self.api_url}/{quote(base_id, safe='')}/{quote(table_name, safe='')}"

    # ------------------------------------------------------------------ #
    # Records                                                              #
    # ------------------------------------------------------------------ #

    def iter_records(
        self,
        base_id: str,
        table_name: str,
        view: str | None = None,
        fields: list[str] | None = None,
        filter_by_formula: str | None = None,
    ) -> Iterator[SourceRecord]:
        """Yield every record of one table, following the offset cursor."""
        url = self.table_url(base_id, table_name)
        offset: str | None = None
        pages = 0
        fetched = 0

        while True:
            params: dict[str, Any] = {"pageSize": PAGE_SIZE}
            if offset:
                params["offset"] = offset
            if view:
                params["view"] = view
            if fields:
                params["fields[]"] = list(fields)
            if filter_by_formula:
                params["filterByFormula"] = filter_by_formula

            payload = self._get_json(url, params, table_name)
            records = payload.get("records") or []
            pages += 1
            fetched += len(records)
            log.debug("Fetched %d records across %d page(s) from %s", fetched, pages, table_name)
            for raw in records:
                yield SourceRecord.from_api(table_name, raw)

            offset = payload.get("offset")
            if not offset:
                break
            self.rate_limiter.pause()

    def list_records(self, base_id: str, table_name: str, view: str | None = None) -> list[SourceRecord]:
        return list(self.iter_records(base_id, table_name, view=view))

    # ------------------------------------------------------------------ #
    # Metadata                                                             #
    # ------------------------------------------------------------------ #

    def list_bases(self) -> list[dict[str, Any]]:
        url = f"{self.api_url}/meta/bases"
        bases: list[dict[str, Any]] = []
        offset: str | None = None
        while True:
            payload = self._get_json(url, {"offset": offset} if offset else None, None)
            bases.extend(payload.get("bases") or [])
            offset = payload.get("offset")
            if not offset:
                return bases
            self.rate_limiter.pause()

    def list_tables(self, base_id: str) -> list[dict[str, Any]]:
        url = f"{self.api_url}/meta/bases/{quote(base_id, safe='')}/tables"
        payload = self._get_json(url, None, None)
        return list(payload.get("tables") or [])


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def export_table(
    client: AirtableClient,
    base_id: str,
    table_name: str,
    output_path: Path,
    view: str | None = None,
) -> int:
    """Dump one table to a JSON file.  Returns the record count."""
    records = [r.to_api() for r in client.iter_records(base_id, table_name, view=view)]
    payload = {
        "exportedAt": datetime.now(timezone.utc).isoformat(),
        "baseId": base_id,
        "tableName": table_name,
        "count": len(records),
        "records": records,
    }
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return len(records)


def default_export_path(table_name: str) -> Path:
    safe = "".join(c if c.isalnum() or c in "_-" else "_" for c in table_name)
    return Path("./artifacts/exports") / f"{safe}.json"
