"""hoa_etl.fields

Typed access to schema-less Airtable field maps.

Airtable returns each record's fields as a loose JSON object: strings,
numbers, single-select values (a plain string or {"id", "name", "color"}),
and lists of linked-record ids.  FieldValue tags each raw value with its
kind once; RecordFields exposes total accessors on top, so "give me this
field as a date" is a pure function that never raises.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, TypeVar

from hoa_etl.normalize import (
    parse_amount_or_none,
    parse_date_or_none,
    parse_int_or_none,
    trim,
)

T = TypeVar("T")

TEXT = "text"
NUMBER = "number"
SELECT = "select"
LINKS = "links"
ABSENT = "absent"


@dataclass(frozen=True)
class FieldValue:
    kind: str
    value: Any = None

    @classmethod
    def from_raw(cls, raw: Any) -> FieldValue:
        if raw is None:
            return _ABSENT_VALUE
        if isinstance(raw, bool):
            # Checkbox fields; Airtable omits unchecked boxes entirely.
            return cls(TEXT, "true" if raw else "false")
        if isinstance(raw, (int, float)):
            if isinstance(raw, float) and not math.isfinite(raw):
                return _ABSENT_VALUE
            return cls(NUMBER, raw)
        if isinstance(raw, str):
            v = trim(raw)
            return cls(TEXT, v) if v is not None else _ABSENT_VALUE
        if isinstance(raw, Mapping):
            name = trim(raw.get("name"))
            return cls(SELECT, name) if name is not None else _ABSENT_VALUE
        if isinstance(raw, (list, tuple)):
            ids = [item.strip() for item in raw if isinstance(item, str) and item.strip()]
            return cls(LINKS, tuple(ids)) if ids else _ABSENT_VALUE
        return _ABSENT_VALUE

    @property
    def is_absent(self) -> bool:
        return self.kind == ABSENT

    def as_text(self) -> str | None:
        """Render the value the way it reads in the Airtable grid."""
        if self.kind in (TEXT, SELECT):
            return self.value
        if self.kind == NUMBER:
            return render_number(self.value)
        if self.kind == LINKS:
            return ", ".join(self.value)
        return None


_ABSENT_VALUE = FieldValue(ABSENT)


def render_number(value: int | float) -> str:
    """Integral floats lose their trailing '.0' (9171234567.0 → '9171234567')."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class RecordFields:
    """Read-only, total accessors over one record's raw field map."""

    def __init__(self, raw: Mapping[str, Any] | None) -> None:
        self._raw = dict(raw or {})

    def __contains__(self, name: str) -> bool:
        return self.is_present(name)

    def get(self, name: str | None) -> FieldValue:
        if not name:
            return _ABSENT_VALUE
        return FieldValue.from_raw(self._raw.get(name))

    def is_present(self, name: str | None) -> bool:
        return not self.get(name).is_absent

    def text(self, name: str | None) -> str | None:
        return self.get(name).as_text()

    def first_text(self, *names: str | None) -> str | None:
        """First non-empty rendering among several alternative field names."""
        for name in names:
            v = self.text(name)
            if v is not None:
                return v
        return None

    def select_label(self, name: str | None) -> str | None:
        fv = self.get(name)
        if fv.kind in (SELECT, TEXT):
            return fv.value
        return None

    def integer(self, name: str | None) -> int | None:
        fv = self.get(name)
        if fv.kind == NUMBER:
            return parse_int_or_none(fv.value)
        return parse_int_or_none(fv.as_text())

    def amount(self, name: str | None) -> Decimal | None:
        fv = self.get(name)
        if fv.kind == NUMBER:
            return parse_amount_or_none(render_number(fv.value))
        return parse_amount_or_none(fv.as_text())

    def date(self, name: str | None) -> date | None:
        fv = self.get(name)
        if fv.kind in (TEXT, SELECT):
            return parse_date_or_none(fv.value)
        return None

    def links(self, name: str | None) -> tuple[str, ...]:
        fv = self.get(name)
        if fv.kind == LINKS:
            return fv.value
        return ()

    def first_link(self, name: str | None) -> str | None:
        ids = self.links(name)
        return ids[0] if ids else None

    def first_links(self, *names: str | None) -> tuple[str, ...]:
        for name in names:
            ids = self.links(name)
            if ids:
                return ids
        return ()


def first_value(names: Iterable[str], accessor: Callable[[str], T | None]) -> T | None:
    """Apply `accessor` to each alternative field name; first non-None wins.

        first_value(vocab.alternatives("email"), values.text)
    """
    for name in names:
        v = accessor(name)
        if v is not None:
            return v
    return None
