"""Normalization functions for Airtable HOA records.

All functions accept loosely-typed input (usually str | None) and return
the normalized value or None.  None of them raise on bad input.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import dateutil.parser

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_US_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$")
_LEADING_INT_RE = re.compile(r"^-?\d+")
_NA_LIKE = frozenset({"na", "n/a", "n.a.", "-", "none"})
_SUFFIX_RE = re.compile(r"^(jr\.?|sr\.?|ii|iii|iv|v|2nd|3rd|4th|5th)$", re.IGNORECASE)
_INITIAL_RE = re.compile(r"^[A-Za-z]\.?$")

# Tokens that begin a compound surname ("Dela Cruz", "De los Santos", "Van Dyke").
SURNAME_PARTICLES = frozenset({
    "da", "dal", "de", "dei", "del", "dela", "della", "delos", "der", "des",
    "di", "dos", "du", "la", "le", "los", "san", "santa", "sta", "sto",
    "van", "von",
})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Stringify and strip leading/trailing whitespace; treat empty as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: NA-like placeholders
# ---------------------------------------------------------------------------

def is_na_like(value: Any) -> bool:
    """True for placeholder strings such as 'N/A', 'na', '-' or 'none'."""
    v = trim(value)
    if v is None:
        return False
    return v.lower() in _NA_LIKE


def sanitize_street(value: Any) -> str | None:
    """Trimmed street name, or None when blank or an NA-like placeholder."""
    v = trim(value)
    if v is None or is_na_like(v):
        return None
    return v


# ---------------------------------------------------------------------------
# Rule 4: lenient numbers
# ---------------------------------------------------------------------------

def parse_int_or_none(value: Any) -> int | None:
    """Strip everything except digits and '-', then parse the leading integer.

    '10-15 yrs' → 10, '5-' → 5, '-' → None.  Failure → None, never 0.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    m = _LEADING_INT_RE.match(re.sub(r"[^0-9-]", "", str(value)))
    return int(m.group(0)) if m else None


def parse_amount_or_none(value: Any) -> Decimal | None:
    """Parse a money amount, ignoring thousands separators.  Failure → None."""
    if value is None or isinstance(value, bool):
        return None
    v = trim(str(value).replace(",", ""))
    if v is None:
        return None
    try:
        amount = Decimal(v)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


# ---------------------------------------------------------------------------
# Rule 5: dates
# ---------------------------------------------------------------------------

def parse_date_or_none(value: Any) -> date | None:
    """Parse a loosely formatted date.  Total: never raises.

    Accepts, in order:
    - ISO 'YYYY-MM-DD…' (anything after the date part is ignored)
    - 'MM/DD/YYYY' or 'MM/DD/YY' (two-digit years are 20YY)
    - anything python-dateutil can parse
    Returns None when nothing matches or the date is impossible.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    v = trim(value)
    if v is None:
        return None

    m = _ISO_DATE_RE.match(v)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = _US_DATE_RE.match(v)
    if m:
        year = m.group(3)
        if len(year) == 2:
            year = f"20{year}"
        return _safe_date(int(year), int(m.group(1)), int(m.group(2)))

    try:
        return dateutil.parser.parse(v).date()
    except (ValueError, OverflowError):
        return None


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def years_before(today: date, years: int) -> date | None:
    """Return `today` shifted back by `years` (Feb 29 → Feb 28)."""
    if years < 0:
        return None
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        try:
            return today.replace(year=today.year - years, day=28)
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Rule 6: address composition
# ---------------------------------------------------------------------------

def build_address(
    full_address: Any,
    block: Any,
    lot: Any,
    phase: Any,
    street: Any,
) -> str | None:
    """Return the normalized property address used as the homeowner natural key.

    An explicit pre-composed address wins.  Otherwise 'Block b, Lot l,
    Phase p, Street' is assembled from the parts that are present.
    """
    explicit = normalize_space(full_address)
    if explicit:
        return explicit
    parts: list[str] = []
    b, lt, p = trim(block), trim(lot), trim(phase)
    if b:
        parts.append(f"Block {b}")
    if lt:
        parts.append(f"Lot {lt}")
    if p:
        parts.append(f"Phase {p}")
    s = sanitize_street(street)
    if s:
        parts.append(normalize_space(s))
    return ", ".join(parts) or None


# ---------------------------------------------------------------------------
# Rule 7: names
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NameParts:
    first_name: str | None = None
    last_name: str | None = None
    middle_initial: str | None = None
    suffix: str | None = None


def _take_suffix(tokens: list[str]) -> tuple[str | None, list[str]]:
    if len(tokens) > 1 and _SUFFIX_RE.match(tokens[-1]):
        return tokens[-1].rstrip("."), tokens[:-1]
    return None, tokens


def _take_initial(tokens: list[str]) -> tuple[str | None, list[str]]:
    """Pop a trailing single-letter token ('M' or 'M.') as the middle initial."""
    if len(tokens) > 1 and _INITIAL_RE.match(tokens[-1]):
        return tokens[-1][0], tokens[:-1]
    return None, tokens


def _name_tokens(value: str) -> list[str]:
    """Whitespace tokens that contain at least one letter."""
    return [t for t in value.split() if any(c.isalpha() for c in t)]


def middle_initial(value: Any) -> str | None:
    """Truncate a middle name / initial to its first character."""
    v = trim(value)
    return v[0] if v else None


def parse_full_name(full_name: Any) -> NameParts:
    """Split a single full-name string.

    Supports:
    - "Last, First M"     → last="Last", first="First", middle_initial="M"
    - "First M Last"      → first="First", middle_initial="M", last="Last"
    - "First Dela Cruz"   → surname particles start the last name
    - "First Second Last" → first="First Second", last="Last"
    - single token        → first only
    Generational suffixes (Jr, Sr, III, …) are split off in both forms.
    """
    v = normalize_space(full_name)
    if not v:
        return NameParts()

    if "," in v:
        head, _, rest = v.partition(",")
        last = " ".join(_name_tokens(head)) or None
        tokens = _name_tokens(rest)
        suffix, tokens = _take_suffix(tokens)
        mi, tokens = _take_initial(tokens)
        first = " ".join(tokens) or None
        return NameParts(first_name=first, last_name=last, middle_initial=mi, suffix=suffix)

    tokens = _name_tokens(v)
    if not tokens:
        return NameParts()
    suffix, tokens = _take_suffix(tokens)
    if len(tokens) == 1:
        return NameParts(first_name=tokens[0], suffix=suffix)

    # Last name starts at the first surname particle after the first token,
    # otherwise it is the final token.
    last_start = len(tokens) - 1
    for idx in range(1, len(tokens) - 1):
        if tokens[idx].lower() in SURNAME_PARTICLES:
            last_start = idx
            break
    last = " ".join(tokens[last_start:])
    given = tokens[:last_start]
    mi, given = _take_initial(given)
    return NameParts(
        first_name=" ".join(given) or None,
        last_name=last or None,
        middle_initial=mi,
        suffix=suffix,
    )


def resolve_name(
    first: Any,
    last: Any,
    middle: Any,
    full: Any,
) -> tuple[NameParts, str | None]:
    """Return (name parts, display full name) from discrete or full-name fields.

    Discrete first/last/middle fields win when any of them is present; the
    full-name field is then only consulted for a suffix.
    """
    direct_first = normalize_space(first)
    direct_last = normalize_space(last)
    direct_mi = middle_initial(middle)
    full_raw = normalize_space(full)

    if direct_first or direct_last or direct_mi:
        suffix = parse_full_name(full_raw).suffix if full_raw else None
        display = full_raw or " ".join(p for p in (direct_first, direct_last) if p) or None
        return (
            NameParts(
                first_name=direct_first,
                last_name=direct_last,
                middle_initial=direct_mi,
                suffix=suffix,
            ),
            display,
        )

    parsed = parse_full_name(full_raw)
    if parsed.first_name is None and parsed.last_name is None:
        return NameParts(), None
    return parsed, full_raw


# ---------------------------------------------------------------------------
# Rule 8: labels
# ---------------------------------------------------------------------------

def label_equals(label: str | None, expected: str) -> bool | None:
    """Tri-state case-insensitive label comparison: absent label → None."""
    v = trim(label)
    if v is None:
        return None
    return v.lower() == expected.lower()


def normalize_email(value: Any) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()
