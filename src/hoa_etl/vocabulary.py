"""hoa_etl.vocabulary

Source-field vocabulary: which Airtable column feeds which target field.

The defaults match the HOA base the app was built on.  Another base with
renamed columns can be migrated by passing a YAML field map:

    homeowners:
      full_name: "Owner Name"
      contact_number: ["Mobile", "Phone"]
    stickers:
      code: "Sticker #"

Each value is a field name or a list of alternative names tried in order.
Keys not mentioned keep their defaults.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_FIELD_NAMES: dict[str, dict[str, tuple[str, ...]]] = {
    "homeowners": {
        "full_address":        ("Full Address",),
        "block":               ("Block",),
        "lot":                 ("Lot",),
        "phase":               ("Phase",),
        "street":              ("Street",),
        "status":              ("Status",),
        "first_name":          ("First Name",),
        "last_name":           ("Surname",),
        "middle_initial":      ("M Initial",),
        "full_name":           ("Full Name",),
        "contact_number":      ("Contact Number",),
        "contact_no":          ("Contact No",),
        "email":               ("Email",),
        "facebook_profile":    ("Facebook Profile",),
        "lot_owner":           ("Name of Lot Owner (If Tenant)",),
        "length_of_residency": ("Length of Residency",),
        "date_paid":           ("Date Paid",),
        "amount_paid":         ("Amount Paid",),
    },
    "members": {
        "name":           ("Name",),
        "relationship":   ("Relationship to Homeowner/Tenant",),
        "homeowner_link": ("Member Name",),
    },
    "stickers": {
        "code":           ("Sticker No",),
        "homeowner_link": ("Full Name",),
        "plate_no":       ("Plate No",),
        "make":           ("Maker",),
        "model":          ("Model",),
        "date_issued":    ("Date Issued",),
        "amount_paid":    ("Amount Pd",),
        "released":       ("Sticker Released?",),
        "category":       ("Category",),
    },
    "roles": {
        "email": ("Email", "email", "E-mail"),
        "role":  ("Role",),
    },
}


class VocabularyError(ValueError):
    """Raised when a YAML field map fails validation."""


# ---------------------------------------------------------------------------
# Vocabulary objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntityVocabulary:
    """Field names for one target entity.

    vocab["block"] is the primary Airtable column name;
    vocab.alternatives("email") lists every accepted column in order.
    """

    entity: str
    names: Mapping[str, tuple[str, ...]]

    def __getitem__(self, key: str) -> str:
        return self.names[key][0]

    def alternatives(self, key: str) -> tuple[str, ...]:
        return self.names[key]


@dataclass(frozen=True)
class Vocabulary:
    entities: Mapping[str, EntityVocabulary]
    source_hash: str | None = None
    source_path: str | None = field(default=None, compare=False)

    def for_entity(self, entity: str) -> EntityVocabulary:
        return self.entities[entity]


def _build(names: Mapping[str, Mapping[str, tuple[str, ...]]]) -> dict[str, EntityVocabulary]:
    return {
        entity: EntityVocabulary(entity=entity, names=dict(keys))
        for entity, keys in names.items()
    }


DEFAULT_VOCABULARY = Vocabulary(entities=_build(DEFAULT_FIELD_NAMES))


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_vocabulary(yaml_path: Path) -> Vocabulary:
    """Load a YAML field map and merge it over the defaults.

    Raises:
        VocabularyError: unknown entity/key or a value that is not a
            non-empty string / list of non-empty strings.
        FileNotFoundError: if the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    overrides = validate_vocabulary(data)

    merged: dict[str, dict[str, tuple[str, ...]]] = {
        entity: dict(keys) for entity, keys in DEFAULT_FIELD_NAMES.items()
    }
    for entity, keys in overrides.items():
        merged[entity].update(keys)

    return Vocabulary(
        entities=_build(merged),
        source_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        source_path=str(yaml_path),
    )


def validate_vocabulary(data: Any) -> dict[str, dict[str, tuple[str, ...]]]:
    """Return normalized overrides or raise VocabularyError."""
    if not isinstance(data, dict):
        raise VocabularyError("field map must be a mapping of entity → {key: field name}")

    out: dict[str, dict[str, tuple[str, ...]]] = {}
    for entity, keys in data.items():
        if entity not in DEFAULT_FIELD_NAMES:
            raise VocabularyError(
                f"unknown entity {entity!r}; expected one of {sorted(DEFAULT_FIELD_NAMES)}"
            )
        if not isinstance(keys, dict):
            raise VocabularyError(f"{entity}: expected a mapping of key → field name")
        known = DEFAULT_FIELD_NAMES[entity]
        out[entity] = {}
        for key, value in keys.items():
            if key not in known:
                raise VocabularyError(
                    f"{entity}: unknown key {key!r}; expected one of {sorted(known)}"
                )
            out[entity][key] = _field_names(entity, key, value)
    return out


def _field_names(entity: str, key: str, value: Any) -> tuple[str, ...]:
    if isinstance(value, str) and value.strip():
        return (value.strip(),)
    if isinstance(value, list) and value and all(
        isinstance(v, str) and v.strip() for v in value
    ):
        return tuple(v.strip() for v in value)
    raise VocabularyError(
        f"{entity}.{key}: expected a field name or a non-empty list of field names"
    )
