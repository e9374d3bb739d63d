"""user_sync.sync_config

Run configuration for the user reconciliation engine.

Responsibilities:
  - Define the canonical fields (FieldSpec) and their header synonyms
  - Provide the built-in defaults used when no config file is given
  - Load and validate an optional YAML config file (config/user_sync.yml)
  - Hash YAML content for traceability in the run report

Usage:
    from pathlib import Path
    from user_sync.sync_config import load_sync_config

    config = load_sync_config(Path("config/user_sync.yml"))
    config = config.with_overrides(chunk_size=500)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CANONICAL_FIELDS = ("external_id", "email", "first_name", "last_name", "cart_number")

# Fields backed by NOT NULL columns in the users table.
NOT_NULL_FIELDS = ("external_id", "cart_number")

DEFAULT_CHUNK_SIZE = 10_000

# Key for pg_try_advisory_lock; shared by every process syncing the same store.
DEFAULT_LOCK_KEY = 727001

REQUIRED_YAML_KEYS = frozenset({"version", "fields"})
OPTIONAL_YAML_KEYS = frozenset({"chunk_size", "lock_key", "work_dir"})
REQUIRED_FIELD_KEYS = frozenset({"name", "synonyms"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigValidationError(ValueError):
    """Raised when a YAML config file fails schema validation."""


# ---------------------------------------------------------------------------
# FieldSpec / SyncConfig
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldSpec:
    """One canonical user field and the CSV headers that map onto it."""

    name: str
    synonyms: tuple[str, ...]
    mandatory: bool = False


DEFAULT_FIELD_SPECS: tuple[FieldSpec, ...] = (
    FieldSpec("external_id", ("id",), mandatory=True),
    FieldSpec("email", ("user email", "email")),
    FieldSpec("first_name", ("first name", "name")),
    FieldSpec("last_name", ("last name", "surname")),
    FieldSpec("cart_number", ("card number", "card"), mandatory=True),
)


@dataclass(frozen=True)
class SyncConfig:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    field_specs: tuple[FieldSpec, ...] = DEFAULT_FIELD_SPECS
    lock_key: int = DEFAULT_LOCK_KEY
    work_dir: Path | None = None
    source_path: Path | None = None
    yaml_hash: str | None = None
    raw_yaml: str = field(repr=False, default="")

    @property
    def synonym_table(self) -> dict[str, tuple[str, ...]]:
        return {spec.name: spec.synonyms for spec in self.field_specs}

    @property
    def mandatory_fields(self) -> list[str]:
        return [spec.name for spec in self.field_specs if spec.mandatory]

    def with_overrides(self, **overrides: Any) -> "SyncConfig":
        """Return a copy with every non-None override applied (CLI flags win)."""
        values = {k: v for k, v in overrides.items() if v is not None}
        if "chunk_size" in values:
            _check_chunk_size(values["chunk_size"])
        return replace(self, **values)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_sync_config(yaml_path: Path) -> SyncConfig:
    """Load, validate, and return a SyncConfig from a YAML file.

    Args:
        yaml_path: Absolute or relative path to the YAML config file.

    Returns:
        A validated SyncConfig instance.

    Raises:
        ConfigValidationError: If any required key is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    validate_sync_config(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    work_dir = data.get("work_dir")
    return SyncConfig(
        chunk_size=int(data.get("chunk_size", DEFAULT_CHUNK_SIZE)),
        field_specs=tuple(
            FieldSpec(
                name=f["name"],
                synonyms=tuple(str(s).strip().lower() for s in f["synonyms"]),
                mandatory=bool(f.get("mandatory", False)),
            )
            for f in data["fields"]
        ),
        lock_key=int(data.get("lock_key", DEFAULT_LOCK_KEY)),
        work_dir=Path(work_dir) if work_dir else None,
        source_path=yaml_path,
        yaml_hash=yaml_hash,
        raw_yaml=raw,
    )


def validate_sync_config(data: Any) -> None:
    """Raise ConfigValidationError if data does not match required schema.

    Validates:
      - Top-level mapping with required keys and no unknown keys
      - chunk_size is a positive integer
      - Every field has a canonical name, a non-empty synonym list and
        appears once
      - A synonym is not claimed by two fields
      - external_id and cart_number are configured and mandatory
    """
    if not isinstance(data, dict):
        raise ConfigValidationError("config root must be a mapping")

    missing = REQUIRED_YAML_KEYS - data.keys()
    if missing:
        raise ConfigValidationError(f"Missing required keys: {sorted(missing)}")
    unknown = data.keys() - REQUIRED_YAML_KEYS - OPTIONAL_YAML_KEYS
    if unknown:
        raise ConfigValidationError(f"Unknown keys: {sorted(unknown)}")

    if "chunk_size" in data:
        _check_chunk_size(data["chunk_size"])
    if "lock_key" in data and (
        isinstance(data["lock_key"], bool) or not isinstance(data["lock_key"], int)
    ):
        raise ConfigValidationError(f"lock_key must be an integer, got {data['lock_key']!r}")

    fields = data["fields"]
    if not isinstance(fields, list) or not fields:
        raise ConfigValidationError("fields must be a non-empty list")

    seen_names: set[str] = set()
    seen_synonyms: dict[str, str] = {}
    for entry in fields:
        if not isinstance(entry, dict):
            raise ConfigValidationError(f"field entry must be a mapping, got {entry!r}")
        missing_keys = REQUIRED_FIELD_KEYS - entry.keys()
        if missing_keys:
            raise ConfigValidationError(
                f"field {entry.get('name')!r} missing keys: {sorted(missing_keys)}"
            )
        name = entry["name"]
        if name not in CANONICAL_FIELDS:
            raise ConfigValidationError(
                f"Unknown field {name!r}; must be one of {list(CANONICAL_FIELDS)}"
            )
        if name in seen_names:
            raise ConfigValidationError(f"field {name!r} configured twice")
        seen_names.add(name)

        synonyms = entry["synonyms"]
        if not isinstance(synonyms, list) or not synonyms:
            raise ConfigValidationError(f"field {name!r} needs a non-empty synonyms list")
        for syn in synonyms:
            key = str(syn).strip().lower()
            if not key:
                raise ConfigValidationError(f"field {name!r} has an empty synonym")
            if key in seen_synonyms and seen_synonyms[key] != name:
                raise ConfigValidationError(
                    f"synonym {key!r} claimed by both {seen_synonyms[key]!r} and {name!r}"
                )
            seen_synonyms[key] = name

    by_name = {f["name"]: f for f in fields}
    for name in NOT_NULL_FIELDS:
        if name not in by_name:
            raise ConfigValidationError(f"{name} field must be configured")
        if not by_name[name].get("mandatory", False):
            raise ConfigValidationError(f"{name} field must be mandatory")


def _check_chunk_size(value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigValidationError(f"chunk_size must be a positive integer, got {value!r}")
