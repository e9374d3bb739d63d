"""Normalization functions for user file ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re

_INT_RE = re.compile(r"^[+-]?\d+$")

# external_id is stored as BIGINT
_BIGINT_MIN = -(2 ** 63)
_BIGINT_MAX = 2 ** 63 - 1


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_header
# ---------------------------------------------------------------------------

def normalize_header(value: str | None) -> str | None:
    """Lower-case a raw CSV header for synonym lookup.

    Leading BOM characters (left behind when a file is not read as
    ``utf-8-sig``) and surrounding whitespace are dropped; internal
    whitespace is collapsed so ``"First   Name"`` matches ``"first name"``.
    """
    if value is None:
        return None
    v = normalize_space(value.lstrip("\ufeff"))
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: parse_external_id
# ---------------------------------------------------------------------------

def parse_external_id(value: str | None) -> int | None:
    """Parse an external identifier; return None when it is not a plain integer.

    Accepts an optional sign and digits only. Values such as ``"12.0"``,
    ``"1e3"`` or ``"abc"`` are not silently coerced, and values outside the
    BIGINT range are refused.
    """
    v = trim(value)
    if v is None or not _INT_RE.match(v):
        return None
    n = int(v)
    if n < _BIGINT_MIN or n > _BIGINT_MAX:
        return None
    return n
