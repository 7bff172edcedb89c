"""Normalization and hashing helpers shared by converters and stores.

All parse functions accept loosely-typed input and return the appropriate
type or None.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


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
# Rule 2: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: Any) -> int | None:
    """Return value as an int, or None when it is not an integral number.

    Booleans are rejected even though they subclass int.  Floats are
    accepted only when they carry no fractional part (JSON encoders in some
    sources emit 12.0 for 12).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        v = trim(value)
        if v is None:
            return None
        try:
            return int(v)
        except ValueError:
            return None
    return None


# ---------------------------------------------------------------------------
# Rule 3: parse_ts_ms
# ---------------------------------------------------------------------------

def parse_ts_ms(value: str | None) -> int | None:
    """Parse '%Y-%m-%d %H:%M:%S' as UTC and return epoch milliseconds."""
    v = trim(value) if isinstance(value, str) else None
    if v is None:
        return None
    try:
        ts = datetime.strptime(v, _TS_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return int(ts.timestamp() * 1000)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Stable hashing
# ---------------------------------------------------------------------------

def canonical_json(value: Any) -> str:
    """Deterministic JSON text: sorted keys, no insignificant whitespace.

    Tuples serialise as arrays, so a value and its JSON round-trip hash the
    same way.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def stable_hash(*parts: Any) -> str:
    """Return the SHA-256 hex digest of the canonical JSON of parts."""
    return hashlib.sha256(canonical_json(list(parts)).encode("utf-8")).hexdigest()
