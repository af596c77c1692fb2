"""Sortable identifiers.

An id is ``<prefix>_<16 hex><14 base62>``. The hex block encodes the
millisecond clock times 4096 plus a per-millisecond counter, so ascending
ids sort chronologically and are strictly increasing within a process.
Descending ids invert the hex block so the newest sorts first (used for
sessions, which are listed newest-first).
"""
from __future__ import annotations

import secrets
import string
import time

PREFIXES = {
    "session": "ses",
    "message": "msg",
    "part": "prt",
    "permission": "per",
    "call": "call",
}

_BASE62 = string.digits + string.ascii_uppercase + string.ascii_lowercase
_MASK = (1 << 64) - 1
_RANDOM_LENGTH = 14

_last_value = 0


def _next_value() -> int:
    global _last_value
    value = int(time.time() * 1000) * 0x1000
    if value <= _last_value:
        value = _last_value + 1
    _last_value = value
    return value


def _random_suffix() -> str:
    return "".join(secrets.choice(_BASE62) for _ in range(_RANDOM_LENGTH))


def _create(kind: str, descending: bool) -> str:
    value = _next_value()
    if descending:
        value = ~value & _MASK
    return f"{PREFIXES[kind]}_{value:016x}{_random_suffix()}"


def ascending(kind: str, given: str | None = None) -> str:
    """Return *given* if set (checking its prefix), else a new ascending id."""
    if given:
        _check_prefix(kind, given)
        return given
    return _create(kind, descending=False)


def descending(kind: str, given: str | None = None) -> str:
    if given:
        _check_prefix(kind, given)
        return given
    return _create(kind, descending=True)


def timestamp(identifier: str) -> int:
    """Millisecond creation time encoded in an ascending id."""
    hex_block = identifier.split("_", 1)[1][:16]
    return int(hex_block, 16) // 0x1000


def _check_prefix(kind: str, given: str) -> None:
    prefix = PREFIXES[kind]
    if not given.startswith(prefix + "_"):
        raise ValueError(f"ID {given} does not start with {prefix}")
