"""Glob-style pattern matching for permission maps.

``*`` matches any run of characters (including newlines), ``?`` matches
one character, everything else is literal, and the whole string must
match.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, TypeVar

T = TypeVar("T")


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern[str]:
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def match(value: str, pattern: str) -> bool:
    return _compile(pattern).match(value) is not None


def resolve(value: str, patterns: dict[str, T]) -> T | None:
    """Value of the most specific pattern matching *value*.

    Patterns are tried shortest first (ties broken alphabetically) and the
    last match wins, so ``"git push *"`` overrides ``"*"``.
    """
    result: Any = None
    for pattern, outcome in sorted(patterns.items(), key=lambda kv: (len(kv[0]), kv[0])):
        if match(value, pattern):
            result = outcome
    return result
