"""
SQL normalization, fingerprinting, similarity and display formatting.
"""

from __future__ import annotations

import datetime as _dt
import hashlib
import re
from decimal import Decimal
from typing import Any, Mapping, Sequence

PLACEHOLDER = "?"
SIMILARITY_PREFIX = 255

_STRING_RE = re.compile(r"'(?:[^'\\]|''|\\.)*'")
_NUMBER_RE = re.compile(r"\b\d+(?:\.\d+)?\b")
_WHITESPACE_RE = re.compile(r"\s+")
_TABLE_RE = re.compile(r"\bFROM\s+(?:`([\w.]+)`|\"([\w.]+)\"|([\w.]+))", re.IGNORECASE)
_PLACEHOLDER_RE = re.compile(
    r"""
    (?P<string>'(?:[^'\\]|''|\\.)*')
    | (?P<pyformat>%\((?P<pyname>\w+)\)s)
    | (?P<format>%s)
    | (?P<qmark>\?)
    | (?<!:)(?P<named>:(?P<name>[A-Za-z_]\w*))
    """,
    re.VERBOSE,
)


def normalize(sql: str) -> str:
    """
    Replace string and numeric literals with ``?`` and collapse whitespace.

    ``normalize(normalize(sql)) == normalize(sql)`` for every input.
    """

    normalized = _STRING_RE.sub(PLACEHOLDER, sql)
    normalized = _NUMBER_RE.sub(PLACEHOLDER, normalized)
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    return normalized.strip()


def query_hash(sql: str) -> str:
    return hashlib.blake2b(normalize(sql).encode("utf-8"), digest_size=16).hexdigest()


def levenshtein(left: str, right: str) -> int:
    if left == right:
        return 0
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(left_sql: str, right_sql: str) -> float:
    """
    Percentage similarity (0-100) of the normalized forms.

    Distance is computed on a bounded prefix so very long statements stay cheap.
    """

    left = normalize(left_sql)
    right = normalize(right_sql)
    if left == right:
        return 100.0
    max_len = max(len(left), len(right))
    if max_len == 0:
        return 100.0
    distance = levenshtein(left[:SIMILARITY_PREFIX], right[:SIMILARITY_PREFIX])
    score = (1 - distance / min(max_len, SIMILARITY_PREFIX)) * 100
    return max(0.0, min(100.0, score))


def extract_table(sql: str) -> str | None:
    match = _TABLE_RE.search(sql)
    if not match:
        return None
    return next(group for group in match.groups() if group)


def is_plan_query(sql: str) -> bool:
    return sql.lstrip().upper().startswith("EXPLAIN")


def quote_value(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"X'{bytes(value).hex()}'"
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return f"'{value.isoformat()}'"
    text = str(value).replace("\\", "\\\\").replace("'", "''")
    return f"'{text}'"


def format_sql(sql: str, bindings: Sequence[Any] | Mapping[str, Any] | None) -> str:
    """
    Inline ``bindings`` into ``sql`` for human display.

    The output is meant for logs and reports only and must never be executed.
    Placeholders inside quoted literals are left alone; surplus placeholders
    are kept as-is.
    """

    if not bindings:
        return sql

    positional = list(bindings) if not isinstance(bindings, Mapping) else []
    named = bindings if isinstance(bindings, Mapping) else {}
    position = 0

    def substitute(match: re.Match[str]) -> str:
        nonlocal position
        if match.group("string"):
            return match.group(0)
        if match.group("pyformat") or match.group("named"):
            key = match.group("pyname") or match.group("name")
            if key in named:
                return quote_value(named[key])
            return match.group(0)
        if position < len(positional):
            value = positional[position]
            position += 1
            return quote_value(value)
        return match.group(0)

    return _PLACEHOLDER_RE.sub(substitute, sql)
