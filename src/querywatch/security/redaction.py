"""Redaction helpers for persisted bindings and alert payloads."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from ..records import QueryRecord, copy_bindings
from ..sql import format_sql

REDACTED_VALUE = "***"

_SENSITIVE_KEY_TOKENS = (
    "password",
    "passwd",
    "pwd",
    "secret",
    "token",
    "apikey",
    "api_key",
    "access_key",
    "secret_key",
    "private_key",
)

_SENSITIVE_VALUE_TOKENS = (
    "password",
    "passwd",
    "secret",
    "token",
    "bearer",
    "authorization",
)


def _compact(value: str) -> str:
    return "".join(ch for ch in value if ch.isalnum())


def is_sensitive_key(key: str) -> bool:
    normalized = key.lower()
    compact = _compact(normalized)
    return any(token in normalized or _compact(token) in compact for token in _SENSITIVE_KEY_TOKENS)


def is_sensitive_value(value: str) -> bool:
    normalized = value.lower()
    return any(token in normalized for token in _SENSITIVE_VALUE_TOKENS)


def redact_value(value: Any, *, key: str | None = None) -> Any:
    if key is not None and is_sensitive_key(str(key)):
        return REDACTED_VALUE
    if isinstance(value, dict):
        return {k: redact_value(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_value(item) for item in value]
    if isinstance(value, bytes):
        decoded = value.decode("utf-8", errors="ignore")
        return REDACTED_VALUE if decoded and is_sensitive_value(decoded) else value
    if isinstance(value, str) and is_sensitive_value(value):
        return REDACTED_VALUE
    return value


def redact_bindings(bindings: Any) -> Any:
    if isinstance(bindings, Mapping):
        return {key: redact_value(value, key=str(key)) for key, value in bindings.items()}
    return [redact_value(value) for value in bindings or ()]


def redact_record(record: QueryRecord) -> QueryRecord:
    """
    Mask sensitive bindings before a record leaves the process.

    The formatted SQL is rebuilt from the masked bindings so it never carries
    the original values either.
    """

    bindings = redact_bindings(record.bindings)
    if bindings == copy_bindings(record.bindings):
        return record
    return replace(record, bindings=bindings, formatted_sql=format_sql(record.sql, bindings))
