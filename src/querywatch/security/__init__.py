"""Security helpers for querywatch."""

from .dsns import DSNConfig, parse_dsn
from .redaction import redact_bindings, redact_record

__all__ = ["DSNConfig", "parse_dsn", "redact_bindings", "redact_record"]
