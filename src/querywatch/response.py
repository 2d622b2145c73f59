"""
Framework-agnostic helpers for attaching a request summary to a response.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, MutableMapping

from .config import WatchConfig

QUERY_COUNT_HEADER = "X-Query-Count"
QUERY_TIME_HEADER = "X-Query-Time-Ms"
OPT_IN_HEADER = "X-Query-Debug"

_COUNTS_ONLY_KEYS = (
    "total_queries",
    "total_time_ms",
    "slow_queries_count",
    "n_plus_one_count",
    "slow_queries",
    "n_plus_one_patterns",
)


def should_inject(config: WatchConfig, request_headers: Mapping[str, str] | None = None) -> bool:
    """
    Injection needs instrumentation enabled and either ``response.inject`` or
    an ``X-Query-Debug: true`` request header.
    """

    if not config.enabled:
        return False
    if config.response.inject:
        return True
    for name, value in (request_headers or {}).items():
        if name.lower() == OPT_IN_HEADER.lower():
            return str(value).strip().lower() == "true"
    return False


def debug_payload(summary: Mapping[str, Any], config: WatchConfig) -> Dict[str, Any]:
    if config.response.include_full_queries:
        return dict(summary)
    return {key: summary.get(key) for key in _COUNTS_ONLY_KEYS}


def inject_summary(
    payload: MutableMapping[str, Any],
    headers: MutableMapping[str, str],
    summary: Mapping[str, Any],
    config: WatchConfig,
) -> MutableMapping[str, Any]:
    """
    Attach ``summary`` under ``config.response.key`` and set the query count
    and time headers. ``payload`` and ``headers`` are modified in place.
    """

    payload[config.response.key] = debug_payload(summary, config)
    headers[QUERY_COUNT_HEADER] = str(summary.get("total_queries", 0))
    headers[QUERY_TIME_HEADER] = str(summary.get("total_time_ms", 0.0))
    return payload
