"""
Alert dispatcher fanning alert events out to configured channels.
"""

from __future__ import annotations

import logging
from threading import RLock
from typing import Dict, Optional

from ..config import AlertConfig
from ..records import AlertEvent, AlertKind, NPlusOnePattern, QueryRecord
from ..security.redaction import redact_record
from ..utils import get_logger
from .channels import AlertChannel, LogChannel, WebhookChannel


class AlertDispatcher:
    """
    Evaluates alert conditions and delivers ``AlertEvent`` objects.

    Delivery never raises: channel failures are logged and the caller
    continues. Unknown channel names in the configuration are ignored.
    """

    def __init__(
        self,
        config: AlertConfig | None = None,
        *,
        channels: Optional[Dict[str, AlertChannel]] = None,
        redact: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or AlertConfig()
        self.redact = redact
        self.logger = logger or get_logger("alerts")
        self._lock = RLock()
        self._channels: Dict[str, AlertChannel] = self._default_channels()
        self._channels.update(channels or {})

    def register_channel(self, name: str, channel: AlertChannel) -> None:
        with self._lock:
            self._channels[name] = channel

    def channel(self, name: str) -> Optional[AlertChannel]:
        with self._lock:
            return self._channels.get(name)

    # ------------------------------------------------------------------ #
    def alert_slow_query(self, record: QueryRecord) -> None:
        if not (self.config.enabled and self.config.conditions.slow_query):
            return
        if self.redact:
            record = redact_record(record)
        self.send(
            AlertEvent(
                title="Slow Query Detected",
                kind=AlertKind.SLOW_QUERY,
                payload={
                    "type": AlertKind.SLOW_QUERY.value,
                    "sql": record.sql,
                    "formatted_sql": record.formatted_sql,
                    "time_ms": record.time_ms,
                    "route": record.route,
                    "connection": record.connection,
                    "source": record.source,
                    "backtrace": [frame.to_dict() for frame in record.backtrace],
                    "plan": record.plan,
                },
            )
        )

    def alert_n_plus_one(self, pattern: NPlusOnePattern) -> None:
        if not (self.config.enabled and self.config.conditions.n_plus_one):
            return
        self.send(
            AlertEvent(
                title="N+1 Query Detected",
                kind=AlertKind.N_PLUS_ONE,
                payload={"type": AlertKind.N_PLUS_ONE.value, **pattern.to_dict()},
            )
        )

    def alert_high_query_count(self, count: int, route: str) -> None:
        threshold = self.config.conditions.query_count_threshold
        if not self.config.enabled or threshold <= 0 or count < threshold:
            return
        self.send(
            AlertEvent(
                title="High Query Count",
                kind=AlertKind.HIGH_QUERY_COUNT,
                payload={
                    "type": AlertKind.HIGH_QUERY_COUNT.value,
                    "count": count,
                    "threshold": threshold,
                    "route": route,
                    "message": f"Request generated {count} queries (threshold: {threshold})",
                },
            )
        )

    # ------------------------------------------------------------------ #
    def send(self, event: AlertEvent) -> None:
        for name in self.config.channels:
            channel = self.channel(name)
            if channel is None:
                self.logger.debug("Ignoring unknown alert channel '%s'", name)
                continue
            try:
                channel.send(event)
            except Exception as exc:
                self.logger.error(
                    "[querywatch] Failed to send %s alert via %s: %s",
                    event.kind.value,
                    name,
                    exc,
                    extra={"alert_kind": event.kind.value, "alert_payload": event.payload},
                )

    def close(self) -> None:
        with self._lock:
            for channel in self._channels.values():
                close = getattr(channel, "close", None)
                if callable(close):
                    close()

    def _default_channels(self) -> Dict[str, AlertChannel]:
        channels: Dict[str, AlertChannel] = {"log": LogChannel(self.logger)}
        if self.config.webhook_url:
            channels["webhook"] = WebhookChannel(
                self.config.webhook_url,
                timeout_s=self.config.webhook_timeout_s,
                field_limit=self.config.field_limit,
            )
        return channels
