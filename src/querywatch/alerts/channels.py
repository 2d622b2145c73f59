"""
Alert channel implementations.
"""

from __future__ import annotations

import json
import logging
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..errors import AlertDeliveryError
from ..records import AlertEvent
from ..utils import get_logger, time_call


class AlertChannel(Protocol):
    def send(self, event: AlertEvent) -> None: ...


class LogChannel:
    """Writes alerts as structured warnings to the host's logging tree."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or get_logger("alerts")

    def send(self, event: AlertEvent) -> None:
        self.logger.warning(
            "[querywatch] %s",
            event.title,
            extra={"alert_kind": event.kind.value, "alert_payload": event.payload},
        )


class WebhookChannel:
    """
    Posts alerts as JSON to a webhook URL (Slack-compatible ``text`` + ``blocks``).

    Every request uses a short timeout; delivery problems raise
    ``AlertDeliveryError`` for the dispatcher to log.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 2.0,
        field_limit: int = 500,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self.field_limit = field_limit
        self._client = client
        self._owns_client = client is None
        self._client_lock = Lock()
        self.logger = get_logger("alerts.webhook")

    @property
    def client(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(timeout=httpx.Timeout(self.timeout_s))
            return self._client

    def send(self, event: AlertEvent) -> None:
        payload = self.build_payload(event)
        try:
            with time_call("webhook.post", self.logger, threshold_ms=self.timeout_s * 1000):
                response = self.client.post(self.url, json=payload, timeout=self.timeout_s)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise AlertDeliveryError(f"Webhook timed out after {self.timeout_s}s") from exc
        except httpx.HTTPError as exc:
            raise AlertDeliveryError(f"Webhook delivery failed: {exc}") from exc

    def build_payload(self, event: AlertEvent) -> Dict[str, Any]:
        return {
            "text": event.title,
            "kind": event.kind.value,
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": event.title}},
                {"type": "section", "fields": self._fields(event.payload)},
            ],
        }

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None and self._owns_client:
                self._client.close()
                self._client = None

    def _fields(self, payload: Dict[str, Any]) -> List[Dict[str, str]]:
        fields = []
        for key, value in payload.items():
            if isinstance(value, (dict, list)):
                value = json.dumps(value, indent=2, default=str)
            fields.append({"type": "mrkdwn", "text": f"*{key}:*\n{self._truncate(str(value))}"})
        return fields

    def _truncate(self, text: str) -> str:
        if len(text) <= self.field_limit:
            return text
        return text[: self.field_limit - 3] + "..."
