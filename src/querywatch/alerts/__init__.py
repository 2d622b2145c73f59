"""
Alerting for slow queries, N+1 storms and query-heavy requests.
"""

from .channels import AlertChannel, LogChannel, WebhookChannel
from .dispatcher import AlertDispatcher

__all__ = ["AlertChannel", "AlertDispatcher", "LogChannel", "WebhookChannel"]
