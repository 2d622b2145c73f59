"""
Error hierarchy for querywatch.
"""

from __future__ import annotations


class QueryWatchError(RuntimeError):
    """Base error for all querywatch failures."""


class ConfigurationError(QueryWatchError):
    """Raised at startup when options are missing or invalid."""


class StorageError(QueryWatchError):
    """Raised when the log store cannot read or write a log file."""


class AlertDeliveryError(QueryWatchError):
    """Raised by a channel when an alert could not be delivered."""


class PlanError(QueryWatchError):
    """Raised when an execution plan cannot be produced."""


class AdapterError(QueryWatchError):
    """Base error for adapter-related failures."""


class AdapterConfigurationError(AdapterError):
    """Raised when configuration or required drivers are invalid."""


class AdapterConnectionError(AdapterError):
    """Raised when establishing or using a connection fails."""


class AdapterExecutionError(AdapterError):
    """Raised when SQL execution or parameter validation fails."""
