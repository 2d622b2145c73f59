"""
Utility helpers shared across querywatch packages.
"""

from .logging import bind_request_id, configure_logging, get_logger, get_request_id, time_call, unbind_request_id

__all__ = [
    "bind_request_id",
    "configure_logging",
    "get_logger",
    "get_request_id",
    "time_call",
    "unbind_request_id",
]
