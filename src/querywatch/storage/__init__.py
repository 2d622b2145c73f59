"""
Persistent storage for classified query records.
"""

from .json_file import JsonFileStore

__all__ = ["JsonFileStore"]
