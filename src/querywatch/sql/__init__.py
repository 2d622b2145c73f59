"""
SQL text helpers used for grouping and display.
"""

from .normalizer import (
    extract_table,
    format_sql,
    is_plan_query,
    normalize,
    query_hash,
    similarity,
)

__all__ = ["extract_table", "format_sql", "is_plan_query", "normalize", "query_hash", "similarity"]
