"""
Command-line entry points for offline log analysis and retention cleanup.

Usage:
  querywatch analyze [--date YYYY-MM-DD] [--slow] [--n-plus-one] [--limit 50]
  querywatch clear [--days 7]

Options are read from QUERYWATCH_* environment variables.
"""

from __future__ import annotations

import argparse
import datetime as _dt
import sys
from typing import Optional, Sequence

from .analysis import AnalysisReport, LogAnalyzer, cleanup_logs
from .config import WatchConfig
from .errors import ConfigurationError
from .storage import JsonFileStore


def _date(value: str) -> _dt.date:
    try:
        return _dt.date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def _non_negative(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return number


def _positive(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="querywatch", description="Query log analysis and maintenance")
    commands = parser.add_subparsers(dest="command", required=True)

    analyze = commands.add_parser("analyze", help="Summarize one day of query logs")
    analyze.add_argument("--date", type=_date, default=None, help="Day to analyze (default: today)")
    analyze.add_argument("--slow", action="store_true", help="Show only slow queries")
    analyze.add_argument("--n-plus-one", action="store_true", help="Show only N+1 queries")
    analyze.add_argument("--limit", type=_positive, default=50, help="Limit number of queries analyzed")

    clear = commands.add_parser("clear", help="Delete logs older than the retention window")
    clear.add_argument("--days", type=_non_negative, default=None, help="Days to keep (default: configured)")
    return parser


def _truncate(text: str, width: int) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def print_report(report: AnalysisReport, *, show_slow: bool, show_n_plus_one: bool) -> None:
    print("=" * 72)
    print(f"QUERY SUMMARY {report.date}")
    print("=" * 72)
    print(f"  Total Queries   {report.total_queries}")
    print(f"  Total Time      {report.total_time_ms:.2f} ms")
    print(f"  Average Time    {report.average_time_ms:.2f} ms")
    print(f"  Slow Queries    {report.slow_count}")
    print(f"  N+1 Patterns    {report.n_plus_one_count}")

    if show_slow and report.slow_queries:
        print()
        print("=== Slow Queries ===")
        for record in report.slow_queries:
            print(f"  {record.time_ms:9.2f} ms  {record.connection:<10} {record.route:<24} {_truncate(record.sql, 80)}")

    if show_n_plus_one and report.n_plus_one_patterns:
        print()
        print("=== N+1 Query Patterns ===")
        for group in report.n_plus_one_patterns:
            routes = ", ".join(group.routes)
            print(f"  {group.count:6d}x  {_truncate(group.query_pattern, 60)}  [{routes}]")
            if group.location:
                print(f"           at {group.location}")
            print(f"           {group.suggestion}")


def run_analyze(args: argparse.Namespace, config: WatchConfig) -> int:
    store = JsonFileStore(config.storage)
    report = LogAnalyzer(store, config).analyze(
        args.date,
        slow_only=args.slow,
        n_plus_one_only=args.n_plus_one,
        limit=args.limit,
    )
    print(f"[INFO] Analyzing queries for {report.date}...")
    if report.empty:
        print(f"[WARN] No queries found for {report.date}")
        return 0
    print_report(report, show_slow=args.slow, show_n_plus_one=args.n_plus_one)
    return 0


def run_clear(args: argparse.Namespace, config: WatchConfig) -> int:
    store = JsonFileStore(config.storage)
    print("[INFO] Cleaning up old query logs...")
    deleted = cleanup_logs(store, args.days)
    print(f"[INFO] Deleted {deleted} log file(s).")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = WatchConfig.from_env()
    except ConfigurationError as exc:
        print(f"[FAIL] {exc}")
        return 2
    if args.command == "analyze":
        return run_analyze(args, config)
    return run_clear(args, config)


if __name__ == "__main__":
    sys.exit(main())
