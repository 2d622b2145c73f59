import logging

import pytest

from querywatch.config import NPlusOneConfig, PlanConfig, WatchConfig
from querywatch.records import Frame, QueryRecord, copy_bindings
from querywatch.sql import format_sql, normalize, query_hash
from querywatch.tracking import GENERIC_SUGGESTION, PatternTracker


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class RecordingAlerts:
    def __init__(self) -> None:
        self.n_plus_one = []

    def alert_n_plus_one(self, pattern) -> None:
        self.n_plus_one.append(pattern)


class FakePlans:
    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.result = result if result is not None else [{"detail": "SCAN users"}]
        self.error = error
        self.calls = []

    def explain(self, sql, bindings, connection, *, analyze=False):
        self.calls.append((sql, analyze))
        if self.error:
            raise self.error
        return {"analyze": analyze, "plan": self.result}


def make_record(sql, bindings=(), time_ms=5.0, backtrace=None) -> QueryRecord:
    return QueryRecord(
        timestamp="2024-05-01T12:00:00+00:00",
        request_id="req-1",
        connection="default",
        sql=sql,
        bindings=copy_bindings(bindings),
        time_ms=time_ms,
        normalized_sql=normalize(sql),
        query_hash=query_hash(sql),
        formatted_sql=format_sql(sql, bindings),
        backtrace=backtrace or [],
        route="GET /users",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def alerts():
    return RecordingAlerts()


def make_tracker(clock, alerts=None, plans=None, **overrides) -> PatternTracker:
    options = {
        "slow_threshold_ms": 100.0,
        "n_plus_one": NPlusOneConfig(threshold=3, time_window_ms=100.0),
        **overrides,
    }
    return PatternTracker(WatchConfig(**options), alerts=alerts, plans=plans, clock=clock)


def test_literal_inlined_queries_flagged_on_third_execution(clock, alerts):
    tracker = make_tracker(clock, alerts)
    results = []
    for offset_ms, user_id in ((0, 1), (10, 2), (20, 3)):
        clock.now = offset_ms / 1000
        results.append(tracker.observe(make_record(f"SELECT * FROM users WHERE id={user_id}")))

    assert results[0].n_plus_one is None
    assert results[1].n_plus_one is None
    pattern = results[2].n_plus_one
    assert pattern.count == 3
    assert pattern.query_pattern == "SELECT * FROM users WHERE id=?"
    assert pattern.route == "GET /users"
    assert results[2].issues == ["n_plus_one"]
    assert len(alerts.n_plus_one) == 1
    assert not any(record.is_slow for record in results)


def test_alert_fires_once_per_pattern(clock, alerts):
    tracker = make_tracker(clock, alerts)
    records = []
    for idx in range(6):
        clock.now = idx * 0.005
        records.append(tracker.observe(make_record("SELECT * FROM posts WHERE user_id = ?", [idx])))

    assert [record.n_plus_one is not None for record in records] == [False, False, True, True, True, True]
    assert records[-1].n_plus_one.count == 6
    assert len(alerts.n_plus_one) == 1
    assert alerts.n_plus_one[0].count == 3


def test_identical_bindings_are_never_flagged(clock, alerts):
    tracker = make_tracker(clock, alerts)
    for _ in range(10):
        record = tracker.observe(make_record("SELECT * FROM settings WHERE id = ?", [1]))
        assert record.n_plus_one is None
    for _ in range(10):
        record = tracker.observe(make_record("SELECT COUNT(*) FROM jobs"))
        assert record.n_plus_one is None
    assert alerts.n_plus_one == []


def test_executions_outside_window_are_not_flagged(clock, alerts):
    tracker = make_tracker(clock, alerts)
    for offset_ms, user_id in ((0, 1), (50, 2), (150, 3), (160, 4)):
        clock.now = offset_ms / 1000
        record = tracker.observe(make_record("SELECT * FROM users WHERE id = ?", [user_id]))
        assert record.n_plus_one is None
    assert alerts.n_plus_one == []


def test_window_boundary_is_inclusive(clock, alerts):
    tracker = make_tracker(clock, alerts, n_plus_one=NPlusOneConfig(threshold=2, time_window_ms=100.0))
    clock.now = 0.0
    tracker.observe(make_record("SELECT * FROM users WHERE id = ?", [1]))
    clock.now = 0.1
    record = tracker.observe(make_record("SELECT * FROM users WHERE id = ?", [2]))
    assert record.n_plus_one is not None


def test_named_bindings_count_as_distinct(clock, alerts):
    tracker = make_tracker(clock, alerts)
    record = None
    for idx in range(3):
        record = tracker.observe(make_record("SELECT * FROM users WHERE id = :id", {"id": idx}))
    assert record.n_plus_one is not None
    assert record.bindings == {"id": 2}
    assert record.formatted_sql == "SELECT * FROM users WHERE id = 2"


@pytest.mark.parametrize("time_ms, expected", [(100.0, True), (250.0, True), (99.99, False), (0.0, False)])
def test_slow_threshold_boundary(clock, time_ms, expected):
    tracker = make_tracker(clock)
    record = tracker.observe(make_record("SELECT 1", time_ms=time_ms))
    assert record.is_slow is expected
    assert record.issues == (["slow_query"] if expected else [])


def test_location_and_suggestion_come_from_first_execution(clock, alerts):
    tracker = make_tracker(clock, alerts)
    first_trace = [
        Frame(file="app/http/views.py", line=4, cls="UserView", function="get"),
        Frame(file="app/repositories/users.py", line=12, cls="UserRepository", function="find"),
    ]
    later_trace = [Frame(file="app/other.py", line=1, cls="OtherService", function="run")]
    tracker.observe(make_record('SELECT * FROM "users" WHERE id = ?', [1], backtrace=first_trace))
    tracker.observe(make_record('SELECT * FROM "users" WHERE id = ?', [2], backtrace=later_trace))
    record = tracker.observe(make_record('SELECT * FROM "users" WHERE id = ?', [3], backtrace=later_trace))

    assert record.n_plus_one.location == "UserRepository::find (app/repositories/users.py:12)"
    assert "'users'" in record.n_plus_one.suggestion


def test_generic_suggestion_without_table(clock, alerts):
    tracker = make_tracker(clock, alerts)
    record = None
    for idx in range(3):
        record = tracker.observe(make_record("UPDATE counters SET value = value + ?", [idx]))
    assert record.n_plus_one.suggestion == GENERIC_SUGGESTION
    assert record.n_plus_one.location is None


def test_detection_disabled(clock, alerts):
    tracker = make_tracker(clock, alerts, n_plus_one=NPlusOneConfig(enabled=False, threshold=3))
    for idx in range(5):
        record = tracker.observe(make_record("SELECT * FROM users WHERE id = ?", [idx]))
        assert record.n_plus_one is None
    assert tracker.patterns == {}


def test_detected_patterns_and_summary(clock):
    tracker = make_tracker(clock)
    for idx in range(3):
        tracker.observe(make_record("SELECT * FROM users WHERE id = ?", [idx], time_ms=2.0))
    tracker.observe(make_record("SELECT * FROM posts"))

    detected = tracker.detected_patterns()
    assert len(detected) == 1
    assert detected[0].count == len(detected[0].executions) == 3

    summary = {entry["query_pattern"]: entry for entry in tracker.summary()}
    users = summary["SELECT * FROM users WHERE id = ?"]
    assert users["count"] == 3
    assert users["total_ms"] == 6.0
    assert users["average_ms"] == 2.0
    assert users["distinct_bindings"] == 3


def test_reset_clears_state(clock, alerts):
    tracker = make_tracker(clock, alerts)
    for idx in range(3):
        tracker.observe(make_record("SELECT * FROM users WHERE id = ?", [idx]))
    tracker.reset()
    assert tracker.patterns == {}
    assert tracker.detected_patterns() == []

    for idx in range(3):
        tracker.observe(make_record("SELECT * FROM users WHERE id = ?", [idx]))
    assert len(alerts.n_plus_one) == 2


def test_n_plus_one_logged(clock, caplog):
    caplog.set_level(logging.INFO, logger="querywatch.tracking.tracker")
    tracker = make_tracker(clock)
    for idx in range(3):
        tracker.observe(make_record("SELECT * FROM users WHERE id = ?", [idx]))
    assert any("Potential N+1 detected" in record.message for record in caplog.records)


def test_deferred_alerts_are_queued(clock, alerts):
    tracker = PatternTracker(
        WatchConfig(n_plus_one=NPlusOneConfig(threshold=3)), alerts=alerts, clock=clock, defer_alerts=True
    )
    for idx in range(3):
        tracker.observe(make_record("SELECT * FROM users WHERE id = ?", [idx]))
    assert alerts.n_plus_one == []
    pending = tracker.take_pending()
    assert [pattern.count for pattern in pending] == [3]
    assert tracker.take_pending() == []


def test_plans_attached_to_slow_queries_only(clock):
    plans = FakePlans()
    tracker = make_tracker(clock, plans=plans)
    fast = tracker.observe(make_record("SELECT * FROM users", time_ms=5.0))
    slow = tracker.observe(make_record("SELECT * FROM users", time_ms=150.0))
    assert fast.plan is None
    assert slow.plan == {"analyze": False, "plan": [{"detail": "SCAN users"}]}
    assert slow.plan_analyze is None
    assert plans.calls == [("SELECT * FROM users", False)]


def test_analyze_all_and_explain_analyze(clock):
    plans = FakePlans()
    tracker = make_tracker(
        clock,
        plans=plans,
        plan=PlanConfig(analyze_all_queries=True, explain_analyze_all_queries=True),
    )
    record = tracker.observe(make_record("SELECT * FROM users", time_ms=1.0))
    assert record.plan["analyze"] is False
    assert record.plan_analyze["analyze"] is True


def test_plan_failures_are_attached_as_errors(clock):
    tracker = make_tracker(clock, plans=FakePlans(error=RuntimeError("no such table")))
    record = tracker.observe(make_record("SELECT * FROM missing", time_ms=500.0))
    assert record.plan == {"error": "no such table"}
    assert record.is_slow
