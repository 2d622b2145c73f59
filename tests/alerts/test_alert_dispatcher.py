import json
import logging
import threading
import time

import httpx
import pytest

from querywatch.alerts import AlertDispatcher, LogChannel, WebhookChannel
from querywatch.config import AlertConditions, AlertConfig
from querywatch.errors import AlertDeliveryError
from querywatch.records import AlertEvent, AlertKind, NPlusOnePattern, QueryRecord

WEBHOOK_URL = "https://hooks.example.com/services/T000/B000"


class RecordingChannel:
    def __init__(self) -> None:
        self.events = []

    def send(self, event) -> None:
        self.events.append(event)


def make_record(**overrides) -> QueryRecord:
    values = dict(
        timestamp="2024-05-20T10:00:00+00:00",
        request_id="req-1",
        connection="default",
        sql="SELECT * FROM users WHERE password = ?",
        bindings=["password123"],
        time_ms=420.0,
        normalized_sql="SELECT * FROM users WHERE password = ?",
        query_hash="abc",
        formatted_sql="SELECT * FROM users WHERE password = 'password123'",
        route="POST /login",
        is_slow=True,
        issues=["slow_query"],
    )
    values.update(overrides)
    return QueryRecord(**values)


def make_pattern() -> NPlusOnePattern:
    return NPlusOnePattern(
        query_pattern="SELECT * FROM posts WHERE user_id = ?",
        count=3,
        route="GET /users",
        location=None,
        suggestion="Consider eager loading 'posts'",
    )


def make_dispatcher(channel, **overrides) -> AlertDispatcher:
    options = {"enabled": True, "channels": ("recording",), **overrides}
    return AlertDispatcher(AlertConfig(**options), channels={"recording": channel})


def mock_client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_alerts_are_noops_when_disabled():
    channel = RecordingChannel()
    dispatcher = make_dispatcher(channel, enabled=False)
    dispatcher.alert_slow_query(make_record())
    dispatcher.alert_n_plus_one(make_pattern())
    dispatcher.alert_high_query_count(500, "GET /")
    assert channel.events == []


def test_individual_conditions_can_be_disabled():
    channel = RecordingChannel()
    dispatcher = make_dispatcher(channel, conditions=AlertConditions(slow_query=False, n_plus_one=True))
    dispatcher.alert_slow_query(make_record())
    dispatcher.alert_n_plus_one(make_pattern())
    assert [event.kind for event in channel.events] == [AlertKind.N_PLUS_ONE]
    assert channel.events[0].payload["query_pattern"] == "SELECT * FROM posts WHERE user_id = ?"


@pytest.mark.parametrize("count, threshold, fired", [(49, 50, False), (50, 50, True), (500, 0, False)])
def test_high_query_count_threshold(count, threshold, fired):
    channel = RecordingChannel()
    dispatcher = make_dispatcher(channel, conditions=AlertConditions(query_count_threshold=threshold))
    dispatcher.alert_high_query_count(count, "GET /feed")
    assert bool(channel.events) is fired
    if fired:
        assert channel.events[0].payload["count"] == count
        assert channel.events[0].payload["route"] == "GET /feed"


def test_slow_query_payload_is_redacted_when_configured():
    channel = RecordingChannel()
    dispatcher = AlertDispatcher(AlertConfig(enabled=True, channels=("recording",)), channels={"recording": channel}, redact=True)
    dispatcher.alert_slow_query(make_record())
    payload = channel.events[0].payload
    assert "password123" not in payload["formatted_sql"]
    assert payload["time_ms"] == 420.0


def test_unknown_channels_are_ignored():
    channel = RecordingChannel()
    dispatcher = make_dispatcher(channel, channels=("sms", "recording"))
    dispatcher.alert_n_plus_one(make_pattern())
    assert len(channel.events) == 1


def test_log_channel_writes_structured_warning(caplog):
    caplog.set_level(logging.WARNING, logger="querywatch.alerts")
    dispatcher = AlertDispatcher(AlertConfig(enabled=True, channels=("log",)))
    dispatcher.alert_slow_query(make_record(bindings=[1], formatted_sql="SELECT 1"))

    records = [record for record in caplog.records if record.message == "[querywatch] Slow Query Detected"]
    assert len(records) == 1
    assert records[0].alert_kind == "slow_query"
    assert records[0].alert_payload["route"] == "POST /login"


def test_webhook_posts_slack_compatible_payload():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    channel = WebhookChannel(WEBHOOK_URL, field_limit=20, client=mock_client(handler))
    channel.send(AlertEvent("N+1 Query Detected", AlertKind.N_PLUS_ONE, make_pattern().to_dict()))

    body = json.loads(requests[0].content)
    assert str(requests[0].url) == WEBHOOK_URL
    assert body["text"] == "N+1 Query Detected"
    assert body["kind"] == "n_plus_one"
    assert body["blocks"][0]["text"]["text"] == "N+1 Query Detected"
    fields = {field["text"].split(":*\n")[0].lstrip("*"): field["text"].split(":*\n")[1] for field in body["blocks"][1]["fields"]}
    assert fields["count"] == "3"
    assert fields["query_pattern"] == "SELECT * FROM pos..."
    assert len(fields["query_pattern"]) == 20


def test_webhook_errors_raise_delivery_error():
    channel = WebhookChannel(WEBHOOK_URL, client=mock_client(lambda request: httpx.Response(500)))
    with pytest.raises(AlertDeliveryError):
        channel.send(AlertEvent("x", AlertKind.SLOW_QUERY, {}))


def test_webhook_timeout_is_logged_and_dispatch_continues(caplog):
    caplog.set_level(logging.WARNING, logger="querywatch.alerts")

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    webhook = WebhookChannel(WEBHOOK_URL, timeout_s=0.5, client=mock_client(handler))
    fallback = RecordingChannel()
    dispatcher = AlertDispatcher(
        AlertConfig(enabled=True, channels=("webhook", "recording"), webhook_url=WEBHOOK_URL),
        channels={"webhook": webhook, "recording": fallback},
    )

    dispatcher.alert_n_plus_one(make_pattern())

    assert len(fallback.events) == 1
    errors = [record for record in caplog.records if record.levelno == logging.ERROR]
    assert any("Failed to send n_plus_one alert via webhook" in record.message for record in errors)
    assert any("timed out after 0.5s" in record.message for record in errors)


def test_default_channels_include_webhook_only_with_url():
    assert AlertDispatcher(AlertConfig()).channel("webhook") is None
    dispatcher = AlertDispatcher(AlertConfig(webhook_url=WEBHOOK_URL))
    assert isinstance(dispatcher.channel("webhook"), WebhookChannel)
    assert isinstance(dispatcher.channel("log"), LogChannel)
    dispatcher.close()


def test_registered_channel_receives_events():
    channel = RecordingChannel()
    dispatcher = AlertDispatcher(AlertConfig(enabled=True, channels=("pager",)))
    dispatcher.register_channel("pager", channel)
    dispatcher.alert_high_query_count(80, "GET /")
    assert channel.events[0].kind is AlertKind.HIGH_QUERY_COUNT


def test_webhook_client_is_created_once_under_concurrency(monkeypatch):
    created = []

    class SlowClient:
        def __init__(self, **kwargs) -> None:
            time.sleep(0.01)
            self.closed = False
            created.append(self)

        def close(self) -> None:
            self.closed = True

    monkeypatch.setattr(httpx, "Client", SlowClient)
    channel = WebhookChannel(WEBHOOK_URL)
    barrier = threading.Barrier(8)
    seen = []

    def worker():
        barrier.wait()
        seen.append(channel.client)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(created) == 1
    assert all(client is created[0] for client in seen)
    channel.close()
    assert created[0].closed
