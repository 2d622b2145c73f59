import logging

from querywatch.utils import bind_request_id, get_logger, get_request_id, time_call, unbind_request_id
from querywatch.utils.logging import RequestIdFilter


def test_request_id_round_trip():
    assert get_request_id() is None
    token = bind_request_id("req-42")
    try:
        assert get_request_id() == "req-42"
    finally:
        unbind_request_id(token)
    assert get_request_id() is None


def test_request_id_filter_tags_records():
    record = logging.LogRecord("querywatch.test", logging.INFO, __file__, 1, "hello", None, None)
    token = bind_request_id("req-7")
    try:
        RequestIdFilter().filter(record)
    finally:
        unbind_request_id(token)
    assert record.request_id == "req-7"

    RequestIdFilter().filter(record)
    assert record.request_id == "-"


def test_time_call_logs_duration(caplog):
    logger = get_logger("tests.logging")
    caplog.set_level(logging.DEBUG, logger=logger.name)
    with time_call("unit-test", logger, threshold_ms=0, sql="SELECT 1"):
        pass
    records = [record for record in caplog.records if record.name == logger.name]
    assert any("unit-test took" in record.message for record in records)
    assert records[-1].levelno == logging.WARNING
    assert records[-1].sql == "SELECT 1"


def test_time_call_below_threshold_logs_debug(caplog):
    logger = get_logger("tests.logging.fast")
    caplog.set_level(logging.DEBUG, logger=logger.name)
    with time_call("fast-call", logger, threshold_ms=60_000):
        pass
    assert caplog.records[-1].levelno == logging.DEBUG
