# chaoscanvas/tests/test_logging.py
import io
import json
import logging

import pytest

from chaoscanvas.logging import JSONFormatter, bind, context, log_ledger_event, reset, unbind


@pytest.fixture
def capture():
    buf = io.StringIO()
    handler = logging.StreamHandler(buf)
    handler.setFormatter(JSONFormatter())
    lg = logging.getLogger("chaoscanvas.test")
    lg.addHandler(handler)
    lg.setLevel(logging.INFO)
    lg.propagate = False
    reset()
    yield lg, buf
    lg.removeHandler(handler)
    reset()


def _lines(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines()]


def test_bound_context_lands_in_envelope(capture):
    lg, buf = capture
    bind(req_id="r-123", user_id="u1", ignored=None)
    lg.info("hello", extra={"layer_id": "l1", "email": "a@b.c"})

    (evt,) = _lines(buf)
    assert evt["msg"] == "hello"
    assert evt["lvl"] == "INFO"
    assert evt["req_id"] == "r-123"
    assert evt["user_id"] == "u1"
    assert evt["layer_id"] == "l1"
    assert evt["meta"]["email"] == "***"
    assert "ignored" not in context()


def test_unbind_removes_keys(capture):
    lg, buf = capture
    bind(req_id="r-1", user_id="u1")
    unbind("user_id")
    lg.info("x")
    (evt,) = _lines(buf)
    assert "user_id" not in evt
    assert evt["req_id"] == "r-1"


def test_ledger_event_record(capture):
    lg, buf = capture
    log_ledger_event(lg, kind="boost", user_id="u1", amount=-20, balance=80, contribution_id="c1")
    (evt,) = _lines(buf)
    assert evt["msg"] == "ledger.event"
    assert evt["user_id"] == "u1"
    assert evt["contribution_id"] == "c1"
    assert evt["meta"] == {"kind": "boost", "amount": -20, "balance": 80}


def test_exception_info_is_serialised(capture):
    lg, buf = capture
    try:
        raise ValueError("bad")
    except ValueError:
        lg.error("failed", exc_info=True)
    (evt,) = _lines(buf)
    assert evt["exc_type"] == "ValueError"
    assert "bad" in evt["stack"]
