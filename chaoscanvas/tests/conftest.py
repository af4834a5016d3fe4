# chaoscanvas/tests/conftest.py
from datetime import datetime, timedelta

import pytest

from chaoscanvas.models import ContentKind, LayerType
from chaoscanvas.notifier import ChangeNotifier, SinkClosed
from chaoscanvas.ratelimit import WindowRateLimiter
from chaoscanvas.storage import InMemoryLedgerStore, SQLiteLedgerStore


class SteppingClock:
    """Wall clock for the store and the daily-cap rollover; moves only when told."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class MonotonicClock:
    """Seconds clock for the rate limiter."""

    def __init__(self, t=0.0):
        self.t = t

    def __call__(self):
        return self.t


class RecordingSink:
    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(dict(event))


class ClosedSink:
    def send(self, event):
        raise SinkClosed()


@pytest.fixture
def clock():
    return SteppingClock()


@pytest.fixture(params=["mem", "sqlite"])
def store(request, tmp_path, clock):
    if request.param == "mem":
        s = InMemoryLedgerStore(clock=clock)
    else:
        s = SQLiteLedgerStore(str(tmp_path / "ledger.db"), clock=clock)
    yield s
    s.close()


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def limiter_clock():
    return MonotonicClock()


@pytest.fixture
def limiter(limiter_clock):
    return WindowRateLimiter(max_requests=20, window_ms=300_000, clock=limiter_clock)


@pytest.fixture
def layer(store):
    return store.create_layer(layer_type=LayerType.GLOBAL, name="Global Chaos")


def add_text_contribution(store, user_id, layer_id, price="10.00"):
    return store.insert_contribution(
        user_id=user_id,
        layer_id=layer_id,
        content_type=ContentKind.TEXT,
        content_data={"text": "hello"},
        position_x=10,
        position_y=20,
        width=100,
        height=50,
        market_price=price,
    )
