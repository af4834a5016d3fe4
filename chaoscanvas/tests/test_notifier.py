# chaoscanvas/tests/test_notifier.py
import asyncio

import pytest

from chaoscanvas.notifier import QueueSink, SinkClosed, Topic

from conftest import ClosedSink, RecordingSink


def test_publish_reaches_only_region_members(notifier):
    a, b = RecordingSink(), RecordingSink()
    notifier.join(a, "layer-1")
    notifier.join(b, "layer-2")

    assert notifier.publish("layer-1", {"type": "x"}) == 1
    assert a.events == [{"type": "x"}]
    assert b.events == []


def test_publish_to_empty_region_is_a_noop(notifier):
    assert notifier.publish("nobody", {"type": "x"}) == 0
    assert notifier.regions() == []


def test_join_moves_sink_between_regions(notifier):
    s = RecordingSink()
    notifier.join(s, "layer-1")
    notifier.join(s, "layer-2")

    assert notifier.region_of(s) == "layer-2"
    assert notifier.regions() == ["layer-2"]
    notifier.publish("layer-1", {"type": "old"})
    notifier.publish("layer-2", {"type": "new"})
    assert s.events == [{"type": "new"}]


def test_leave_drops_empty_region(notifier):
    s1, s2 = RecordingSink(), RecordingSink()
    notifier.join(s1, "layer-1")
    notifier.join(s2, "layer-1")
    notifier.leave(s1)
    assert notifier.watchers("layer-1") == 1
    notifier.leave(s2)
    assert notifier.regions() == []
    # leaving twice is harmless
    notifier.leave(s2)


def test_dead_sinks_are_pruned(notifier):
    live, dead = RecordingSink(), ClosedSink()
    notifier.join(live, "layer-1")
    notifier.join(dead, "layer-1")

    assert notifier.publish("layer-1", {"type": "x"}) == 1
    assert notifier.region_of(dead) is None
    assert notifier.watchers("layer-1") == 1
    assert live.events == [{"type": "x"}]


def test_broken_sink_does_not_fail_publisher(notifier):
    class Exploding:
        def send(self, event):
            raise ValueError("bad socket")

    bad = Exploding()
    notifier.join(bad, "layer-1")
    assert notifier.publish("layer-1", {"type": "x"}) == 0
    assert notifier.regions() == []


def test_topic_reports_failed_sinks():
    t = Topic("layer-1")
    ok, gone = RecordingSink(), ClosedSink()
    t.subscribe(ok)
    t.subscribe(gone)
    assert t.publish({"type": "x"}) == [gone]
    t.unsubscribe(gone)
    assert len(t) == 1


def test_queue_sink_bridges_to_event_loop():
    async def scenario():
        sink = QueueSink(asyncio.get_running_loop(), maxsize=4)
        sink.send({"type": "joined", "layerId": "layer-1"})
        event = await asyncio.wait_for(sink.next_event(), timeout=1)
        sink.close()
        with pytest.raises(SinkClosed):
            sink.send({"type": "late"})
        return event

    assert asyncio.run(scenario()) == {"type": "joined", "layerId": "layer-1"}
