"""Unit tests for EventAggregator."""

from datetime import timedelta

from ipc_control_tower.types import KernelEvent, Process
from ipc_shared.serialization import utc_now


def _process(pid="p1"):
    return Process(id=pid, type="database", owner="conn-1", role="operator")


def test_typed_and_wildcard_subscribers(event_aggregator):
    typed, everything = [], []
    event_aggregator.subscribe("process.created", typed.append)
    event_aggregator.subscribe("*", everything.append)

    event_aggregator.emit_event(KernelEvent.process_created(_process()))
    event_aggregator.emit_event(KernelEvent.queue_sampled("conn-1", 3))

    assert [e.event_type for e in typed] == ["process.created"]
    assert [e.event_type for e in everything] == ["process.created", "queue.sampled"]
    assert event_aggregator.get_subscriber_count("process.created") == 1
    assert event_aggregator.get_subscriber_count("*") == 1


def test_handler_errors_are_contained(event_aggregator, mock_logger):
    received = []

    def broken(event):
        raise RuntimeError("observer bug")

    event_aggregator.subscribe("process.created", broken)
    event_aggregator.subscribe("process.created", received.append)

    event_aggregator.emit_event(KernelEvent.process_created(_process()))

    assert len(received) == 1
    mock_logger.error.assert_called_once()
    assert mock_logger.error.call_args[0][0] == "event_handler_error"


def test_unsubscribe(event_aggregator):
    received = []
    event_aggregator.subscribe("process.created", received.append)
    event_aggregator.unsubscribe("process.created", received.append)
    event_aggregator.unsubscribe("process.created", received.append)

    event_aggregator.emit_event(KernelEvent.process_created(_process()))

    assert received == []


def test_history_newest_first(event_aggregator):
    event_aggregator.emit_event(KernelEvent.process_created(_process("p1")))
    event_aggregator.emit_event(KernelEvent.process_created(_process("p2")))
    event_aggregator.emit_event(KernelEvent.queue_sampled("conn-1", 0))

    history = event_aggregator.get_event_history()
    assert [e.pid for e in history] == [None, "p2", "p1"]

    created = event_aggregator.get_event_history(event_type="process.created", limit=1)
    assert [e.pid for e in created] == ["p2"]

    assert [e.pid for e in event_aggregator.get_event_history(pid="p1")] == ["p1"]


def test_history_is_bounded(mock_logger):
    from ipc_control_tower.events.aggregator import EventAggregator

    aggregator = EventAggregator(logger=mock_logger, history_size=2)
    for i in range(5):
        aggregator.emit_event(KernelEvent.queue_sampled(f"o{i}", i))

    assert len(aggregator.get_event_history()) == 2
    assert aggregator.get_event_counts() == {"queue.sampled": 5}


def test_recent_events(event_aggregator):
    old = KernelEvent(event_type="queue.sampled", timestamp=utc_now() - timedelta(minutes=5))
    event_aggregator.emit_event(old)
    event_aggregator.emit_event(KernelEvent.queue_sampled("conn-1", 1))

    recent = event_aggregator.get_recent_events(seconds=60)

    assert len(recent) == 1


def test_cleanup_process(event_aggregator):
    event_aggregator.emit_event(KernelEvent.process_created(_process("p1")))

    event_aggregator.cleanup_process("p1")

    assert event_aggregator.get_event_history(pid="p1") == []
    # Global history is unaffected
    assert len(event_aggregator.get_event_history()) == 1
