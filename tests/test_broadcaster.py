"""
Tests for relay/broadcaster.py fan-out.
"""

import json
import threading
import time

from conftest import RecordingObserver, wait_until
from relay.broadcaster import LogBroadcaster
from relay.events import DiagnosticEvent, FailureCategory, Level, StateChange, system_event


class BlockingObserver:
    """Websocket stand-in whose send() hangs until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.sent = []

    def send(self, payload):
        self.entered.set()
        self.release.wait(5)
        self.sent.append(payload)


class ConcurrencyObserver:
    """Counts how many threads are inside send() at the same time."""

    def __init__(self):
        self._lock = threading.Lock()
        self.inside = 0
        self.max_inside = 0
        self.count = 0

    def send(self, payload):
        with self._lock:
            self.inside += 1
            self.max_inside = max(self.max_inside, self.inside)
        time.sleep(0.001)
        with self._lock:
            self.inside -= 1
            self.count += 1


def messages(observer):
    return [json.loads(p)["message"] for p in observer.sent]


class TestLogBroadcaster:
    """Test suite for LogBroadcaster."""

    def test_publish_to_all(self):
        broadcaster = LogBroadcaster()
        first, second = RecordingObserver(), RecordingObserver()
        broadcaster.add(first)
        broadcaster.add(second)

        delivered = broadcaster.publish(DiagnosticEvent(level=Level.INFO, message="hello", slot_id="0"))
        broadcaster.flush()

        assert delivered == 2
        assert first.sent == second.sent
        payload = json.loads(first.sent[0])
        assert payload["type"] == "log"
        assert payload["processId"] == "0"
        assert payload["level"] == "info"
        assert payload["message"] == "hello"
        assert payload["details"] is None

    def test_failing_observer_removed(self):
        """Test a broken observer is dropped while the others still receive every event."""
        broadcaster = LogBroadcaster()
        healthy, broken = RecordingObserver(), RecordingObserver(fail=True)
        broadcaster.add(broken)
        broadcaster.add(healthy)

        broadcaster.publish(system_event(Level.WARN, "first"))
        wait_until(lambda: broadcaster.observer_count == 1)
        broadcaster.publish(system_event(Level.WARN, "second"))
        broadcaster.flush()

        assert messages(healthy) == ["first", "second"]
        assert broadcaster.remove(broken) is False

    def test_blocked_observer_does_not_delay_others(self):
        """Test a hanging send() neither blocks publish nor delivery to the other observers."""
        broadcaster = LogBroadcaster()
        stuck, fast = BlockingObserver(), RecordingObserver()
        broadcaster.add(stuck)
        broadcaster.add(fast)
        try:
            started = time.time()
            for i in range(3):
                broadcaster.publish(system_event(Level.INFO, f"event {i}"))
            elapsed = time.time() - started

            wait_until(lambda: len(fast.sent) == 3, timeout=1.0)
            assert elapsed < 0.5
            assert stuck.entered.wait(1)
            assert messages(fast) == ["event 0", "event 1", "event 2"]
        finally:
            stuck.release.set()

    def test_backlogged_observer_dropped(self):
        """Test an observer whose outbox fills up is removed and the rest keep receiving."""
        broadcaster = LogBroadcaster(max_pending=2)
        stuck, fast = BlockingObserver(), RecordingObserver()
        broadcaster.add(stuck)
        broadcaster.add(fast)
        try:
            for i in range(5):
                broadcaster.publish(system_event(Level.INFO, f"event {i}"))
                broadcaster.flush(timeout=0.05)

            assert broadcaster.observer_count == 1
            assert broadcaster.remove(stuck) is False
            broadcaster.flush()
            assert len(fast.sent) == 5
        finally:
            stuck.release.set()

    def test_sends_serialized_per_observer(self):
        """Test concurrent publishers never enter one observer's send() at the same time."""
        broadcaster = LogBroadcaster(max_pending=1000)
        observer = ConcurrencyObserver()
        broadcaster.add(observer)

        def publisher(n):
            for i in range(50):
                broadcaster.publish(system_event(Level.INFO, f"{n}-{i}"))

        threads = [threading.Thread(target=publisher, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        broadcaster.send_text(observer, "pong")
        for thread in threads:
            thread.join()
        wait_until(lambda: observer.count == 201)

        assert observer.max_inside == 1

    def test_late_observer_gets_no_backlog(self):
        broadcaster = LogBroadcaster()
        broadcaster.publish(system_event(Level.INFO, "before"))
        observer = RecordingObserver()
        broadcaster.add(observer)

        broadcaster.publish(system_event(Level.INFO, "after"))
        broadcaster.flush()

        assert messages(observer) == ["after"]

    def test_publish_without_observers(self):
        assert LogBroadcaster().publish(system_event(Level.INFO, "nobody")) == 0

    def test_add_twice_and_remove(self):
        broadcaster = LogBroadcaster()
        observer = RecordingObserver()
        broadcaster.add(observer)
        broadcaster.add(observer)

        assert broadcaster.observer_count == 1
        assert broadcaster.remove(observer) is True
        assert broadcaster.remove(observer) is False

    def test_send_to_single_observer(self):
        broadcaster = LogBroadcaster()
        target, other = RecordingObserver(), RecordingObserver()
        broadcaster.add(target)
        broadcaster.add(other)

        assert broadcaster.send_to(target, system_event(Level.INFO, "welcome")) is True
        assert broadcaster.send_text(target, "pong") is True
        broadcaster.flush()

        assert json.loads(target.sent[0])["message"] == "welcome"
        assert target.sent[1] == "pong"
        assert other.sent == []

    def test_send_to_unknown_observer(self):
        assert LogBroadcaster().send_text(RecordingObserver(), "pong") is False

    def test_event_details_serialized(self):
        broadcaster = LogBroadcaster()
        observer = RecordingObserver()
        broadcaster.add(observer)

        broadcaster.publish(DiagnosticEvent(
            level=Level.ERROR,
            message="FFmpeg error: Connection refused",
            category=FailureCategory.DESTINATION,
            detail="Destination refused the connection",
            slot_id="3",
        ))
        broadcaster.publish(StateChange("3", "restarting", "Restarting in 3s", FailureCategory.DESTINATION))
        broadcaster.flush()

        log, state = [json.loads(p) for p in observer.sent]
        assert log["details"] == {"category": "destination", "detail": "Destination refused the connection"}
        assert state == {
            "type": "state",
            "processId": "3",
            "status": "restarting",
            "message": "Restarting in 3s",
            "category": "destination",
            "timestamp": state["timestamp"],
        }
