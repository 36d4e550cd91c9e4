"""
Tests for relay/registry.py: start/stop/status across slots, including
destination conflicts between slots.
"""

import threading

import pytest

from conftest import FakeProber, PROGRESS_LINE, wait_until
from relay.errors import ConfigurationError, UnknownSlotError
from relay.policy import Resolution
from relay.registry import SlotRegistry
from relay.session import SessionState
from relay.source import SourceDescriptor

URL = "https://cdn.example.com/live/index.m3u8"
URL_HD = "https://cdn.example.com/hd/index.m3u8"
DEST = "rtmp://live.example.com/app/streamkey123"
DEST_2 = "rtmp://backup.example.com/app/otherkey456"


@pytest.fixture
def prober():
    return FakeProber(Resolution(854, 480), by_target={URL_HD: Resolution(1920, 1080)})


@pytest.fixture
def registry(relay_config, runner, prober, broadcaster):
    registry = SlotRegistry(relay_config, runner=runner, prober=prober, broadcaster=broadcaster)
    yield registry
    registry.shutdown()


def state_of(registry, slot_id):
    return registry.slots[slot_id].supervisor.state


class TestStartStop:
    """Test cases for the basic slot lifecycle."""

    def test_start_run_stop_release(self, registry, runner, prober):
        """Test a 480p source runs in passthrough, stops, and frees its destination."""
        status = registry.start("0", URL, DEST)

        assert status["state"] == "starting"
        assert status["mode"] == "passthrough"
        assert status["resolution"] == "854x480"
        assert prober.calls == [URL]
        assert registry.arbiter.holder(DEST) == "0"

        runner.last.emit(PROGRESS_LINE)
        wait_until(lambda: state_of(registry, "0") == SessionState.RUNNING)
        assert registry.get_slot_status("0")["process_running"] is True

        success, message = registry.stop("0")

        assert success is True
        assert message == "Emission 0 stopped"
        assert state_of(registry, "0") == SessionState.IDLE
        assert registry.arbiter.holder(DEST) is None

        registry.start("1", URL, DEST)
        assert registry.arbiter.holder(DEST) == "1"
        assert state_of(registry, "0") == SessionState.IDLE

    def test_high_resolution_recodes(self, registry, runner):
        status = registry.start("0", URL_HD, DEST)

        assert status["mode"] == "recode"
        assert "scale=-2:720,fps=30" in runner.commands[-1]

    def test_unknown_resolution_passthrough(self, relay_config, runner, broadcaster):
        """Test a failed probe still starts, in passthrough."""
        registry = SlotRegistry(relay_config, runner=runner, prober=FakeProber(None), broadcaster=broadcaster)
        try:
            status = registry.start("0", URL, DEST)

            assert status["mode"] == "passthrough"
            assert status["resolution"] is None
        finally:
            registry.shutdown()

    def test_stop_idle_slot(self, registry):
        assert registry.stop("0") == (True, "No active emission for slot 0")

    def test_integer_slot_id(self, registry):
        registry.start(2, URL, DEST)

        assert state_of(registry, "2") == SessionState.STARTING

    def test_source_descriptor_with_headers(self, registry, runner):
        """Test user agent and referer reach the ffmpeg input options."""
        source = SourceDescriptor(url=URL, user_agent="RelayTest/1.0", referer="https://example.com/")
        registry.start("0", source, DEST)

        command = runner.commands[-1]
        assert command[command.index("-user_agent") + 1] == "RelayTest/1.0"
        assert command[command.index("-headers") + 1] == "Referer: https://example.com/\r\n"

    def test_same_slot_restart(self, registry, runner):
        """Test starting a busy slot replaces its session, moving to the new destination."""
        registry.start("0", URL, DEST)
        first = runner.last

        registry.start("0", URL, DEST_2)

        assert first.terminated is True
        assert len(runner.processes) == 2
        assert registry.arbiter.holder(DEST) is None
        assert registry.arbiter.holder(DEST_2) == "0"
        assert state_of(registry, "0") == SessionState.STARTING

    def test_same_slot_same_destination(self, registry, runner):
        registry.start("0", URL, DEST)
        registry.start("0", URL_HD, DEST)

        assert runner.processes[0].terminated is True
        assert registry.arbiter.holder(DEST) == "0"
        assert registry.get_slot_status("0")["mode"] == "recode"


class TestDestinationConflicts:
    """Test cases for cross-slot destination eviction."""

    def test_second_slot_evicts_first(self, registry, runner):
        registry.start("0", URL, DEST)
        first = runner.last

        registry.start("1", URL, DEST)

        assert first.terminated is True
        assert state_of(registry, "0") == SessionState.IDLE
        assert state_of(registry, "1") == SessionState.STARTING
        assert registry.arbiter.holder(DEST) == "1"
        assert registry.get_slot_status("0")["last_failure"]["category"] == "destination"

    def test_different_destinations_coexist(self, registry):
        registry.start("0", URL, DEST)
        registry.start("1", URL, DEST_2)

        assert state_of(registry, "0") == SessionState.STARTING
        assert state_of(registry, "1") == SessionState.STARTING

    def test_concurrent_starts_single_survivor(self, registry, runner):
        """Test concurrent starts of several slots on one destination leave one live session."""
        barrier = threading.Barrier(3)
        errors = []

        def worker(slot_id):
            barrier.wait()
            try:
                registry.start(slot_id, URL, DEST)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(str(i),)) for i in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert errors == []
        active = [sid for sid, slot in registry.slots.items() if slot.supervisor.is_active()]
        alive = [p for p in runner.processes if p.poll() is None]
        assert len(active) == 1
        assert len(alive) == 1
        assert registry.arbiter.holder(DEST) == active[0]


class TestValidation:
    """Test cases for rejected start requests."""

    def test_missing_destination(self, registry, runner, prober):
        with pytest.raises(ConfigurationError, match="target_rtmp"):
            registry.start("0", URL, "")

        assert runner.commands == []
        assert prober.calls == []

    def test_missing_source(self, registry, runner):
        with pytest.raises(ConfigurationError, match="source_m3u8"):
            registry.start("0", None, DEST)

        assert registry.arbiter.claims() == {}

    def test_both_sources(self, registry):
        with pytest.raises(ConfigurationError):
            registry.start("0", SourceDescriptor.from_request(source_m3u8=URL, source_files=["/a.mp4"]), DEST)

    @pytest.mark.parametrize("call", [
        lambda r: r.start("9", URL, DEST),
        lambda r: r.stop("9"),
        lambda r: r.get_slot_status("9"),
        lambda r: r.status("9"),
    ])
    def test_unknown_slot(self, registry, call):
        with pytest.raises(UnknownSlotError):
            call(registry)


class TestStatus:
    """Test cases for status reporting."""

    def test_all_slots(self, registry):
        registry.start("1", URL, DEST)

        status = registry.status()

        assert sorted(status) == ["0", "1", "2"]
        assert status["0"]["state"] == "idle"
        assert status["1"]["state"] == "starting"
        assert status["1"]["destination"] == "rtmp://live.example.com/app/str***"
        assert status["1"]["source"]["url"] == URL

    def test_summary_and_pids(self, registry, runner):
        registry.start("0", URL, DEST)
        registry.start("2", URL, DEST_2)

        summary = registry.get_status_summary()
        pids = registry.get_active_pids()

        assert summary["total"] == 3
        assert summary["starting"] == 2
        assert summary["idle"] == 1
        assert summary["claims"] == 2
        assert pids == {"0": runner.processes[0].pid, "2": runner.processes[1].pid}

    def test_recent_lines_on_request(self, registry, runner):
        registry.start("0", URL, DEST)
        runner.last.emit("  Metadata:", PROGRESS_LINE)
        wait_until(lambda: state_of(registry, "0") == SessionState.RUNNING)

        assert "recent_lines" not in registry.get_slot_status("0")
        assert registry.get_slot_status("0", include_log=True)["recent_lines"] == ["  Metadata:", PROGRESS_LINE]

    def test_change_listener(self, registry, runner):
        changes = []
        registry.add_change_listener(changes.append)

        registry.start("0", URL, DEST)
        registry.stop("0")

        assert [(c.slot_id, c.state) for c in changes] == [
            ("0", "starting"), ("0", "stopping"), ("0", "idle")
        ]

    def test_shutdown_stops_everything(self, registry, runner):
        registry.start("0", URL, DEST)
        registry.start("1", URL, DEST_2)

        registry.shutdown()

        assert all(p.terminated for p in runner.processes)
        assert registry.arbiter.claims() == {}
        assert all(state_of(registry, sid) == SessionState.IDLE for sid in registry.slots)
