"""
Shared fixtures: in-memory stand-ins for the ffmpeg child process, the
runner that spawns it and the resolution prober.
"""

import itertools
import queue
import threading
import time

import pytest

from relay.broadcaster import LogBroadcaster
from relay.config import RelayConfig
from relay.errors import SpawnError
from relay.ffmpeg import FFmpegRunner
from relay.policy import Resolution

_pids = itertools.count(4000)


class FakeProcess:
    """Popen look-alike whose stderr lines and exit are driven by the test."""

    def __init__(self, command=None):
        self.command = command or []
        self.pid = next(_pids)
        self.returncode = None
        self.terminated = False
        self.killed = False
        self._lines = queue.Queue()
        self._exited = threading.Event()
        self.stderr = self._iter_lines()

    def _iter_lines(self):
        while True:
            line = self._lines.get()
            if line is None:
                return
            yield line

    def emit(self, *lines):
        for line in lines:
            self._lines.put(line + "\n")

    def exit(self, code):
        if self._exited.is_set():
            return
        self.returncode = code
        self._exited.set()
        self._lines.put(None)

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        self._exited.wait(timeout)
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)


class FakeRunner(FFmpegRunner):
    """FFmpegRunner that hands out FakeProcess objects instead of spawning ffmpeg."""

    def __init__(self, config, failures=None):
        super().__init__(config)
        self.processes = []
        self.commands = []
        self.terminated = []
        # queued SpawnError instances raised by the next start_process calls
        self.failures = list(failures or [])
        self._lock = threading.Lock()

    def start_process(self, command):
        with self._lock:
            self.commands.append(command)
            if self.failures:
                raise self.failures.pop(0)
            process = FakeProcess(command)
            self.processes.append(process)
            return process

    def terminate(self, process, grace_period):
        if process is None or process.poll() is not None:
            return None
        self.terminated.append(process)
        process.terminate()
        return None

    def fail_next(self, message="No such file or directory", retryable=True):
        self.failures.append(SpawnError(message, retryable=retryable))

    @property
    def last(self):
        with self._lock:
            return self.processes[-1] if self.processes else None


class FakeProber:
    """Returns a fixed resolution (or per-target resolutions) without running ffprobe."""

    def __init__(self, resolution=None, by_target=None):
        self.resolution = resolution
        self.by_target = by_target or {}
        self.calls = []

    def probe_source(self, source, timeout=10):
        self.calls.append(source.probe_target)
        return self.by_target.get(source.probe_target, self.resolution)


class RecordingObserver:
    """Websocket stand-in that keeps every payload it is sent."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, payload):
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(payload)


def wait_until(predicate, timeout=3.0, interval=0.01):
    """Poll ``predicate`` until it is truthy; fails the test on timeout."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    raise AssertionError("condition not met within %.1fs" % timeout)


PROGRESS_LINE = "frame=  120 fps= 30 q=-1.0 size=    1024kB time=00:00:04.00 bitrate=2097.2kbits/s speed=1.00x"


@pytest.fixture
def relay_config(tmp_path):
    return RelayConfig(
        max_slots=3,
        max_restarts=2,
        restart_delay=0,
        restart_delay_max=0,
        stop_grace_period=0.1,
        work_dir=str(tmp_path / "relay"),
    )


@pytest.fixture
def runner(relay_config):
    return FakeRunner(relay_config)


@pytest.fixture
def broadcaster():
    return LogBroadcaster()


@pytest.fixture
def prober_480p():
    return FakeProber(Resolution(854, 480))
