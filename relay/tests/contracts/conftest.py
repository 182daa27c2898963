"""
Shared pytest fixtures for relay contract tests.
"""
import functools
import threading
import time

import pytest

from relay.core.channel import BroadcastChannel
from relay.core.endpoint import EndpointKey


class FakeSupervisor:
    """Stands in for ProcessSupervisor; chunks and exits are driven by the test."""

    def __init__(self, key, on_chunk, on_exit, fail_on_start=False, dispose_gate=None):
        self.key = key
        self.on_chunk = on_chunk
        self.on_exit = on_exit
        self.fail_on_start = fail_on_start
        self.start_calls = 0
        self.dispose_calls = 0
        # When set, dispose() blocks until the event is set, like a slow terminate
        self.dispose_gate = dispose_gate
        self.dispose_started = threading.Event()
        self.dispose_finished = threading.Event()

    @property
    def disposed(self):
        return self.dispose_calls > 0

    def start(self):
        self.start_calls += 1
        if self.fail_on_start:
            self.on_exit("spawn_failed")

    def dispose(self):
        self.dispose_calls += 1
        self.dispose_started.set()
        if self.dispose_gate is not None:
            self.dispose_gate.wait(timeout=5.0)
        self.dispose_finished.set()

    def emit(self, chunk):
        self.on_chunk(chunk)

    def exit(self, reason="process_exit"):
        self.on_exit(reason)


class FakeSupervisorFactory:
    """Records every supervisor a channel spawns."""

    def __init__(self):
        self.instances = []
        self.fail_next = False
        self.dispose_gate = None
        self._lock = threading.Lock()

    def __call__(self, key, on_chunk, on_exit):
        with self._lock:
            supervisor = FakeSupervisor(
                key, on_chunk, on_exit,
                fail_on_start=self.fail_next,
                dispose_gate=self.dispose_gate,
            )
            self.fail_next = False
            self.instances.append(supervisor)
            return supervisor

    @property
    def spawn_count(self):
        return len(self.instances)

    @property
    def latest(self):
        return self.instances[-1]

    @property
    def live(self):
        return [s for s in self.instances if not s.disposed]


class ManualTimer:
    """threading.Timer look-alike that only fires when the test says so."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    @property
    def pending(self):
        return self.started and not self.cancelled and not self.fired

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        # Runs even if cancelled, like a threading.Timer that already woke up
        self.fired = True
        self.function()


class ManualTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function):
        timer = ManualTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if t.pending]

    @property
    def latest(self):
        return self.timers[-1]

    def fire_pending(self):
        for timer in self.pending:
            timer.fire()


@pytest.fixture
def endpoint_key():
    return EndpointKey("127.0.0.1", 22124)


@pytest.fixture
def supervisor_factory():
    return FakeSupervisorFactory()


@pytest.fixture
def timer_factory():
    return ManualTimerFactory()


@pytest.fixture
def channel_factory(supervisor_factory, timer_factory):
    """Builds channels with fake supervisors and manual timers."""
    return functools.partial(
        BroadcastChannel,
        supervisor_factory=supervisor_factory,
        grace_sec=5.0,
        timer_factory=timer_factory,
    )


@pytest.fixture
def channel(channel_factory, endpoint_key):
    return channel_factory(endpoint_key)


@pytest.fixture
def wait_until():
    """Poll a condition until it holds or the timeout expires."""
    def _wait_until(condition, timeout=3.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if condition():
                return True
            time.sleep(interval)
        return condition()
    return _wait_until


@pytest.fixture(autouse=False)  # Request explicitly in tests that start threads
def thread_leak_guard():
    """
    Detect threads left running by a test.

    Daemon drain/writer threads must be gone once their owner is disposed.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    deadline = time.monotonic() + 2.0
    while True:
        leaked = [t for t in threading.enumerate() if t.ident not in before and t.is_alive()]
        if not leaked or time.monotonic() > deadline:
            break
        time.sleep(0.02)
    if leaked:
        thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked)
        assert False, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
