"""
Shared pytest fixtures for contract tests.
"""
import os
import subprocess
import threading
from typing import List, Optional

import pytest


def make_jpeg(tag: bytes, body_size: int = 64) -> bytes:
    """Marker-delimited fake JPEG; body avoids 0xFF so it holds no markers."""
    body = (tag * (body_size // max(len(tag), 1) + 1))[:body_size]
    return b"\xff\xd8" + body + b"\xff\xd9"


class FakeProcess:
    """
    Stand-in for subprocess.Popen backed by real OS pipes, so the session's
    drain threads do real blocking reads.
    """

    _next_pid = 40000

    def __init__(self, cmd):
        self.args = cmd
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: Optional[int] = None
        self.killed = False

        out_r, self._out_w = os.pipe()
        err_r, self._err_w = os.pipe()
        self.stdout = os.fdopen(out_r, "rb", buffering=0)
        self.stderr = os.fdopen(err_r, "rb", buffering=0)
        self._exited = threading.Event()
        self._lock = threading.Lock()

    def write_stdout(self, data: bytes) -> None:
        os.write(self._out_w, data)

    def write_stderr(self, data: bytes) -> None:
        os.write(self._err_w, data)

    def _exit(self, returncode: int) -> None:
        with self._lock:
            if self.returncode is not None:
                return
            self.returncode = returncode
            for fd in (self._out_w, self._err_w):
                try:
                    os.close(fd)
                except OSError:
                    pass
        self._exited.set()

    def crash(self, returncode: int = 1) -> None:
        """Simulate ffmpeg exiting on its own."""
        self._exit(returncode)

    def kill(self) -> None:
        self.killed = True
        self._exit(-9)

    def wait(self, timeout: Optional[float] = None) -> int:
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode


class FakePopen:
    """Callable replacing subprocess.Popen; remembers every process it made."""

    def __init__(self):
        self.processes: List[FakeProcess] = []
        self.calls = []
        self.spawned = threading.Event()

    def __call__(self, cmd, **kwargs):
        self.calls.append((list(cmd), kwargs))
        process = FakeProcess(cmd)
        self.processes.append(process)
        self.spawned.set()
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]

    def cleanup(self) -> None:
        for process in self.processes:
            process.kill()
            for pipe in (process.stdout, process.stderr):
                try:
                    pipe.close()
                except (OSError, ValueError):
                    pass


@pytest.fixture
def fake_popen(monkeypatch):
    """Patch Popen in the session module with FakePopen."""
    popen = FakePopen()
    monkeypatch.setattr("camrelay.stream.session.subprocess.Popen", popen)
    yield popen
    popen.cleanup()


class ManualTimer:
    """threading.Timer look-alike that only fires when told to."""

    def __init__(self, registry, interval, function, args=None, kwargs=None):
        self._registry = registry
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True
        self._registry.timers.append(self)

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.cancelled or self.fired:
            return
        self.fired = True
        self.function(*self.args, **self.kwargs)


class ManualTimers:
    def __init__(self):
        self.timers: List[ManualTimer] = []

    def factory(self, interval, function, args=None, kwargs=None):
        return ManualTimer(self, interval, function, args, kwargs)

    def pending(self) -> List[ManualTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_pending(self) -> int:
        fired = 0
        for timer in self.pending():
            timer.fire()
            fired += 1
        return fired


@pytest.fixture
def manual_timers():
    return ManualTimers()


class FakeSession:
    """Session double for supervisor tests."""

    def __init__(self, session_id, on_frame, on_exit, fail_start: Optional[Exception] = None):
        self.session_id = session_id
        self.on_frame = on_frame
        self.on_exit = on_exit
        self.fail_start = fail_start
        self.start_calls = 0
        self.stop_calls = 0

    def start(self):
        self.start_calls += 1
        if self.fail_start is not None:
            raise self.fail_start

    def stop(self):
        self.stop_calls += 1

    def emit(self, frame: bytes):
        self.on_frame(self.session_id, frame)

    def crash(self, error: Optional[Exception] = None):
        self.on_exit(self.session_id, error)


class FakeSessionFactory:
    def __init__(self):
        self.sessions: List[FakeSession] = []
        self.fail_next: Optional[Exception] = None

    def __call__(self, session_id, on_frame, on_exit):
        session = FakeSession(session_id, on_frame, on_exit, fail_start=self.fail_next)
        self.fail_next = None
        self.sessions.append(session)
        return session

    @property
    def last(self) -> FakeSession:
        return self.sessions[-1]


@pytest.fixture
def session_factory():
    return FakeSessionFactory()


class FakeSocket:
    """
    Socket double for broadcaster tests.

    mode: "ok" accepts everything, "block" raises BlockingIOError,
    "error" raises BrokenPipeError, "zero" returns 0, "partial" accepts
    partial_size bytes per call.
    """

    def __init__(self, mode: str = "ok", partial_size: int = 4):
        self.mode = mode
        self.partial_size = partial_size
        self.sent = bytearray()
        self.blocking = True
        self.closed = False
        self.send_calls = 0

    def setblocking(self, flag):
        self.blocking = flag

    def send(self, data):
        self.send_calls += 1
        if self.closed:
            raise OSError("socket closed")
        if self.mode == "block":
            raise BlockingIOError()
        if self.mode == "error":
            raise BrokenPipeError("broken pipe")
        if self.mode == "zero":
            return 0
        if self.mode == "partial":
            n = min(self.partial_size, len(data))
            self.sent += data[:n]
            return n
        self.sent += data
        return len(data)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_socket():
    return FakeSocket


class CountingSupervisor:
    """Records subscriber_joined()/subscriber_left() calls."""

    def __init__(self):
        self.joined = 0
        self.left = 0

    def subscriber_joined(self):
        self.joined += 1

    def subscriber_left(self):
        self.left += 1


@pytest.fixture
def counting_supervisor():
    return CountingSupervisor()


@pytest.fixture(autouse=False)  # Set to True to enable automatic thread leak detection
def thread_leak_guard():
    """
    Optional fixture to detect thread leaks between tests.

    Ensures sessions and servers really shut their threads down. Request it
    explicitly in tests.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    # Give exiting threads a moment to finish
    for t in threading.enumerate():
        if t.ident not in before and t is not threading.current_thread():
            t.join(timeout=2.0)
    after = set(t.ident for t in threading.enumerate() if t.is_alive())
    leaked = after - before
    if leaked:
        leaked_threads = [t for t in threading.enumerate() if t.ident in leaked]
        thread_info = "\n".join(f"  - {t.name} (daemon={t.daemon})" for t in leaked_threads)
        assert False, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
