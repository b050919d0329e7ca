"""
Pytest fixtures for stooge tests.
"""
import os
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))


class FakeProcess:
    """Stands in for subprocess.Popen so tests never start real children."""

    _next_pid = 40000

    def __init__(self, args, **kwargs):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.args = args
        self.kwargs = kwargs
        self.returncode = None

    def poll(self):
        return self.returncode

    def finish(self, returncode: int = 0):
        self.returncode = returncode


@pytest.fixture
def fake_popen(monkeypatch):
    """Patch Popen inside the spawner; returns the list of created FakeProcess objects."""
    created = []

    def _popen(args, **kwargs):
        proc = FakeProcess(args, **kwargs)
        created.append(proc)
        return proc

    monkeypatch.setattr("core.spawner.subprocess.Popen", _popen)
    return created


@pytest.fixture
def free_port():
    """A TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def wait_for_port(port: int, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=0.5):
                return
        except OSError:
            time.sleep(0.05)
    raise TimeoutError(f"Nothing listening on port {port} after {timeout}s")


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def stooge_process(tmp_path):
    """
    Start `main.py` as a real server process.

    Returns a starter ``start(port, *commands, extra_args=())``; every
    process still running at teardown gets SIGINT, then SIGKILL.
    """
    procs = []
    env = {k: v for k, v in os.environ.items() if not k.startswith("STOOGE_")}

    def start(port, *commands, extra_args=()):
        args = [sys.executable, str(ROOT / "main.py"), "-p", str(port), "--host", "127.0.0.1"]
        for cmd in commands:
            args += ["-e", cmd]
        args += list(extra_args)
        proc = subprocess.Popen(args, cwd=tmp_path, env=env)
        procs.append(proc)
        wait_for_port(port)
        return proc

    yield start

    for proc in procs:
        if proc.poll() is None:
            proc.send_signal(signal.SIGINT)
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
