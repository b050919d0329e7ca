"""
End-to-end tests: a real stooge process, real HTTP requests, real children.
"""
import signal
import socket
import subprocess
import sys
import time

import pytest
import requests

from conftest import ROOT, wait_for

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs /bin/sh and POSIX signals")


def _stop(proc, timeout=5.0):
    proc.send_signal(signal.SIGINT)
    return proc.wait(timeout=timeout)


def test_single_command_fires(stooge_process, free_port, tmp_path):
    marker = tmp_path / "stooge-test-A"
    proc = stooge_process(free_port, f"touch '{marker}'")

    response = requests.post(f"http://127.0.0.1:{free_port}/hook", timeout=5)

    assert response.status_code == 200
    assert response.content == b""
    assert wait_for(marker.exists)
    assert _stop(proc) == 0


def test_multiple_commands_all_fire(stooge_process, free_port, tmp_path):
    log = tmp_path / "log"
    proc = stooge_process(free_port, f"echo 1 >> '{log}'", f"echo 2 >> '{log}'")

    response = requests.post(f"http://127.0.0.1:{free_port}/hook", data=b"{}", timeout=5)

    assert response.status_code == 200

    def both_lines():
        return log.exists() and sorted(log.read_text().split()) == ["1", "2"]

    assert wait_for(both_lines)
    assert _stop(proc) == 0


def test_non_post_is_ignored(stooge_process, free_port, tmp_path):
    marker = tmp_path / "should-not-exist"
    proc = stooge_process(free_port, f"touch '{marker}'")

    response = requests.get(f"http://127.0.0.1:{free_port}/anything", timeout=5)

    assert response.status_code != 200
    time.sleep(0.5)
    assert not marker.exists()
    assert _stop(proc) == 0


def test_empty_registry_still_acknowledges(stooge_process, free_port):
    proc = stooge_process(free_port)

    response = requests.post(f"http://127.0.0.1:{free_port}/hook", timeout=5)

    assert response.status_code == 200
    assert _stop(proc) == 0


def test_shutdown_does_not_wait_for_children(stooge_process, free_port):
    proc = stooge_process(free_port, "sleep 2")

    assert requests.post(f"http://127.0.0.1:{free_port}/hook", timeout=5).status_code == 200

    start = time.monotonic()
    proc.send_signal(signal.SIGINT)
    assert proc.wait(timeout=5) == 0
    assert time.monotonic() - start < 1.5


def test_sigterm_is_a_clean_shutdown(stooge_process, free_port):
    proc = stooge_process(free_port)

    proc.send_signal(signal.SIGTERM)

    assert proc.wait(timeout=5) == 0


def test_port_reusable_after_shutdown(stooge_process, free_port):
    first = stooge_process(free_port)
    assert requests.post(f"http://127.0.0.1:{free_port}/", timeout=5).status_code == 200
    assert _stop(first) == 0

    second = stooge_process(free_port)

    assert requests.post(f"http://127.0.0.1:{free_port}/", timeout=5).status_code == 200
    assert _stop(second) == 0


def test_slow_command_does_not_delay_next_response(stooge_process, free_port):
    proc = stooge_process(free_port, "sleep 3")
    url = f"http://127.0.0.1:{free_port}/hook"

    for _ in range(2):
        start = time.monotonic()
        assert requests.post(url, timeout=5).status_code == 200
        assert time.monotonic() - start < 1.5

    assert _stop(proc) == 0


def test_commands_run_in_chosen_directory(stooge_process, free_port, tmp_path):
    site = tmp_path / "site"
    site.mkdir()
    proc = stooge_process(free_port, "pwd -P > where.txt", extra_args=["-C", str(site)])

    assert requests.post(f"http://127.0.0.1:{free_port}/hook", timeout=5).status_code == 200

    out = site / "where.txt"
    assert wait_for(lambda: out.exists() and out.read_text().strip() != "")
    assert out.read_text().strip() == str(site.resolve())
    assert _stop(proc) == 0


def test_bind_failure_exits_nonzero(stooge_process, free_port, tmp_path):
    first = stooge_process(free_port)

    second = subprocess.run(
        [sys.executable, str(ROOT / "main.py"), "-p", str(free_port), "--host", "127.0.0.1"],
        cwd=tmp_path,
        capture_output=True,
        text=True,
        timeout=15,
    )

    assert second.returncode == 1
    assert _stop(first) == 0


def test_idle_connection_does_not_stall_server(stooge_process, free_port, tmp_path):
    marker = tmp_path / "fired"
    proc = stooge_process(free_port, f"touch '{marker}'")

    with socket.create_connection(("127.0.0.1", free_port)):
        response = requests.post(f"http://127.0.0.1:{free_port}/hook", timeout=3)

        assert response.status_code == 200
        assert response.raw.version == 11
        assert response.headers["Connection"] == "close"
        assert wait_for(marker.exists)

        start = time.monotonic()
        proc.send_signal(signal.SIGINT)
        assert proc.wait(timeout=5) == 0
        assert time.monotonic() - start < 1.5
