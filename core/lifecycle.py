"""
Lifecycle controller for stooge.

Owns the process while serving: installs signal handlers, runs the readiness
loop that drives the webhook acceptor, and shuts everything down in order.

Signals wake the loop through `signal.set_wakeup_fd`: the interpreter writes
the signal number to a socket as soon as the signal is delivered, so a signal
that lands between the shutdown-flag check and the wait still makes the wait
return immediately.
"""
from __future__ import annotations

import errno
import select
import signal
import socket
from typing import Iterable, Optional, Protocol

from core.observability import logger

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SetupError(Exception):
    """Raised when signal handling cannot be installed; the server must not start."""


class Acceptor(Protocol):
    def start(self) -> None: ...

    def descriptor_set(self) -> tuple[list[int], list[int], list[int]]: ...

    def wait_timeout(self) -> Optional[float]: ...

    def advance(self, readable, writable=(), errored=()) -> int: ...

    def stop(self) -> None: ...


class Reaper(Protocol):
    def reap(self) -> int: ...


class ShutdownFlag:
    """One-shot flag set from a signal handler and polled by the serving loop."""

    __slots__ = ("_set", "signum")

    def __init__(self):
        self._set = False
        self.signum: Optional[int] = None

    def set(self, signum: Optional[int] = None) -> bool:
        """Raise the flag. Returns False if it was already raised."""
        if self._set:
            return False
        self.signum = signum
        self._set = True
        return True

    def is_set(self) -> bool:
        return self._set

    def __bool__(self) -> bool:
        return self._set


class LifecycleController:
    """
    Runs the webhook acceptor until a shutdown signal arrives.

    Typical use::

        controller = LifecycleController(acceptor, spawner)
        ok = controller.run()
    """

    def __init__(
        self,
        acceptor: Acceptor,
        reaper: Optional[Reaper] = None,
        flag: Optional[ShutdownFlag] = None,
        shutdown_signals: Iterable[int] = SHUTDOWN_SIGNALS,
    ):
        self.acceptor = acceptor
        self.reaper = reaper
        self.flag = flag or ShutdownFlag()
        self.shutdown_signals = tuple(shutdown_signals)
        self.loop_error: Optional[OSError] = None
        self.cycles = 0

        self._wake_r: Optional[socket.socket] = None
        self._wake_w: Optional[socket.socket] = None
        self._old_wakeup_fd: Optional[int] = None
        self._old_handlers: dict[int, object] = {}

    # -- signal handling -------------------------------------------------

    def _on_shutdown_signal(self, signum, frame):
        self.flag.set(signum)

    def _on_child_signal(self, signum, frame):
        # Delivery alone wakes the wait; reaping happens in the loop.
        pass

    def install_signal_handlers(self) -> None:
        """
        Install shutdown and SIGCHLD handlers plus the wake-up socket.

        Must run in the main thread. Raises SetupError on any failure, after
        undoing whatever was already installed.
        """
        try:
            self._wake_r, self._wake_w = socket.socketpair()
            self._wake_r.setblocking(False)
            self._wake_w.setblocking(False)
            self._old_wakeup_fd = signal.set_wakeup_fd(
                self._wake_w.fileno(), warn_on_full_buffer=False
            )
            for signum in self.shutdown_signals:
                self._old_handlers[signum] = signal.signal(signum, self._on_shutdown_signal)
            if self.reaper is not None:
                self._old_handlers[signal.SIGCHLD] = signal.signal(
                    signal.SIGCHLD, self._on_child_signal
                )
        except (ValueError, OSError) as e:
            self.restore_signal_handlers()
            raise SetupError(f"Failed to install signal handlers: {e}") from e

    def restore_signal_handlers(self) -> None:
        """Put back the handlers and wake-up fd that were active before."""
        for signum, handler in self._old_handlers.items():
            try:
                signal.signal(signum, handler)
            except (ValueError, OSError, TypeError) as e:
                logger.warning(f"Could not restore handler for signal {signum}: {e}")
        self._old_handlers.clear()

        if self._old_wakeup_fd is not None:
            try:
                signal.set_wakeup_fd(self._old_wakeup_fd)
            except ValueError as e:
                logger.warning(f"Could not restore wake-up fd: {e}")
            self._old_wakeup_fd = None

        for sock in (self._wake_r, self._wake_w):
            if sock is not None:
                sock.close()
        self._wake_r = self._wake_w = None

    def shutdown(self) -> None:
        """Ask the loop to exit. Usable from any thread."""
        self.flag.set()
        wake = self._wake_w
        if wake is not None:
            try:
                wake.send(b"\0")
            except OSError:
                # Buffer full or already closed: the loop is awake or gone.
                pass

    # -- serving loop ----------------------------------------------------

    def _drain_wakeup(self) -> list[int]:
        received: list[int] = []
        while True:
            try:
                data = self._wake_r.recv(4096)
            except (BlockingIOError, InterruptedError):
                break
            if not data:
                break
            received.extend(data)
        return received

    def _reap(self) -> None:
        if self.reaper is not None:
            self.reaper.reap()

    def serve(self) -> bool:
        """
        Run the readiness loop until the shutdown flag is raised.

        The acceptor must already be started and signal handling installed.

        Returns:
            True on a signal-driven exit, False if the wait failed
        """
        wake_fd = self._wake_r.fileno()

        while not self.flag.is_set():
            readers, writers, errors = self.acceptor.descriptor_set()
            try:
                readable, writable, errored = select.select(
                    readers + [wake_fd], writers, errors, self.acceptor.wait_timeout()
                )
            except OSError as e:
                if e.errno == errno.EINTR:
                    continue
                logger.error(f"Readiness wait failed: {e}")
                self.loop_error = e
                return False

            self.cycles += 1

            if wake_fd in readable:
                self._drain_wakeup()
                self._reap()
                continue

            self._reap()
            self.acceptor.advance(readable, writable, errored)

        return True

    def run(self) -> bool:
        """
        Install signals, start the acceptor, serve, and shut down.

        Raises:
            SetupError: signal handling could not be installed
            OSError: the acceptor could not bind its port

        Returns:
            True on a clean signal-driven shutdown, False on a loop error
        """
        self.install_signal_handlers()
        try:
            self.acceptor.start()
            try:
                clean = self.serve()
                if self.flag.signum is not None:
                    name = signal.Signals(self.flag.signum).name
                    logger.info(f"Caught {name}, shutting down...")
                else:
                    logger.info("Shutting down...")
            finally:
                self.acceptor.stop()
        finally:
            self.restore_signal_handlers()
        return clean
