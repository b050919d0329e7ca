"""
Command spawner for stooge.
Launches every registered command as a detached `/bin/sh -c` child.
"""
from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass, field
from typing import Optional

from core.observability import logger
from core.registry import CommandRegistry

DEFAULT_SHELL = "/bin/sh"


@dataclass
class ChildRecord:
    """A child started for one command. Only used for reaping."""

    pid: int
    command: str
    process: subprocess.Popen = field(repr=False)
    started_at: float = field(default_factory=time.monotonic)


class CommandSpawner:
    """
    Fire-and-forget launcher for the commands in a CommandRegistry.

    `fire_all` never waits for a child. Finished children are collected by
    `reap`, which the serving loop calls after every readiness wait.
    """

    def __init__(self, registry: CommandRegistry, shell: str = DEFAULT_SHELL):
        self.registry = registry
        self.shell = shell
        self.spawned_total = 0
        self._children: list[ChildRecord] = []

    @property
    def live_count(self) -> int:
        """Children started and not reaped yet."""
        return len(self._children)

    def _spawn(self, command: str) -> subprocess.Popen:
        return subprocess.Popen(
            [self.shell, "-c", command],
            close_fds=True,
            start_new_session=True,
        )

    def fire_all(self) -> list[ChildRecord]:
        """
        Start one child per registered command, in registration order.

        A command whose child cannot be created is logged and skipped; the
        remaining commands are still attempted.

        Returns:
            Records for the children that were actually started
        """
        started: list[ChildRecord] = []
        for idx, command in enumerate(self.registry):
            try:
                proc = self._spawn(command)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to spawn command #{idx} ({command!r}): {e}")
                continue

            record = ChildRecord(pid=proc.pid, command=command, process=proc)
            self._children.append(record)
            self.spawned_total += 1
            started.append(record)
            logger.info(f"Spawned pid {proc.pid}: {command}")

        return started

    def reap(self) -> int:
        """
        Collect children that have exited, without blocking.

        Returns:
            Number of children reaped
        """
        still_running: list[ChildRecord] = []
        reaped = 0
        for record in self._children:
            returncode: Optional[int] = record.process.poll()
            if returncode is None:
                still_running.append(record)
                continue

            reaped += 1
            elapsed = time.monotonic() - record.started_at
            if returncode == 0:
                logger.debug(f"pid {record.pid} finished in {elapsed:.1f}s: {record.command}")
            else:
                logger.warning(
                    f"pid {record.pid} exited with status {returncode} after {elapsed:.1f}s: {record.command}"
                )

        self._children = still_running
        return reaped
