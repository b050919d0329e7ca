"""
Command registry for stooge.
Holds the shell commands configured at startup, in registration order.
"""
from __future__ import annotations

from typing import Iterable, Iterator


class CommandRegistry:
    """
    Immutable, ordered list of single-line shell scripts.

    Built once from configuration and only read afterwards, so it can be
    shared with the request handler without locking.
    """

    __slots__ = ("_commands",)

    def __init__(self, commands: Iterable[str] = ()):
        frozen = tuple(commands)
        for idx, cmd in enumerate(frozen):
            if not isinstance(cmd, str):
                raise TypeError(f"Command #{idx} must be a string, got {type(cmd).__name__}")
            if "\x00" in cmd:
                raise ValueError(f"Command #{idx} contains a NUL byte")
        object.__setattr__(self, "_commands", frozen)

    def __setattr__(self, name, value):
        raise AttributeError("CommandRegistry is read-only")

    def count(self) -> int:
        """Number of configured commands."""
        return len(self._commands)

    def at(self, index: int) -> str:
        """Return the command registered at position `index`."""
        if index < 0 or index >= len(self._commands):
            raise IndexError(f"No command at index {index} (have {len(self._commands)})")
        return self._commands[index]

    def __len__(self) -> int:
        return len(self._commands)

    def __iter__(self) -> Iterator[str]:
        return iter(self._commands)

    def __bool__(self) -> bool:
        return bool(self._commands)

    def __repr__(self) -> str:
        return f"CommandRegistry({list(self._commands)!r})"
