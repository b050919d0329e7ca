"""
Working-directory handling for stooge.

Commands inherit the server's current directory, so `-C DIR` is applied to
the whole process before serving and undone when the server exits.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union


@contextmanager
def working_directory(path: Optional[Union[str, Path]]) -> Iterator[Path]:
    """
    Change into `path` for the duration of the block, then return.

    With `path=None` the current directory is left alone. Raises OSError if
    the directory cannot be entered. The previous directory is kept open and
    restored with fchdir, so it still works if it was renamed meanwhile.
    """
    if path is None:
        yield Path.cwd()
        return

    previous_fd = os.open(".", os.O_RDONLY)
    try:
        os.chdir(path)
        try:
            yield Path.cwd()
        finally:
            os.fchdir(previous_fd)
    finally:
        os.close(previous_fd)
