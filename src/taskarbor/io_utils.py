"""File I/O helpers: UTF-8 text, atomic byte writes, durable appends."""

from __future__ import annotations

import os
import tempfile
from io import TextIOWrapper
from pathlib import Path
from typing import Any

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict", **kwargs: Any) -> str:
    """Read path as text with UTF-8 encoding. Forwards extra kwargs to Path.read_text."""
    p = path if isinstance(path, Path) else Path(path)
    return p.read_text(encoding="utf-8", errors=errors, **kwargs)


def write_text(path: PathLike, text: str, **kwargs: Any) -> None:
    """Write text to path with UTF-8 encoding. Forwards extra kwargs to Path.write_text."""
    p = path if isinstance(path, Path) else Path(path)
    p.write_text(text, encoding="utf-8", **kwargs)


def open_text(
    path: PathLike,
    mode: str = "r",
    *,
    encoding: str = "utf-8",
    errors: str = "strict",
    **kwargs: Any,
) -> TextIOWrapper:
    """Open path for text I/O with UTF-8 by default. Use for append/write (e.g. log files)."""
    return open(path, mode, encoding=encoding, errors=errors, **kwargs)


def fsync_dir(path: PathLike) -> None:
    """Flush a directory entry so a rename inside it survives power loss (POSIX only)."""
    if os.name != "posix":
        return
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_bytes(path: PathLike, data: bytes, *, tmp_dir: PathLike | None = None) -> None:
    """Write *data* to *path* via temp file + fsync + rename.

    The previous content of *path* is untouched until ``os.replace`` succeeds.
    *tmp_dir* must live on the same filesystem as *path*.
    """
    target = Path(path)
    directory = Path(tmp_dir) if tmp_dir is not None else target.parent
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
    fsync_dir(target.parent)


def append_line(path: PathLike, line: str) -> None:
    """Append one line to a text file and fsync it."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open_text(p, "a") as f:
        f.write(line.rstrip("\n") + "\n")
        f.flush()
        os.fsync(f.fileno())
