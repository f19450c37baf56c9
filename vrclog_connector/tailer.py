"""Incremental, line-safe reading of a growing log file.

The cursor always points just past the last newline consumed, so a line that
is still being written is picked up whole on a later pass.
"""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional


logger = logging.getLogger("vrclog_connector.tailer")


class FileUnavailable(Exception):
    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


@dataclass
class WatchTarget:
    directory: str
    file_name: str = ""

    @property
    def path(self) -> str:
        return os.path.join(self.directory, self.file_name)


class CursorStore:
    """Byte offset into the current target file."""

    def __init__(self, offset: int = 0):
        self._lock = threading.Lock()
        self._offset = int(offset)

    def get(self) -> int:
        with self._lock:
            return self._offset

    def reset(self) -> None:
        with self._lock:
            self._offset = 0

    def advance(self, n: int) -> None:
        n = int(n)
        with self._lock:
            if n < 0:
                raise ValueError(f"negative offset: {n}")
            if n < self._offset:
                raise ValueError(f"offset {n} is behind current cursor {self._offset}; use reset()")
            self._offset = n


@dataclass
class TailResult:
    cursor: int
    lines: List[str] = field(default_factory=list)
    truncated: bool = False


def _split_lines(data: bytes) -> List[str]:
    out = []
    for raw in data.split(b"\n"):
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        out.append(raw.decode("utf-8", errors="replace"))
    return out


def tail(
    target: WatchTarget,
    cursor: int,
    on_line: Optional[Callable[[str], None]] = None,
    rescan_on_truncate: bool = True,
) -> TailResult:
    """Read every complete line appended to ``target`` since ``cursor``.

    Raises FileUnavailable when the file cannot be opened; the caller keeps
    its cursor and tries again on the next trigger.
    """
    path = target.path
    try:
        f = open(path, "rb")
    except OSError as e:
        raise FileUnavailable(path, e.strerror or str(e)) from e
    with f:
        size = os.fstat(f.fileno()).st_size
        truncated = False
        if cursor > size:
            if not rescan_on_truncate:
                logger.warning(f"{path}: cursor {cursor} past end of file ({size} bytes), waiting for growth")
                return TailResult(cursor=cursor)
            logger.warning(f"{path}: cursor {cursor} past end of file ({size} bytes), re-reading from start")
            cursor = 0
            truncated = True
        f.seek(cursor)
        data = f.read()
    end = data.rfind(b"\n")
    if end < 0:
        return TailResult(cursor=cursor, truncated=truncated)
    lines = _split_lines(data[:end])
    if on_line is not None:
        for line in lines:
            on_line(line)
    new_cursor = cursor + end + 1
    logger.debug(f"{path}: read {len(lines)} lines, offset {cursor} -> {new_cursor}")
    return TailResult(cursor=new_cursor, lines=lines, truncated=truncated)
