from __future__ import annotations

from typing import Callable


class LineBuffer:
    """Accumulate decoded text chunks and emit complete lines to a sink."""

    def __init__(self, write_line: Callable[[str], None]) -> None:
        self._buf = ""
        self._write = write_line

    def feed(self, chunk: bytes | str) -> None:
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")
        self._buf += chunk
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            self._write(line.rstrip("\r"))

    def flush(self) -> None:
        if self._buf:
            self._write(self._buf)
            self._buf = ""
