from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterator, Optional

from loguru import logger

from mediaworker.core.errors import ChannelClosedError, ProtocolError
from mediaworker.core.messages import Message, decode_message, encode_message

MAX_LENGTH_DIGITS = 10
MAX_PAYLOAD_BYTES = 16 * 1024 * 1024


def encode_frame(payload: bytes) -> bytes:
    """Wrap a payload as a netstring: ``<length>:<payload>,``."""
    return str(len(payload)).encode("ascii") + b":" + payload + b","


class NetstringDecoder:
    """Reassemble netstring frames out of arbitrarily split or merged reads."""

    def __init__(self, max_payload: int = MAX_PAYLOAD_BYTES) -> None:
        self._buf = bytearray()
        self._max_payload = max_payload

    @property
    def pending(self) -> int:
        """Number of buffered bytes that do not yet form a complete frame."""
        return len(self._buf)

    def feed(self, chunk: bytes) -> Iterator[bytes]:
        """Buffer ``chunk`` and iterate over the frames it completes.

        Frames that precede a malformed one are yielded before the
        ``ProtocolError`` is raised.
        """
        self._buf.extend(chunk)
        return self._drain()

    def _drain(self) -> Iterator[bytes]:
        while self._buf:
            colon = self._buf.find(b":", 0, MAX_LENGTH_DIGITS + 1)
            if colon < 0:
                if len(self._buf) > MAX_LENGTH_DIGITS or not self._buf.isdigit():
                    raise ProtocolError(f"Bad netstring length prefix: {bytes(self._buf[:16])!r}")
                break
            prefix = bytes(self._buf[:colon])
            if not prefix or not prefix.isdigit():
                raise ProtocolError(f"Bad netstring length prefix: {prefix!r}")
            length = int(prefix)
            if length > self._max_payload:
                raise ProtocolError(f"Netstring payload of {length} bytes exceeds limit")
            end = colon + 1 + length
            if len(self._buf) < end + 1:
                break
            if self._buf[end] != ord(","):
                raise ProtocolError("Netstring frame is missing its ',' terminator")
            payload = bytes(self._buf[colon + 1 : end])
            del self._buf[: end + 1]
            yield payload


class FramedChannel:
    """Message channel over a pair of byte streams.

    Reads are reassembled into messages and handed to ``on_message`` handlers
    in arrival order. Writes are serialized so frames never interleave.
    ``on_close`` handlers run exactly once, with the terminating exception
    (``None`` on a clean end-of-stream or explicit close).
    """

    def __init__(self, reader: asyncio.StreamReader, writer: Any, name: str = "engine", read_size: int = 65536) -> None:
        self._reader = reader
        self._writer = writer
        self._name = name
        self._read_size = read_size
        self._decoder = NetstringDecoder()
        self._write_lock = asyncio.Lock()
        self._on_message: list[Callable[[Message], None]] = []
        self._on_close: list[Callable[[Optional[BaseException]], None]] = []
        self._read_task: Optional[asyncio.Task] = None
        self._closed = False
        self._writer_closed = False
        self.close_error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def on_message(self, callback: Callable[[Message], None]) -> None:
        self._on_message.append(callback)

    def on_close(self, callback: Callable[[Optional[BaseException]], None]) -> None:
        self._on_close.append(callback)

    def start(self) -> None:
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop(), name=f"{self._name}-channel-reader")

    async def write(self, message: Message) -> None:
        if self._closed:
            raise ChannelClosedError(f"Channel {self._name} is closed")
        frame = encode_frame(encode_message(message))
        async with self._write_lock:
            if self._closed:
                raise ChannelClosedError(f"Channel {self._name} is closed")
            try:
                self._writer.write(frame)
                await self._writer.drain()
            except (ConnectionError, OSError) as exc:
                self._terminate(exc)
                raise ChannelClosedError(f"Channel {self._name} write failed: {exc}") from exc

    def close(self) -> None:
        self._terminate(None)
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
        if self._writer_closed:
            return
        self._writer_closed = True
        try:
            self._writer.close()
        except (ConnectionError, OSError) as exc:
            logger.debug(f"[channel] {self._name}: error closing writer: {exc}")

    async def _read_loop(self) -> None:
        try:
            while not self._closed:
                chunk = await self._reader.read(self._read_size)
                if not chunk:
                    if self._decoder.pending:
                        raise ProtocolError(f"Stream ended inside a frame ({self._decoder.pending} bytes buffered)")
                    logger.debug(f"[channel] {self._name}: end of stream")
                    self._terminate(None)
                    return
                for payload in self._decoder.feed(chunk):
                    self._dispatch(decode_message(payload))
                    if self._closed:
                        return
        except ProtocolError as exc:
            logger.error(f"[channel] {self._name}: protocol fault: {exc}")
            self._terminate(exc)
        except (ConnectionError, OSError) as exc:
            logger.error(f"[channel] {self._name}: read failed: {exc}")
            self._terminate(exc)
        except Exception as exc:
            logger.exception(f"[channel] {self._name}: reader failed")
            self._terminate(exc)

    def _dispatch(self, message: Message) -> None:
        for cb in list(self._on_message):
            try:
                cb(message)
            except Exception:
                logger.exception(f"[channel] {self._name}: exception in message handler")

    def _terminate(self, exc: Optional[BaseException]) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_error = exc
        callbacks = list(self._on_close)
        self._on_close.clear()
        self._on_message.clear()
        for cb in callbacks:
            try:
                cb(exc)
            except Exception:
                logger.exception(f"[channel] {self._name}: exception in close handler")
