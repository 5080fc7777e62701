"""Helpers shared by the tests: the fake engine path and loopback streams."""

import asyncio
import os

from mediaworker.core.channel import FramedChannel, NetstringDecoder, encode_frame
from mediaworker.core.messages import Message, decode_message, encode_message

FAKE_ENGINE: str = os.path.join(os.path.dirname(__file__), "fixtures", "fake_engine.py")


class LoopbackWriter:
    """Writer that feeds every written byte into a ``StreamReader``."""

    def __init__(self, reader: asyncio.StreamReader) -> None:
        self.reader = reader
        self.closed = False
        self.chunks: list[bytes] = []

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("loopback writer is closed")
        self.chunks.append(bytes(data))
        self.reader.feed_data(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.reader.feed_eof()


class ScriptedPeer:
    """Engine side of a loopback pair, driven by the test body.

    :param to_host: Stream the host channel reads from.
    """

    def __init__(self, to_host: asyncio.StreamReader, from_host: asyncio.StreamReader) -> None:
        self._to_host = to_host
        self._from_host = from_host
        self._decoder = NetstringDecoder()
        self._inbox: list[Message] = []

    def send(self, message: Message) -> None:
        self._to_host.feed_data(encode_frame(encode_message(message)))

    def send_raw(self, data: bytes) -> None:
        self._to_host.feed_data(data)

    def hang_up(self) -> None:
        self._to_host.feed_eof()

    async def receive(self, count: int = 1) -> list[Message]:
        """Wait until ``count`` messages from the host are available and return them."""
        while len(self._inbox) < count:
            chunk = await self._from_host.read(65536)
            if not chunk:
                raise EOFError("host closed the loopback stream")
            self._inbox.extend(decode_message(payload) for payload in self._decoder.feed(chunk))
        taken, self._inbox = self._inbox[:count], self._inbox[count:]
        return taken


def make_loopback_pair() -> tuple[FramedChannel, ScriptedPeer]:
    """Build a started host channel wired to a scripted peer.

    Must be called from inside a running event loop.
    """
    host_reads = asyncio.StreamReader()
    peer_reads = asyncio.StreamReader()
    channel = FramedChannel(host_reads, LoopbackWriter(peer_reads), name="loopback")
    channel.start()
    return channel, ScriptedPeer(host_reads, peer_reads)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds or ``timeout`` expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


