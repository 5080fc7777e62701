from __future__ import annotations

import asyncio
import enum
import signal
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Sequence

from loguru import logger

from mediaworker.core.channel import FramedChannel
from mediaworker.core.errors import ChannelClosedError, EngineSpawnError, InvalidStateError
from mediaworker.core.messages import Request
from mediaworker.core.utils.line_buffer import LineBuffer

DiedCallback = Callable[[Optional[int], Optional[str]], Optional[Awaitable[None]]]

_LEVEL_PREFIXES = {
    "ERROR": "ERROR",
    "WARNING": "WARNING",
    "WARN": "WARNING",
    "INFO": "INFO",
    "DEBUG": "DEBUG",
}


class LifecycleState(str, enum.Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    CLOSED = "closed"
    CRASHED = "crashed"


_TRANSITIONS = {
    LifecycleState.SPAWNING: {LifecycleState.RUNNING, LifecycleState.CRASHED, LifecycleState.CLOSED},
    LifecycleState.RUNNING: {LifecycleState.CLOSED, LifecycleState.CRASHED},
    LifecycleState.CLOSED: set(),
    LifecycleState.CRASHED: set(),
}


@dataclass
class EngineProcess:
    pid: int
    state: LifecycleState = LifecycleState.SPAWNING
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state in (LifecycleState.CLOSED, LifecycleState.CRASHED)

    def transition(self, new_state: LifecycleState) -> bool:
        """Move to ``new_state``; returns False when already terminal."""
        if new_state not in _TRANSITIONS[self.state]:
            if self.terminal:
                return False
            raise InvalidStateError(f"Engine process {self.pid}: {self.state.value} -> {new_state.value} not allowed")
        logger.debug(f"[supervisor] engine {self.pid}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        return True


def _describe_exit(returncode: Optional[int]) -> tuple[Optional[int], Optional[str]]:
    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


class ProcessSupervisor:
    """Spawn the engine subprocess and watch it until it exits.

    The engine's stdin/stdout become the write/read surface of a
    ``FramedChannel``; its stderr is forwarded line by line to loguru.
    Any exit while running is a crash and fires ``on_died`` listeners once.
    """

    def __init__(self, shutdown_grace: float = 2.0) -> None:
        self._shutdown_grace = shutdown_grace
        self._proc: Optional[asyncio.subprocess.Process] = None
        self.process: Optional[EngineProcess] = None
        self.channel: Optional[FramedChannel] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._loss_task: Optional[asyncio.Task] = None
        self._on_died: list[DiedCallback] = []
        self._died_emitted = False

    def on_died(self, callback: DiedCallback) -> None:
        self._on_died.append(callback)

    async def spawn(self, executable: str, args: Sequence[str], env: Optional[Dict[str, str]] = None) -> EngineProcess:
        if self._proc is not None:
            raise InvalidStateError("Supervisor already spawned an engine process")
        logger.debug(f"[supervisor] spawning {executable} {' '.join(args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            raise EngineSpawnError(f"Failed to spawn engine {executable!r}: {exc}") from exc

        if proc.stdout is None or proc.stdin is None or proc.stderr is None:
            proc.kill()
            await proc.wait()
            raise EngineSpawnError(f"Engine {executable!r} started without its stdio pipes")

        self._proc = proc
        process = EngineProcess(pid=proc.pid)
        self.process = process
        self.channel = FramedChannel(proc.stdout, proc.stdin, name=f"engine-{proc.pid}")
        self.channel.on_close(self._on_channel_close)
        self.channel.start()
        self._stderr_task = asyncio.create_task(self._pump_stderr(proc.stderr, proc.pid))
        self._watch_task = asyncio.create_task(self._watch(proc, process))
        process.transition(LifecycleState.RUNNING)
        logger.info(f"[supervisor] engine running (pid={proc.pid})")
        return process

    async def shutdown(self, close_request: Optional[Request] = None) -> None:
        """Ask the engine to exit, then terminate it if it lingers."""
        proc = self._proc
        if proc is None or self.process is None:
            return
        if not self.process.transition(LifecycleState.CLOSED):
            # Already crashed; make sure the process is gone before returning.
            await self._reap(proc)
            await self._wait_tasks()
            return
        channel = self.channel
        if close_request is not None and channel is not None and not channel.closed:
            try:
                await channel.write(close_request)
            except ChannelClosedError as exc:
                logger.debug(f"[supervisor] close request not delivered: {exc}")
        if channel is not None:
            channel.close()

        await self._reap(proc)
        await self._wait_tasks()
        logger.info(f"[supervisor] engine {proc.pid} closed (returncode={proc.returncode})")

    async def _reap(self, proc: asyncio.subprocess.Process) -> None:
        """Wait out the grace period, then escalate to SIGTERM and SIGKILL."""
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._shutdown_grace)
            return
        except asyncio.TimeoutError:
            logger.warning(f"[supervisor] engine {proc.pid} did not exit in {self._shutdown_grace}s; terminating")
        self._kill(signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._shutdown_grace)
        except asyncio.TimeoutError:
            logger.warning(f"[supervisor] engine {proc.pid} ignored SIGTERM; killing")
            self._kill(signal.SIGKILL)
            await proc.wait()

    def _kill(self, sig: signal.Signals) -> None:
        if self._proc is None or self._proc.returncode is not None:
            return
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _wait_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in (self._loss_task, self._watch_task, self._stderr_task) if t is not None and t is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_channel_close(self, exc: Optional[BaseException]) -> None:
        if self.process is None or self.process.state is not LifecycleState.RUNNING:
            return
        # End of stream or a protocol fault while running means the engine is unusable.
        self.process.transition(LifecycleState.CRASHED)
        # The watch task reports the exit as ``died``.
        if exc is not None:
            logger.error(f"[supervisor] engine {self.process.pid} channel failed: {exc}; killing engine")
            self._kill(signal.SIGKILL)
        elif self._proc is not None:
            logger.error(f"[supervisor] engine {self.process.pid} closed its channel unexpectedly")
            self._loss_task = asyncio.create_task(self._kill_after_grace(self._proc))

    async def _kill_after_grace(self, proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._shutdown_grace)
        except asyncio.TimeoutError:
            logger.warning(f"[supervisor] engine {proc.pid} still running without a channel; killing")
            self._kill(signal.SIGKILL)

    async def _watch(self, proc: asyncio.subprocess.Process, process: EngineProcess) -> None:
        returncode = await proc.wait()
        code, sig = _describe_exit(returncode)
        process.exit_code = code
        process.exit_signal = sig
        if process.state is LifecycleState.RUNNING:
            process.transition(LifecycleState.CRASHED)
        if self.channel is not None:
            self.channel.close()
        if process.state is LifecycleState.CRASHED:
            logger.error(f"[supervisor] engine {process.pid} died (code={code}, signal={sig})")
            await self._emit_died(code, sig)

    async def _emit_died(self, code: Optional[int], sig: Optional[str]) -> None:
        if self._died_emitted:
            return
        self._died_emitted = True
        for cb in list(self._on_died):
            try:
                res = cb(code, sig)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                logger.exception("[supervisor] exception in died handler")

    async def _pump_stderr(self, stream: asyncio.StreamReader, pid: int) -> None:
        log = logger.bind(engine_pid=pid)

        def write_line(line: str) -> None:
            if not line.strip():
                return
            head = line.split(":", 1)[0].split(" ", 1)[0].strip().upper()
            log.log(_LEVEL_PREFIXES.get(head, "DEBUG"), f"[engine {pid}] {line}")

        buffer = LineBuffer(write_line)
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            buffer.feed(chunk)
        buffer.flush()

