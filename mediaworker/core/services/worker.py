from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger

from mediaworker.core.config import WorkerSettings, load_settings
from mediaworker.core.errors import (
    ChannelClosedError,
    InvalidResponseError,
    InvalidStateError,
    RemoteError,
    UnsupportedSourceError,
)
from mediaworker.core.multiplexer import DEFAULT, RequestMultiplexer
from mediaworker.core.services.handler import DIRECTIONS, HandlerSession
from mediaworker.core.services.sources import MediaSource, SourceSpec
from mediaworker.core.services.supervisor import LifecycleState, ProcessSupervisor

DiedCallback = Callable[[Optional[int], Optional[str]], Optional[Awaitable[None]]]


class Worker:
    """Handle on one running engine instance.

    Owns the engine process (through the supervisor) and the multiplexer's
    correlation table. Calls made here carry no target id; they are scoped to
    the whole engine process.
    """

    def __init__(self, supervisor: ProcessSupervisor, settings: WorkerSettings) -> None:
        if supervisor.process is None or supervisor.channel is None:
            raise InvalidStateError("Worker needs a spawned engine process")
        self._supervisor = supervisor
        self._process = supervisor.process
        self._settings = settings
        self._mux = RequestMultiplexer(supervisor.channel, default_timeout=settings.call_timeout)
        self._sources: Dict[str, MediaSource] = {}
        self._sessions: Dict[str, HandlerSession] = {}
        self._on_died: List[DiedCallback] = []
        self._closed = False
        self._closing: Optional[asyncio.Task] = None
        self.died = False
        supervisor.on_died(self._handle_died)

    def __repr__(self) -> str:
        return f"Worker(pid={self.pid}, state={self.state.value})"

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def state(self) -> LifecycleState:
        return self._process.state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def multiplexer(self) -> RequestMultiplexer:
        return self._mux

    @property
    def sessions(self) -> List[HandlerSession]:
        return list(self._sessions.values())

    def on_died(self, callback: DiedCallback) -> None:
        self._on_died.append(callback)

    def _assert_open(self) -> None:
        if self.died:
            raise ChannelClosedError(f"Engine {self.pid} died")
        if self._closed:
            raise InvalidStateError(f"Worker {self.pid} is closed")

    async def _request(
        self,
        method: str,
        target_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        timeout: Any = DEFAULT,
    ) -> Any:
        self._assert_open()
        return await self._mux.call(method, target_id, data, timeout=timeout)

    async def dump(self) -> Dict[str, Any]:
        """Snapshot of live media sources and handler sessions, as the engine sees them."""
        result = await self._request("worker.dump")
        if not isinstance(result, dict):
            raise InvalidResponseError("worker.dump must return an object")
        return result

    async def acquire_media_source(self, spec: Union[SourceSpec, Dict[str, Any]]) -> MediaSource:
        self._assert_open()
        if not isinstance(spec, SourceSpec):
            spec = SourceSpec.from_dict(spec)
        spec.validate()
        method = "worker.acquire_media_source"
        try:
            result = await self._request(method, data=spec.to_wire())
        except RemoteError as exc:
            if exc.reason == "UnsupportedSource":
                raise UnsupportedSourceError(exc.method, exc.reason, exc.detail) from exc
            raise
        if not isinstance(result, dict) or not isinstance(result.get("id"), str):
            raise InvalidResponseError(f"Response to {method!r} is missing the source id")
        source = MediaSource(self, result["id"], result.get("tracks") or [])
        self._sources[source.id] = source
        logger.debug(f"[worker] acquired {spec.kind} source {source.id} with {len(source.tracks)} track(s)")
        return source

    def _forget_source(self, source: MediaSource) -> None:
        self._sources.pop(source.id, None)

    def create_handler_factory(self) -> "HandlerFactory":
        self._assert_open()
        return HandlerFactory(self)

    async def _create_session(self, direction: str, options: Dict[str, Any]) -> HandlerSession:
        self._assert_open()
        if direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}, got {direction!r}")
        session_id = str(uuid.uuid4())
        # Subscribe before the engine can emit anything for this id.
        session = HandlerSession(self._mux, session_id, direction, on_closed=self._forget_session)
        self._sessions[session_id] = session
        try:
            await self._request("worker.create_handler", data={"handlerId": session_id, "direction": direction, **options})
        except BaseException:
            session._invalidate()
            raise
        logger.debug(f"[worker] created {direction} handler session {session_id}")
        return session

    def _forget_session(self, session: HandlerSession) -> None:
        self._sessions.pop(session.id, None)

    def _invalidate_children(self) -> None:
        for session in list(self._sessions.values()):
            session._invalidate()
        self._sessions.clear()
        for source in list(self._sources.values()):
            source._invalidate()
        self._sources.clear()

    async def close(self) -> None:
        """Shut the engine down. Safe to call more than once."""
        if self._closing is None:
            self._closing = asyncio.ensure_future(self._close())
        await asyncio.shield(self._closing)

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info(f"[worker] closing engine {self.pid}")
        self._invalidate_children()
        close_request = None if self._mux.closed else self._mux.build_request("close")
        self._mux.close("worker closed")
        await self._supervisor.shutdown(close_request)

    async def _handle_died(self, code: Optional[int], signal_name: Optional[str]) -> None:
        if self._closed:
            return
        self._closed = True
        self.died = True
        self._mux.close(f"engine died (code={code}, signal={signal_name})")
        self._invalidate_children()
        for cb in list(self._on_died):
            try:
                res = cb(code, signal_name)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                logger.exception("[worker] exception in died handler")


class HandlerFactory:
    """Token the client API uses to build per-connection handlers on one worker."""

    name = "MediaWorker"

    def __init__(self, worker: Worker) -> None:
        self._worker = worker

    @property
    def worker(self) -> Worker:
        return self._worker

    async def get_native_rtp_capabilities(self) -> Dict[str, Any]:
        return await self._worker._request("worker.get_rtp_capabilities")

    async def get_native_sctp_capabilities(self) -> Dict[str, Any]:
        return await self._worker._request("worker.get_sctp_capabilities")

    async def create_session(
        self,
        direction: str,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        ice_transport_policy: Optional[str] = None,
        additional_settings: Optional[Dict[str, Any]] = None,
    ) -> HandlerSession:
        options: Dict[str, Any] = {}
        if ice_servers is not None:
            options["iceServers"] = ice_servers
        if ice_transport_policy is not None:
            options["iceTransportPolicy"] = ice_transport_policy
        if additional_settings:
            options["additionalSettings"] = additional_settings
        return await self._worker._create_session(direction, options)


async def create_worker(settings: Optional[WorkerSettings] = None, **overrides: Any) -> Worker:
    """Spawn an engine subprocess and return a running ``Worker`` for it."""
    if settings is None:
        settings = load_settings(**overrides)
    elif overrides:
        settings = replace(settings, **overrides)
    command = settings.command()
    supervisor = ProcessSupervisor(shutdown_grace=settings.shutdown_grace)
    await supervisor.spawn(command[0], command[1:], env=settings.environment())
    return Worker(supervisor, settings)
