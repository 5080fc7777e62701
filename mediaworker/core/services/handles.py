"""Local proxies for resources whose real state lives in the engine."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

from loguru import logger

from mediaworker.core.errors import InvalidStateError
from mediaworker.core.services.sources import MediaTrack
from mediaworker.core.utils.tasks import run_detached

if TYPE_CHECKING:
    from mediaworker.core.services.handler import HandlerSession


class RemoteHandle:
    """Base proxy: an engine-assigned id plus a one-way ``closed`` flag."""

    def __init__(self, handle_id: str, session: "HandlerSession", app_data: Optional[Dict[str, Any]] = None) -> None:
        self.id = handle_id
        self.closed = False
        self.app_data: Dict[str, Any] = dict(app_data or {})
        self._session = session

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, closed={self.closed})"

    def _assert_open(self) -> None:
        if self.closed:
            raise InvalidStateError(f"{type(self).__name__} {self.id} is closed")

    def _invalidate(self) -> None:
        self.closed = True


class Producer(RemoteHandle):
    def __init__(
        self,
        handle_id: str,
        session: "HandlerSession",
        mid: str,
        track: Optional[MediaTrack],
        rtp_parameters: Dict[str, Any],
        stop_tracks: bool = True,
        app_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(handle_id, session, app_data)
        self.mid = mid
        self.kind = track.kind if track is not None else None
        self.track = track
        self.rtp_parameters = rtp_parameters
        self.stop_tracks = stop_tracks
        self.paused = False

    async def replace_track(self, track: Optional[MediaTrack]) -> None:
        self._assert_open()
        await self._session.replace_track(self.mid, track)
        self.track = track

    async def pause(self) -> None:
        self._assert_open()
        await self._session.set_sending_paused(self.mid, True)
        self.paused = True

    async def resume(self) -> None:
        self._assert_open()
        await self._session.set_sending_paused(self.mid, False)
        self.paused = False

    async def get_stats(self) -> Any:
        self._assert_open()
        return await self._session.get_stats(self.mid)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if not self._session.closed:
            await self._session.stop_sending(self.mid)


class Consumer(RemoteHandle):
    def __init__(
        self,
        handle_id: str,
        session: "HandlerSession",
        mid: str,
        producer_id: Optional[str],
        track: MediaTrack,
        rtp_parameters: Dict[str, Any],
        app_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(handle_id, session, app_data)
        self.mid = mid
        self.producer_id = producer_id
        self.kind = track.kind
        self.track = track
        self.rtp_parameters = rtp_parameters
        self.paused = False

    async def pause(self) -> None:
        self._assert_open()
        await self._session.set_receiving_paused(self.mid, True)
        self.paused = True

    async def resume(self) -> None:
        self._assert_open()
        await self._session.set_receiving_paused(self.mid, False)
        self.paused = False

    async def get_stats(self) -> Any:
        self._assert_open()
        return await self._session.get_stats(self.mid)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            if not self._session.closed:
                await self._session.stop_receiving(self.mid)
        finally:
            self.track.ready_state = "ended"

    def _invalidate(self) -> None:
        super()._invalidate()
        self.track.ready_state = "ended"


class _DataHandle(RemoteHandle):
    def __init__(
        self,
        handle_id: str,
        session: "HandlerSession",
        stream_id: int,
        label: str = "",
        protocol: str = "",
        ordered: bool = True,
        max_packet_life_time: Optional[int] = None,
        max_retransmits: Optional[int] = None,
        app_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(handle_id, session, app_data)
        self.stream_id = stream_id
        self.label = label
        self.protocol = protocol
        self.ordered = ordered
        self.max_packet_life_time = max_packet_life_time
        self.max_retransmits = max_retransmits
        self.ready_state = "connecting"

    @property
    def sctp_stream_parameters(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"streamId": self.stream_id, "ordered": self.ordered}
        if self.max_packet_life_time is not None:
            params["maxPacketLifeTime"] = self.max_packet_life_time
        if self.max_retransmits is not None:
            params["maxRetransmits"] = self.max_retransmits
        return params

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.ready_state = "closed"
        if not self._session.closed:
            await self._session.close_data_channel(self)

    def _invalidate(self) -> None:
        super()._invalidate()
        self.ready_state = "closed"


class DataProducer(_DataHandle):
    async def send(self, data: Union[str, bytes]) -> None:
        self._assert_open()
        await self._session.send_data(self, data)


class DataConsumer(_DataHandle):
    def __init__(self, *args: Any, data_producer_id: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.data_producer_id = data_producer_id
        self._on_message: List[Callable[[Union[str, bytes]], Any]] = []

    def on_message(self, callback: Callable[[Union[str, bytes]], Any]) -> None:
        self._on_message.append(callback)

    def _deliver(self, payload: Union[str, bytes]) -> None:
        for cb in list(self._on_message):
            try:
                res = cb(payload)
                if asyncio.iscoroutine(res):
                    run_detached(res, f"data consumer {self.id} message handler")
            except Exception:
                logger.exception(f"[handler] exception in data consumer {self.id} message handler")
