from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger

from mediaworker.core.errors import (
    ChannelClosedError,
    InvalidResponseError,
    InvalidStateError,
    UnknownTransceiverError,
)
from mediaworker.core.multiplexer import RequestMultiplexer
from mediaworker.core.services.handles import (
    Consumer,
    DataConsumer,
    DataProducer,
    Producer,
    RemoteHandle,
    _DataHandle,
)
from mediaworker.core.services.sources import MediaTrack
from mediaworker.core.utils.tasks import run_detached

CONNECTION_STATES = ("new", "connecting", "connected", "disconnected", "closed")
DIRECTIONS = ("send", "recv")
MEDIA_KINDS = ("audio", "video")

TransceiverRef = Union[str, "Transceiver", Producer, Consumer]


@dataclass
class Transceiver:
    mid: str
    kind: str
    stopped: bool = False
    local_track_id: Optional[str] = None
    direction: str = "sendonly"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mid": self.mid,
            "kind": self.kind,
            "stopped": self.stopped,
            "localTrackId": self.local_track_id,
            "direction": self.direction,
        }


def _require(result: Any, key: str, method: str) -> Any:
    if not isinstance(result, dict) or key not in result:
        raise InvalidResponseError(f"Response to {method!r} is missing {key!r}")
    return result[key]


class HandlerSession:
    """One simulated peer connection driven inside the engine.

    Every request is scoped to this session's id. ``connection_state``
    follows engine notifications only; the local side never infers it.
    Transceivers keep their engine-assigned ``mid`` for life, and a stopped
    transceiver stays in the list so its ``mid`` is never handed out again.
    """

    def __init__(
        self,
        mux: RequestMultiplexer,
        session_id: str,
        direction: str,
        on_closed: Optional[Callable[["HandlerSession"], None]] = None,
    ) -> None:
        if direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}, got {direction!r}")
        self._mux = mux
        self.id = session_id
        self.direction = direction
        self.connection_state = "new"
        self.ice_state = "new"
        self.ice_gathering_state = "new"
        self.transceivers: List[Transceiver] = []
        self.remote_parameters: Optional[Dict[str, Any]] = None
        self.data_mid: Optional[str] = None
        self._remote_parameters_pending = False
        self._on_closed = on_closed
        self._stop_policies: Dict[str, bool] = {}
        self._sending_tracks: Dict[str, MediaTrack] = {}
        self._remote_tracks: Dict[str, MediaTrack] = {}
        self._producers: Dict[str, Producer] = {}
        self._consumers: Dict[str, Consumer] = {}
        self._data_handles: Dict[str, _DataHandle] = {}
        self._early_data_states: Dict[str, str] = {}
        self._on_connection_state_change: List[Callable[[str], Optional[Awaitable[None]]]] = []
        self._unsubscribers = [
            mux.subscribe(session_id, "connectionstatechange", self._on_connection_state),
            mux.subscribe(session_id, "iceconnectionstatechange", self._on_ice_state),
            mux.subscribe(session_id, "icegatheringstatechange", self._on_ice_gathering_state),
            mux.subscribe(session_id, "trackstatechange", self._on_track_state),
            mux.subscribe(session_id, "datachannel.statechange", self._on_data_channel_state),
            mux.subscribe(session_id, "datachannel.message", self._on_data_channel_message),
        ]

    def __repr__(self) -> str:
        return f"HandlerSession(id={self.id!r}, direction={self.direction!r}, state={self.connection_state!r})"

    @property
    def closed(self) -> bool:
        return self.connection_state == "closed"

    @property
    def handles(self) -> List[RemoteHandle]:
        return [*self._producers.values(), *self._consumers.values(), *self._data_handles.values()]

    def on_connection_state_change(self, callback: Callable[[str], Optional[Awaitable[None]]]) -> None:
        self._on_connection_state_change.append(callback)

    def describe(self) -> Dict[str, Any]:
        """Local mirror of this session, as confirmed by the engine."""
        return {
            "id": self.id,
            "direction": self.direction,
            "connectionState": self.connection_state,
            "iceState": self.ice_state,
            "transceivers": [t.to_dict() for t in self.transceivers],
        }

    # -- guards ---------------------------------------------------------------

    def _assert_open(self) -> None:
        if self.closed:
            raise InvalidStateError(f"Handler session {self.id} is closed")

    def _assert_direction(self, direction: str, operation: str) -> None:
        if self.direction != direction:
            raise InvalidStateError(f"{operation} needs a {direction!r} session; {self.id} is {self.direction!r}")

    def _find_transceiver(self, ref: TransceiverRef) -> Transceiver:
        mid = ref if isinstance(ref, str) else getattr(ref, "mid", None)
        for transceiver in self.transceivers:
            if transceiver.mid == mid:
                return transceiver
        raise UnknownTransceiverError(f"Handler session {self.id} has no transceiver with mid {mid!r}")

    def _live_transceiver(self, ref: TransceiverRef) -> Transceiver:
        transceiver = self._find_transceiver(ref)
        if transceiver.stopped:
            raise InvalidStateError(f"Transceiver {transceiver.mid} of handler session {self.id} is stopped")
        return transceiver

    def _adopt_mid(self, mid: Any, method: str) -> str:
        if not isinstance(mid, str):
            raise InvalidResponseError(f"Response to {method!r} carries a non-string mid {mid!r}")
        if mid == self.data_mid or any(t.mid == mid for t in self.transceivers):
            raise InvalidResponseError(f"Engine reused mid {mid!r} in handler session {self.id}")
        return mid

    async def _request(self, method: str, data: Optional[Dict[str, Any]] = None) -> Any:
        return await self._mux.call(method, self.id, data)

    def _assert_open_after(self, method: str) -> None:
        # The session may have closed while the request was in flight.
        if self.closed:
            raise InvalidStateError(f"Handler session {self.id} closed during {method!r}")

    # -- transport ------------------------------------------------------------

    async def set_transport_remote_parameters(self, params: Dict[str, Any]) -> None:
        """Hand the remote ICE/DTLS/SCTP parameters to the engine, once."""
        self._assert_open()
        if self.remote_parameters is not None or self._remote_parameters_pending:
            raise InvalidStateError(f"Remote transport parameters already set for handler session {self.id}")
        self._remote_parameters_pending = True
        try:
            await self._request("handler.set_remote_parameters", dict(params))
        finally:
            self._remote_parameters_pending = False
        self.remote_parameters = dict(params)

    async def restart_ice(self, ice_parameters: Dict[str, Any]) -> None:
        self._assert_open()
        await self._request("handler.restart_ice", {"iceParameters": ice_parameters})

    async def update_ice_servers(self, ice_servers: List[Dict[str, Any]]) -> None:
        self._assert_open()
        await self._request("handler.update_ice_servers", {"iceServers": ice_servers})

    async def get_stats(self, mid: Optional[str] = None) -> Any:
        self._assert_open()
        if mid is not None:
            self._find_transceiver(mid)
        return await self._request("handler.get_stats", {"mid": mid})

    # -- sending --------------------------------------------------------------

    async def add_producing_track(
        self,
        track: MediaTrack,
        app_data: Optional[Dict[str, Any]] = None,
        stop_tracks: bool = True,
        encodings: Optional[List[Dict[str, Any]]] = None,
        codec_options: Optional[Dict[str, Any]] = None,
    ) -> Producer:
        self._assert_open()
        self._assert_direction("send", "add_producing_track")
        if track.ready_state == "ended":
            raise InvalidStateError(f"Track {track.id} has ended")
        method = "handler.add_sending_track"
        data: Dict[str, Any] = {"track": track.to_wire()}
        if encodings:
            data["encodings"] = encodings
        if codec_options:
            data["codecOptions"] = codec_options
        result = await self._request(method, data)
        self._assert_open_after(method)
        mid = self._adopt_mid(_require(result, "mid", method), method)
        producer_id = _require(result, "id", method)

        self.transceivers.append(Transceiver(mid=mid, kind=track.kind, local_track_id=track.id, direction="sendonly"))
        self._stop_policies[mid] = stop_tracks
        self._sending_tracks[mid] = track
        producer = Producer(
            producer_id,
            self,
            mid,
            track,
            rtp_parameters=result.get("rtpParameters", {}),
            stop_tracks=stop_tracks,
            app_data=app_data,
        )
        self._producers[mid] = producer
        logger.debug(f"[handler] {self.id}: sending {track.kind} track {track.id} on mid {mid}")
        return producer

    async def _release_sending_track(self, mid: str, replacement: Optional[MediaTrack]) -> None:
        old = self._sending_tracks.pop(mid, None)
        if replacement is not None:
            self._sending_tracks[mid] = replacement
        producer = self._producers.get(mid)
        if producer is not None:
            producer.track = replacement
        if old is not None and old is not replacement and self._stop_policies.get(mid, True):
            await old.stop()

    async def replace_track(self, ref: TransceiverRef, new_track: Optional[MediaTrack]) -> None:
        """Swap the track sent on a transceiver; its ``mid`` never changes."""
        self._assert_open()
        transceiver = self._live_transceiver(ref)
        if new_track is not None and new_track.ready_state == "ended":
            raise InvalidStateError(f"Track {new_track.id} has ended")
        await self._request(
            "handler.replace_track",
            {"mid": transceiver.mid, "track": new_track.to_wire() if new_track is not None else None},
        )
        transceiver.local_track_id = new_track.id if new_track is not None else None
        await self._release_sending_track(transceiver.mid, new_track)

    async def stop_sending(self, ref: TransceiverRef) -> None:
        self._assert_open()
        transceiver = self._live_transceiver(ref)
        await self._request("handler.stop_sending", {"mid": transceiver.mid})
        transceiver.local_track_id = None
        await self._release_sending_track(transceiver.mid, None)
        producer = self._producers.pop(transceiver.mid, None)
        if producer is not None:
            producer._invalidate()

    async def set_sending_paused(self, ref: TransceiverRef, paused: bool) -> None:
        self._assert_open()
        transceiver = self._live_transceiver(ref)
        await self._request("handler.set_sending_paused", {"mid": transceiver.mid, "paused": paused})

    # -- receiving ------------------------------------------------------------

    async def add_consuming_track(self, remote_parameters: Dict[str, Any]) -> Consumer:
        self._assert_open()
        self._assert_direction("recv", "add_consuming_track")
        kind = remote_parameters.get("kind")
        if kind not in MEDIA_KINDS:
            raise ValueError(f"Consumer kind must be one of {MEDIA_KINDS}, got {kind!r}")
        method = "handler.add_receiving_track"
        wire = {k: v for k, v in remote_parameters.items() if k != "appData"}
        result = await self._request(method, wire)
        self._assert_open_after(method)
        mid = self._adopt_mid(_require(result, "mid", method), method)
        consumer_id = _require(result, "id", method)
        track_id = _require(result, "trackId", method)

        track = MediaTrack(track_id, kind, result.get("readyState", "live"), remote=True)
        self._remote_tracks[track_id] = track
        self.transceivers.append(Transceiver(mid=mid, kind=kind, direction="recvonly"))
        consumer = Consumer(
            consumer_id,
            self,
            mid,
            remote_parameters.get("producerId"),
            track,
            rtp_parameters=remote_parameters.get("rtpParameters", {}),
            app_data=remote_parameters.get("appData"),
        )
        self._consumers[mid] = consumer
        logger.debug(f"[handler] {self.id}: receiving {kind} track {track_id} on mid {mid}")
        return consumer

    async def stop_receiving(self, ref: TransceiverRef) -> None:
        self._assert_open()
        transceiver = self._live_transceiver(ref)
        await self._request("handler.stop_receiving", {"mid": transceiver.mid})
        transceiver.stopped = True
        consumer = self._consumers.pop(transceiver.mid, None)
        if consumer is not None:
            self._remote_tracks.pop(consumer.track.id, None)
            consumer._invalidate()

    async def set_receiving_paused(self, ref: TransceiverRef, paused: bool) -> None:
        self._assert_open()
        transceiver = self._live_transceiver(ref)
        await self._request("handler.set_receiving_paused", {"mid": transceiver.mid, "paused": paused})

    async def remove_transceiver(self, ref: TransceiverRef) -> None:
        """Stop a transceiver; it stays listed so its ``mid`` is never reused."""
        self._assert_open()
        transceiver = self._live_transceiver(ref)
        await self._request("handler.remove_transceiver", {"mid": transceiver.mid})
        transceiver.stopped = True
        transceiver.local_track_id = None
        await self._release_sending_track(transceiver.mid, None)
        for handles in (self._producers, self._consumers):
            handle = handles.pop(transceiver.mid, None)
            if handle is not None:
                handle._invalidate()

    # -- data channels --------------------------------------------------------

    def _register_data_handle(self, handle: _DataHandle) -> None:
        self._data_handles[handle.id] = handle
        state = self._early_data_states.pop(handle.id, None)
        if state is not None:
            self._apply_data_state(handle, state)

    def _note_data_mid(self, result: Dict[str, Any], method: str) -> None:
        mid = result.get("mid")
        if mid is not None and self.data_mid is None:
            self.data_mid = self._adopt_mid(mid, method)

    async def open_data_channel(
        self,
        label: str = "",
        protocol: str = "",
        ordered: bool = True,
        max_packet_life_time: Optional[int] = None,
        max_retransmits: Optional[int] = None,
        app_data: Optional[Dict[str, Any]] = None,
    ) -> DataProducer:
        self._assert_open()
        self._assert_direction("send", "open_data_channel")
        if max_packet_life_time is not None and max_retransmits is not None:
            raise ValueError("max_packet_life_time and max_retransmits are mutually exclusive")
        method = "handler.open_data_channel"
        result = await self._request(
            method,
            {
                "label": label,
                "protocol": protocol,
                "ordered": ordered,
                "maxPacketLifeTime": max_packet_life_time,
                "maxRetransmits": max_retransmits,
            },
        )
        self._assert_open_after(method)
        self._note_data_mid(result, method)
        producer = DataProducer(
            _require(result, "id", method),
            self,
            _require(result, "streamId", method),
            label=label,
            protocol=protocol,
            ordered=ordered,
            max_packet_life_time=max_packet_life_time,
            max_retransmits=max_retransmits,
            app_data=app_data,
        )
        self._register_data_handle(producer)
        return producer

    async def consume_data_channel(self, remote_parameters: Dict[str, Any]) -> DataConsumer:
        self._assert_open()
        self._assert_direction("recv", "consume_data_channel")
        method = "handler.consume_data_channel"
        sctp = remote_parameters.get("sctpStreamParameters") or {}
        result = await self._request(
            method,
            {
                "id": remote_parameters.get("id"),
                "dataProducerId": remote_parameters.get("dataProducerId"),
                "sctpStreamParameters": sctp,
                "label": remote_parameters.get("label", ""),
                "protocol": remote_parameters.get("protocol", ""),
            },
        )
        self._assert_open_after(method)
        self._note_data_mid(result, method)
        consumer = DataConsumer(
            _require(result, "id", method),
            self,
            result.get("streamId", sctp.get("streamId")),
            label=remote_parameters.get("label", ""),
            protocol=remote_parameters.get("protocol", ""),
            ordered=sctp.get("ordered", True),
            max_packet_life_time=sctp.get("maxPacketLifeTime"),
            max_retransmits=sctp.get("maxRetransmits"),
            app_data=remote_parameters.get("appData"),
            data_producer_id=remote_parameters.get("dataProducerId"),
        )
        self._register_data_handle(consumer)
        return consumer

    async def close_data_channel(self, handle: _DataHandle) -> None:
        self._assert_open()
        if self._data_handles.pop(handle.id, None) is None:
            raise InvalidStateError(f"Data channel {handle.id} does not belong to handler session {self.id}")
        handle._invalidate()
        await self._request("handler.close_data_channel", {"dataChannelId": handle.id})

    async def send_data(self, handle: DataProducer, payload: Union[str, bytes]) -> None:
        self._assert_open()
        if isinstance(payload, str):
            data = {"dataChannelId": handle.id, "type": "text", "data": payload}
        else:
            data = {"dataChannelId": handle.id, "type": "binary", "data": base64.b64encode(payload).decode("ascii")}
        await self._request("handler.send_data", data)

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        if self.closed:
            return
        self._invalidate()
        if self._mux.closed:
            return
        try:
            await self._request("handler.close")
        except ChannelClosedError as exc:
            logger.debug(f"[handler] {self.id}: engine gone before close: {exc}")

    def _invalidate(self) -> None:
        """Mark the session closed and cut it off from further notifications."""
        if self.closed:
            return
        self.connection_state = "closed"
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._early_data_states.clear()
        for handle in self.handles:
            handle._invalidate()
        logger.debug(f"[handler] {self.id}: closed")
        if self._on_closed is not None:
            self._on_closed(self)

    # -- notifications --------------------------------------------------------

    def _on_connection_state(self, data: Dict[str, Any]) -> None:
        if self.closed:
            return
        state = data.get("state")
        if state == "failed":
            state = "disconnected"
        if state not in CONNECTION_STATES:
            logger.warning(f"[handler] {self.id}: ignoring unknown connection state {state!r}")
            return
        if state == "closed":
            self._invalidate()
            return
        if state == self.connection_state:
            return
        logger.debug(f"[handler] {self.id}: connection {self.connection_state} -> {state}")
        self.connection_state = state
        for cb in list(self._on_connection_state_change):
            try:
                res = cb(state)
                if asyncio.iscoroutine(res):
                    run_detached(res, f"{self.id} connection state handler")
            except Exception:
                logger.exception(f"[handler] {self.id}: exception in connection state handler")

    def _on_ice_state(self, data: Dict[str, Any]) -> None:
        if not self.closed and isinstance(data.get("state"), str):
            self.ice_state = data["state"]

    def _on_ice_gathering_state(self, data: Dict[str, Any]) -> None:
        if not self.closed and isinstance(data.get("state"), str):
            self.ice_gathering_state = data["state"]

    def _on_track_state(self, data: Dict[str, Any]) -> None:
        track = self._remote_tracks.get(data.get("trackId"))
        if track is not None and isinstance(data.get("readyState"), str):
            track._set_ready_state(data["readyState"])

    def _on_data_channel_state(self, data: Dict[str, Any]) -> None:
        channel_id = data.get("dataChannelId")
        state = data.get("readyState")
        if self.closed or not isinstance(channel_id, str) or not isinstance(state, str):
            return
        handle = self._data_handles.get(channel_id)
        if handle is None:
            # The engine may report the state before the open/consume response is processed.
            self._early_data_states[channel_id] = state
            return
        self._apply_data_state(handle, state)

    def _apply_data_state(self, handle: _DataHandle, state: str) -> None:
        handle.ready_state = state
        if state == "closed":
            self._data_handles.pop(handle.id, None)
            handle._invalidate()

    def _on_data_channel_message(self, data: Dict[str, Any]) -> None:
        handle = self._data_handles.get(data.get("dataChannelId"))
        if not isinstance(handle, DataConsumer):
            return
        payload = data.get("data", "")
        if data.get("type") == "binary":
            handle._deliver(base64.b64decode(payload))
        else:
            handle._deliver(payload)
