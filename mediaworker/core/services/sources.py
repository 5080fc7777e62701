from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from mediaworker.core.errors import InvalidResponseError, UnsupportedSourceError

ORIGINS = ("file", "url", "device")
MEDIA = ("audio", "video", "audio-video")
SOURCE_PARAMS = ("path", "url", "device", "format", "options", "loop")


@dataclass(frozen=True)
class SourceSpec:
    """What to play: ``<origin>-<media>`` kind plus pass-through parameters.

    ``SourceSpec.from_dict({"kind": "file-audio-video", "path": "clip.mp4"})``
    """

    kind: str
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def origin(self) -> str:
        return self.kind.partition("-")[0]

    @property
    def media(self) -> str:
        return self.kind.partition("-")[2]

    def validate(self) -> None:
        if self.origin not in ORIGINS or self.media not in MEDIA:
            raise UnsupportedSourceError("worker.acquire_media_source", "UnsupportedSource", f"unknown kind {self.kind!r}")
        unknown = sorted(set(self.params) - set(SOURCE_PARAMS))
        if unknown:
            raise ValueError(f"Unknown media source parameters: {unknown}")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SourceSpec":
        raw = dict(raw)
        kind = raw.pop("kind", None)
        if not isinstance(kind, str):
            raise UnsupportedSourceError("worker.acquire_media_source", "UnsupportedSource", "missing kind")
        return cls(kind=kind, params=raw)

    def to_wire(self) -> Dict[str, Any]:
        return {"kind": self.kind, "origin": self.origin, "media": self.media, **self.params}


class MediaTrack:
    """Local view of an engine-side track.

    ``ready_state`` only changes on a confirmed stop or an engine
    notification, never on local guesswork.
    """

    def __init__(
        self,
        track_id: str,
        kind: str,
        ready_state: str = "live",
        remote: bool = False,
        stopper: Optional[Callable[["MediaTrack"], Awaitable[None]]] = None,
    ) -> None:
        self.id = track_id
        self.kind = kind
        self.ready_state = ready_state
        self.remote = remote
        self._stopper = stopper

    def __repr__(self) -> str:
        return f"MediaTrack(id={self.id!r}, kind={self.kind!r}, ready_state={self.ready_state!r}, remote={self.remote})"

    async def stop(self) -> None:
        if self.ready_state == "ended":
            return
        if self._stopper is not None:
            await self._stopper(self)
        self.ready_state = "ended"

    def _set_ready_state(self, ready_state: str) -> None:
        if self.ready_state == "ended":
            return
        self.ready_state = ready_state

    def to_wire(self) -> Dict[str, Any]:
        return {"trackId": self.id, "kind": self.kind, "remote": self.remote}


class MediaSource:
    """A producible media source living in the engine (a player)."""

    def __init__(self, worker: Any, source_id: str, raw_tracks: List[Dict[str, Any]]) -> None:
        self._worker = worker
        self.id = source_id
        self.closed = False
        self.tracks: List[MediaTrack] = []
        for raw in raw_tracks:
            try:
                track = MediaTrack(raw["id"], raw["kind"], raw.get("readyState", "live"), stopper=self._stop_track)
            except (KeyError, TypeError) as exc:
                raise InvalidResponseError(f"Malformed track description for source {source_id}: {raw!r}") from exc
            self.tracks.append(track)
        # Audio first, then video, like the engine reports them.
        self.tracks.sort(key=lambda t: 0 if t.kind == "audio" else 1)

    def __repr__(self) -> str:
        return f"MediaSource(id={self.id!r}, tracks={self.tracks!r}, closed={self.closed})"

    def get_track(self, kind: str) -> Optional[MediaTrack]:
        return next((t for t in self.tracks if t.kind == kind), None)

    async def _stop_track(self, track: MediaTrack) -> None:
        if self.closed:
            return
        await self._worker._request("source.stop_track", self.id, {"trackId": track.id})

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._worker._request("source.close", self.id)
        finally:
            for track in self.tracks:
                track.ready_state = "ended"
            self._worker._forget_source(self)
        logger.debug(f"[worker] media source {self.id} closed")

    def _invalidate(self) -> None:
        self.closed = True
        for track in self.tracks:
            track.ready_state = "ended"
