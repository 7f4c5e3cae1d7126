"""Camera and microphone capture capability."""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from ..errors import CapabilityFailure

logger = logging.getLogger(__name__)


class CapabilityStatus(str, Enum):
    OK = "OK"
    PERMISSION_DENIED = "PermissionDenied"
    FAILURE = "Failure"


@dataclass(frozen=True)
class MediaConstraints:
    video: bool = True
    audio: bool = False


class StreamHandle:
    """A granted capture stream: its tracks and the source feeding them."""

    def __init__(
        self,
        tracks: Iterable[MediaStreamTrack],
        stream_id: Optional[str] = None,
        source: Any = None,
    ) -> None:
        self.id = stream_id or uuid.uuid4().hex
        self.tracks = list(tracks)
        self._source = source
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Stop every track. A MediaPlayer source shuts down with its last track."""
        if self._stopped:
            return
        self._stopped = True
        for track in self.tracks:
            track.stop()
        logger.debug("Stream %s stopped", self.id)

    def __repr__(self) -> str:
        return f"StreamHandle(id={self.id!r}, tracks={[track.kind for track in self.tracks]})"


@dataclass(frozen=True)
class CapabilityResult:
    status: CapabilityStatus
    stream: Optional[StreamHandle] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status is CapabilityStatus.OK

    @classmethod
    def granted(cls, stream: StreamHandle) -> "CapabilityResult":
        return cls(status=CapabilityStatus.OK, stream=stream)

    @classmethod
    def denied(cls, error: str = "") -> "CapabilityResult":
        return cls(status=CapabilityStatus.PERMISSION_DENIED, error=error)

    @classmethod
    def failed(cls, error: str = "") -> "CapabilityResult":
        return cls(status=CapabilityStatus.FAILURE, error=error)


class CapabilityProvider(ABC):
    """Source of capture streams."""

    @abstractmethod
    async def request(self, constraints: MediaConstraints) -> CapabilityResult:
        """Acquire a stream matching ``constraints``.

        A refused device comes back as a PermissionDenied result. A broken one
        comes back as a Failure result or raises CapabilityFailure.
        """


class DeviceCapabilityProvider(CapabilityProvider):
    """Opens a local capture device with aiortc's MediaPlayer."""

    def __init__(
        self,
        device: str,
        source_format: Optional[str] = None,
        video_size: str = "640x480",
        framerate: int = 30,
    ) -> None:
        self.device = device
        self.source_format = source_format
        self.video_size = video_size
        self.framerate = framerate

    async def request(self, constraints: MediaConstraints) -> CapabilityResult:
        options = {"video_size": self.video_size, "framerate": str(self.framerate)}

        try:
            # Opening the device blocks inside FFmpeg.
            player = await asyncio.to_thread(MediaPlayer, self.device, format=self.source_format, options=options)
        except PermissionError as error:
            logger.warning("Access to capture device %s refused: %s", self.device, error)
            return CapabilityResult.denied(str(error))
        except Exception as error:
            logger.error("Failed to open capture device %s: %s", self.device, error)
            return CapabilityResult.failed(str(error))

        try:
            tracks = self._select_tracks(player, constraints)
        except CapabilityFailure:
            self._release(player)
            raise

        stream = StreamHandle(tracks, source=player)
        logger.info("Opened capture device %s as stream %s", self.device, stream.id)
        return CapabilityResult.granted(stream)

    def _select_tracks(self, player: MediaPlayer, constraints: MediaConstraints) -> list[MediaStreamTrack]:
        tracks: list[MediaStreamTrack] = []
        if constraints.video:
            if player.video is None:
                raise CapabilityFailure(f"{self.device} has no video track")
            tracks.append(player.video)
        if constraints.audio:
            if player.audio is None:
                raise CapabilityFailure(f"{self.device} has no audio track")
            tracks.append(player.audio)
        return tracks

    @staticmethod
    def _release(player: MediaPlayer) -> None:
        for track in (player.audio, player.video):
            if track is not None:
                track.stop()
