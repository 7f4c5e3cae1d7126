"""Preview widget that renders the relayed webcam track."""

from __future__ import annotations

import asyncio
import io
import logging
from abc import ABC, abstractmethod
from typing import Optional

from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import VideoFrame

logger = logging.getLogger(__name__)


class PreviewWidget(ABC):
    """Surface the relay draws the preview on."""

    @abstractmethod
    def show(self) -> None:
        """Make the (still empty) preview visible."""

    @abstractmethod
    def attach(self, track: MediaStreamTrack) -> None:
        """Start rendering ``track``, replacing any previous one."""

    @abstractmethod
    def fail(self, status: str, error: str = "") -> None:
        """Show that the preview could not be started."""

    async def close(self) -> None:
        return None


class FramePreview(PreviewWidget):
    """Keeps the most recent frame of the attached track for snapshots."""

    def __init__(self, quality: int = 80) -> None:
        self.quality = quality
        self.visible = False
        self.error: Optional[str] = None
        self._frame: Optional[VideoFrame] = None
        self._frame_count = 0
        self._consumer: Optional[asyncio.Task] = None

    @property
    def frame_count(self) -> int:
        return self._frame_count

    def show(self) -> None:
        self.visible = True
        self.error = None

    def attach(self, track: MediaStreamTrack) -> None:
        if track.kind != "video":
            logger.debug("Ignoring %s track for preview", track.kind)
            return
        if self._consumer is not None:
            self._consumer.cancel()
        self.visible = True
        self._consumer = asyncio.create_task(self._consume(track), name="preview-consumer")
        logger.info("Preview attached to track %s", track.id)

    def fail(self, status: str, error: str = "") -> None:
        self.error = f"{status}: {error}" if error else status
        logger.warning("Preview unavailable: %s", self.error)

    def snapshot_jpeg(self) -> Optional[bytes]:
        """Encode the latest frame as JPEG, or return None before the first frame."""
        if self._frame is None:
            return None
        image = self._frame.to_image()
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=self.quality)
        return buffer.getvalue()

    async def close(self) -> None:
        if self._consumer is None:
            return
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None

    async def _consume(self, track: MediaStreamTrack) -> None:
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.info("Preview track %s ended", track.id)
                return
            self._frame = frame
            self._frame_count += 1
