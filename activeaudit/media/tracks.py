"""Synthetic capture source for headless runs."""

from __future__ import annotations

import logging

import numpy as np
from aiortc import VideoStreamTrack
from av import VideoFrame

from .capability import CapabilityProvider, CapabilityResult, MediaConstraints, StreamHandle

logger = logging.getLogger(__name__)

_BARS = np.array(
    [
        [192, 192, 192],
        [192, 192, 0],
        [0, 192, 192],
        [0, 192, 0],
        [192, 0, 192],
        [192, 0, 0],
        [0, 0, 192],
    ],
    dtype=np.uint8,
)


class TestPatternTrack(VideoStreamTrack):
    """Video track that scrolls colour bars across the frame."""

    __test__ = False

    kind = "video"

    def __init__(self, width: int = 640, height: int = 480) -> None:
        super().__init__()
        self.width = width
        self.height = height
        columns = np.arange(width) * len(_BARS) // width
        self._row = _BARS[columns]
        self._offset = 0

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()

        row = np.roll(self._row, self._offset, axis=0)
        self._offset = (self._offset + 4) % self.width
        rgb_array = np.ascontiguousarray(np.broadcast_to(row, (self.height, self.width, 3)))

        frame = VideoFrame.from_ndarray(rgb_array, format="rgb24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


class SyntheticCapabilityProvider(CapabilityProvider):
    """Always grants a test-pattern video stream."""

    def __init__(self, width: int = 640, height: int = 480) -> None:
        self.width = width
        self.height = height

    async def request(self, constraints: MediaConstraints) -> CapabilityResult:
        if constraints.audio:
            logger.warning("Synthetic source has no audio; granting video only")
        stream = StreamHandle([TestPatternTrack(self.width, self.height)])
        logger.info("Granted synthetic stream %s", stream.id)
        return CapabilityResult.granted(stream)
