"""In-memory stand-ins for the capture device, peer connection engine and preview.

FakePeerConnection pairs with its remote end through a FakeNetwork: when the
offering side applies an answer, both ends report "connected" and the
offerer's tracks show up on the answering side.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Iterable, Optional

from aiortc.mediastreams import MediaStreamError

from activeaudit.media.capability import (
    CapabilityProvider,
    CapabilityResult,
    CapabilityStatus,
    MediaConstraints,
    StreamHandle,
)
from activeaudit.media.preview import PreviewWidget
from activeaudit.messages import Message
from activeaudit.messaging import ContextName, MessageBus
from activeaudit.rtc.engine import PeerConnection, SessionDescription

_track_ids = itertools.count(1)


class FakeTrack:
    kind = "video"

    def __init__(self) -> None:
        self.id = f"track-{next(_track_ids)}"
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True

    async def recv(self):
        raise MediaStreamError


class ScriptedProvider(CapabilityProvider):
    """Returns the scripted statuses in order, repeating the last one."""

    def __init__(self, *statuses: CapabilityStatus, gate: Optional[asyncio.Event] = None) -> None:
        self._script = list(statuses) or [CapabilityStatus.OK]
        self.gate = gate
        self.calls = 0
        self.streams: list[StreamHandle] = []

    async def request(self, constraints: MediaConstraints) -> CapabilityResult:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()

        status = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if status is CapabilityStatus.OK:
            stream = StreamHandle([FakeTrack()], stream_id=f"stream-{self.calls}")
            self.streams.append(stream)
            return CapabilityResult.granted(stream)
        if status is CapabilityStatus.PERMISSION_DENIED:
            return CapabilityResult.denied("NotAllowedError")
        return CapabilityResult.failed("device failure")


class FakePeerConnection(PeerConnection):
    def __init__(self, network: "FakeNetwork", name: str, candidates: Iterable[dict] = ()) -> None:
        super().__init__()
        self.network = network
        self.name = name
        self.candidates = list(candidates)
        self.tracks: list = []
        self.applied_candidates: list[Optional[dict]] = []
        self.remote: Optional[SessionDescription] = None
        self.offers = 0
        self.restarts = 0
        self.closed = False
        self._local: Optional[SessionDescription] = None

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return self._local

    def add_track(self, track) -> None:
        self.tracks.append(track)

    async def create_offer(self, ice_restart: bool = False) -> SessionDescription:
        self.offers += 1
        if ice_restart:
            self.restarts += 1
        return SessionDescription(sdp=f"{self.name}:offer:{self.offers}:restart={ice_restart}", type="offer")

    async def create_answer(self) -> SessionDescription:
        return SessionDescription(sdp=f"{self.name}:answer:{self.remote.sdp}", type="answer")

    async def set_local_description(self, description: SessionDescription) -> None:
        self._local = description
        self.network.publish(description.sdp, self)
        for candidate in self.candidates:
            self._emit_candidate(candidate)
        self._emit_candidate(None)

    async def set_remote_description(self, description: SessionDescription) -> None:
        if "garbage" in description.sdp:
            raise ValueError("malformed session description")
        self.remote = description
        if description.type == "answer":
            self.network.connect(self, self.network.lookup(description.sdp))

    async def add_ice_candidate(self, candidate: Optional[dict]) -> None:
        if candidate is not None and not isinstance(candidate, dict):
            raise ValueError(f"malformed candidate {candidate!r}")
        self.applied_candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True

    def report_state(self, state: str) -> None:
        self._emit_state(state)


class FakeNetwork:
    def __init__(self) -> None:
        self.connections: dict[str, list[FakePeerConnection]] = {}
        self._published: dict[str, FakePeerConnection] = {}

    def factory(self, name: str, candidates: Iterable[dict] = ()):
        candidates = list(candidates)

        def create() -> FakePeerConnection:
            connection = FakePeerConnection(self, name, candidates)
            self.connections.setdefault(name, []).append(connection)
            return connection

        return create

    def latest(self, name: str) -> FakePeerConnection:
        return self.connections[name][-1]

    def publish(self, sdp: str, connection: FakePeerConnection) -> None:
        self._published[sdp] = connection

    def lookup(self, sdp: str) -> FakePeerConnection:
        return self._published[sdp]

    @staticmethod
    def connect(offerer: FakePeerConnection, answerer: FakePeerConnection) -> None:
        offerer.report_state("connected")
        answerer.report_state("connected")
        for track in offerer.tracks:
            answerer._emit_track(track)


class FakePreview(PreviewWidget):
    def __init__(self) -> None:
        self.shown = 0
        self.attached: list = []
        self.failures: list[tuple[str, str]] = []
        self.closed = False

    def show(self) -> None:
        self.shown += 1

    def attach(self, track) -> None:
        self.attached.append(track)

    def fail(self, status: str, error: str = "") -> None:
        self.failures.append((status, error))

    async def close(self) -> None:
        self.closed = True


class RecordingBus(MessageBus):
    """MessageBus that remembers every send and injection."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[ContextName, Message]] = []
        self.injections = 0

    def send(self, target: ContextName, message: Message) -> None:
        self.sent.append((target, message))
        super().send(target, message)

    def inject(self, target, delegate) -> None:
        self.injections += 1
        super().inject(target, delegate)

    def messages(self, message_type, target: Optional[ContextName] = None) -> list[Message]:
        return [
            message
            for sent_to, message in self.sent
            if message.type is message_type and (target is None or sent_to is target)
        ]
