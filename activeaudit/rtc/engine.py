"""Peer connection engine interface and its aiortc implementation."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from aioice import Candidate as AioIceCandidate
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

logger = logging.getLogger(__name__)

CandidateCallback = Callable[[Optional[dict]], None]
TrackCallback = Callable[[MediaStreamTrack], None]
StateCallback = Callable[[str], None]


@dataclass(frozen=True)
class SessionDescription:
    sdp: str
    type: str

    def to_payload(self, ice_restart: bool = False) -> dict:
        return {"sdp": self.sdp, "type": self.type, "iceRestart": ice_restart}


class PeerConnection(ABC):
    """One end of a media connection.

    Engine events are reported through the callbacks installed with bind():
    discovered candidates (None marks end-of-candidates), remote tracks and
    connection state names ("new", "connecting", "connected", "disconnected",
    "failed", "closed").
    """

    def __init__(self) -> None:
        self._on_candidate: Optional[CandidateCallback] = None
        self._on_track: Optional[TrackCallback] = None
        self._on_state: Optional[StateCallback] = None

    def bind(
        self,
        on_candidate: CandidateCallback,
        on_track: TrackCallback,
        on_state: StateCallback,
    ) -> None:
        self._on_candidate = on_candidate
        self._on_track = on_track
        self._on_state = on_state

    def _emit_candidate(self, candidate: Optional[dict]) -> None:
        if self._on_candidate is not None:
            self._on_candidate(candidate)

    def _emit_track(self, track: MediaStreamTrack) -> None:
        if self._on_track is not None:
            self._on_track(track)

    def _emit_state(self, state: str) -> None:
        if self._on_state is not None:
            self._on_state(state)

    @property
    @abstractmethod
    def local_description(self) -> Optional[SessionDescription]:
        """The applied local description, including any gathered candidates."""

    @abstractmethod
    def add_track(self, track: MediaStreamTrack) -> None: ...

    @abstractmethod
    async def create_offer(self, ice_restart: bool = False) -> SessionDescription: ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: Optional[dict]) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


PeerConnectionFactory = Callable[[], PeerConnection]


def _ice_ufrag(sdp: str) -> Optional[str]:
    for line in sdp.splitlines():
        if line.startswith("a=ice-ufrag:"):
            return line.split(":", 1)[1].strip()
    return None


class AiortcPeerConnection(PeerConnection):
    """PeerConnection backed by aiortc.

    aiortc cannot restart ICE on a live RTCPeerConnection, so a restart
    replaces the underlying connection and re-adds the local tracks. The
    answering side recognises a restart by the changed ICE credentials in the
    new offer and replaces its connection the same way.
    """

    def __init__(self, ice_servers: Optional[list[dict]] = None) -> None:
        super().__init__()
        self.ice_servers = ice_servers or []
        self._tracks: list[MediaStreamTrack] = []
        self._pc = self._build()

    @property
    def local_description(self) -> Optional[SessionDescription]:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(sdp=description.sdp, type=description.type)

    def _configuration(self) -> Optional[RTCConfiguration]:
        if not self.ice_servers:
            return None
        ice_servers = []
        for server in self.ice_servers:
            ice_servers.append(
                RTCIceServer(
                    urls=server["urls"],
                    username=server.get("username"),
                    credential=server.get("credential"),
                )
            )
        return RTCConfiguration(iceServers=ice_servers)

    def _build(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._configuration())

        @pc.on("connectionstatechange")
        def on_connectionstatechange() -> None:
            if pc is not self._pc:
                return
            logger.info("Connection state: %s", pc.connectionState)
            self._emit_state(pc.connectionState)

        @pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange() -> None:
            logger.info("ICE connection state: %s", pc.iceConnectionState)

        @pc.on("icegatheringstatechange")
        def on_icegatheringstatechange() -> None:
            # Gathered candidates travel inside the SDP, only the end marker is trickled.
            if pc is self._pc and pc.iceGatheringState == "complete":
                self._emit_candidate(None)

        @pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            if pc is not self._pc:
                return
            logger.info("Received remote %s track %s", track.kind, track.id)
            self._emit_track(track)

        for track in self._tracks:
            pc.addTrack(track)
        return pc

    async def _rebuild(self) -> None:
        previous = self._pc
        self._pc = self._build()
        await previous.close()
        logger.info("Replaced peer connection for ICE restart")

    def add_track(self, track: MediaStreamTrack) -> None:
        self._tracks.append(track)
        self._pc.addTrack(track)

    async def create_offer(self, ice_restart: bool = False) -> SessionDescription:
        if ice_restart:
            await self._rebuild()
        offer = await self._pc.createOffer()
        return SessionDescription(sdp=offer.sdp, type=offer.type)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(sdp=answer.sdp, type=answer.type)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def set_remote_description(self, description: SessionDescription) -> None:
        current = self._pc.remoteDescription
        if (
            description.type == "offer"
            and current is not None
            and _ice_ufrag(description.sdp) != _ice_ufrag(current.sdp)
        ):
            await self._rebuild()
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_ice_candidate(self, candidate: Optional[dict]) -> None:
        if not candidate or not candidate.get("candidate"):
            logger.debug("Received end-of-candidates")
            return
        await self._pc.addIceCandidate(self._parse_candidate(candidate))

    @staticmethod
    def _parse_candidate(candidate: dict) -> RTCIceCandidate:
        """Build an RTCIceCandidate from a browser-style candidate dict."""
        candidate_value = candidate["candidate"]
        if candidate_value.startswith("candidate:"):
            candidate_value = candidate_value.split("candidate:", 1)[1]

        parsed = AioIceCandidate.from_sdp(candidate_value)

        return RTCIceCandidate(
            component=parsed.component,
            foundation=parsed.foundation,
            ip=parsed.host,
            port=parsed.port,
            priority=parsed.priority,
            protocol=parsed.transport,
            type=parsed.type,
            relatedAddress=parsed.related_address,
            relatedPort=parsed.related_port,
            sdpMid=candidate.get("sdpMid"),
            sdpMLineIndex=candidate.get("sdpMLineIndex"),
            tcpType=parsed.tcptype,
        )

    async def close(self) -> None:
        await self._pc.close()
