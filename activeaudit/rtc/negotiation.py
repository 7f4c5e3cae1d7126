"""Offer/answer bookkeeping for one end of the preview connection."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

from aiortc import MediaStreamTrack

from ..errors import NegotiationFailure
from .engine import CandidateCallback, PeerConnection, SessionDescription, TrackCallback

logger = logging.getLogger(__name__)


class ConnectivityState(str, Enum):
    NEW = "new"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


ConnectivityCallback = Callable[[ConnectivityState], None]

_ENGINE_STATES = {
    "connected": ConnectivityState.CONNECTED,
    "disconnected": ConnectivityState.DISCONNECTED,
    "failed": ConnectivityState.DISCONNECTED,
}


def _ignore(*_args) -> None:
    return None


class NegotiationSession:
    """Wraps a PeerConnection with the state both ends of the protocol track.

    Remote candidates that arrive before a remote description are queued in
    ``pending_candidates`` and applied, in arrival order, once it is set.
    """

    def __init__(
        self,
        connection: PeerConnection,
        *,
        on_candidate: Optional[CandidateCallback] = None,
        on_track: Optional[TrackCallback] = None,
        on_connectivity: Optional[ConnectivityCallback] = None,
    ) -> None:
        self.connection = connection
        self.local_description: Optional[SessionDescription] = None
        self.remote_description: Optional[SessionDescription] = None
        self.connectivity_state = ConnectivityState.NEW
        self.pending_candidates: list[Optional[dict]] = []
        self._on_candidate = on_candidate or _ignore
        self._on_connectivity = on_connectivity or _ignore
        self._held: Optional[list[Optional[dict]]] = None
        self._closed = False

        connection.bind(
            on_candidate=self._local_candidate,
            on_track=on_track or _ignore,
            on_state=self._state_changed,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def add_track(self, track: MediaStreamTrack) -> None:
        self.connection.add_track(track)

    async def create_offer(self, ice_restart: bool = False) -> SessionDescription:
        self._hold_candidates()
        try:
            offer = await self.connection.create_offer(ice_restart=ice_restart)
            await self.connection.set_local_description(offer)
        except Exception as error:
            self._held = None
            raise NegotiationFailure(f"Could not create offer: {error}") from error

        if ice_restart:
            # The previous answer belongs to the abandoned ICE session.
            self.remote_description = None
            self.connectivity_state = ConnectivityState.NEW
        self.local_description = self.connection.local_description or offer
        return self.local_description

    async def accept_offer(self, offer: SessionDescription) -> SessionDescription:
        """Apply a remote offer and return the local answer."""
        await self._set_remote(offer)
        self._hold_candidates()
        try:
            answer = await self.connection.create_answer()
            await self.connection.set_local_description(answer)
        except Exception as error:
            self._held = None
            raise NegotiationFailure(f"Could not create answer: {error}") from error

        self.local_description = self.connection.local_description or answer
        return self.local_description

    async def accept_answer(self, answer: SessionDescription) -> None:
        await self._set_remote(answer)

    async def add_candidate(self, candidate: Optional[dict]) -> None:
        if self.remote_description is None:
            self.pending_candidates.append(candidate)
            logger.debug("Queued remote candidate (%d pending)", len(self.pending_candidates))
            return
        await self._apply_candidate(candidate)

    def release_candidates(self) -> None:
        """Pass on local candidates held back while a description was created.

        Call after the description itself has been sent so the peer sees the
        offer or answer before its candidates.
        """
        held, self._held = self._held or [], None
        for candidate in held:
            self._on_candidate(candidate)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.pending_candidates.clear()
        self._held = None
        await self.connection.close()

    def _hold_candidates(self) -> None:
        if self._held is None:
            self._held = []

    def _local_candidate(self, candidate: Optional[dict]) -> None:
        if self._held is not None:
            self._held.append(candidate)
            return
        self._on_candidate(candidate)

    async def _set_remote(self, description: SessionDescription) -> None:
        try:
            await self.connection.set_remote_description(description)
        except Exception as error:
            raise NegotiationFailure(f"Rejected remote {description.type}: {error}") from error

        self.remote_description = description
        pending, self.pending_candidates = self.pending_candidates, []
        for candidate in pending:
            # Queued candidates fail one at a time, like live ones.
            try:
                await self._apply_candidate(candidate)
            except NegotiationFailure as error:
                logger.warning("Skipping queued remote candidate: %s", error)

    async def _apply_candidate(self, candidate: Optional[dict]) -> None:
        try:
            await self.connection.add_ice_candidate(candidate)
        except Exception as error:
            raise NegotiationFailure(f"Rejected remote candidate: {error}") from error

    def _state_changed(self, engine_state: str) -> None:
        state = _ENGINE_STATES.get(engine_state)
        if state is None or state is self.connectivity_state:
            return
        logger.info("Connectivity %s -> %s", self.connectivity_state.value, state.value)
        self.connectivity_state = state
        self._on_connectivity(state)
