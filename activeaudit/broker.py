"""Extension-wide broker: owns capture and drives negotiation with the relay.

The broker cannot prompt for camera access itself. When capture is refused it
injects an escalation delegate into the active tab, waits for the delegate's
MEDIA_ACCESS report (forwarded by the relay) and retries once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .context import Context
from .errors import CapabilityFailure, DeliveryError, NegotiationFailure
from .escalation import PrivilegeEscalationDelegate
from .media.capability import (
    CapabilityProvider,
    CapabilityResult,
    CapabilityStatus,
    MediaConstraints,
    StreamHandle,
)
from .messages import (
    CandidatePayload,
    DescriptionPayload,
    MediaAccessPayload,
    MediaFailPayload,
    MessageType,
    PreviewStatus,
    RtcFailPayload,
    Sender,
)
from .messaging import Channel, ContextName, Delivery, MessageBus
from .routing import MessageRouter
from .rtc.engine import PeerConnectionFactory, SessionDescription
from .rtc.negotiation import ConnectivityState, NegotiationSession

logger = logging.getLogger(__name__)

NEGOTIATION_FAILURE = "NegotiationFailure"

DelegateFactory = Callable[[], PrivilegeEscalationDelegate]


class BrokerPhase(str, Enum):
    IDLE = "idle"
    AWAITING_CAPABILITY = "awaiting_capability"
    ESCALATING = "escalating"
    MEDIA_READY = "media_ready"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class SessionState:
    """Preview session flags. ``stream`` is only set while ``enabled``."""

    enabled: bool = False
    stream: Optional[StreamHandle] = None

    def snapshot(self) -> PreviewStatus:
        return PreviewStatus(status=self.enabled, stream=self.stream.id if self.stream else None)

    def grant(self, stream: StreamHandle) -> None:
        self.stream = stream
        self.enabled = True

    def mark_enabled(self) -> None:
        self.enabled = True

    def revoke(self) -> Optional[StreamHandle]:
        stream, self.stream = self.stream, None
        self.enabled = False
        return stream


class Broker(Context):
    name = ContextName.BROKER
    sender = Sender.BROKER

    def __init__(
        self,
        bus: MessageBus,
        provider: CapabilityProvider,
        connection_factory: PeerConnectionFactory,
        delegate_factory: DelegateFactory,
        constraints: MediaConstraints = MediaConstraints(),
        ice_restart_delay: float = 0.0,
    ) -> None:
        super().__init__(bus)
        self._provider = provider
        self._connection_factory = connection_factory
        self._delegate_factory = delegate_factory
        self._constraints = constraints
        self._ice_restart_delay = ice_restart_delay

        self._state = SessionState()
        self.phase = BrokerPhase.IDLE
        self.session: Optional[NegotiationSession] = None
        self._done_seen = False

        self._show_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._restart_again = False
        self._escalation: Optional[asyncio.Future] = None

        self._router = MessageRouter("broker", Sender.RELAY)
        self._router.add(MessageType.CHECK_PREVIEW, self.check_preview)
        self._router.add(MessageType.SHOW_PREVIEW, self.request_show)
        self._router.add(MessageType.PROCESS_PREVIEW, self.request_show)
        self._router.add(MessageType.MEDIA_ACCESS, self._handle_media_access)
        self._router.add(MessageType.RTC_SEND_OFFER, self._handle_answer)
        self._router.add(MessageType.ICE_CANDIDATE_SEND, self._handle_candidate)
        self._router.add(MessageType.RTC_DONE, self._handle_done)
        self._router.add(MessageType.RTC_FAIL, self._handle_rtc_fail)

    @property
    def state(self) -> SessionState:
        return self._state

    def _router_for(self, delivery: Delivery) -> Optional[MessageRouter]:
        if delivery.channel is not Channel.RUNTIME:
            logger.debug("Broker ignoring %s delivery", delivery.channel.value)
            return None
        return self._router

    def _set_phase(self, phase: BrokerPhase) -> None:
        if phase is not self.phase:
            logger.debug("Broker %s -> %s", self.phase.value, phase.value)
            self.phase = phase

    # Preview requests

    def check_preview(self, _content: Any = None) -> dict:
        return self._state.snapshot().model_dump()

    def request_show(self, _intent: Any = None) -> None:
        """Start the show workflow, or join the one already in flight."""
        if self._show_task is not None and not self._show_task.done():
            logger.info("Show request already in progress (%s), coalescing", self.phase.value)
            return
        self._show_task = self.spawn(self._show(), "show")

    async def _show(self) -> None:
        if self._state.enabled:
            self._state.mark_enabled()
            await self._negotiate()
            return

        self._set_phase(BrokerPhase.AWAITING_CAPABILITY)
        result = await self._request_capability()

        if result.status is CapabilityStatus.PERMISSION_DENIED:
            logger.info("Capture refused in the broker, escalating through the active tab")
            result = await self._escalate()
            if result is None:
                return

        if not result.ok or result.stream is None:
            self._fail(result.status.value, result.error)
            return

        self._state.grant(result.stream)
        self._set_phase(BrokerPhase.MEDIA_READY)
        await self._negotiate()

    async def _request_capability(self) -> CapabilityResult:
        try:
            return await self._provider.request(self._constraints)
        except CapabilityFailure as error:
            logger.error("Capture failed: %s", error)
            return CapabilityResult.failed(str(error))

    # Escalation

    async def _escalate(self) -> Optional[CapabilityResult]:
        self._set_phase(BrokerPhase.ESCALATING)
        self._escalation = asyncio.get_running_loop().create_future()
        try:
            self._bus.inject(ContextName.RELAY, self._delegate_factory())
        except DeliveryError as error:
            self._escalation = None
            self._fail(CapabilityStatus.FAILURE.value, str(error))
            return None

        try:
            outcome = await self._escalation
        finally:
            self._escalation = None
        return await self.on_escalation_result(outcome)

    async def on_escalation_result(self, outcome: CapabilityResult) -> Optional[CapabilityResult]:
        """Retry capture exactly once after a successful escalation."""
        if not outcome.ok:
            self._fail(outcome.status.value, outcome.error)
            return None

        self._set_phase(BrokerPhase.AWAITING_CAPABILITY)
        result = await self._request_capability()
        if result.ok:
            return result

        logger.warning("Capture still refused after escalation: %s", result.status.value)
        return CapabilityResult.failed(result.error or "capture refused after escalation")

    def _handle_media_access(self, content: Any) -> None:
        payload = MediaAccessPayload.model_validate(content)
        try:
            status = CapabilityStatus(payload.status)
        except ValueError:
            status = CapabilityStatus.FAILURE

        if self._escalation is None or self._escalation.done():
            logger.warning("Ignoring MEDIA_ACCESS %s: no escalation pending", payload.status)
            return
        self._escalation.set_result(CapabilityResult(status=status, error=payload.error))

    # Negotiation

    async def _negotiate(self) -> None:
        stream = self._state.stream
        if stream is None:
            self._fail(CapabilityStatus.FAILURE.value, "no capture stream to negotiate")
            return

        await self._close_session()
        session = NegotiationSession(
            self._connection_factory(),
            on_candidate=self._send_candidate,
            on_connectivity=self.on_connectivity_change,
        )
        for track in stream.tracks:
            session.add_track(track)
        self.session = session

        self._set_phase(BrokerPhase.NEGOTIATING)
        await self._send_offer(session, ice_restart=False)

    async def _send_offer(self, session: NegotiationSession, ice_restart: bool) -> None:
        try:
            offer = await session.create_offer(ice_restart=ice_restart)
        except NegotiationFailure as error:
            logger.error("Broker could not create offer: %s", error)
            self._fail(NEGOTIATION_FAILURE, str(error))
            return

        if session is not self.session:
            return
        self.send(ContextName.RELAY, MessageType.RTC_SEND_OFFER, offer.to_payload(ice_restart=ice_restart))
        session.release_candidates()
        logger.info("Sent %s to relay", "ICE restart offer" if ice_restart else "offer")

    def _send_candidate(self, candidate: Optional[dict]) -> None:
        self.send(ContextName.RELAY, MessageType.ICE_CANDIDATE_SEND, candidate)

    async def _handle_answer(self, content: Any) -> None:
        payload = DescriptionPayload.model_validate(content)
        if self.session is None:
            logger.warning("Ignoring %s from relay: no negotiation in progress", payload.type)
            return
        try:
            await self.session.accept_answer(SessionDescription(sdp=payload.sdp, type=payload.type))
        except NegotiationFailure as error:
            logger.error("Broker rejected relay answer: %s", error)
            self._fail(NEGOTIATION_FAILURE, str(error))

    async def _handle_candidate(self, content: Any) -> None:
        if self.session is None:
            logger.warning("Dropping relay candidate: no negotiation in progress")
            return
        try:
            candidate = CandidatePayload.parse_content(content)
        except ValidationError as error:
            logger.warning("Dropping malformed relay candidate: %s", error)
            return
        try:
            await self.session.add_candidate(candidate)
        except NegotiationFailure as error:
            logger.error("Broker could not apply relay candidate: %s", error)

    def _handle_done(self, _content: Any = None) -> None:
        self._done_seen = True
        self._state.mark_enabled()
        self._set_phase(BrokerPhase.CONNECTED)
        logger.info("Relay reports preview connected")

    def _handle_rtc_fail(self, content: Any) -> None:
        payload = RtcFailPayload.model_validate(content or {})
        logger.error("Relay failed to negotiate: %s", payload.error)
        self._fail(NEGOTIATION_FAILURE, payload.error)

    # Connectivity

    def on_connectivity_change(self, state: ConnectivityState) -> None:
        if state is ConnectivityState.CONNECTED:
            if self._done_seen:
                self._set_phase(BrokerPhase.CONNECTED)
            return
        if state is not ConnectivityState.DISCONNECTED:
            return

        if self._restart_task is not None and not self._restart_task.done():
            self._restart_again = True
            return
        self._restart_task = self.spawn(self._restart_ice(), "ice-restart")

    async def _restart_ice(self) -> None:
        # Unbounded: every reported disconnect earns another restart offer.
        while True:
            self._restart_again = False
            if self._ice_restart_delay:
                await asyncio.sleep(self._ice_restart_delay)

            session = self.session
            if session is None or session.closed:
                return
            logger.info("Connectivity lost, restarting ICE")
            self._set_phase(BrokerPhase.NEGOTIATING)
            await self._send_offer(session, ice_restart=True)

            if not self._restart_again:
                return

    # Failure and teardown

    def _fail(self, status: str, error: str = "") -> None:
        self._set_phase(BrokerPhase.FAILED)
        logger.warning("Preview failed: %s %s", status, error)
        payload = MediaFailPayload(status=status, error=error)
        self.send(ContextName.RELAY, MessageType.MEDIA_FAIL, payload.model_dump())

    async def _close_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            await session.close()

    async def _on_close(self) -> None:
        if self._escalation is not None and not self._escalation.done():
            self._escalation.cancel()
        await self._close_session()
        stream = self._state.revoke()
        if stream is not None:
            stream.stop()
        self._set_phase(BrokerPhase.IDLE)
