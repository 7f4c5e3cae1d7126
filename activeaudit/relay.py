"""Per-tab relay between the page, the broker and the preview widget."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Optional

from aiortc import MediaStreamTrack
from pydantic import ValidationError

from .context import Context
from .errors import NegotiationFailure
from .escalation import PrivilegeEscalationDelegate, media_access_message
from .media.preview import PreviewWidget
from .messages import (
    CandidatePayload,
    DescriptionPayload,
    MediaFailPayload,
    Message,
    MessageType,
    RtcFailPayload,
    Sender,
)
from .messaging import Channel, ContextName, Delivery, MessageBus
from .routing import MessageRouter
from .rtc.engine import PeerConnectionFactory, SessionDescription
from .rtc.negotiation import NegotiationSession

logger = logging.getLogger(__name__)


class Relay(Context):
    """Answers the broker's offers and renders the resulting track.

    Page messages are accepted only from the page's own origin with the
    CLIENT sender tag; they are re-tagged and forwarded to the broker.
    """

    name = ContextName.RELAY
    sender = Sender.RELAY

    def __init__(
        self,
        bus: MessageBus,
        connection_factory: PeerConnectionFactory,
        preview: PreviewWidget,
        page_origin: str,
        event_buffer: int = 100,
    ) -> None:
        super().__init__(bus)
        self._connection_factory = connection_factory
        self._preview = preview
        self.page_origin = page_origin.rstrip("/")
        self.session: Optional[NegotiationSession] = None
        self._done_sent = False
        self._event_buffer = event_buffer
        self._subscribers: set[asyncio.Queue] = set()

        self._page_router = MessageRouter("relay-page", Sender.CLIENT)
        self._page_router.add(MessageType.CHECK_PREVIEW, self._forward_check)
        self._page_router.add(MessageType.SHOW_PREVIEW, self._forward_show)
        self._page_router.add(MessageType.PROCESS_PREVIEW, partial(self._forward, MessageType.PROCESS_PREVIEW))
        self._page_router.add(MessageType.MEDIA_ACCESS, partial(self._forward, MessageType.MEDIA_ACCESS))

        self._runtime_router = MessageRouter("relay", Sender.BROKER)
        self._runtime_router.add(MessageType.RTC_SEND_OFFER, self.on_offer)
        self._runtime_router.add(MessageType.ICE_CANDIDATE_SEND, self.on_candidate)
        self._runtime_router.add(MessageType.MEDIA_FAIL, self.on_media_fail)

    # Page boundary

    def accepts_page_message(self, message: Message, origin: Optional[str]) -> bool:
        return (
            self._origin_allowed(origin)
            and self._page_router.accepts(message)
            and self._page_router.handles(message.type)
        )

    async def receive_from_page(self, message: Message, origin: Optional[str]) -> Any:
        """Queue a page message and wait for the relay to handle it."""
        reply = asyncio.get_running_loop().create_future()
        self.deliver(Delivery(message=message, channel=Channel.PAGE, origin=origin, reply=reply))
        return await reply

    def post_from_page(self, message: Message, origin: Optional[str] = None) -> None:
        self.deliver(Delivery(message=message, channel=Channel.PAGE, origin=origin or self.page_origin))

    def _origin_allowed(self, origin: Optional[str]) -> bool:
        return origin is not None and origin.rstrip("/") == self.page_origin

    def _router_for(self, delivery: Delivery) -> Optional[MessageRouter]:
        if delivery.channel is Channel.PAGE:
            if not self._origin_allowed(delivery.origin):
                logger.debug("Dropping page message from foreign origin %s", delivery.origin)
                return None
            if not self._page_router.handles(delivery.message.type):
                # Page input is untrusted: unmapped types are dropped, not fatal.
                logger.debug("Dropping page message of type %s", delivery.message.type.value)
                return None
            return self._page_router
        return self._runtime_router

    async def _forward_check(self, content: Any) -> Any:
        message = Message(sender=self.sender, type=MessageType.CHECK_PREVIEW, content=content)
        return await self._bus.request(ContextName.BROKER, message)

    def _forward_show(self, content: Any) -> None:
        self._preview.show()
        self._publish("preview_shown")
        self._forward(MessageType.SHOW_PREVIEW, content)

    def _forward(self, message_type: MessageType, content: Any) -> None:
        self.send(ContextName.BROKER, message_type, content)

    # Escalation

    def host_delegate(self, delegate: PrivilegeEscalationDelegate) -> None:
        self.spawn(self._run_delegate(delegate), "escalation")

    async def _run_delegate(self, delegate: PrivilegeEscalationDelegate) -> None:
        result = await delegate.request()
        self.post_from_page(media_access_message(result))

    # Negotiation

    def _ensure_session(self) -> NegotiationSession:
        if self.session is None:
            self.session = NegotiationSession(
                self._connection_factory(),
                on_candidate=self._send_candidate,
                on_track=self.on_track,
            )
        return self.session

    async def on_offer(self, content: Any) -> None:
        payload = DescriptionPayload.model_validate(content)
        session = self._ensure_session()
        if payload.ice_restart:
            logger.info("Broker restarted ICE")

        try:
            answer = await session.accept_offer(SessionDescription(sdp=payload.sdp, type=payload.type))
        except NegotiationFailure as error:
            logger.error("Relay could not answer offer: %s", error)
            self.send(ContextName.BROKER, MessageType.RTC_FAIL, RtcFailPayload(error=str(error)).model_dump())
            return

        self.send(ContextName.BROKER, MessageType.RTC_SEND_OFFER, answer.to_payload())
        session.release_candidates()

    async def on_candidate(self, content: Any) -> None:
        try:
            candidate = CandidatePayload.parse_content(content)
        except ValidationError as error:
            logger.warning("Dropping malformed broker candidate: %s", error)
            return

        session = self._ensure_session()
        try:
            await session.add_candidate(candidate)
        except NegotiationFailure as error:
            logger.error("Relay could not apply broker candidate: %s", error)

    def on_track(self, track: MediaStreamTrack) -> None:
        self._preview.attach(track)
        if self._done_sent:
            logger.debug("Re-attached %s track after renegotiation", track.kind)
            return
        self._done_sent = True
        self._publish("preview_ready")
        self.send(ContextName.BROKER, MessageType.RTC_DONE)

    def on_media_fail(self, content: Any) -> None:
        payload = MediaFailPayload.model_validate(content or {"status": "Failure"})
        self._preview.fail(payload.status, payload.error)
        self._publish("media_fail", status=payload.status, error=payload.error)

    def _send_candidate(self, candidate: Optional[dict]) -> None:
        self.send(ContextName.BROKER, MessageType.ICE_CANDIDATE_SEND, candidate)

    # Page notifications

    def subscribe(self) -> asyncio.Queue:
        """Return a new queue receiving every page notification published from now on."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._event_buffer)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def _publish(self, event_type: str, **data: Any) -> None:
        event = {"type": event_type, **data}
        for queue in self._subscribers:
            if queue.full():
                # Slow subscribers lose their oldest event.
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

    async def _on_close(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            await session.close()
        await self._preview.close()
