"""Tests for MessageBus delivery and the Context consumer loop."""

import asyncio

import pytest

from activeaudit.context import Context
from activeaudit.errors import DeliveryError, RoutingError
from activeaudit.messages import Message, MessageType, Sender
from activeaudit.messaging import ContextName, Delivery, MessageBus
from activeaudit.routing import MessageRouter
from tests.conftest import settle


class RecorderContext(Context):
    """Relay-shaped context that records candidates and answers status checks."""

    name = ContextName.RELAY
    sender = Sender.RELAY

    def __init__(self, bus: MessageBus) -> None:
        super().__init__(bus)
        self.received = []
        self._router = MessageRouter("recorder", Sender.BROKER)
        self._router.add(MessageType.ICE_CANDIDATE_SEND, self.received.append)
        self._router.add(MessageType.CHECK_PREVIEW, lambda content: {"status": True, "stream": "s-1"})
        self._router.add(MessageType.MEDIA_FAIL, self._explode)

    def _explode(self, content):
        raise RuntimeError("handler bug")

    def _router_for(self, delivery):
        return self._router


def broker_message(message_type: MessageType, content=None) -> Message:
    return Message(sender=Sender.BROKER, type=message_type, content=content)


class TestDelivery:
    async def test_send_without_target_is_dropped(self) -> None:
        bus = MessageBus()

        bus.send(ContextName.RELAY, broker_message(MessageType.RTC_DONE))

        assert not bus.is_registered(ContextName.RELAY)

    async def test_request_without_target_raises(self) -> None:
        bus = MessageBus()

        with pytest.raises(DeliveryError):
            await bus.request(ContextName.BROKER, broker_message(MessageType.CHECK_PREVIEW))

    async def test_inject_without_target_raises(self) -> None:
        bus = MessageBus()

        with pytest.raises(DeliveryError):
            bus.inject(ContextName.RELAY, delegate=object())

    async def test_messages_arrive_in_send_order(self) -> None:
        bus = MessageBus()
        context = RecorderContext(bus)
        context.start()

        candidates = [{"candidate": f"candidate:{index} 1 udp 1 10.0.0.1 900{index} typ host"} for index in range(5)]
        for candidate in candidates:
            bus.send(ContextName.RELAY, broker_message(MessageType.ICE_CANDIDATE_SEND, candidate))
        await settle(context)

        assert context.received == candidates
        await context.close()

    async def test_request_returns_handler_result(self) -> None:
        bus = MessageBus()
        context = RecorderContext(bus)
        context.start()

        result = await bus.request(ContextName.RELAY, broker_message(MessageType.CHECK_PREVIEW))

        assert result == {"status": True, "stream": "s-1"}
        await context.close()


class TestContextLifecycle:
    async def test_handler_error_reaches_requester_and_context_keeps_running(self) -> None:
        bus = MessageBus()
        context = RecorderContext(bus)
        context.start()

        with pytest.raises(RuntimeError):
            await bus.request(ContextName.RELAY, broker_message(MessageType.MEDIA_FAIL))

        assert context.running
        result = await bus.request(ContextName.RELAY, broker_message(MessageType.CHECK_PREVIEW))
        assert result["status"] is True
        await context.close()

    async def test_unmapped_type_stops_the_context(self) -> None:
        bus = MessageBus()
        context = RecorderContext(bus)
        context.start()

        with pytest.raises(RoutingError):
            await bus.request(ContextName.RELAY, broker_message(MessageType.RTC_SEND_OFFER))
        await asyncio.sleep(0)

        assert not context.running
        assert not bus.is_registered(ContextName.RELAY)
        with pytest.raises(DeliveryError):
            await bus.request(ContextName.RELAY, broker_message(MessageType.CHECK_PREVIEW))
        await context.close()

    async def test_stopped_context_fails_queued_replies(self) -> None:
        bus = MessageBus()
        context = RecorderContext(bus)
        context.start()

        fatal = asyncio.ensure_future(bus.request(ContextName.RELAY, broker_message(MessageType.RTC_SEND_OFFER)))
        queued = asyncio.ensure_future(bus.request(ContextName.RELAY, broker_message(MessageType.CHECK_PREVIEW)))

        with pytest.raises(RoutingError):
            await fatal
        with pytest.raises(DeliveryError):
            await queued
        await context.close()

    async def test_closed_context_is_unregistered(self) -> None:
        bus = MessageBus()
        context = RecorderContext(bus)
        context.start()

        await context.close()

        assert not bus.is_registered(ContextName.RELAY)
        with pytest.raises(DeliveryError):
            await bus.request(ContextName.RELAY, broker_message(MessageType.CHECK_PREVIEW))

    async def test_delivery_to_closed_context_fails_the_reply(self) -> None:
        bus = MessageBus()
        context = RecorderContext(bus)
        context.start()
        await context.close()

        reply = asyncio.get_running_loop().create_future()
        context.deliver(Delivery(message=broker_message(MessageType.CHECK_PREVIEW), reply=reply))

        with pytest.raises(DeliveryError):
            await reply
