"""Shared fixtures for the preview protocol tests."""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from activeaudit.broker import Broker
from activeaudit.context import Context
from activeaudit.escalation import FrameEscalationDelegate
from activeaudit.media.capability import CapabilityProvider, CapabilityStatus, MediaConstraints
from activeaudit.messages import Message, MessageType, Sender
from activeaudit.relay import Relay
from tests.fakes import FakeNetwork, FakePreview, RecordingBus, ScriptedProvider

PAGE_ORIGIN = "https://exam.example.org"


def page_message(message_type: MessageType, content=None, sender: Sender = Sender.CLIENT) -> Message:
    return Message(sender=sender, type=message_type, content=content)


async def settle(*contexts: Context, rounds: int = 50) -> None:
    """Wait until every context is idle at the same time."""
    for _ in range(rounds):
        for context in contexts:
            await asyncio.wait_for(context.wait_idle(), timeout=2.0)
        await asyncio.sleep(0)
        if all(context.idle for context in contexts):
            return
    raise AssertionError("contexts did not settle")


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def preview() -> FakePreview:
    return FakePreview()


@pytest.fixture
async def make_system(bus, network, preview):
    """Build and start a broker/relay pair over the recording bus."""
    created: list[Context] = []

    def factory(
        provider: CapabilityProvider,
        page_provider: Optional[CapabilityProvider] = None,
        broker_candidates=(),
        relay_candidates=(),
        ice_restart_delay: float = 0.0,
    ) -> tuple[Broker, Relay]:
        page_provider = page_provider or ScriptedProvider(CapabilityStatus.OK)
        constraints = MediaConstraints()
        broker = Broker(
            bus,
            provider,
            network.factory("broker", broker_candidates),
            delegate_factory=lambda: FrameEscalationDelegate(page_provider, constraints),
            constraints=constraints,
            ice_restart_delay=ice_restart_delay,
        )
        relay = Relay(bus, network.factory("relay", relay_candidates), preview, PAGE_ORIGIN)
        broker.start()
        relay.start()
        created.extend([relay, broker])
        return broker, relay

    yield factory

    for context in created:
        await context.close()
