"""Capability escalation through a context that is allowed to prompt."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from .media.capability import CapabilityProvider, CapabilityResult, MediaConstraints
from .messages import MediaAccessPayload, Message, MessageType, Sender

logger = logging.getLogger(__name__)


class PrivilegeEscalationDelegate(ABC):
    """Disposable helper that asks for capture where a prompt is possible."""

    @abstractmethod
    async def request(self) -> CapabilityResult:
        """Ask once and return the outcome. Never retries."""


class FrameEscalationDelegate(PrivilegeEscalationDelegate):
    """The hidden helper frame the broker injects into the active tab.

    It only checks for permission: a granted stream is released straight
    away and the broker opens its own once the grant is reported.
    """

    def __init__(self, provider: CapabilityProvider, constraints: MediaConstraints) -> None:
        self._provider = provider
        self._constraints = constraints
        self._used = False

    async def request(self) -> CapabilityResult:
        if self._used:
            raise RuntimeError("Escalation delegates are single use")
        self._used = True

        try:
            result = await self._provider.request(self._constraints)
        except Exception as error:
            logger.error("Escalation capture request failed: %s", error)
            return CapabilityResult.failed(str(error))

        if result.stream is not None:
            result.stream.stop()
        logger.info("Escalation finished with %s", result.status.value)
        return CapabilityResult(status=result.status, error=result.error)


def media_access_message(result: CapabilityResult) -> Message:
    """The page-side report of an escalation outcome."""
    payload = MediaAccessPayload(status=result.status.value, error=result.error)
    return Message(sender=Sender.CLIENT, type=MessageType.MEDIA_ACCESS, content=payload.model_dump())
