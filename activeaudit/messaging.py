"""In-process messaging bus between the broker and relay contexts.

Delivery is best effort: a send to a context that is not registered (never
started, or already torn down) is dropped. Each target context owns a single
inbox queue, so messages from one sender arrive in the order they were sent.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from .errors import DeliveryError
from .messages import Message

if TYPE_CHECKING:
    from .context import Context
    from .escalation import PrivilegeEscalationDelegate

logger = logging.getLogger(__name__)


class ContextName(str, Enum):
    BROKER = "broker"
    RELAY = "relay"


class Channel(str, Enum):
    """Where a delivery entered its context."""

    RUNTIME = "runtime"
    PAGE = "page"


@dataclass
class Delivery:
    message: Message
    channel: Channel = Channel.RUNTIME
    origin: Optional[str] = None
    reply: Optional[asyncio.Future] = None


class MessageBus:
    """Routes messages to registered contexts by name.

    There is a single relay slot: the bus always talks to "the active tab".
    """

    def __init__(self) -> None:
        self._endpoints: dict[ContextName, Context] = {}

    def register(self, name: ContextName, endpoint: Context) -> None:
        previous = self._endpoints.get(name)
        if previous is not None and previous is not endpoint:
            logger.info("Replacing %s context on the bus", name.value)
        self._endpoints[name] = endpoint

    def unregister(self, name: ContextName, endpoint: Optional[Context] = None) -> None:
        current = self._endpoints.get(name)
        if current is None:
            return
        if endpoint is not None and current is not endpoint:
            return
        del self._endpoints[name]

    def is_registered(self, name: ContextName) -> bool:
        return name in self._endpoints

    def send(self, target: ContextName, message: Message) -> None:
        """Fire-and-forget delivery."""
        endpoint = self._endpoints.get(target)
        if endpoint is None:
            logger.warning(
                "Dropping %s from %s: no %s context registered",
                message.type.value,
                message.sender.value,
                target.value,
            )
            return
        endpoint.deliver(Delivery(message=message))

    async def request(self, target: ContextName, message: Message) -> Any:
        """Deliver a message and wait for the handler's return value."""
        endpoint = self._endpoints.get(target)
        if endpoint is None:
            raise DeliveryError(f"No {target.value} context registered for {message.type.value}")

        reply = asyncio.get_running_loop().create_future()
        endpoint.deliver(Delivery(message=message, reply=reply))
        return await reply

    def inject(self, target: ContextName, delegate: PrivilegeEscalationDelegate) -> None:
        """Hand an escalation delegate to the target context to run."""
        endpoint = self._endpoints.get(target)
        if endpoint is None:
            raise DeliveryError(f"No {target.value} context to host the escalation delegate")
        endpoint.host_delegate(delegate)
