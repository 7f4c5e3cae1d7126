"""Tagged message dispatch shared by the broker and relay."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Union

from .errors import RoutingError
from .messages import Message, MessageType, Sender

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Any, Awaitable[Any]]]


class MessageRouter:
    """Maps message types to handlers for one context and one expected sender."""

    def __init__(self, name: str, expected_sender: Sender) -> None:
        self.name = name
        self.expected_sender = expected_sender
        self._handlers: dict[MessageType, Handler] = {}

    def add(self, message_type: MessageType, handler: Handler) -> None:
        if message_type in self._handlers:
            raise ValueError(f"{self.name}: handler already registered for {message_type.value}")
        self._handlers[message_type] = handler

    def handles(self, message_type: MessageType) -> bool:
        return message_type in self._handlers

    def accepts(self, message: Message) -> bool:
        return message.sender is self.expected_sender

    async def dispatch(self, message: Message) -> Any:
        """Run the handler for ``message`` and return its result.

        Messages from an unexpected sender are dropped and return None.
        Raises RoutingError when the type has no handler.
        """
        if not self.accepts(message):
            logger.debug(
                "%s: dropping %s from %s, expected %s",
                self.name,
                message.type.value,
                message.sender.value,
                self.expected_sender.value,
            )
            return None

        try:
            handler = self._handlers[message.type]
        except KeyError as error:
            raise RoutingError(f"{self.name}: no handler for {message.type.value}") from error

        result = handler(message.content)
        if inspect.isawaitable(result):
            result = await result
        return result
