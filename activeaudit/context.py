"""Single-consumer execution context shared by the broker and relay."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Coroutine, Optional

from .errors import DeliveryError, RoutingError
from .messages import Message, MessageType, Sender
from .messaging import ContextName, Delivery, MessageBus
from .routing import MessageRouter

if TYPE_CHECKING:
    from .escalation import PrivilegeEscalationDelegate

logger = logging.getLogger(__name__)


class Context(ABC):
    """An isolated context with its own inbox and consumer task.

    Deliveries are handled one at a time, in arrival order. Handlers that need
    to wait on something outside the context (capture, escalation) spawn a
    background task instead so the inbox keeps moving.
    """

    name: ContextName
    sender: Sender

    def __init__(self, bus: MessageBus) -> None:
        self._bus = bus
        self._inbox: asyncio.Queue[Delivery] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self._runner: Optional[asyncio.Task] = None
        self._closed = False
        self._torn_down = False

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def idle(self) -> bool:
        return self._inbox.empty() and all(task.done() for task in self._tasks)

    def start(self) -> None:
        if self._runner is not None:
            return
        self._bus.register(self.name, self)
        self._runner = asyncio.create_task(self._run(), name=f"{self.name.value}-context")
        logger.info("%s context started", self.name.value)

    def deliver(self, delivery: Delivery) -> None:
        if self._closed:
            logger.debug("%s context closed, dropping %s", self.name.value, delivery.message.type.value)
            if delivery.reply is not None and not delivery.reply.done():
                delivery.reply.set_exception(DeliveryError(f"{self.name.value} context is closed"))
            return
        self._inbox.put_nowait(delivery)

    def host_delegate(self, delegate: PrivilegeEscalationDelegate) -> None:
        raise DeliveryError(f"{self.name.value} context cannot host escalation delegates")

    def send(self, target: ContextName, message_type: MessageType, content: Any = None) -> None:
        self._bus.send(target, Message(sender=self.sender, type=message_type, content=content))

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Run ``coro`` as a tracked background task owned by this context."""
        task = asyncio.create_task(coro, name=f"{self.name.value}-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def wait_idle(self) -> None:
        """Wait until the inbox is drained and no background task is pending."""
        while True:
            await self._inbox.join()
            pending = [task for task in self._tasks if not task.done()]
            if pending:
                await asyncio.wait(pending)
                continue
            if self._inbox.empty():
                return

    async def close(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        self._stop_accepting()

        tasks = list(self._tasks)
        if self._runner is not None:
            tasks.append(self._runner)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._drain_inbox()

        await self._on_close()
        logger.info("%s context closed", self.name.value)

    def _stop_accepting(self) -> None:
        self._closed = True
        self._bus.unregister(self.name, self)

    def _drain_inbox(self) -> None:
        while not self._inbox.empty():
            delivery = self._inbox.get_nowait()
            self._inbox.task_done()
            self._reject(delivery, DeliveryError(f"{self.name.value} context is closed"))

    async def _on_close(self) -> None:
        """Release resources owned by the context."""

    @abstractmethod
    def _router_for(self, delivery: Delivery) -> Optional[MessageRouter]:
        """Return the router for the delivery's channel, or None to drop it."""

    async def _run(self) -> None:
        while True:
            delivery = await self._inbox.get()
            try:
                await self._handle(delivery)
            finally:
                self._inbox.task_done()

    async def _handle(self, delivery: Delivery) -> None:
        router = self._router_for(delivery)
        if router is None:
            self._resolve(delivery, None)
            return

        try:
            result = await router.dispatch(delivery.message)
        except RoutingError as error:
            logger.critical("%s context stopping: %s", self.name.value, error)
            self._reject(delivery, error)
            self._stop_accepting()
            self._drain_inbox()
            raise
        except Exception as error:
            logger.exception("%s: handler for %s failed", self.name.value, delivery.message.type.value)
            self._reject(delivery, error)
            return

        self._resolve(delivery, result)

    @staticmethod
    def _resolve(delivery: Delivery, result: Any) -> None:
        if delivery.reply is not None and not delivery.reply.done():
            delivery.reply.set_result(result)

    @staticmethod
    def _reject(delivery: Delivery, error: BaseException) -> None:
        if delivery.reply is not None and not delivery.reply.done():
            delivery.reply.set_exception(error)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("%s: background task %s failed", self.name.value, task.get_name(), exc_info=error)
