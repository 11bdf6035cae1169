"""
Handler runtime adapter: the contract between the dispatcher and consumers.

A handler is anything with a `handler_id` and an async `handle(event)` that
returns an Ack. Failures are signalled by raising: TransientHandlerError (or
any other exception) is retried, PermanentHandlerError is dead-lettered. The
dispatcher knows nothing else about a handler.

Design decisions:
- Structural typing (Protocol): payment, notification and future consumers
  share no base class
- Plain functions are first-class handlers via FunctionHandler; synchronous
  ones run in a worker thread so they cannot stall the event loop
- Handlers are bound by id in a HandlerCatalog; subscriptions refer to ids
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from shared.errors import TransientHandlerError
from shared.models import OrderEvent

logger = logging.getLogger("adapter")


@dataclass(frozen=True)
class Ack:
    """
    Successful handling of an event.

    Attributes:
        idempotency_key: Key to mark as seen once the delivery is recorded
        detail: Free-form note, logged by the dispatcher
    """
    idempotency_key: Optional[str] = None
    detail: Optional[str] = None


@runtime_checkable
class EventHandler(Protocol):
    """Capability every downstream consumer implements."""

    handler_id: str

    async def handle(self, event: OrderEvent) -> Ack:
        ...


HandlerFunction = Callable[[OrderEvent], Union[Ack, None, Awaitable[Union[Ack, None]]]]


class FunctionHandler:
    """
    Adapts a plain function into an EventHandler.

    The function may be sync or async and may return an Ack or None (treated
    as an Ack without an idempotency key).

    Example:
        def log_event(event):
            print(f"received {event}")

        catalog.bind(FunctionHandler("audit-log", log_event))
    """

    def __init__(self, handler_id: str, func: HandlerFunction):
        self.handler_id = handler_id
        self._func = func
        self._is_async = inspect.iscoroutinefunction(func)

    async def handle(self, event: OrderEvent) -> Ack:
        if self._is_async:
            result = await self._func(event)
        else:
            result = await asyncio.to_thread(self._func, event)
            if inspect.isawaitable(result):
                result = await result
        return result if isinstance(result, Ack) else Ack()

    def __repr__(self) -> str:
        return f"FunctionHandler({self.handler_id!r})"


async def invoke(handler: EventHandler, event: OrderEvent, timeout: float) -> Ack:
    """
    Call a handler with a timeout.

    Raises:
        TransientHandlerError: The handler did not finish within `timeout`
        Exception: Whatever the handler raised
    """
    try:
        result: Any = await asyncio.wait_for(handler.handle(event), timeout=timeout)
    except asyncio.TimeoutError:
        raise TransientHandlerError(
            f"Handler timed out after {timeout:g}s", handler_id=handler.handler_id
        ) from None
    return result if isinstance(result, Ack) else Ack()


class HandlerCatalog:
    """Binds handler ids to in-process handler implementations."""

    def __init__(self, handlers: Optional[list[EventHandler]] = None):
        self._handlers: dict[str, EventHandler] = {}
        for handler in handlers or []:
            self.bind(handler)

    def bind(self, handler: EventHandler) -> None:
        """
        Bind (or rebind) a handler under its handler_id.

        Raises:
            TypeError: If the object does not implement the handler capability
        """
        if not isinstance(handler, EventHandler):
            raise TypeError(f"{handler!r} does not implement handle(event) / handler_id")
        if handler.handler_id in self._handlers:
            logger.warning(f"Rebinding handler {handler.handler_id}")
        self._handlers[handler.handler_id] = handler

    def unbind(self, handler_id: str) -> Optional[EventHandler]:
        return self._handlers.pop(handler_id, None)

    def get(self, handler_id: str) -> Optional[EventHandler]:
        return self._handlers.get(handler_id)

    def __contains__(self, handler_id: object) -> bool:
        return handler_id in self._handlers

    def ids(self) -> list[str]:
        return sorted(self._handlers)
