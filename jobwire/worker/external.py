"""
Handlers for broker messages that are not job notifications.

Other systems may publish onto the lanes workers read. Those messages are
offered to registered handlers in registration order; the first handler that
claims a message handles it.

Handlers are usually configured by import path (``package.module:Class``)
and get a ``setup`` call with the worker's broker before the first pop.
"""

import importlib
import logging
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from jobwire.broker.base import Broker, BrokerMessage

logger = logging.getLogger(__name__)


@runtime_checkable
class ExternalHandler(Protocol):
    """A consumer of foreign broker traffic."""

    async def setup(self, broker: Broker) -> None:
        """Prepare the handler (bindings, connections) before messages arrive."""
        ...

    def claims(self, message: BrokerMessage) -> bool:
        """Return True if this handler processes ``message``."""
        ...

    async def handle(self, payload: bytes) -> None:
        """Process the payload of a claimed message."""
        ...


def load_handler(path: str) -> ExternalHandler:
    """
    Instantiate a handler class from its import path.

    Args:
        path: ``package.module:ClassName``.

    Returns:
        A handler built with no arguments.

    Raises:
        ValueError: If the path is malformed.
        ImportError: If the module cannot be imported.
        AttributeError: If the module has no such class.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid external handler path: {path!r}")

    handler_class = getattr(importlib.import_module(module_name), attr)
    return handler_class()


class ExternalHandlerRegistry:
    """Ordered registry of external message handlers."""

    def __init__(self, handlers: list[ExternalHandler] | None = None):
        self._handlers: list[ExternalHandler] = list(handlers or [])

    @classmethod
    def from_import_paths(cls, paths: Iterable[str]) -> "ExternalHandlerRegistry":
        """Build a registry from ``package.module:Class`` paths, in order."""
        return cls([load_handler(path) for path in paths])

    @property
    def handlers(self) -> list[ExternalHandler]:
        return list(self._handlers)

    def register(self, handler: ExternalHandler) -> ExternalHandler:
        """Append a handler. Earlier registrations win."""
        self._handlers.append(handler)
        return handler

    async def setup(self, broker: Broker) -> None:
        """
        Run every handler's setup step, in registration order.

        Setup errors propagate so a worker never starts with a handler
        half-configured.
        """
        for handler in self._handlers:
            await handler.setup(broker)
            logger.info(
                "External handler ready",
                extra={"handler": type(handler).__name__}
            )

    def resolve(self, message: BrokerMessage) -> ExternalHandler | None:
        """
        Find the first handler claiming a message.

        Args:
            message: The broker message.

        Returns:
            The handler or None if no handler claims it.
        """
        for handler in self._handlers:
            if handler.claims(message):
                return handler
        return None

    async def dispatch(self, message: BrokerMessage) -> bool:
        """
        Hand a message to its handler.

        Returns:
            False if no handler claimed the message.
        """
        handler = self.resolve(message)
        if handler is None:
            return False

        logger.debug(
            "Dispatching external message",
            extra={"handler": type(handler).__name__}
        )
        await handler.handle(message.payload)
        return True
