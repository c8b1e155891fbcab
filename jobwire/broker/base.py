"""
Broker interfaces.

The broker carries disposable wake-up notifications. It is never the source
of truth for job state; see ``jobwire.reservation``.
"""

import asyncio
from datetime import datetime
from typing import Protocol, runtime_checkable

from jobwire.constants import BrokerPriority


@runtime_checkable
class BrokerMessage(Protocol):
    """A delivered message that stays pending until acknowledged."""

    @property
    def payload(self) -> bytes:
        """Raw message body."""
        ...

    async def ack(self) -> None:
        """
        Acknowledge the message.

        Implementations tolerate a repeated call without corrupting state.
        """
        ...


class Broker(Protocol):
    """Publish/pop interface consumed by the notifier and reservation manager."""

    async def publish(
        self,
        payload: bytes,
        *,
        priority: BrokerPriority,
        run_at: datetime | None = None,
    ) -> None:
        """
        Publish a message for delivery at ``run_at`` (immediately if None).

        Raises:
            BrokerTransportError: If the broker cannot be reached.
        """
        ...

    async def pop(
        self,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BrokerMessage | None:
        """
        Block until a message is available or ``timeout`` seconds elapse.

        Raises:
            PopCancelledError: If ``cancel`` is set while waiting.
        """
        ...

    async def close(self) -> None:
        """Release the broker connection."""
        ...
