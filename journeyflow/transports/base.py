"""Outbound channel that MESSAGE nodes deliver through."""

from __future__ import annotations

import abc

from ..contracts import OutboundMessage


class BaseTransport(metaclass=abc.ABCMeta):
    """Publish-only delivery channel.

    Journeyflow is the producer side: whatever actually sends the SMS or
    e-mail consumes the topic with its own client. Delivery is at-least-once,
    so consumers should dedupe on ``OutboundMessage.message_id``.
    """

    async def connect(self) -> None:
        """Open the broker connection (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close the broker connection (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: OutboundMessage) -> None:
        """Hand ``message`` to the broker under ``topic``."""
        raise NotImplementedError
