"""In-memory transport for tests and single-process use."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List

from ..contracts import OutboundMessage
from .base import BaseTransport


class InMemoryTransport(BaseTransport):
    """Keeps published messages in a list per topic."""

    def __init__(self) -> None:
        self._topics: Dict[str, List[OutboundMessage]] = defaultdict(list)

    async def publish(self, topic: str, message: OutboundMessage) -> None:
        """Publish message to in-memory queue."""
        self._topics[topic].append(message)

    def pending(self, topic: str) -> List[OutboundMessage]:
        """Messages published to ``topic`` and not yet drained."""
        return list(self._topics[topic])

    def drain(self, topic: str) -> List[OutboundMessage]:
        """Remove and return every message on ``topic``, oldest first."""
        return self._topics.pop(topic, [])
