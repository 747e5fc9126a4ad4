"""Read-only view over a journey's nodes."""

from __future__ import annotations

from typing import Iterator, List, Optional

from .contracts import Journey, Node, journey_problems
from .errors import NodeNotFoundError


class JourneyGraph:
    """Resolve node ids to node definitions for one journey.

    Journeys are small, so lookups scan the node list. A missing node is
    always surfaced to the caller (``get`` raises, ``find`` returns ``None``).
    """

    def __init__(self, journey: Journey) -> None:
        self._journey = journey

    @property
    def journey(self) -> Journey:
        return self._journey

    @property
    def start_node_id(self) -> Optional[str]:
        """Explicit start node, else the first node, else ``None``."""
        if self._journey.start_node_id:
            return self._journey.start_node_id
        if self._journey.nodes:
            return self._journey.nodes[0].id
        return None

    @property
    def node_ids(self) -> List[str]:
        return [node.id for node in self._journey.nodes]

    def find(self, node_id: str) -> Optional[Node]:
        for node in self._journey.nodes:
            if node.id == node_id:
                return node
        return None

    def get(self, node_id: str) -> Node:
        node = self.find(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def validate(self) -> List[str]:
        """Return structural problems; an empty list means the graph is sound."""
        return journey_problems(self._journey)

    def __contains__(self, node_id: object) -> bool:
        return any(node.id == node_id for node in self._journey.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._journey.nodes)

    def __len__(self) -> int:
        return len(self._journey.nodes)
