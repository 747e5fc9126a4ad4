"""Exception types raised by journeyflow."""

from __future__ import annotations


class JourneyflowError(Exception):
    """Base class for journeyflow errors."""


class JourneyNotFoundError(JourneyflowError):
    def __init__(self, journey_id: str) -> None:
        super().__init__(f"journey not found: {journey_id}")
        self.journey_id = journey_id


class RunNotFoundError(JourneyflowError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"run not found: {run_id}")
        self.run_id = run_id


class NodeNotFoundError(JourneyflowError, KeyError):
    """A node id was referenced that the journey graph does not contain."""

    def __init__(self, node_id: str) -> None:
        super().__init__(node_id)
        self.node_id = node_id

    def __str__(self) -> str:
        return f"node not found: {self.node_id}"


class InvalidJourneyError(JourneyflowError, ValueError):
    """Raised when a journey definition fails structural validation."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("invalid journey: " + "; ".join(problems))
        self.problems = problems
