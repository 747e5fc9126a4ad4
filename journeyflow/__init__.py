"""journeyflow: durable execution of patient journeys."""

from .conditions import evaluate
from .contracts import (
    ConditionNode,
    DelayNode,
    Journey,
    MessageNode,
    OutboundMessage,
    parse_journey,
)
from .executor import ProcessOutcome, RunExecutor
from .graph import JourneyGraph
from .persistence import RunState, get_repository
from .scheduler import DelayScheduler, ReadinessPoller
from .service import JourneyService
from .steplog import StepLog, StepType
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ConditionNode",
    "DelayNode",
    "DelayScheduler",
    "Journey",
    "JourneyGraph",
    "JourneyService",
    "MessageNode",
    "OutboundMessage",
    "ProcessOutcome",
    "ReadinessPoller",
    "RunExecutor",
    "RunState",
    "StepLog",
    "StepType",
    "evaluate",
    "get_repository",
    "get_transport",
    "parse_journey",
]
