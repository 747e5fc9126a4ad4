"""Journey definition contracts and the outbound message envelope."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    ValidationError,
    model_validator,
)

from .errors import InvalidJourneyError

OPERATORS = ("==", "!=", ">", ">=", "<", "<=")
NODE_KINDS = ("MESSAGE", "DELAY", "CONDITION")


def _rename_legacy(data: Dict[str, Any], legacy: str, canonical: str, field: str) -> None:
    """Move ``legacy`` to ``canonical`` unless either canonical spelling is set."""
    if legacy in data and canonical not in data and field not in data:
        data[canonical] = data.pop(legacy)


class MessageNode(BaseModel):
    """Deliver ``message`` to the patient, then continue at ``next``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    type: Literal["MESSAGE"] = "MESSAGE"
    name: Optional[str] = None
    message: str = ""
    next: Optional[str] = None


class DelayNode(BaseModel):
    """Suspend the run for ``delay_seconds`` before continuing at ``next``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    type: Literal["DELAY"] = "DELAY"
    name: Optional[str] = None
    delay_seconds: float = Field(default=0, ge=0, alias="delaySeconds")
    next: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            _rename_legacy(data, "delay", "delaySeconds", "delay_seconds")
        return data


class ConditionExpression(BaseModel):
    """Comparison of a patient context value against a literal."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    left_key: Optional[str] = Field(default=None, alias="leftKey")
    operator: Optional[str] = None
    right_value: Any = Field(default=None, alias="rightValue")

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            _rename_legacy(data, "field", "leftKey", "left_key")
            _rename_legacy(data, "value", "rightValue", "right_value")
        return data


class ConditionNode(BaseModel):
    """Branch to ``true_next`` or ``false_next`` depending on ``condition``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    type: Literal["CONDITION"] = "CONDITION"
    name: Optional[str] = None
    condition: ConditionExpression = Field(default_factory=ConditionExpression)
    true_next: Optional[str] = Field(default=None, alias="trueNext")
    false_next: Optional[str] = Field(default=None, alias="falseNext")

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if data.get("type") == "CONDITIONAL":
                data["type"] = "CONDITION"
            _rename_legacy(data, "on_true_next_node_id", "trueNext", "true_next")
            _rename_legacy(data, "on_false_next_node_id", "falseNext", "false_next")
        return data


class UnknownNode(BaseModel):
    """A node whose ``type`` the executor does not understand.

    Journeys may be persisted before they are validated, so an unrecognised
    kind still loads; the executor fails the run when it reaches one.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    id: str
    type: Optional[str] = None


def _node_tag(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if kind == "CONDITIONAL":
        kind = "CONDITION"
    return kind if kind in NODE_KINDS else "UNKNOWN"


Node = Annotated[
    Union[
        Annotated[MessageNode, Tag("MESSAGE")],
        Annotated[DelayNode, Tag("DELAY")],
        Annotated[ConditionNode, Tag("CONDITION")],
        Annotated[UnknownNode, Tag("UNKNOWN")],
    ],
    Discriminator(_node_tag),
]


class Journey(BaseModel):
    """Immutable workflow definition: a node graph plus a start node."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: Optional[str] = None
    name: str
    start_node_id: Optional[str] = Field(default=None, alias="startNodeId")
    nodes: List[Node] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the camelCase document stored by repositories."""
        return self.model_dump(mode="json", by_alias=True)


def node_successors(node: Node) -> List[Optional[str]]:
    """Return every outgoing reference of ``node`` (``None`` means terminal)."""
    if isinstance(node, (MessageNode, DelayNode)):
        return [node.next]
    if isinstance(node, ConditionNode):
        return [node.true_next, node.false_next]
    return []


def journey_problems(journey: Journey) -> List[str]:
    """List the structural problems that make ``journey`` unsafe to run."""
    problems: List[str] = []
    if not journey.nodes:
        problems.append("journey has no nodes")

    seen: set[str] = set()
    for node in journey.nodes:
        if node.id in seen:
            problems.append(f"duplicate node id: {node.id}")
        seen.add(node.id)

    if journey.start_node_id is not None and journey.start_node_id not in seen:
        problems.append(f"start node not found: {journey.start_node_id}")

    for node in journey.nodes:
        if isinstance(node, UnknownNode):
            problems.append(f"node {node.id}: unknown node type {node.type}")
            continue
        if isinstance(node, ConditionNode):
            if not node.condition.left_key:
                problems.append(f"node {node.id}: condition has no leftKey")
            if node.condition.operator not in OPERATORS:
                problems.append(
                    f"node {node.id}: unsupported operator {node.condition.operator!r}"
                )
        for target in node_successors(node):
            if target is not None and target not in seen:
                problems.append(f"node {node.id}: reference to missing node {target}")
    return problems


def parse_journey(data: Any, strict: bool = False) -> Journey:
    """Build a :class:`Journey` from a mapping.

    With ``strict`` the graph must also be structurally sound; every problem
    found is reported in a single :class:`InvalidJourneyError`.
    """
    try:
        journey = Journey.model_validate(data)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'journey'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise InvalidJourneyError(problems) from exc
    if strict:
        problems = journey_problems(journey)
        if problems:
            raise InvalidJourneyError(problems)
    return journey


class OutboundMessage(BaseModel):
    """Envelope published to the transport when a MESSAGE node runs."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    journey_id: str
    patient_id: Optional[str] = None
    node_id: str
    body: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "OutboundMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
