"""Read-only access to bot flow definitions.

A flow's nodes are loaded into an arena keyed by ``node_key``; node
references are resolved through that map, never through ORM links.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from enquirybot.models import BotFlow, BotNode, PhoneNumber

END = "END"
NODE_TYPES = ("text", "buttons", "list")


class FlowConfigurationError(Exception):
    """Missing flow, start node, node or credentials."""

    def __init__(self, message: str, **context):
        self.context = context
        super().__init__(message)


class FlowIntegrityError(Exception):
    """A node references a key that does not exist in its flow."""

    def __init__(self, missing_key: str, current_node_key: Optional[str], flow_id=None):
        self.missing_key = missing_key
        self.current_node_key = current_node_key
        self.flow_id = flow_id
        super().__init__(f"Node key {missing_key!r} (from {current_node_key!r}) does not resolve in flow {flow_id}")

    @property
    def context(self) -> dict:
        return {
            "missing_key": self.missing_key,
            "current_node_key": self.current_node_key,
            "flow_id": str(self.flow_id),
        }


@dataclass
class NodeOption:
    id: str
    title: str
    description: Optional[str] = None


def node_options(node: BotNode) -> list[NodeOption]:
    """Selectable options of a choice node; an option's id is its target key."""
    if node.message_type == "buttons":
        return [
            NodeOption(id=button.get("next_node_key") or "", title=button.get("title") or "")
            for button in node.buttons or []
        ]
    if node.message_type == "list":
        options = []
        for section in node.list_sections or []:
            for row in section.get("rows") or []:
                options.append(
                    NodeOption(
                        id=row.get("next_node_key") or "",
                        title=row.get("title") or "",
                        description=row.get("description"),
                    )
                )
        return options
    return []


def node_targets(node: BotNode) -> list[str]:
    """Every key this node can transition to."""
    targets = [option.id for option in node_options(node)]
    if node.next_node_key:
        targets.append(node.next_node_key)
    return targets


class FlowGraph:
    def __init__(self, flow: BotFlow, nodes: list[BotNode]):
        self.flow = flow
        self.nodes: dict[str, BotNode] = {node.node_key: node for node in nodes}

    @classmethod
    def load(cls, db: Session, flow: BotFlow) -> "FlowGraph":
        nodes = db.query(BotNode).filter(BotNode.bot_flow_id == flow.id).all()
        return cls(flow, nodes)

    def get(self, key: Optional[str]) -> Optional[BotNode]:
        if not key:
            return None
        return self.nodes.get(key)

    def resolve(self, key: Optional[str], *, from_key: Optional[str] = None) -> BotNode:
        node = self.get(key)
        if node is None:
            raise FlowIntegrityError(key or "", from_key, self.flow.id)
        return node

    def has(self, key: Optional[str]) -> bool:
        return key == END or (key is not None and key in self.nodes)

    @property
    def start_node(self) -> BotNode:
        node = self.get(self.flow.start_node_key)
        if node is None:
            raise FlowConfigurationError(
                "Flow has no start node",
                flow_id=str(self.flow.id),
                start_node_key=self.flow.start_node_key,
            )
        return node

    def validate(self) -> list[str]:
        """Describe every dangling reference; empty when the graph is sound."""
        problems = []
        if self.flow.start_node_key not in self.nodes:
            problems.append(f"start node {self.flow.start_node_key!r} is missing")
        for key, node in self.nodes.items():
            if node.message_type not in NODE_TYPES:
                problems.append(f"node {key!r} has unknown type {node.message_type!r}")
            for target in node_targets(node):
                if not self.has(target):
                    problems.append(f"node {key!r} points to missing node {target!r}")
            option_ids = [option.id for option in node_options(node)]
            for option_id in sorted({oid for oid in option_ids if option_ids.count(oid) > 1}):
                problems.append(f"node {key!r} has more than one option targeting {option_id!r}")
        for attr in ("completion_follow_up_yes_node_key", "completion_follow_up_no_node_key"):
            target = getattr(self.flow, attr)
            if target and not self.has(target):
                problems.append(f"{attr} points to missing node {target!r}")
        return problems


def get_active_flow(db: Session, recipient_id: str) -> BotFlow:
    phone = db.query(PhoneNumber).filter(PhoneNumber.phone_number_id == recipient_id).first()
    if phone is None:
        raise FlowConfigurationError("Unknown business number", recipient_id=recipient_id)
    if phone.active_bot_flow_id is None:
        raise FlowConfigurationError("No active bot flow", recipient_id=recipient_id)
    flow = db.query(BotFlow).filter(BotFlow.id == phone.active_bot_flow_id).first()
    if flow is None:
        raise FlowConfigurationError(
            "Active bot flow not found",
            recipient_id=recipient_id,
            flow_id=str(phone.active_bot_flow_id),
        )
    return flow


def load_active_graph(db: Session, recipient_id: str) -> FlowGraph:
    return FlowGraph.load(db, get_active_flow(db, recipient_id))
