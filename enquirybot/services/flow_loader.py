"""Load bot flow definitions from YAML files into the flow tables."""

from pathlib import Path
from typing import Optional
from uuid import UUID

import yaml
from pydantic import ValidationError
from sqlalchemy.orm import Session

from enquirybot.logging_config import get_logger
from enquirybot.models import BotFlow, BotNode, PhoneNumber
from enquirybot.schemas.flow import FlowDefinition
from enquirybot.services.flow_store import FlowGraph

logger = get_logger("flow_loader")


class FlowLoadError(Exception):
    def __init__(self, message: str, problems: Optional[list[str]] = None):
        self.problems = problems or []
        super().__init__(message)


def read_flow_file(path: Path) -> FlowDefinition:
    if not path.exists():
        raise FlowLoadError(f"Flow file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return parse_flow(data)


def parse_flow(data: dict) -> FlowDefinition:
    try:
        return FlowDefinition.model_validate(data)
    except ValidationError as exc:
        problems = [f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()]
        raise FlowLoadError("Flow definition is malformed", problems) from exc


def _build_nodes(definition: FlowDefinition) -> list[BotNode]:
    return [
        BotNode(
            node_key=node.node_key,
            message_type=node.message_type,
            message_text=node.message_text,
            save_to_field=node.save_to_field,
            next_node_key=node.next_node_key,
            buttons=[button.model_dump() for button in node.buttons],
            list_button_text=node.list_button_text,
            list_sections=[section.model_dump(exclude_none=True) for section in node.list_sections],
            follow_up_enabled=node.follow_up_enabled,
            follow_up_delay=node.follow_up_delay,
            follow_up_message=node.follow_up_message,
        )
        for node in definition.nodes
    ]


def _apply_definition(flow: BotFlow, definition: FlowDefinition) -> None:
    follow_up = definition.completion_follow_up
    flow.name = definition.name
    flow.start_node_key = definition.start_node_key
    flow.completion_follow_up_enabled = follow_up.enabled
    flow.completion_follow_up_delay = follow_up.delay
    flow.completion_follow_up_message = follow_up.message
    flow.completion_follow_up_yes_node_key = follow_up.yes_node_key
    flow.completion_follow_up_no_node_key = follow_up.no_node_key


def load_flow(
    db: Session,
    definition: FlowDefinition,
    *,
    waba_account_id: Optional[UUID] = None,
    activate_for: Optional[list[str]] = None,
) -> BotFlow:
    """Validate the graph, then create or replace the flow of the same name.

    ``activate_for`` lists business number ids whose active flow becomes
    this one.
    """
    keys = [node.node_key for node in definition.nodes]
    duplicates = sorted({key for key in keys if keys.count(key) > 1})
    if duplicates:
        raise FlowLoadError("Duplicate node keys", [f"node {key!r} is defined twice" for key in duplicates])

    candidate = BotFlow()
    _apply_definition(candidate, definition)
    nodes = _build_nodes(definition)
    problems = FlowGraph(candidate, nodes).validate()
    if problems:
        raise FlowLoadError("Flow graph does not resolve", problems)

    flow = (
        db.query(BotFlow)
        .filter(BotFlow.name == definition.name, BotFlow.waba_account_id == waba_account_id)
        .first()
    )
    if flow is None:
        flow = BotFlow(waba_account_id=waba_account_id)
        db.add(flow)
    else:
        db.query(BotNode).filter(BotNode.bot_flow_id == flow.id).delete(synchronize_session=False)
        db.expire(flow, ["nodes"])
    _apply_definition(flow, definition)
    db.flush()

    for node in nodes:
        node.bot_flow_id = flow.id
        db.add(node)

    if activate_for:
        db.query(PhoneNumber).filter(PhoneNumber.phone_number_id.in_(activate_for)).update(
            {PhoneNumber.active_bot_flow_id: flow.id},
            synchronize_session=False,
        )
    db.commit()
    logger.info(
        "Bot flow loaded",
        extra={"context": {"flow_id": str(flow.id), "name": flow.name, "nodes": len(nodes)}},
    )
    return flow


def load_flow_file(
    db: Session,
    path: Path,
    *,
    waba_account_id: Optional[UUID] = None,
    activate_for: Optional[list[str]] = None,
) -> BotFlow:
    return load_flow(db, read_flow_file(path), waba_account_id=waba_account_id, activate_for=activate_for)
