from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

# Provider limits for interactive messages
MAX_BUTTONS = 3
MAX_LIST_ROWS = 10


class FlowButton(BaseModel):
    title: str = Field(min_length=1, max_length=20)
    next_node_key: str


class FlowListRow(BaseModel):
    title: str = Field(min_length=1, max_length=24)
    description: Optional[str] = Field(default=None, max_length=72)
    next_node_key: str


class FlowListSection(BaseModel):
    title: str = ""
    rows: list[FlowListRow] = []


class FlowNode(BaseModel):
    node_key: str = Field(min_length=1)
    message_type: Literal["text", "buttons", "list"] = "text"
    message_text: str = ""
    save_to_field: Optional[str] = None
    next_node_key: Optional[str] = None
    buttons: list[FlowButton] = []
    list_button_text: Optional[str] = Field(default=None, max_length=20)
    list_sections: list[FlowListSection] = []
    follow_up_enabled: bool = False
    follow_up_delay: Optional[int] = None
    follow_up_message: Optional[str] = None

    @field_validator("buttons")
    @classmethod
    def _limit_buttons(cls, value: list[FlowButton]) -> list[FlowButton]:
        if len(value) > MAX_BUTTONS:
            raise ValueError(f"at most {MAX_BUTTONS} buttons are allowed")
        return value

    @field_validator("list_sections")
    @classmethod
    def _limit_rows(cls, value: list[FlowListSection]) -> list[FlowListSection]:
        if sum(len(section.rows) for section in value) > MAX_LIST_ROWS:
            raise ValueError(f"at most {MAX_LIST_ROWS} list rows are allowed")
        return value


class CompletionFollowUp(BaseModel):
    enabled: bool = False
    delay: Optional[int] = None
    message: Optional[str] = None
    yes_node_key: Optional[str] = None
    no_node_key: Optional[str] = None


class FlowDefinition(BaseModel):
    name: str = Field(min_length=1)
    start_node_key: str
    completion_follow_up: CompletionFollowUp = CompletionFollowUp()
    nodes: list[FlowNode]
