from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NodeType(str, Enum):
    TRIGGER_ON_CREATE = "trigger_on_create"
    TRIGGER_ON_UPDATE = "trigger_on_update"
    TRIGGER_ON_DELETE = "trigger_on_delete"
    TRIGGER_ON_FIELD_CHANGE = "trigger_on_field_change"
    TRIGGER_ON_EVENT = "trigger_on_event"
    TRIGGER_SCHEDULE = "trigger_schedule"
    TRIGGER_MANUAL = "trigger_manual"
    CONDITION_IF = "condition_if"
    AI_GENERATE = "ai_generate"
    AI_SUMMARIZE = "ai_summarize"
    AI_CLASSIFY = "ai_classify"
    AI_EXTRACT = "ai_extract"
    ACTION_SEND_EMAIL = "action_send_email"
    ACTION_SEND_SMS = "action_send_sms"
    ACTION_CREATE_TASK = "action_create_task"
    ACTION_DELAY = "action_delay"
    ACTION_WEBHOOK = "action_webhook"
    DATA_SET_FIELD = "data_set_field"
    DATA_CREATE_RECORD = "data_create_record"
    DATA_UPDATE_RECORD = "data_update_record"

    @property
    def is_trigger(self) -> bool:
        return self.value.startswith("trigger_")


TRIGGER_NODE_TYPES = frozenset(node_type for node_type in NodeType if node_type.is_trigger)

# Entity lifecycle event names matched by each event-driven trigger.
EVENT_TRIGGER_TYPES: dict[NodeType, str] = {
    NodeType.TRIGGER_ON_CREATE: "created",
    NodeType.TRIGGER_ON_UPDATE: "updated",
    NodeType.TRIGGER_ON_DELETE: "deleted",
    NodeType.TRIGGER_ON_FIELD_CHANGE: "updated",
}


ConditionOp = Literal[
    "eq",
    "equals",
    "neq",
    "not_equals",
    "in",
    "not_in",
    "contains",
    "starts_with",
    "ends_with",
    "gt",
    "gte",
    "lt",
    "lte",
    "exists",
    "is_null",
    "is_not_null",
]


class ConditionLeaf(BaseModel):
    path: str = Field(min_length=1)
    op: ConditionOp
    value: Any = None


class ConditionAll(BaseModel):
    all: list["Condition"] = Field(min_length=1)


class ConditionAny(BaseModel):
    any: list["Condition"] = Field(min_length=1)


class ConditionNot(BaseModel):
    not_: "Condition" = Field(alias="not")

    model_config = ConfigDict(populate_by_name=True)


Condition = ConditionLeaf | ConditionAll | ConditionAny | ConditionNot

ConditionAll.model_rebuild()
ConditionAny.model_rebuild()
ConditionNot.model_rebuild()


def parse_condition(value: Any) -> Condition:
    if not isinstance(value, dict):
        raise ValueError("condition must be an object")

    if "all" in value:
        items = value.get("all")
        if not isinstance(items, list) or not items:
            raise ValueError("all must be a non-empty list")
        return ConditionAll(all=[parse_condition(item) for item in items])

    if "any" in value:
        items = value.get("any")
        if not isinstance(items, list) or not items:
            raise ValueError("any must be a non-empty list")
        return ConditionAny(any=[parse_condition(item) for item in items])

    if "not" in value:
        return ConditionNot.model_validate({"not": parse_condition(value.get("not"))})

    return ConditionLeaf.model_validate(value)


class NodeCreate(BaseModel):
    id: UUID = Field(default_factory=uuid.uuid4)
    node_type: NodeType
    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    is_enabled: bool = True


class EdgeCreate(BaseModel):
    source_node_id: UUID
    source_port: str = Field(default="output", min_length=1)
    target_node_id: UUID
    target_port: str = Field(default="input", min_length=1)
    label: str | None = None


class GraphCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    is_enabled: bool = True
    nodes: list[NodeCreate] = Field(min_length=1)
    edges: list[EdgeCreate] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_references(self) -> "GraphCreate":
        node_ids = [node.id for node in self.nodes]
        if len(set(node_ids)) != len(node_ids):
            raise ValueError("node ids must be unique")
        known = set(node_ids)
        for edge in self.edges:
            if edge.source_node_id not in known or edge.target_node_id not in known:
                raise ValueError("edges must reference nodes of the same graph")
        for node in self.nodes:
            if node.node_type is NodeType.CONDITION_IF:
                parse_condition(node.config.get("condition"))
        return self


class NodeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    node_type: str
    label: str
    config: dict[str, Any]
    is_enabled: bool


class EdgeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source_node_id: UUID
    source_port: str
    target_node_id: UUID
    target_port: str
    label: str | None


class GraphRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    description: str | None
    is_enabled: bool
    version: int
    nodes: list[NodeRead]
    edges: list[EdgeRead]
    created_at: datetime
    updated_at: datetime


class GraphRunRequest(BaseModel):
    trigger: dict[str, Any] = Field(default_factory=dict)
    entry_node_id: UUID | None = None


class ScheduleCreate(BaseModel):
    graph_id: UUID
    cron_expression: str = Field(min_length=1)
    trigger_payload: dict[str, Any] = Field(default_factory=dict)


class ScheduleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    graph_id: UUID
    node_id: UUID | None
    kind: str
    cron_expression: str | None
    trigger_payload: dict[str, Any]
    next_run_at: datetime
    last_run_at: datetime | None
    run_count: int
    is_active: bool
    consumed_at: datetime | None


class EventPublishRequest(BaseModel):
    entity_type: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class EventPublishResponse(BaseModel):
    event_id: str
    event_type: str
    occurred_at: datetime
