from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from automation.core.config import Settings, get_settings
from automation.workflows.conditions import evaluate
from automation.workflows.context import ExecutionContext
from automation.workflows.errors import (
    CapabilityError,
    MissingInputError,
    NodeExecutionFailedError,
    TypeMismatchError,
    UnknownNodeTypeError,
    type_name,
)
from automation.workflows.graph import Node
from automation.workflows.schemas import TRIGGER_NODE_TYPES, NodeType, parse_condition


logger = logging.getLogger("automation.workflows.handlers")

_WEBHOOK_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}
_DEFAULT_EXTRACT_FIELDS = ("name", "email", "phone")


class NodeHandler:
    """Executes one node type. Handlers read the context and return the node's output."""

    node_types: tuple[NodeType, ...] = ()
    required_inputs: tuple[str, ...] = ()

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        raise NotImplementedError


def _config_value(node: Node, key: str, inputs: dict[str, Any] | None = None) -> Any:
    if key in node.config:
        return node.config[key]
    if inputs is not None and key in inputs:
        return inputs[key]
    return None


def _require_text(node: Node, key: str, context: ExecutionContext, inputs: dict[str, Any] | None = None) -> str:
    value = _config_value(node, key, inputs)
    if not isinstance(value, str):
        raise TypeMismatchError("string", type_name(value), node_id=node.id, field=key)
    return context.interpolate(value)


def _optional_text(node: Node, key: str, context: ExecutionContext, default: str | None = None) -> str | None:
    value = node.config.get(key, default)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeMismatchError("string", type_name(value), node_id=node.id, field=key)
    return context.interpolate(value)


def _optional_int(node: Node, key: str, default: int) -> int:
    value = node.config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeMismatchError("integer", type_name(value), node_id=node.id, field=key)
    return value


def _generate(node: Node, context: ExecutionContext, prompt: str, system: str | None = None) -> str:
    try:
        return context.capabilities.text.generate(prompt, system, timeout=context.time_budget(node.id))
    except CapabilityError as exc:
        raise NodeExecutionFailedError(node.id, str(exc)) from exc


class TriggerHandler(NodeHandler):
    node_types = tuple(sorted(TRIGGER_NODE_TYPES, key=lambda item: item.value))

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        return dict(context.trigger)


class ConditionHandler(NodeHandler):
    node_types = (NodeType.CONDITION_IF,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        raw = node.config.get("condition")
        try:
            condition = parse_condition(raw)
        except ValueError as exc:
            raise TypeMismatchError("condition", type_name(raw), node_id=node.id, field="condition") from exc

        result = evaluate(condition, {**context.variables, "inputs": inputs})
        return {"result": result, "branch": "true" if result else "false"}


class GenerateTextHandler(NodeHandler):
    node_types = (NodeType.AI_GENERATE,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        prompt = _require_text(node, "prompt", context)
        system = _optional_text(node, "system_prompt", context)
        text = _generate(node, context, prompt, system)
        return {"text": text, "prompt": prompt, "generated": True}


class SummarizeHandler(NodeHandler):
    node_types = (NodeType.AI_SUMMARIZE,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        source = inputs.get("text") if "text" not in node.config else None
        if isinstance(source, dict) and isinstance(source.get("text"), str):
            text = source["text"]
        elif source is not None:
            if not isinstance(source, str):
                raise TypeMismatchError("string", type_name(source), node_id=node.id, field="text")
            text = source
        else:
            text = _require_text(node, "text", context)

        max_length = _optional_int(node, "max_length", 100)
        style = _optional_text(node, "style", context, "concise") or "concise"
        prompt = f"Summarize the following text in a {style} style using at most {max_length} words.\n\n{text}"
        summary = _generate(node, context, prompt, "You write accurate, brief summaries of CRM records.")
        return {"summary": summary, "text": summary, "max_length": max_length, "style": style}


class ClassifyHandler(NodeHandler):
    node_types = (NodeType.AI_CLASSIFY,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        categories = node.config.get("categories")
        if not isinstance(categories, list) or not categories or not all(isinstance(item, str) for item in categories):
            raise TypeMismatchError("non-empty list of strings", type_name(categories), node_id=node.id, field="categories")

        text = _require_text(node, "text", context, inputs)
        prompt = (
            "Classify the text into exactly one of these categories: "
            f"{', '.join(categories)}. Reply with the category only.\n\n{text}"
        )
        raw = _generate(node, context, prompt)
        by_name = {item.lower(): item for item in categories}
        category = by_name.get(raw.strip().lower(), categories[0])
        return {"category": category, "categories": list(categories), "raw": raw, "matched": raw.strip().lower() in by_name}


class ExtractHandler(NodeHandler):
    node_types = (NodeType.AI_EXTRACT,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        fields = node.config.get("fields", list(_DEFAULT_EXTRACT_FIELDS))
        if not isinstance(fields, list) or not fields or not all(isinstance(item, str) for item in fields):
            raise TypeMismatchError("non-empty list of strings", type_name(fields), node_id=node.id, field="fields")

        text = _require_text(node, "text", context, inputs)
        prompt = f"Extract the following fields from the text: {', '.join(fields)}\n\nText: {text}\n\nRespond in JSON format."
        raw = _generate(node, context, prompt, "You are a data extraction assistant. Always respond in valid JSON.")
        try:
            extracted = json.loads(raw)
        except ValueError:
            extracted = None
        parsed = isinstance(extracted, dict)
        return {"extracted": extracted if parsed else {"raw": raw}, "fields": list(fields), "parsed": parsed}


class SendEmailHandler(NodeHandler):
    node_types = (NodeType.ACTION_SEND_EMAIL,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        to = _require_text(node, "to", context)
        subject = _optional_text(node, "subject", context, "") or ""
        body = _optional_text(node, "body", context, "") or ""
        try:
            context.ensure_time_left(node.id)
            delivery = context.capabilities.notifier.send_email(context.tenant_id, to, subject, body)
        except CapabilityError as exc:
            raise NodeExecutionFailedError(node.id, str(exc)) from exc
        return {"action": "send_email", "to": to, "subject": subject, **delivery}


class SendSmsHandler(NodeHandler):
    node_types = (NodeType.ACTION_SEND_SMS,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        to = _require_text(node, "to", context)
        message = _require_text(node, "message", context)
        provider = _optional_text(node, "provider", context, "twilio") or "twilio"
        try:
            context.ensure_time_left(node.id)
            delivery = context.capabilities.notifier.send_sms(context.tenant_id, to, message, provider)
        except CapabilityError as exc:
            raise NodeExecutionFailedError(node.id, str(exc)) from exc
        return {"action": "send_sms", "to": to, "provider": provider, **delivery}


class CreateTaskHandler(NodeHandler):
    node_types = (NodeType.ACTION_CREATE_TASK,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        title = _require_text(node, "title", context)
        description = _optional_text(node, "description", context)
        due_in_days = _optional_int(node, "due_in_days", 1)
        assigned_to = _optional_text(node, "assigned_to", context)
        trigger = context.trigger
        task = {
            "title": title,
            "description": description,
            "due_at": (datetime.now(timezone.utc) + timedelta(days=due_in_days)).isoformat(),
            "assigned_to": assigned_to or None,
            "entity_type": trigger.get("entity_type"),
            "entity_id": trigger.get("entity_id"),
        }
        try:
            context.ensure_time_left(node.id)
            created = context.capabilities.tasks.create_task(context.tenant_id, task)
        except CapabilityError as exc:
            raise NodeExecutionFailedError(node.id, str(exc)) from exc
        return {"action": "create_task", **created}


class DelayHandler(NodeHandler):
    node_types = (NodeType.ACTION_DELAY,)

    def __init__(self, max_inline_seconds: int = 60, sleep: Callable[[float], None] = time.sleep) -> None:
        self.max_inline_seconds = max_inline_seconds
        self._sleep = sleep

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        seconds = _optional_int(node, "seconds", 0)
        minutes = _optional_int(node, "minutes", 0)
        total = max(seconds, 0) + max(minutes, 0) * 60
        slept = 0 < total <= self.max_inline_seconds
        if slept:
            self._sleep(total)
        elif total:
            logger.info(
                "node.delay_not_slept",
                extra={"node_id": node.id, "graph_id": context.graph_id, "duration_ms": total * 1000},
            )
        return {"action": "delay", "delayed_seconds": total, "slept": slept}


class WebhookHandler(NodeHandler):
    node_types = (NodeType.ACTION_WEBHOOK,)

    def __init__(self, default_timeout: float = 30.0) -> None:
        self.default_timeout = default_timeout

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        url = _require_text(node, "url", context)
        method = (_optional_text(node, "method", context, "POST") or "POST").upper()
        if method not in _WEBHOOK_METHODS:
            raise TypeMismatchError("HTTP method", method, node_id=node.id, field="method")

        headers = node.config.get("headers") or {}
        if not isinstance(headers, dict):
            raise TypeMismatchError("object", type_name(headers), node_id=node.id, field="headers")
        timeout = node.config.get("timeout", self.default_timeout)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
            raise TypeMismatchError("number", type_name(timeout), node_id=node.id, field="timeout")

        payload = context.render(node.config["payload"]) if "payload" in node.config else dict(context.trigger)
        request_kwargs: dict[str, Any] = {
            "headers": {str(key): str(value) for key, value in context.render(headers).items()},
            "timeout": context.time_budget(node.id, float(timeout)),
        }
        if method == "GET":
            request_kwargs["params"] = payload if isinstance(payload, dict) else None
        else:
            request_kwargs["json"] = payload

        try:
            response = context.capabilities.http.request(method, url, **request_kwargs)
        except httpx.HTTPError as exc:
            raise NodeExecutionFailedError(node.id, f"webhook request failed: {exc}") from exc

        if response.status_code >= 400:
            raise NodeExecutionFailedError(node.id, f"webhook returned HTTP {response.status_code}")

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text[:2000]
        return {"action": "webhook", "url": url, "method": method, "status_code": response.status_code, "body": body}


class SetFieldHandler(NodeHandler):
    node_types = (NodeType.DATA_SET_FIELD,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        field_name = _require_text(node, "field", context)
        if "value" in node.config:
            value = context.render(node.config["value"])
        elif "value" in inputs:
            value = inputs["value"]
        else:
            raise MissingInputError(node.id, "value")
        return {"field": field_name, "value": value}


class CreateRecordHandler(NodeHandler):
    """Describes a record to create; persisting it belongs to the owning service."""

    node_types = (NodeType.DATA_CREATE_RECORD,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        entity_type = _require_text(node, "entity_type", context)
        data = inputs["data"] if "data" in inputs else context.render(node.config.get("data", {}))
        if not isinstance(data, dict):
            raise TypeMismatchError("object", type_name(data), node_id=node.id, field="data")
        record_id = str(uuid.uuid4())
        logger.info("record.create_requested", extra={"node_id": node.id, "graph_id": context.graph_id})
        return {"action": "create_record", "entity_type": entity_type, "record_id": record_id, "data": data, "created": True}


class UpdateRecordHandler(NodeHandler):
    node_types = (NodeType.DATA_UPDATE_RECORD,)

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        record_id = inputs.get("record_id")
        if record_id is None and "record_id" in node.config:
            record_id = context.render(node.config["record_id"])
        if record_id is None:
            record_id = context.trigger.get("record_id", context.trigger.get("entity_id"))
        if record_id is None or record_id == "":
            raise MissingInputError(node.id, "record_id")

        updates = context.render(node.config.get("updates", {}))
        if not isinstance(updates, dict):
            raise TypeMismatchError("object", type_name(updates), node_id=node.id, field="updates")
        entity_type = _optional_text(node, "entity_type", context) or context.trigger.get("entity_type")
        logger.info("record.update_requested", extra={"node_id": node.id, "graph_id": context.graph_id})
        return {
            "action": "update_record",
            "entity_type": entity_type,
            "record_id": str(record_id),
            "updates": updates,
            "updated": True,
        }


class NodeHandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[NodeType, NodeHandler] = {}

    @staticmethod
    def _coerce(node_type: NodeType | str) -> NodeType:
        try:
            return NodeType(node_type)
        except ValueError as exc:
            raise UnknownNodeTypeError(str(node_type)) from exc

    def register(self, node_type: NodeType | str, handler: NodeHandler) -> None:
        self._handlers[self._coerce(node_type)] = handler

    def register_handler(self, handler: NodeHandler) -> None:
        for node_type in handler.node_types:
            self.register(node_type, handler)

    def resolve(self, node_type: NodeType | str) -> NodeHandler:
        handler = self._handlers.get(self._coerce(node_type))
        if handler is None:
            raise UnknownNodeTypeError(str(getattr(node_type, "value", node_type)))
        return handler

    def supports(self, node_type: NodeType | str) -> bool:
        try:
            self.resolve(node_type)
        except UnknownNodeTypeError:
            return False
        return True

    def validate(self, node_types: Iterable[NodeType | str]) -> None:
        for node_type in node_types:
            self.resolve(node_type)

    def registered_types(self) -> list[NodeType]:
        return sorted(self._handlers, key=lambda item: item.value)


def default_registry(
    settings: Settings | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> NodeHandlerRegistry:
    settings = settings or get_settings()
    registry = NodeHandlerRegistry()
    for handler in (
        TriggerHandler(),
        ConditionHandler(),
        GenerateTextHandler(),
        SummarizeHandler(),
        ClassifyHandler(),
        ExtractHandler(),
        SendEmailHandler(),
        SendSmsHandler(),
        CreateTaskHandler(),
        DelayHandler(settings.delay_inline_max_seconds, sleep),
        WebhookHandler(settings.webhook_timeout_seconds),
        SetFieldHandler(),
        CreateRecordHandler(),
        UpdateRecordHandler(),
    ):
        registry.register_handler(handler)
    return registry
