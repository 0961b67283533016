from __future__ import annotations

import json
import re
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

from automation.workflows.capabilities import Capabilities
from automation.workflows.errors import GraphValidationError, NodeTimeoutError


TRIGGER_KEY = "trigger"

_TEMPLATE_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

# (deadline on the monotonic clock, timeout the deadline was derived from)
_node_deadline: ContextVar[tuple[float, float] | None] = ContextVar("node_deadline", default=None)


def start_node_deadline(timeout_seconds: float) -> None:
    _node_deadline.set((time.monotonic() + timeout_seconds, timeout_seconds))


def resolve_path(variables: dict[str, Any], path: str) -> tuple[bool, Any]:
    current: Any = variables
    for segment in path.split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
            continue
        if isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
            continue
        return False, None
    return True, current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def interpolate(template: str, variables: dict[str, Any]) -> str:
    """Replace ``{{dotted.path}}`` placeholders with values from ``variables``.

    Paths that do not resolve render as an empty string rather than raising,
    so a typo in a template yields blank output instead of a failed run.
    """

    def _replace(match: re.Match[str]) -> str:
        found, value = resolve_path(variables, match.group(1))
        return _stringify(value) if found else ""

    return _TEMPLATE_RE.sub(_replace, template)


def render(value: Any, variables: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return interpolate(value, variables)
    if isinstance(value, dict):
        return {key: render(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, variables) for item in value]
    return value


@dataclass
class LogEntry:
    node_id: str
    node_type: str
    label: str
    status: str
    attempts: int = 0
    output: Any = None
    error: str | None = None
    duration_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "label": self.label,
            "status": self.status,
            "attempts": self.attempts,
        }
        if self.output is not None:
            payload["output"] = self.output
        if self.error is not None:
            payload["error"] = self.error
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload


@dataclass
class ExecutionContext:
    """Mutable state owned by exactly one graph run."""

    capabilities: Capabilities
    variables: dict[str, Any] = field(default_factory=dict)
    log: list[LogEntry] = field(default_factory=list)
    tenant_id: str | None = None
    graph_id: str | None = None

    @classmethod
    def for_trigger(
        cls,
        trigger_payload: dict[str, Any] | None,
        capabilities: Capabilities,
        *,
        tenant_id: str | None = None,
        graph_id: str | None = None,
    ) -> ExecutionContext:
        return cls(
            capabilities=capabilities,
            variables={TRIGGER_KEY: dict(trigger_payload or {})},
            tenant_id=tenant_id,
            graph_id=graph_id,
        )

    @property
    def trigger(self) -> dict[str, Any]:
        return self.variables.get(TRIGGER_KEY, {})

    def has_output(self, node_id: str) -> bool:
        return node_id in self.variables

    def output_of(self, node_id: str) -> Any:
        return self.variables.get(node_id)

    def set_output(self, node_id: str, value: Any) -> None:
        if node_id == TRIGGER_KEY:
            raise GraphValidationError(f"node id '{TRIGGER_KEY}' is reserved for the trigger payload")
        self.variables[node_id] = value

    def ensure_time_left(self, node_id: str) -> float | None:
        """Seconds left before the running attempt's deadline; raises once it has passed."""
        deadline = _node_deadline.get()
        if deadline is None:
            return None
        at, timeout_seconds = deadline
        remaining = at - time.monotonic()
        if remaining <= 0:
            raise NodeTimeoutError(node_id, timeout_seconds)
        return remaining

    def time_budget(self, node_id: str, limit: float | None = None) -> float | None:
        remaining = self.ensure_time_left(node_id)
        if remaining is None:
            return limit
        return remaining if limit is None else min(limit, remaining)

    def resolve(self, path: str) -> tuple[bool, Any]:
        return resolve_path(self.variables, path)

    def interpolate(self, template: str) -> str:
        return interpolate(template, self.variables)

    def render(self, value: Any) -> Any:
        return render(value, self.variables)

    def append_log(self, entry: LogEntry) -> None:
        self.log.append(entry)

    def outputs(self) -> dict[str, Any]:
        return {key: value for key, value in self.variables.items() if key != TRIGGER_KEY}

    def log_payload(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.log]
