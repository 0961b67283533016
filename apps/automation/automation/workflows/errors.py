from __future__ import annotations

from typing import Any


class WorkflowEngineError(Exception):
    """Base class for every failure a graph run or the queue can surface."""

    code = "workflow_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class GraphNotFoundError(WorkflowEngineError):
    code = "graph_not_found"

    def __init__(self, graph_id: object) -> None:
        self.graph_id = str(graph_id)
        super().__init__(f"graph {self.graph_id} not found")


class NodeNotFoundError(WorkflowEngineError):
    code = "node_not_found"

    def __init__(self, node_id: object, message: str | None = None) -> None:
        self.node_id = str(node_id)
        super().__init__(message or f"node {self.node_id} not found")


class CycleDetectedError(WorkflowEngineError):
    code = "cycle_detected"

    def __init__(self, node_id: object) -> None:
        self.node_id = str(node_id)
        super().__init__(f"cycle detected at node {self.node_id}")


class NodeExecutionFailedError(WorkflowEngineError):
    code = "node_execution_failed"

    def __init__(self, node_id: object, message: str) -> None:
        self.node_id = str(node_id)
        self.reason = message
        super().__init__(f"node {self.node_id} failed: {message}")


class InvalidPortConnectionError(WorkflowEngineError):
    code = "invalid_port_connection"

    def __init__(self, node_id: object, message: str) -> None:
        self.node_id = str(node_id)
        super().__init__(f"invalid port connection at node {self.node_id}: {message}")


class MissingInputError(WorkflowEngineError):
    code = "missing_input"

    def __init__(self, node_id: object, port: str) -> None:
        self.node_id = str(node_id)
        self.port = port
        super().__init__(f"missing input '{port}' for node {self.node_id}")


class TypeMismatchError(WorkflowEngineError):
    code = "type_mismatch"

    def __init__(self, expected: str, actual: str, node_id: object | None = None, field: str | None = None) -> None:
        self.expected = expected
        self.actual = actual
        self.node_id = str(node_id) if node_id is not None else None
        self.field = field
        where = f" for '{field}'" if field else ""
        on_node = f" on node {self.node_id}" if self.node_id else ""
        super().__init__(f"type mismatch{where}{on_node}: expected {expected}, got {actual}")


class NodeTimeoutError(WorkflowEngineError):
    code = "timeout"

    def __init__(self, node_id: object, timeout_seconds: float) -> None:
        self.node_id = str(node_id)
        self.timeout_seconds = timeout_seconds
        super().__init__(f"node {self.node_id} timed out after {timeout_seconds:g}s")


class RetriesExceededError(WorkflowEngineError):
    code = "retries_exceeded"

    def __init__(self, node_id: object, attempts: int, last_error: str) -> None:
        self.node_id = str(node_id)
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"node {self.node_id} failed after {attempts} attempts: {last_error}")


class UnknownNodeTypeError(WorkflowEngineError):
    code = "unknown_node_type"

    def __init__(self, node_type: str) -> None:
        self.node_type = node_type
        super().__init__(f"unknown node type '{node_type}'")


class GraphValidationError(WorkflowEngineError):
    code = "invalid_graph"


class PersistenceError(WorkflowEngineError):
    code = "persistence_error"

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")


class CapabilityError(Exception):
    """Raised by external capabilities (text generation, delivery, webhooks)."""


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__
