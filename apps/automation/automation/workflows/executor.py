from __future__ import annotations

import contextvars
import json
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any

import networkx as nx
from opentelemetry import trace

from automation.context import get_correlation_id
from automation.core.config import Settings, get_settings
from automation.metrics import observe_node_execution, observe_node_retry, observe_workflow_run
from automation.workflows.context import TRIGGER_KEY, ExecutionContext, LogEntry, start_node_deadline
from automation.workflows.errors import (
    CapabilityError,
    CycleDetectedError,
    GraphValidationError,
    InvalidPortConnectionError,
    MissingInputError,
    NodeExecutionFailedError,
    NodeNotFoundError,
    NodeTimeoutError,
    RetriesExceededError,
    TypeMismatchError,
    WorkflowEngineError,
    type_name,
)
from automation.workflows.graph import Edge, Graph, Node, find_cycle
from automation.workflows.handlers import NodeHandler, NodeHandlerRegistry
from automation.workflows.schemas import NodeType


logger = logging.getLogger("automation.workflows.executor")
tracer = trace.get_tracer("automation.workflows.executor")

_DEFAULT_BRANCH_LABELS = {None, "", "default"}


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.node_retry_max_attempts,
            backoff_seconds=settings.node_retry_backoff_seconds,
            max_backoff_seconds=settings.node_retry_backoff_max_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff after the given (1-based) failed attempt."""
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)

    def for_node(self, node: Node) -> RetryPolicy:
        overrides = node.config.get("retry")
        if overrides is None:
            return self
        if not isinstance(overrides, dict):
            raise TypeMismatchError("object", type_name(overrides), node_id=node.id, field="retry")

        values: dict[str, Any] = {}
        max_attempts = overrides.get("max_attempts")
        if max_attempts is not None:
            if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
                raise TypeMismatchError("positive integer", type_name(max_attempts), node_id=node.id, field="retry.max_attempts")
            values["max_attempts"] = max_attempts
        for key in ("backoff_seconds", "max_backoff_seconds"):
            value = overrides.get(key)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise TypeMismatchError("non-negative number", type_name(value), node_id=node.id, field=f"retry.{key}")
            values[key] = float(value)
        return replace(self, **values)


@dataclass
class RunOutcome:
    status: str
    graph_id: str
    outputs: dict[str, Any] = field(default_factory=dict)
    log: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    failed_node_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "graph_id": self.graph_id,
            "outputs": self.outputs,
            "log": self.log,
        }
        if self.error is not None:
            payload["error"] = self.error
            payload["error_code"] = self.error_code
            payload["failed_node_id"] = self.failed_node_id
        return payload


@dataclass
class ExecutionPlan:
    order: list[Node]
    entry_ids: set[str]


class GraphExecutor:
    """Runs one graph against one trigger payload, sequentially in topological order."""

    def __init__(
        self,
        registry: NodeHandlerRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.timeout_seconds = settings.node_timeout_seconds if timeout_seconds is None else timeout_seconds
        self._sleep = sleep

    def plan(self, graph: Graph, entry_node_id: str | None = None) -> ExecutionPlan:
        if entry_node_id is not None:
            entry = graph.node(entry_node_id)
            if entry is None:
                raise NodeNotFoundError(entry_node_id)
            entries = [entry]
        else:
            entries = graph.trigger_nodes()
            if not entries:
                raise NodeNotFoundError(graph.id, f"graph {graph.id} has no enabled trigger node")

        entry_ids = [entry.id for entry in entries]
        cycle_at = find_cycle(graph, entry_ids)
        if cycle_at is not None:
            raise CycleDetectedError(cycle_at)

        digraph = graph.to_digraph()
        reachable = set(entry_ids)
        for entry_id in entry_ids:
            reachable |= nx.descendants(digraph, entry_id)
        missing = sorted(node_id for node_id in reachable if graph.node(node_id) is None)
        if missing:
            raise NodeNotFoundError(missing[0])

        ordered = nx.lexicographical_topological_sort(digraph.subgraph(reachable), key=graph.position)
        order = [graph.node(node_id) for node_id in ordered]
        return ExecutionPlan(order=order, entry_ids=set(entry_ids))

    def validate(self, graph: Graph) -> None:
        self.registry.validate(node.node_type for node in graph.nodes)
        if graph.node(TRIGGER_KEY) is not None:
            raise GraphValidationError(f"node id '{TRIGGER_KEY}' is reserved for the trigger payload")
        for edge in graph.edges:
            if graph.node(edge.source) is None:
                raise NodeNotFoundError(edge.source)
            if graph.node(edge.target) is None:
                raise NodeNotFoundError(edge.target)

    def execute(self, graph: Graph, context: ExecutionContext, *, entry_node_id: str | None = None) -> RunOutcome:
        started = time.perf_counter()
        with tracer.start_as_current_span("workflow.run") as span:
            span.set_attribute("graph_id", graph.id)
            span.set_attribute("tenant_id", graph.tenant_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                if not graph.is_enabled:
                    raise GraphValidationError(f"graph {graph.id} is disabled")
                self.validate(graph)
                plan = self.plan(graph, entry_node_id)
                self._walk(graph, plan, context)
            except WorkflowEngineError as exc:
                outcome = RunOutcome(
                    status="failed",
                    graph_id=graph.id,
                    outputs=context.outputs(),
                    log=context.log_payload(),
                    error=exc.message,
                    error_code=exc.code,
                    failed_node_id=getattr(exc, "node_id", None),
                )
                span.set_attribute("error_code", exc.code)
            else:
                outcome = RunOutcome(
                    status="completed",
                    graph_id=graph.id,
                    outputs=context.outputs(),
                    log=context.log_payload(),
                )
            span.set_attribute("status", outcome.status)

        observe_workflow_run(outcome.status)
        logger.info(
            "workflow.run.finished",
            extra={
                "graph_id": graph.id,
                "tenant_id": graph.tenant_id,
                "status": outcome.status,
                "error": outcome.error,
                "error_code": outcome.error_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return outcome

    def _walk(self, graph: Graph, plan: ExecutionPlan, context: ExecutionContext) -> None:
        active_edges: set[int] = set()
        edge_index = {id(edge): index for index, edge in enumerate(graph.edges)}

        for node in plan.order:
            incoming = [edge for edge in graph.incoming(node.id) if edge_index[id(edge)] in active_edges]
            if node.id not in plan.entry_ids and not incoming:
                context.append_log(LogEntry(node.id, node.node_type.value, node.label, "skipped"))
                continue
            if not node.is_enabled:
                context.append_log(LogEntry(node.id, node.node_type.value, node.label, "disabled"))
                continue

            entry = LogEntry(node.id, node.node_type.value, node.label, "running")
            context.append_log(entry)
            try:
                handler = self.registry.resolve(node.node_type)
                inputs = self._gather_inputs(node, incoming, context)
                self._check_required_inputs(node, handler, inputs)
                policy = self.retry_policy.for_node(node)
                timeout = self._timeout_for(node)
            except WorkflowEngineError as exc:
                entry.status = "failed"
                entry.error = exc.message
                raise

            output = self._run_node(handler, node, inputs, context, entry, policy, timeout)
            context.set_output(node.id, output)
            entry.status = "completed"
            entry.output = output

            for edge in self._selected_edges(graph, node, output):
                active_edges.add(edge_index[id(edge)])

    def _gather_inputs(self, node: Node, incoming: list[Edge], context: ExecutionContext) -> dict[str, Any]:
        inputs: dict[str, Any] = {}
        for edge in incoming:
            if not context.has_output(edge.source):
                continue
            value = context.output_of(edge.source)
            if edge.source_port not in ("", "output") and isinstance(value, dict) and edge.source_port in value:
                value = value[edge.source_port]
            inputs[edge.target_port] = value
        return inputs

    def _check_required_inputs(self, node: Node, handler: NodeHandler, inputs: dict[str, Any]) -> None:
        declared = node.config.get("required_inputs", [])
        if not isinstance(declared, list) or not all(isinstance(item, str) for item in declared):
            raise TypeMismatchError("list of port names", type_name(declared), node_id=node.id, field="required_inputs")
        for port in (*handler.required_inputs, *declared):
            if port not in inputs:
                raise MissingInputError(node.id, port)

    def _selected_edges(self, graph: Graph, node: Node, output: Any) -> list[Edge]:
        outgoing = graph.outgoing(node.id)
        if node.node_type is not NodeType.CONDITION_IF or not outgoing:
            return outgoing

        branch = output.get("branch") if isinstance(output, dict) else None
        matching = [edge for edge in outgoing if edge.label == branch]
        if not matching:
            matching = [edge for edge in outgoing if edge.label in _DEFAULT_BRANCH_LABELS]
        if not matching:
            raise InvalidPortConnectionError(node.id, f"no outgoing edge for branch '{branch}' and no default edge")
        if len(matching) > 1:
            raise InvalidPortConnectionError(node.id, f"{len(matching)} outgoing edges match branch '{branch}'")
        return matching

    def _timeout_for(self, node: Node) -> float:
        value = node.config.get("timeout_seconds", self.timeout_seconds)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeMismatchError("number", type_name(value), node_id=node.id, field="timeout_seconds")
        return float(value)

    def _run_node(
        self,
        handler: NodeHandler,
        node: Node,
        inputs: dict[str, Any],
        context: ExecutionContext,
        entry: LogEntry,
        policy: RetryPolicy,
        timeout: float,
    ) -> Any:
        node_type = node.node_type.value
        log_fields = {"graph_id": context.graph_id, "node_id": node.id, "node_type": node_type}

        while True:
            entry.attempts += 1
            attempt = entry.attempts
            started = time.perf_counter()
            logger.info("node.started", extra={**log_fields, "attempt": attempt})
            with tracer.start_as_current_span("workflow.node") as span:
                span.set_attribute("node_id", node.id)
                span.set_attribute("node_type", node_type)
                span.set_attribute("attempt", attempt)
                try:
                    output = self._call_with_timeout(handler, node, inputs, context, timeout)
                    output = self._ensure_structured(node, output)
                except NodeExecutionFailedError as exc:
                    error = exc.reason
                except WorkflowEngineError as exc:
                    self._record_failure(entry, node_type, started, exc.message)
                    span.set_attribute("error_code", exc.code)
                    raise
                except CapabilityError as exc:
                    error = str(exc)
                except Exception as exc:
                    error = str(exc) or type(exc).__name__
                else:
                    duration = time.perf_counter() - started
                    entry.duration_ms = round(duration * 1000, 2)
                    observe_node_execution(node_type, "completed", duration)
                    logger.info("node.finished", extra={**log_fields, "attempt": attempt, "status": "completed"})
                    return output
                span.set_attribute("error", error[:500])

            self._record_failure(entry, node_type, started, error)
            if attempt >= policy.max_attempts:
                if policy.max_attempts == 1:
                    raise NodeExecutionFailedError(node.id, error)
                raise RetriesExceededError(node.id, attempt, error)

            delay = policy.delay_for(attempt)
            observe_node_retry(node_type)
            logger.warning(
                "node.retry",
                extra={**log_fields, "attempt": attempt, "max_attempts": policy.max_attempts, "error": error},
            )
            if delay > 0:
                self._sleep(delay)

    def _record_failure(self, entry: LogEntry, node_type: str, started: float, error: str) -> None:
        duration = time.perf_counter() - started
        entry.status = "failed"
        entry.error = error
        entry.duration_ms = round(duration * 1000, 2)
        observe_node_execution(node_type, "failed", duration)

    def _call_with_timeout(
        self,
        handler: NodeHandler,
        node: Node,
        inputs: dict[str, Any],
        context: ExecutionContext,
        timeout: float,
    ) -> Any:
        if timeout <= 0:
            return handler.execute(node, inputs, context)

        attempt_context = contextvars.copy_context()
        attempt_context.run(start_node_deadline, timeout)
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="workflow-node")
        future = pool.submit(attempt_context.run, handler.execute, node, inputs, context)
        try:
            return future.result(timeout=timeout)
        except TimeoutError:
            if future.done():
                raise
            future.cancel()
            raise NodeTimeoutError(node.id, timeout) from None
        finally:
            # A stalled handler keeps its thread; outbound calls inside it stop at the same deadline.
            pool.shutdown(wait=False)

    def _ensure_structured(self, node: Node, output: Any) -> Any:
        try:
            json.dumps(output)
        except (TypeError, ValueError) as exc:
            raise TypeMismatchError("JSON-compatible value", type_name(output), node_id=node.id, field="output") from exc
        return output
