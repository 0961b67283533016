from __future__ import annotations

import threading
import time
from collections.abc import Generator
from typing import Any

import httpx
import pytest

from automation.core.config import get_settings
from automation.workflows.capabilities import Capabilities, MockTextGenerator, OutboxNotifier
from automation.workflows.context import ExecutionContext
from automation.workflows.errors import NodeExecutionFailedError
from automation.workflows.executor import GraphExecutor, RetryPolicy
from automation.workflows.graph import Edge, Graph, Node, find_cycle
from automation.workflows.handlers import NodeHandler, NodeHandlerRegistry, default_registry
from automation.workflows.schemas import NodeType


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class RecordingHandler(NodeHandler):
    node_types = (NodeType.DATA_SET_FIELD,)

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        self.calls.append((node.id, dict(inputs)))
        return {"node": node.id, "inputs": sorted(inputs)}


class FlakyHandler(NodeHandler):
    node_types = (NodeType.ACTION_WEBHOOK,)

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.attempts = 0

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise NodeExecutionFailedError(node.id, f"upstream unavailable ({self.attempts})")
        return {"status_code": 200}


class BlockingHandler(NodeHandler):
    node_types = (NodeType.ACTION_WEBHOOK,)

    def __init__(self) -> None:
        self.release = threading.Event()

    def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        self.release.wait(5)
        return {"late": True}


def _context(trigger: dict[str, Any] | None = None) -> ExecutionContext:
    capabilities = Capabilities(text=MockTextGenerator(), notifier=OutboxNotifier())
    return ExecutionContext.for_trigger(trigger or {}, capabilities, tenant_id="tenant-1")


def _executor(registry: NodeHandlerRegistry | None = None, sleeps: list[float] | None = None, **kwargs: Any) -> GraphExecutor:
    sink = sleeps if sleeps is not None else []
    return GraphExecutor(
        registry or default_registry(sleep=lambda _: None),
        retry_policy=kwargs.pop("retry_policy", RetryPolicy()),
        timeout_seconds=kwargs.pop("timeout_seconds", 5),
        sleep=sink.append,
    )


def _registry_with(*handlers: NodeHandler) -> NodeHandlerRegistry:
    registry = default_registry(sleep=lambda _: None)
    for handler in handlers:
        registry.register_handler(handler)
    return registry


def test_linear_graph_runs_in_order_and_exposes_outputs() -> None:
    trigger = Node("t", NodeType.TRIGGER_MANUAL)
    generate = Node("g", NodeType.AI_GENERATE, config={"prompt": "Hello {{trigger.name}}"})
    email = Node("e", NodeType.ACTION_SEND_EMAIL, config={"to": "ops@example.com", "subject": "{{g.text}}"})
    graph = Graph.build([trigger, generate, email], [Edge("t", "g"), Edge("g", "e")])

    outcome = _executor().execute(graph, _context({"name": "Ada"}))

    assert outcome.succeeded
    assert outcome.outputs["g"]["text"] == "Hello Ada"
    assert outcome.outputs["e"]["subject"] == "Hello Ada"
    assert [entry["node_id"] for entry in outcome.log] == ["t", "g", "e"]
    assert all(entry["status"] == "completed" and entry["attempts"] == 1 for entry in outcome.log)


def test_condition_routes_only_the_matching_branch() -> None:
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("c", NodeType.CONDITION_IF, config={"condition": {"path": "trigger.score", "op": "gt", "value": 50}}),
        Node("hot", NodeType.ACTION_SEND_EMAIL, config={"to": "sales@example.com"}),
        Node("cold", NodeType.ACTION_SEND_SMS, config={"to": "+15550100", "message": "later"}),
    ]
    edges = [Edge("t", "c"), Edge("c", "hot", label="true"), Edge("c", "cold", label="false")]

    outcome = _executor().execute(Graph.build(nodes, edges), _context({"score": 80}))

    assert outcome.succeeded
    assert "hot" in outcome.outputs
    assert "cold" not in outcome.outputs
    statuses = {entry["node_id"]: entry["status"] for entry in outcome.log}
    assert statuses["cold"] == "skipped"


def test_condition_without_matching_or_default_edge_fails() -> None:
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("c", NodeType.CONDITION_IF, config={"condition": {"path": "trigger.score", "op": "gt", "value": 50}}),
        Node("hot", NodeType.ACTION_SEND_EMAIL, config={"to": "sales@example.com"}),
    ]

    outcome = _executor().execute(Graph.build(nodes, [Edge("t", "c"), Edge("c", "hot", label="true")]), _context({"score": 1}))

    assert outcome.status == "failed"
    assert outcome.error_code == "invalid_port_connection"
    assert outcome.failed_node_id == "c"


def test_cycle_is_rejected_before_any_node_runs() -> None:
    recorder = RecordingHandler()
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("a", NodeType.DATA_SET_FIELD),
        Node("b", NodeType.DATA_SET_FIELD),
    ]
    edges = [Edge("t", "a"), Edge("a", "b"), Edge("b", "a")]

    outcome = _executor(_registry_with(recorder)).execute(Graph.build(nodes, edges), _context())

    assert outcome.status == "failed"
    assert outcome.error_code == "cycle_detected"
    assert outcome.log == []
    assert recorder.calls == []


def test_each_node_runs_once_and_joins_all_inputs() -> None:
    recorder = RecordingHandler()
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("left", NodeType.DATA_SET_FIELD),
        Node("right", NodeType.DATA_SET_FIELD),
        Node("join", NodeType.DATA_SET_FIELD),
    ]
    edges = [
        Edge("t", "left"),
        Edge("t", "right"),
        Edge("left", "join", target_port="left"),
        Edge("right", "join", target_port="right"),
    ]

    outcome = _executor(_registry_with(recorder)).execute(Graph.build(nodes, edges), _context())

    assert outcome.succeeded
    assert [node_id for node_id, _ in recorder.calls] == ["left", "right", "join"]
    assert sorted(recorder.calls[-1][1]) == ["left", "right"]


def test_source_port_selects_a_field_of_the_upstream_output() -> None:
    recorder = RecordingHandler()
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("g", NodeType.AI_GENERATE, config={"prompt": "draft"}),
        Node("s", NodeType.DATA_SET_FIELD),
    ]
    edges = [Edge("t", "g"), Edge("g", "s", source_port="text", target_port="body")]

    outcome = _executor(_registry_with(recorder)).execute(Graph.build(nodes, edges), _context())

    assert outcome.succeeded
    assert recorder.calls == [("s", {"body": "draft"})]


def test_missing_required_input_fails_the_run() -> None:
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("s", NodeType.DATA_SET_FIELD, config={"field": "note", "required_inputs": ["context"]}),
    ]

    outcome = _executor().execute(Graph.build(nodes, [Edge("t", "s")]), _context())

    assert outcome.status == "failed"
    assert outcome.error_code == "missing_input"
    assert outcome.failed_node_id == "s"
    assert "context" in (outcome.error or "")


def test_failure_aborts_remaining_nodes() -> None:
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("s", NodeType.DATA_SET_FIELD, config={"field": "note"}),
        Node("e", NodeType.ACTION_SEND_EMAIL, config={"to": "ops@example.com"}),
    ]

    outcome = _executor().execute(Graph.build(nodes, [Edge("t", "s"), Edge("s", "e")]), _context())

    assert outcome.status == "failed"
    assert outcome.error_code == "missing_input"
    assert "e" not in outcome.outputs


def test_retries_with_exponential_backoff_then_succeeds() -> None:
    flaky = FlakyHandler(failures=2)
    sleeps: list[float] = []
    nodes = [Node("t", NodeType.TRIGGER_MANUAL), Node("w", NodeType.ACTION_WEBHOOK)]

    outcome = _executor(_registry_with(flaky), sleeps).execute(Graph.build(nodes, [Edge("t", "w")]), _context())

    assert outcome.succeeded
    assert flaky.attempts == 3
    assert sleeps == [1.0, 2.0]
    assert outcome.log[-1]["attempts"] == 3


def test_retries_exhausted_reports_last_error() -> None:
    flaky = FlakyHandler(failures=10)
    sleeps: list[float] = []
    nodes = [Node("t", NodeType.TRIGGER_MANUAL), Node("w", NodeType.ACTION_WEBHOOK)]

    outcome = _executor(_registry_with(flaky), sleeps).execute(Graph.build(nodes, [Edge("t", "w")]), _context())

    assert outcome.status == "failed"
    assert outcome.error_code == "retries_exceeded"
    assert flaky.attempts == 3
    assert sleeps == [1.0, 2.0]
    assert "upstream unavailable (3)" in (outcome.error or "")


def test_single_attempt_policy_reports_node_failure() -> None:
    flaky = FlakyHandler(failures=1)
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("w", NodeType.ACTION_WEBHOOK, config={"retry": {"max_attempts": 1}}),
    ]

    outcome = _executor(_registry_with(flaky)).execute(Graph.build(nodes, [Edge("t", "w")]), _context())

    assert outcome.error_code == "node_execution_failed"
    assert flaky.attempts == 1


def test_node_timeout_is_not_retried() -> None:
    blocking = BlockingHandler()
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("w", NodeType.ACTION_WEBHOOK, config={"timeout_seconds": 0.05}),
    ]
    try:
        outcome = _executor(_registry_with(blocking)).execute(Graph.build(nodes, [Edge("t", "w")]), _context())
    finally:
        blocking.release.set()

    assert outcome.status == "failed"
    assert outcome.error_code == "timeout"
    assert outcome.log[-1]["attempts"] == 1


def test_unknown_node_type_fails_validation() -> None:
    registry = NodeHandlerRegistry()
    registry.register_handler(RecordingHandler())
    nodes = [Node("t", NodeType.TRIGGER_MANUAL), Node("s", NodeType.DATA_SET_FIELD)]

    outcome = _executor(registry).execute(Graph.build(nodes, [Edge("t", "s")]), _context())

    assert outcome.error_code == "unknown_node_type"
    assert outcome.log == []


def test_disabled_nodes_are_skipped_and_disabled_graph_rejected() -> None:
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("e", NodeType.ACTION_SEND_EMAIL, config={"to": "ops@example.com"}, is_enabled=False),
    ]
    graph = Graph.build(nodes, [Edge("t", "e")])

    outcome = _executor().execute(graph, _context())
    assert outcome.succeeded
    assert {entry["node_id"]: entry["status"] for entry in outcome.log}["e"] == "disabled"

    graph.is_enabled = False
    assert _executor().execute(graph, _context()).error_code == "invalid_graph"


def test_entry_node_limits_run_to_its_subgraph() -> None:
    nodes = [
        Node("manual", NodeType.TRIGGER_MANUAL),
        Node("created", NodeType.TRIGGER_ON_CREATE),
        Node("a", NodeType.DATA_SET_FIELD, config={"field": "a", "value": 1}),
        Node("b", NodeType.DATA_SET_FIELD, config={"field": "b", "value": 2}),
    ]
    graph = Graph.build(nodes, [Edge("manual", "a"), Edge("created", "b")])

    outcome = _executor().execute(graph, _context(), entry_node_id="created")

    assert outcome.succeeded
    assert set(outcome.outputs) == {"created", "b"}


def test_unknown_entry_node_fails() -> None:
    graph = Graph.build([Node("t", NodeType.TRIGGER_MANUAL)])

    outcome = _executor().execute(graph, _context(), entry_node_id="nope")

    assert outcome.error_code == "node_not_found"


def test_unstructured_output_is_type_mismatch() -> None:
    class OpaqueHandler(NodeHandler):
        node_types = (NodeType.DATA_SET_FIELD,)

        def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> Any:
            return {"value": object()}

    nodes = [Node("t", NodeType.TRIGGER_MANUAL), Node("s", NodeType.DATA_SET_FIELD)]

    outcome = _executor(_registry_with(OpaqueHandler())).execute(Graph.build(nodes, [Edge("t", "s")]), _context())

    assert outcome.error_code == "type_mismatch"


def test_retry_policy_backoff_is_capped() -> None:
    policy = RetryPolicy(max_attempts=10, backoff_seconds=1.0, max_backoff_seconds=5.0)

    assert [policy.delay_for(attempt) for attempt in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    node = Node("w", NodeType.ACTION_WEBHOOK, config={"retry": {"max_attempts": 2, "backoff_seconds": 0}})
    assert policy.for_node(node).max_attempts == 2
    assert policy.for_node(node).delay_for(1) == 0


class StallingTransport(httpx.BaseTransport):
    """Answers only after ``stall_seconds``; shorter client timeouts abort before delivery."""

    def __init__(self, stall_seconds: float) -> None:
        self.stall_seconds = stall_seconds
        self.budgets: list[float] = []
        self.delivered: list[httpx.Request] = []

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        budget = request.extensions["timeout"]["connect"]
        self.budgets.append(budget)
        if budget < self.stall_seconds:
            time.sleep(budget + 0.3)
            raise httpx.ConnectTimeout("connect timed out", request=request)
        time.sleep(self.stall_seconds)
        self.delivered.append(request)
        return httpx.Response(200, json={"ok": True})


def test_timed_out_webhook_is_never_delivered() -> None:
    transport = StallingTransport(stall_seconds=1.0)
    capabilities = Capabilities(text=MockTextGenerator(), notifier=OutboxNotifier(), http=httpx.Client(transport=transport))
    context = ExecutionContext.for_trigger({"entity_id": "lead-1"}, capabilities, tenant_id="tenant-1")
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node(
            "w",
            NodeType.ACTION_WEBHOOK,
            config={"url": "https://hooks.example.com/in", "timeout": 30, "timeout_seconds": 0.2},
        ),
    ]

    outcome = _executor().execute(Graph.build(nodes, [Edge("t", "w")]), context)
    time.sleep(1.2)

    assert outcome.error_code == "timeout"
    assert transport.delivered == []
    assert len(transport.budgets) == 1
    assert 0 < transport.budgets[0] <= 0.2


def test_side_effects_are_skipped_once_the_deadline_passed() -> None:
    class SlowTextGenerator(MockTextGenerator):
        def generate(self, prompt: str, system: str | None = None, timeout: float | None = None) -> str:
            time.sleep(0.4)
            return prompt

    notifier = OutboxNotifier()
    context = ExecutionContext.for_trigger({}, Capabilities(text=SlowTextGenerator(), notifier=notifier), tenant_id="tenant-1")

    class DraftAndSendHandler(NodeHandler):
        node_types = (NodeType.ACTION_SEND_EMAIL,)

        def execute(self, node: Node, inputs: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
            body = context.capabilities.text.generate("draft")
            context.ensure_time_left(node.id)
            return context.capabilities.notifier.send_email(context.tenant_id, "ops@example.com", "Draft", body)

    nodes = [Node("t", NodeType.TRIGGER_MANUAL), Node("e", NodeType.ACTION_SEND_EMAIL, config={"timeout_seconds": 0.1})]

    outcome = _executor(_registry_with(DraftAndSendHandler())).execute(Graph.build(nodes, [Edge("t", "e")]), context)
    time.sleep(0.6)

    assert outcome.error_code == "timeout"
    assert list(notifier.deliveries) == []


def test_plan_follows_edges_then_declaration_order() -> None:
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("late", NodeType.DATA_SET_FIELD, config={"field": "late", "value": 1}),
        Node("early", NodeType.DATA_SET_FIELD, config={"field": "early", "value": 2}),
        Node("side", NodeType.DATA_SET_FIELD, config={"field": "side", "value": 3}),
        Node("orphan", NodeType.DATA_SET_FIELD, config={"field": "orphan", "value": 4}),
    ]
    edges = [Edge("t", "early"), Edge("early", "late"), Edge("t", "side"), Edge("t", "early", target_port="again")]

    plan = _executor().plan(Graph.build(nodes, edges))

    assert [node.id for node in plan.order] == ["t", "early", "late", "side"]
    assert plan.entry_ids == {"t"}


def test_cycle_outside_the_entry_subgraph_does_not_block_the_run() -> None:
    nodes = [
        Node("manual", NodeType.TRIGGER_MANUAL),
        Node("a", NodeType.DATA_SET_FIELD, config={"field": "a", "value": 1}),
        Node("loop-1", NodeType.DATA_SET_FIELD, config={"field": "x", "value": 1}),
        Node("loop-2", NodeType.DATA_SET_FIELD, config={"field": "y", "value": 2}),
    ]
    graph = Graph.build(nodes, [Edge("manual", "a"), Edge("loop-1", "loop-2"), Edge("loop-2", "loop-1")])

    assert find_cycle(graph) in {"loop-1", "loop-2"}
    assert find_cycle(graph, ["manual"]) is None
    assert _executor().execute(graph, _context()).succeeded


def test_pre_run_failures_are_logged_for_the_failing_node() -> None:
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("s", NodeType.DATA_SET_FIELD, config={"field": "note", "value": 1, "timeout_seconds": "soon"}),
    ]

    outcome = _executor().execute(Graph.build(nodes, [Edge("t", "s")]), _context())

    assert outcome.error_code == "type_mismatch"
    assert outcome.failed_node_id == "s"
    assert outcome.log[-1]["node_id"] == "s"
    assert outcome.log[-1]["status"] == "failed"
    assert "timeout_seconds" in outcome.log[-1]["error"]


def test_missing_input_failure_appears_in_run_log() -> None:
    nodes = [
        Node("t", NodeType.TRIGGER_MANUAL),
        Node("s", NodeType.DATA_SET_FIELD, config={"field": "note", "required_inputs": ["context"]}),
    ]

    outcome = _executor().execute(Graph.build(nodes, [Edge("t", "s")]), _context())

    assert [(entry["node_id"], entry["status"]) for entry in outcome.log] == [("t", "completed"), ("s", "failed")]


def test_reserved_trigger_node_id_fails_the_run() -> None:
    nodes = [Node("trigger", NodeType.TRIGGER_MANUAL)]

    outcome = _executor().execute(Graph.build(nodes), _context())

    assert outcome.status == "failed"
    assert outcome.error_code == "invalid_graph"
    assert "reserved" in (outcome.error or "")
