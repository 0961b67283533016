from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from automation.context import get_correlation_id
from automation.core.config import Settings
from automation.workflows.errors import CapabilityError


logger = logging.getLogger("automation.capabilities")
tracer = trace.get_tracer("automation.capabilities")

RECENT_HISTORY_SIZE = 200


class TextGenerator(Protocol):
    def generate(self, prompt: str, system: str | None = None, timeout: float | None = None) -> str: ...


class Notifier(Protocol):
    def send_email(self, tenant_id: str | None, to: str, subject: str, body: str) -> dict[str, Any]: ...

    def send_sms(self, tenant_id: str | None, to: str, message: str, provider: str) -> dict[str, Any]: ...


class TaskSink(Protocol):
    def create_task(self, tenant_id: str | None, task: dict[str, Any]) -> dict[str, Any]: ...


class MockTextGenerator:
    """Deterministic text generation: echoes the prompt or returns a fixed reply."""

    modes = {"echo", "fixed"}

    def __init__(
        self,
        mode: str = "echo",
        fixed_response: str = "mock response",
        *,
        history_size: int = RECENT_HISTORY_SIZE,
    ) -> None:
        if mode not in self.modes:
            raise ValueError(f"unsupported mock mode '{mode}'")
        self.mode = mode
        self.fixed_response = fixed_response
        self.calls: deque[dict[str, str | None]] = deque(maxlen=history_size)

    def generate(self, prompt: str, system: str | None = None, timeout: float | None = None) -> str:
        self.calls.append({"prompt": prompt, "system": system})
        if self.mode == "echo":
            return prompt
        return self.fixed_response


class OpenAITextGenerator:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self._client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )

    def generate(self, prompt: str, system: str | None = None, timeout: float | None = None) -> str:
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        with tracer.start_as_current_span("capability.text.generate") as span:
            span.set_attribute("model", self.model)
            budget = self.timeout if timeout is None else min(self.timeout, timeout)
            try:
                response = self._client.post(
                    "/chat/completions",
                    json={"model": self.model, "messages": messages},
                    timeout=budget,
                )
                response.raise_for_status()
                body = response.json()
                return str(body["choices"][0]["message"]["content"])
            except httpx.HTTPError as exc:
                raise CapabilityError(f"text generation request failed: {exc}") from exc
            except (KeyError, IndexError, TypeError, ValueError) as exc:
                raise CapabilityError("text generation returned an unexpected payload") from exc


class OutboxNotifier:
    """Records outbound notifications; delivery is owned by the messaging service."""

    def __init__(self, history_size: int = RECENT_HISTORY_SIZE) -> None:
        self._lock = threading.Lock()
        self.deliveries: deque[dict[str, Any]] = deque(maxlen=history_size)

    def send_email(self, tenant_id: str | None, to: str, subject: str, body: str) -> dict[str, Any]:
        return self._record(tenant_id, "email", {"to": to, "subject": subject, "body": body})

    def send_sms(self, tenant_id: str | None, to: str, message: str, provider: str) -> dict[str, Any]:
        return self._record(tenant_id, "sms", {"to": to, "message": message, "provider": provider})

    def _record(self, tenant_id: str | None, channel: str, content: dict[str, Any]) -> dict[str, Any]:
        delivery = {
            "delivery_id": str(uuid.uuid4()),
            "channel": channel,
            "tenant_id": tenant_id,
            "status": "accepted",
            "accepted_at": datetime.now(timezone.utc).isoformat(),
            "correlation_id": get_correlation_id(),
            **content,
        }
        with self._lock:
            self.deliveries.append(delivery)
        logger.info("notification.accepted", extra={"tenant_id": tenant_id, "channel": channel})
        return {"delivery_id": delivery["delivery_id"], "channel": channel, "status": "accepted"}


class OutboxTaskSink:
    def __init__(self, history_size: int = RECENT_HISTORY_SIZE) -> None:
        self._lock = threading.Lock()
        self.tasks: deque[dict[str, Any]] = deque(maxlen=history_size)

    def create_task(self, tenant_id: str | None, task: dict[str, Any]) -> dict[str, Any]:
        record = {"task_id": str(uuid.uuid4()), "tenant_id": tenant_id, **task}
        with self._lock:
            self.tasks.append(record)
        return record


def build_text_generator(settings: Settings) -> TextGenerator:
    provider = settings.text_provider.lower()
    if provider == "mock":
        return MockTextGenerator(mode=settings.text_mock_mode, fixed_response=settings.text_mock_response)
    if provider == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when TEXT_PROVIDER=openai")
        return OpenAITextGenerator(
            settings.openai_api_key,
            settings.openai_model,
            base_url=settings.openai_base_url,
            timeout=settings.node_timeout_seconds,
        )
    raise ValueError(f"unsupported text provider '{settings.text_provider}'")


@dataclass
class Capabilities:
    """External collaborators a run may call; owned outside the run."""

    text: TextGenerator
    notifier: Notifier = field(default_factory=OutboxNotifier)
    tasks: TaskSink = field(default_factory=OutboxTaskSink)
    http: httpx.Client = field(default_factory=httpx.Client)


def build_capabilities(settings: Settings, *, http_client: httpx.Client | None = None) -> Capabilities:
    return Capabilities(
        text=build_text_generator(settings),
        notifier=OutboxNotifier(),
        tasks=OutboxTaskSink(),
        http=http_client or httpx.Client(timeout=settings.webhook_timeout_seconds),
    )
