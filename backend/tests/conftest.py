"""Pytest configuration and fixtures."""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from flowengine.config import EngineSettings
from flowengine.db.database import close_database, init_database
from flowengine.db.secrets import FernetCipher
from flowengine.db.template_store import template_store
from flowengine.errors import ExternalActionError
from flowengine.models import (
    NodeDefinition,
    Subject,
    SubjectType,
    Template,
    TemplateDefinition,
)
from flowengine.services.audit import AuditLogger
from flowengine.services.interpreter import NodeInterpreter
from flowengine.services.scheduler import ExecutionScheduler
from flowengine.services.trigger import TriggerDispatcher


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Records action calls and fails on demand."""

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.failures: list[Exception] = []
        self.hang = False

    def fail_next(self, times: int = 1, retriable: bool = True) -> None:
        for _ in range(times):
            self.failures.append(
                ExternalActionError("service unavailable", action="test", retriable=retriable)
            )

    async def _record(self, action: str, idempotency_key: str, **data: Any) -> dict[str, Any]:
        self.calls.append({"action": action, "idempotency_key": idempotency_key, **data})
        if self.hang:
            await asyncio.sleep(5)
        if self.failures:
            raise self.failures.pop(0)
        return {"external_id": f"{action}-{len(self.calls)}"}

    async def send_message(
        self,
        channel: str,
        template_key: str,
        variables: dict[str, Any],
        idempotency_key: str,
        subject: Subject,
        email_subject: str | None = None,
    ) -> dict[str, Any]:
        return await self._record(
            "send_message",
            idempotency_key,
            channel=channel,
            template_key=template_key,
            variables=variables,
        )

    async def create_appointment_hold(
        self, subject: Subject, params: dict[str, Any], idempotency_key: str
    ) -> dict[str, Any]:
        return await self._record("create_appointment_hold", idempotency_key, params=params)

    async def create_task(
        self, subject: Subject, params: dict[str, Any], idempotency_key: str
    ) -> dict[str, Any]:
        return await self._record("create_task", idempotency_key, params=params)

    async def change_status(
        self, subject: Subject, params: dict[str, Any], idempotency_key: str
    ) -> dict[str, Any]:
        return await self._record("change_status", idempotency_key, params=params)

    async def call_api(
        self, subject: Subject, params: dict[str, Any], idempotency_key: str
    ) -> dict[str, Any]:
        await self._record("call_api", idempotency_key, params=params)
        return {"status_code": 202, "response_body": {"status": "queued"}, "response_headers": {}}

    def sent_templates(self) -> list[str]:
        return [c["template_key"] for c in self.calls if c["action"] == "send_message"]


def node(
    node_type: str, config: dict[str, Any] | None = None, **outputs: str | None
) -> NodeDefinition:
    """Shorthand for building a NodeDefinition in tests."""
    return NodeDefinition(type=node_type, config=config or {}, outputs=outputs)


def welcome_flow_definition(**overrides: Any) -> TemplateDefinition:
    """Send a welcome, wait for a reply for 24h, remind if none came."""
    data: dict[str, Any] = {
        "template_key": "welcome-flow",
        "name": "Welcome flow",
        "trigger_type": "lead.created",
        "entry_node_id": "send_welcome",
        "nodes": {
            "send_welcome": node(
                "action/send_whatsapp",
                {"template_key": "welcome", "variables": {"name": "{{ trigger.data.name }}"}},
                on_success="wait_reply",
            ),
            "wait_reply": node(
                "delay/wait_response",
                {
                    "listens_to_node_id": "send_welcome",
                    "timeout_duration": 24,
                    "timeout_unit": "hours",
                },
                on_response="check_reply",
                on_timeout="check_reply",
            ),
            "check_reply": node(
                "condition/response_check",
                {"listens_to_node_id": "wait_reply"},
                on_response="done",
                on_no_response="send_reminder",
            ),
            "send_reminder": node("action/send_whatsapp", {"template_key": "reminder"}),
            "done": node("end/success"),
        },
    }
    data.update(overrides)
    return TemplateDefinition(**data)


@pytest.fixture(autouse=True)
async def setup_test_db():
    """Set up a test database for each test."""
    # Create a temporary database file
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    # Initialize the database
    await init_database(db_path)

    yield

    # Clean up
    await close_database()
    os.unlink(db_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        action_timeout_seconds=0.05,
        retry_backoff_seconds=30.0,
        retry_backoff_max_seconds=600.0,
        lease_seconds=120.0,
        max_workers=4,
    )


@pytest.fixture
def audit(clock: FakeClock) -> AuditLogger:
    return AuditLogger(FernetCipher("test-secrets-key"), clock=clock)


@pytest.fixture
def scheduler(
    gateway: FakeGateway, audit: AuditLogger, settings: EngineSettings, clock: FakeClock
) -> ExecutionScheduler:
    interpreter = NodeInterpreter(gateway, settings.action_timeout_seconds)
    return ExecutionScheduler(interpreter, audit, settings, clock=clock, owner="worker-a")


@pytest.fixture
def dispatcher(scheduler: ExecutionScheduler, clock: FakeClock) -> TriggerDispatcher:
    return TriggerDispatcher(scheduler, clock=clock)


@pytest.fixture
def lead() -> Subject:
    return Subject(clinic_id=7, group_id=3, subject_type=SubjectType.LEAD, subject_id=1001)


async def publish(definition: TemplateDefinition) -> Template:
    """Publish a definition and load the stored template."""
    ref = await template_store.publish(definition)
    return await template_store.get_by_id(ref.id)
