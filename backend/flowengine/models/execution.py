"""Pydantic models for flow executions and their subjects."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ExecutionStatus(str, Enum):
    """Lifecycle status of an execution."""

    RUNNING = "running"  # Held by a worker for one evaluation cycle
    WAITING = "waiting"  # Parked until wait_until or a matching signal
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.SUCCESS, ExecutionStatus.ERROR, ExecutionStatus.CANCELLED}
)


class SubjectType(str, Enum):
    """Kind of entity an execution drives."""

    LEAD = "lead"
    PATIENT = "patient"
    CONVERSATION = "conversation"


class Subject(BaseModel):
    """The lead, patient or conversation a flow runs against."""

    clinic_id: int
    group_id: int | None = None
    subject_type: SubjectType
    subject_id: int

    @property
    def key(self) -> str:
        return f"{self.subject_type.value}:{self.subject_id}"


class Execution(BaseModel):
    """One instantiation of a template version against a subject."""

    id: str
    idempotency_key: str
    template_id: str
    template_key: str
    template_version: int
    engine_version: str
    status: ExecutionStatus
    current_node_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    wait_until: datetime | None = None
    waiting_meta: dict[str, Any] | None = None
    trigger_type: str
    subject: Subject
    last_error: str | None = None
    cancel_requested: bool = False
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
