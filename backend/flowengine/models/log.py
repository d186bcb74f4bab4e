"""Pydantic models for execution log entries."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class LogStatus(str, Enum):
    """Status of a single node invocation attempt."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class ExecutionLogEntry(BaseModel):
    """Append-only record of one node invocation attempt."""

    id: str
    execution_id: str
    seq: int
    node_id: str
    node_type: str
    status: LogStatus
    attempt: int = 1
    started_at: datetime
    finished_at: datetime | None = None
    error_type: str | None = None
    error_message: str | None = None
    audit_snapshot: dict[str, Any] | None = None
    encrypted_context_diff: bytes | None = None
    prev_hash: str | None = None
    entry_hash: str | None = None
