"""Pydantic models for trigger events and resume signals."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from flowengine.models.execution import Subject


class TriggerEvent(BaseModel):
    """An external event that may start an automation.

    Produced by lead intake, appointments and messaging. Redelivering the
    same `event_id` never starts a second execution of the same template.
    """

    event_type: str
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subject: Subject
    payload: dict[str, Any] = Field(default_factory=dict)


class ResumeSignal(BaseModel):
    """An external occurrence that waiting executions may be listening for."""

    signal_type: str = "inbound_message"
    subject: Subject
    payload: dict[str, Any] = Field(default_factory=dict)


class Signal(BaseModel):
    """A persisted resume signal awaiting the next sweep."""

    id: str
    signal_type: str
    subject: Subject
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    consumed_at: datetime | None = None
