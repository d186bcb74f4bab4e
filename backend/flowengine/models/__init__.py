"""Pydantic models for the automation flow engine."""

from flowengine.models.event import ResumeSignal, Signal, TriggerEvent
from flowengine.models.execution import (
    TERMINAL_STATUSES,
    Execution,
    ExecutionStatus,
    Subject,
    SubjectType,
)
from flowengine.models.log import ExecutionLogEntry, LogStatus
from flowengine.models.template import (
    NodeDefinition,
    Template,
    TemplateDefinition,
    TemplateRef,
    TemplateScope,
    TemplateSummary,
)

__all__ = [
    # Templates
    "NodeDefinition",
    "Template",
    "TemplateDefinition",
    "TemplateRef",
    "TemplateScope",
    "TemplateSummary",
    # Executions
    "Execution",
    "ExecutionStatus",
    "TERMINAL_STATUSES",
    "Subject",
    "SubjectType",
    # Logs
    "ExecutionLogEntry",
    "LogStatus",
    # Events
    "TriggerEvent",
    "ResumeSignal",
    "Signal",
]
