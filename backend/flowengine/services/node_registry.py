"""Closed, versioned set of node types.

Every node type is a tag plus a typed parameter model. The registry is the
single place that says which tags exist for an engine version, which
outputs each one may wire, and which external capability it calls.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from flowengine.errors import UnsupportedNodeTypeError
from flowengine.services.expressions import ConditionOperator, normalize_unit

ENGINE_VERSION_V2 = "v2"

_REFERENCE = re.compile(r"^\{\{\s*[^}]+?\s*\}\}$")


class NodeKind(str, Enum):
    """How the interpreter treats a node type."""

    ACTION = "action"  # Side effect through the action gateway
    PURE = "pure"  # Context-only step
    WAIT = "wait"  # Suspends the execution
    CONDITION = "condition"  # Picks one of two outputs
    TERMINAL = "terminal"  # Ends the execution


# =============================================================================
# Parameter payloads
# =============================================================================


class _Params(BaseModel):
    model_config = {"extra": "ignore"}


class SendMessageParams(_Params):
    template_key: str = Field(min_length=1)
    variables: dict[str, Any] = Field(default_factory=dict)


class SendEmailParams(_Params):
    template_key: str = Field(min_length=1)
    subject: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)


def _is_reference(value: str) -> bool:
    return bool(_REFERENCE.match(value)) or value.startswith("context.")


class AppointmentHoldParams(_Params):
    # Ids are literal or a context reference resolved at run time
    treatment_id: int | str | None = None
    professional_id: int | str | None = None
    starts_at: str | None = None
    duration_minutes: int = Field(default=30, gt=0)

    @field_validator("treatment_id", "professional_id")
    @classmethod
    def _validate_id(cls, value: int | str | None) -> int | str | None:
        if isinstance(value, str):
            if value.strip().isdigit():
                return int(value)
            if not _is_reference(value):
                raise ValueError("must be an integer or a {{ path }} / context.path reference")
        return value


HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


class ApiCallParams(_Params):
    method: str = "POST"
    url: str = Field(min_length=1, validation_alias=AliasChoices("url", "path"))
    body: dict[str, Any] | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("method", mode="before")
    @classmethod
    def _validate_method(cls, value: Any) -> Any:
        method = str(value or "POST").upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"unsupported HTTP method '{value}'")
        return method


class CreateTaskParams(_Params):
    title: str = Field(min_length=1)
    assignee_type: str | None = None
    assignee_id: int | None = None


class ChangeStatusParams(_Params):
    new_status: str = Field(min_length=1)
    previous_status: str | None = None
    agenda_icon: str | None = None


class WriteNoteParams(_Params):
    content: str


def _check_unit(value: Any) -> Any:
    if normalize_unit(value) is None:
        raise ValueError(f"unknown duration unit '{value}'")
    return value


class FixedDelayParams(_Params):
    duration: float = Field(ge=0)
    unit: str = "seconds"

    @field_validator("unit", mode="before")
    @classmethod
    def _validate_unit(cls, value: Any) -> Any:
        return _check_unit(value)


class WaitUntilParams(_Params):
    datetime_expression: str = Field(min_length=1)


class WaitResponseParams(_Params):
    listens_to_node_id: str | None = None
    signal_type: str = "inbound_message"
    # Ceiling keeps wait_until non-null while waiting for a signal
    timeout_duration: float = Field(default=60, gt=0)
    timeout_unit: str = "minutes"

    @field_validator("timeout_unit", mode="before")
    @classmethod
    def _validate_unit(cls, value: Any) -> Any:
        return _check_unit(value)


class FieldCheckParams(_Params):
    field: str = Field(min_length=1)
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None


class ResponseCheckParams(_Params):
    listens_to_node_id: str = Field(min_length=1)


class EndSuccessParams(_Params):
    reason: str | None = None


class EndErrorParams(_Params):
    reason: str = "flow_ended_with_error"


# =============================================================================
# Registry
# =============================================================================


@dataclass(frozen=True)
class NodeSpec:
    """Static description of one node type."""

    node_type: str
    kind: NodeKind
    params_model: type[BaseModel]
    outputs: tuple[str, ...]
    action: str | None = None

    @property
    def is_side_effecting(self) -> bool:
        return self.kind == NodeKind.ACTION


_V2_SPECS = [
    NodeSpec(
        "action/send_whatsapp",
        NodeKind.ACTION,
        SendMessageParams,
        ("on_success", "on_fail"),
        action="send_message",
    ),
    NodeSpec(
        "action/send_email",
        NodeKind.ACTION,
        SendEmailParams,
        ("on_success", "on_fail"),
        action="send_message",
    ),
    NodeSpec(
        "action/create_appointment_hold",
        NodeKind.ACTION,
        AppointmentHoldParams,
        ("on_success", "on_fail"),
        action="create_appointment_hold",
    ),
    NodeSpec(
        "action/create_task",
        NodeKind.ACTION,
        CreateTaskParams,
        ("on_success", "on_fail"),
        action="create_task",
    ),
    NodeSpec(
        "action/change_status",
        NodeKind.ACTION,
        ChangeStatusParams,
        ("on_success", "on_fail"),
        action="change_status",
    ),
    NodeSpec(
        "action/api_call",
        NodeKind.ACTION,
        ApiCallParams,
        ("on_success", "on_fail"),
        action="call_api",
    ),
    NodeSpec("action/write_note", NodeKind.PURE, WriteNoteParams, ("on_success",)),
    NodeSpec("delay/fixed", NodeKind.WAIT, FixedDelayParams, ("on_complete",)),
    NodeSpec("delay/wait_until", NodeKind.WAIT, WaitUntilParams, ("on_complete",)),
    NodeSpec(
        "delay/wait_response",
        NodeKind.WAIT,
        WaitResponseParams,
        ("on_response", "on_timeout"),
    ),
    NodeSpec(
        "condition/field_check",
        NodeKind.CONDITION,
        FieldCheckParams,
        ("on_true", "on_false"),
    ),
    NodeSpec(
        "condition/response_check",
        NodeKind.CONDITION,
        ResponseCheckParams,
        ("on_response", "on_no_response"),
    ),
    NodeSpec("end/success", NodeKind.TERMINAL, EndSuccessParams, ()),
    NodeSpec("end/error", NodeKind.TERMINAL, EndErrorParams, ()),
]

NODE_SPECS: dict[str, dict[str, NodeSpec]] = {
    ENGINE_VERSION_V2: {spec.node_type: spec for spec in _V2_SPECS},
}


def supported_engine_versions() -> list[str]:
    return sorted(NODE_SPECS)


def get_node_spec(engine_version: str, node_type: str) -> NodeSpec:
    """Look up a node type for an engine version.

    Raises:
        UnsupportedNodeTypeError: If the engine version or the tag is unknown
    """
    specs = NODE_SPECS.get(engine_version)
    if specs is None or node_type not in specs:
        raise UnsupportedNodeTypeError(node_type, engine_version)
    return specs[node_type]


def parse_params(spec: NodeSpec, config: dict[str, Any]) -> BaseModel:
    """Parse a node's config into its typed parameter model."""
    return spec.params_model.model_validate(config)
