"""Node interpreter - evaluates one node against an execution context.

The interpreter never touches the database. It receives the context by
value and returns an outcome carrying the patch for the node's entry in
`context.outputs`; the scheduler is the only writer of executions.
"""

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowengine.clock import to_iso
from flowengine.errors import ExternalActionError
from flowengine.models import ExecutionStatus, NodeDefinition, Subject
from flowengine.services.actions import ActionGateway
from flowengine.services.expressions import (
    compare,
    duration_to_timedelta,
    get_by_path,
    parse_datetime,
    resolve_mapping,
    resolve_value,
)
from flowengine.services.node_registry import (
    ApiCallParams,
    AppointmentHoldParams,
    ChangeStatusParams,
    CreateTaskParams,
    EndErrorParams,
    EndSuccessParams,
    FieldCheckParams,
    FixedDelayParams,
    NodeKind,
    ResponseCheckParams,
    SendEmailParams,
    SendMessageParams,
    WaitResponseParams,
    WaitUntilParams,
    WriteNoteParams,
    get_node_spec,
    parse_params,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Outcomes
# =============================================================================


@dataclass
class Advance:
    """Move to the next node."""

    next_node_id: str
    context_patch: dict[str, Any] = field(default_factory=dict)


@dataclass
class Suspend:
    """Park the execution until `wait_until` or a matching signal."""

    wait_until: datetime
    waiting_meta: dict[str, Any]
    context_patch: dict[str, Any] = field(default_factory=dict)


@dataclass
class Terminate:
    """End the execution."""

    status: ExecutionStatus
    reason: str | None = None
    context_patch: dict[str, Any] = field(default_factory=dict)


@dataclass
class Fail:
    """The node could not complete."""

    error: Exception
    context_patch: dict[str, Any] = field(default_factory=dict)


Outcome = Advance | Suspend | Terminate | Fail


class ResumeMode:
    TIMEOUT = "timeout"
    SIGNAL = "signal"


@dataclass
class NodeCall:
    """Everything a handler needs to evaluate one node."""

    node_id: str
    node: NodeDefinition
    params: Any
    context: dict[str, Any]
    subject: Subject
    idempotency_key: str
    now: datetime


def merge_node_output(
    context: dict[str, Any],
    node_id: str,
    patch: dict[str, Any],
    status: str,
    at: datetime,
) -> dict[str, Any]:
    """Return a copy of `context` with `patch` merged into outputs[node_id]."""
    merged = copy.deepcopy(context)
    outputs = merged.setdefault("outputs", {})
    previous = outputs.get(node_id) if isinstance(outputs.get(node_id), dict) else {}
    outputs[node_id] = {**previous, **patch, "status": status, "at": to_iso(at)}
    return merged


def _follow(node: NodeDefinition, output: str, patch: dict[str, Any]) -> Advance | Terminate:
    """Advance along an output, or end successfully if it is unwired."""
    target = node.outputs.get(output)
    if target:
        return Advance(next_node_id=target, context_patch=patch)
    return Terminate(status=ExecutionStatus.SUCCESS, reason="end_of_branch", context_patch=patch)


Handler = Callable[[NodeCall], Awaitable[Outcome]]


class NodeInterpreter:
    """Evaluates nodes by dispatching on their type tag."""

    def __init__(self, gateway: ActionGateway, action_timeout_seconds: float = 10.0):
        self.gateway = gateway
        self.action_timeout_seconds = action_timeout_seconds
        self._handlers: dict[str, Handler] = {
            "action/send_whatsapp": self._send_whatsapp,
            "action/send_email": self._send_email,
            "action/create_appointment_hold": self._create_appointment_hold,
            "action/create_task": self._create_task,
            "action/change_status": self._change_status,
            "action/api_call": self._api_call,
            "action/write_note": self._write_note,
            "delay/fixed": self._fixed_delay,
            "delay/wait_until": self._wait_until,
            "delay/wait_response": self._wait_response,
            "condition/field_check": self._field_check,
            "condition/response_check": self._response_check,
            "end/success": self._end_success,
            "end/error": self._end_error,
        }

    async def evaluate(
        self,
        engine_version: str,
        node_id: str,
        node: NodeDefinition,
        context: dict[str, Any],
        subject: Subject,
        idempotency_key: str,
        now: datetime,
    ) -> Outcome:
        """Evaluate one node.

        Raises:
            UnsupportedNodeTypeError: If the tag is not part of the engine version
        """
        spec = get_node_spec(engine_version, node.type)
        params = parse_params(spec, node.config)
        call = NodeCall(
            node_id=node_id,
            node=node,
            params=params,
            context=context,
            subject=subject,
            idempotency_key=idempotency_key,
            now=now,
        )
        handler = self._handlers[spec.node_type]

        if spec.kind != NodeKind.ACTION:
            return await handler(call)

        try:
            return await asyncio.wait_for(handler(call), timeout=self.action_timeout_seconds)
        except asyncio.TimeoutError:
            return Fail(
                ExternalActionError(
                    f"{spec.action} timed out after {self.action_timeout_seconds}s",
                    action=spec.action,
                )
            )
        except ExternalActionError as e:
            return Fail(e)

    def resume(
        self,
        node: NodeDefinition,
        mode: str,
        payload: dict[str, Any] | None,
        now: datetime,
    ) -> Advance | Terminate:
        """Resolve a wait node after it wakes up."""
        if node.type == "delay/wait_response":
            if mode == ResumeMode.SIGNAL:
                payload = payload or {}
                patch = {
                    "response_text": payload.get("response_text", payload.get("text")),
                    "responded_at": to_iso(now),
                }
                return _follow(node, "on_response", patch)
            return _follow(node, "on_timeout", {"timed_out_at": to_iso(now)})

        return _follow(node, "on_complete", {"resumed_at": to_iso(now)})

    # ==================== Actions ====================

    async def _send_whatsapp(self, call: NodeCall) -> Outcome:
        return await self._send_message(call, "whatsapp")

    async def _send_email(self, call: NodeCall) -> Outcome:
        return await self._send_message(call, "email")

    async def _send_message(self, call: NodeCall, channel: str) -> Outcome:
        params: SendMessageParams | SendEmailParams = call.params
        variables = resolve_mapping(params.variables, call.context)
        email_subject = None
        if isinstance(params, SendEmailParams):
            email_subject = resolve_value(params.subject, call.context)

        result = await self.gateway.send_message(
            channel,
            params.template_key,
            variables,
            call.idempotency_key,
            call.subject,
            email_subject=email_subject,
        )
        patch = {
            "channel": channel,
            "template_key": params.template_key,
            "variables": variables,
            **result,
        }
        return _follow(call.node, "on_success", patch)

    async def _create_appointment_hold(self, call: NodeCall) -> Outcome:
        params: AppointmentHoldParams = call.params
        request = {
            "treatment_id": resolve_value(params.treatment_id, call.context),
            "professional_id": resolve_value(params.professional_id, call.context),
            "starts_at": resolve_value(params.starts_at, call.context),
            "duration_minutes": params.duration_minutes,
        }
        result = await self.gateway.create_appointment_hold(
            call.subject, request, call.idempotency_key
        )
        return _follow(call.node, "on_success", {**request, **result})

    async def _create_task(self, call: NodeCall) -> Outcome:
        params: CreateTaskParams = call.params
        request = {
            "title": resolve_value(params.title, call.context),
            "assignee_type": params.assignee_type,
            "assignee_id": params.assignee_id,
        }
        result = await self.gateway.create_task(call.subject, request, call.idempotency_key)
        return _follow(call.node, "on_success", {**request, **result})

    async def _change_status(self, call: NodeCall) -> Outcome:
        params: ChangeStatusParams = call.params
        request = {
            "new_status": resolve_value(params.new_status, call.context),
            "previous_status": resolve_value(params.previous_status, call.context),
            "agenda_icon": resolve_value(params.agenda_icon, call.context),
        }
        result = await self.gateway.change_status(call.subject, request, call.idempotency_key)
        return _follow(call.node, "on_success", {**request, **result})

    async def _api_call(self, call: NodeCall) -> Outcome:
        params: ApiCallParams = call.params
        request = {
            "method": params.method,
            "url": resolve_value(params.url, call.context),
            "body": resolve_mapping(params.body, call.context) if params.body is not None else None,
            "headers": resolve_mapping(params.headers, call.context),
        }
        result = await self.gateway.call_api(call.subject, request, call.idempotency_key)
        patch = {"method": request["method"], "url": request["url"], **result}
        return _follow(call.node, "on_success", patch)

    async def _write_note(self, call: NodeCall) -> Outcome:
        params: WriteNoteParams = call.params
        content = resolve_value(params.content, call.context)
        return _follow(call.node, "on_success", {"content": content, "written": True})

    # ==================== Waits ====================

    async def _fixed_delay(self, call: NodeCall) -> Outcome:
        params: FixedDelayParams = call.params
        wait_until = call.now + duration_to_timedelta(params.duration, params.unit)
        return Suspend(
            wait_until=wait_until,
            waiting_meta={"kind": "delay", "node_type": call.node.type},
            context_patch={"wait_until": to_iso(wait_until), "reason": "fixed_delay"},
        )

    async def _wait_until(self, call: NodeCall) -> Outcome:
        params: WaitUntilParams = call.params
        resolved = parse_datetime(resolve_value(params.datetime_expression, call.context))
        if resolved is None:
            logger.warning(
                f"Node {call.node_id}: '{params.datetime_expression}' did not resolve to a "
                "datetime, waking immediately"
            )
        # A past or unresolvable instant is due on the next sweep
        wait_until = max(resolved, call.now) if resolved else call.now
        return Suspend(
            wait_until=wait_until,
            waiting_meta={"kind": "delay", "node_type": call.node.type},
            context_patch={"wait_until": to_iso(wait_until), "reason": "wait_until"},
        )

    async def _wait_response(self, call: NodeCall) -> Outcome:
        params: WaitResponseParams = call.params
        timeout_at = call.now + duration_to_timedelta(
            params.timeout_duration, params.timeout_unit
        )
        return Suspend(
            wait_until=timeout_at,
            waiting_meta={
                "kind": "response",
                "node_type": call.node.type,
                "awaits": params.signal_type,
                "listens_to_node_id": params.listens_to_node_id,
            },
            context_patch={
                "waits_for_response": True,
                "listens_to_node_id": params.listens_to_node_id,
                "timeout_at": to_iso(timeout_at),
            },
        )

    # ==================== Conditions ====================

    async def _field_check(self, call: NodeCall) -> Outcome:
        params: FieldCheckParams = call.params
        left = get_by_path(call.context, params.field)
        right = resolve_value(params.value, call.context)
        decision = compare(left, params.operator, right)
        patch = {"decision": decision, "operator": params.operator.value}
        return _follow(call.node, "on_true" if decision else "on_false", patch)

    async def _response_check(self, call: NodeCall) -> Outcome:
        params: ResponseCheckParams = call.params
        response = get_by_path(
            call.context, f"outputs.{params.listens_to_node_id}.response_text"
        )
        has_response = bool(str(response or "").strip())
        patch = {"has_response": has_response}
        return _follow(call.node, "on_response" if has_response else "on_no_response", patch)

    # ==================== Terminals ====================

    async def _end_success(self, call: NodeCall) -> Outcome:
        params: EndSuccessParams = call.params
        return Terminate(status=ExecutionStatus.SUCCESS, reason=params.reason)

    async def _end_error(self, call: NodeCall) -> Outcome:
        params: EndErrorParams = call.params
        return Terminate(
            status=ExecutionStatus.ERROR,
            reason=params.reason,
            context_patch={"reason": params.reason},
        )
