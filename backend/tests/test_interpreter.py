"""Tests for node evaluation."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeGateway, node
from flowengine.errors import ExternalActionError, UnsupportedNodeTypeError
from flowengine.models import ExecutionStatus, Subject, SubjectType
from flowengine.services.interpreter import (
    Advance,
    Fail,
    NodeInterpreter,
    ResumeMode,
    Suspend,
    Terminate,
    merge_node_output,
)

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
SUBJECT = Subject(clinic_id=7, subject_type=SubjectType.PATIENT, subject_id=55)
CONTEXT = {
    "trigger": {"type": "appointment.missed", "data": {"name": "Luis", "visits": 4}},
    "outputs": {"wait": {"response_text": "sí, reprogramar"}},
}


async def evaluate(interpreter, n, context=None, key="flow:e1:n:0"):
    return await interpreter.evaluate(
        "v2", "n", n, context if context is not None else CONTEXT, SUBJECT, key, NOW
    )


@pytest.fixture
def interpreter(gateway):
    return NodeInterpreter(gateway, action_timeout_seconds=0.05)


class TestActions:
    """Tests for side-effecting nodes."""

    @pytest.mark.asyncio
    async def test_send_whatsapp(self, interpreter, gateway: FakeGateway):
        n = node(
            "action/send_whatsapp",
            {"template_key": "missed", "variables": {"name": "{{ trigger.data.name }}"}},
            on_success="next",
        )
        outcome = await evaluate(interpreter, n)

        assert isinstance(outcome, Advance)
        assert outcome.next_node_id == "next"
        assert outcome.context_patch["channel"] == "whatsapp"
        assert outcome.context_patch["variables"] == {"name": "Luis"}
        assert outcome.context_patch["external_id"] == "send_message-1"
        assert gateway.calls[0]["idempotency_key"] == "flow:e1:n:0"

    @pytest.mark.asyncio
    async def test_send_email_uses_email_channel(self, interpreter, gateway: FakeGateway):
        n = node("action/send_email", {"template_key": "reminder", "subject": "Tu cita"})
        outcome = await evaluate(interpreter, n)

        assert gateway.calls[0]["channel"] == "email"
        # No on_success wired: the branch ends the flow
        assert isinstance(outcome, Terminate)
        assert outcome.status == ExecutionStatus.SUCCESS
        assert outcome.reason == "end_of_branch"

    @pytest.mark.asyncio
    async def test_create_task_and_status_change(self, interpreter, gateway: FakeGateway):
        await evaluate(interpreter, node("action/create_task", {"title": "Call back"}))
        await evaluate(
            interpreter,
            node("action/change_status", {"new_status": "contacted", "previous_status": "new"}),
        )
        await evaluate(
            interpreter,
            node("action/create_appointment_hold", {"treatment_id": 3, "duration_minutes": 45}),
        )

        assert [c["action"] for c in gateway.calls] == [
            "create_task",
            "change_status",
            "create_appointment_hold",
        ]
        assert gateway.calls[1]["params"]["new_status"] == "contacted"
        assert gateway.calls[2]["params"]["duration_minutes"] == 45

    @pytest.mark.asyncio
    async def test_appointment_hold_resolves_references(self, interpreter, gateway: FakeGateway):
        context = {"trigger": {"data": {"treatment_id": 12, "doctor": 4}}}
        n = node(
            "action/create_appointment_hold",
            {
                "treatment_id": "{{ trigger.data.treatment_id }}",
                "professional_id": "context.trigger.data.doctor",
            },
            on_success="next",
        )
        outcome = await evaluate(interpreter, n, context)

        assert outcome.next_node_id == "next"
        assert gateway.calls[0]["params"]["treatment_id"] == 12
        assert gateway.calls[0]["params"]["professional_id"] == 4

    @pytest.mark.asyncio
    async def test_api_call(self, interpreter, gateway: FakeGateway):
        n = node(
            "action/api_call",
            {
                "method": "post",
                "url": "https://crm.example.com/hooks/lead",
                "body": {"name": "{{ trigger.data.name }}", "source": "flow"},
                "headers": {"X-Clinic": "7"},
            },
            on_success="next",
        )
        outcome = await evaluate(interpreter, n)

        assert isinstance(outcome, Advance)
        assert outcome.context_patch["status_code"] == 202
        assert outcome.context_patch["url"] == "https://crm.example.com/hooks/lead"
        call = gateway.calls[0]
        assert call["action"] == "call_api"
        assert call["idempotency_key"] == "flow:e1:n:0"
        assert call["params"] == {
            "method": "POST",
            "url": "https://crm.example.com/hooks/lead",
            "body": {"name": "Luis", "source": "flow"},
            "headers": {"X-Clinic": "7"},
        }

    @pytest.mark.asyncio
    async def test_gateway_error_becomes_fail(self, interpreter, gateway: FakeGateway):
        gateway.fail_next(retriable=False)
        outcome = await evaluate(interpreter, node("action/create_task", {"title": "x"}))

        assert isinstance(outcome, Fail)
        assert isinstance(outcome.error, ExternalActionError)
        assert outcome.error.retriable is False

    @pytest.mark.asyncio
    async def test_timeout_becomes_retriable_fail(self, interpreter, gateway: FakeGateway):
        gateway.hang = True
        outcome = await evaluate(interpreter, node("action/send_whatsapp", {"template_key": "x"}))

        assert isinstance(outcome, Fail)
        assert outcome.error.retriable is True
        assert "timed out" in str(outcome.error)

    @pytest.mark.asyncio
    async def test_write_note_has_no_side_effect(self, interpreter, gateway: FakeGateway):
        outcome = await evaluate(
            interpreter,
            node("action/write_note", {"content": "{{ trigger.data.name }}"}, on_success="next"),
        )
        assert isinstance(outcome, Advance)
        assert outcome.context_patch["content"] == "Luis"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_unknown_type_raises(self, interpreter):
        with pytest.raises(UnsupportedNodeTypeError):
            await evaluate(interpreter, node("action/fax"))


class TestWaits:
    """Tests for suspending nodes."""

    @pytest.mark.asyncio
    async def test_fixed_delay(self, interpreter):
        outcome = await evaluate(interpreter, node("delay/fixed", {"duration": 2, "unit": "hours"}))
        assert isinstance(outcome, Suspend)
        assert outcome.wait_until == NOW + timedelta(hours=2)
        assert outcome.waiting_meta["kind"] == "delay"

    @pytest.mark.asyncio
    async def test_wait_until_future(self, interpreter):
        context = {"trigger": {"data": {"appointment_at": "2026-01-06T10:00:00Z"}}}
        outcome = await evaluate(
            interpreter,
            node("delay/wait_until", {"datetime_expression": "{{ trigger.data.appointment_at }}"}),
            context,
        )
        assert outcome.wait_until == datetime(2026, 1, 6, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_wait_until_past_or_missing_is_due_now(self, interpreter):
        past = await evaluate(
            interpreter,
            node("delay/wait_until", {"datetime_expression": "2020-01-01T00:00:00Z"}),
        )
        missing = await evaluate(
            interpreter,
            node("delay/wait_until", {"datetime_expression": "{{ trigger.data.nothing }}"}),
        )
        assert past.wait_until == NOW
        assert missing.wait_until == NOW

    @pytest.mark.asyncio
    async def test_wait_response_sets_timeout_ceiling(self, interpreter):
        outcome = await evaluate(
            interpreter,
            node(
                "delay/wait_response",
                {"timeout_duration": 30, "timeout_unit": "minutes", "listens_to_node_id": "send"},
            ),
        )
        assert isinstance(outcome, Suspend)
        assert outcome.wait_until == NOW + timedelta(minutes=30)
        assert outcome.waiting_meta == {
            "kind": "response",
            "node_type": "delay/wait_response",
            "awaits": "inbound_message",
            "listens_to_node_id": "send",
        }


class TestResume:
    """Tests for waking wait nodes."""

    def test_response_signal_follows_on_response(self, interpreter):
        n = node("delay/wait_response", {}, on_response="yes", on_timeout="no")
        outcome = interpreter.resume(n, ResumeMode.SIGNAL, {"text": "hola"}, NOW)
        assert outcome.next_node_id == "yes"
        assert outcome.context_patch["response_text"] == "hola"

    def test_timeout_follows_on_timeout(self, interpreter):
        n = node("delay/wait_response", {}, on_response="yes", on_timeout="no")
        outcome = interpreter.resume(n, ResumeMode.TIMEOUT, None, NOW)
        assert outcome.next_node_id == "no"
        assert "timed_out_at" in outcome.context_patch

    def test_delay_follows_on_complete(self, interpreter):
        n = node("delay/fixed", {"duration": 1}, on_complete="after")
        assert interpreter.resume(n, ResumeMode.TIMEOUT, None, NOW).next_node_id == "after"

    def test_unwired_wake_ends_flow(self, interpreter):
        outcome = interpreter.resume(node("delay/fixed", {"duration": 1}), ResumeMode.TIMEOUT, None, NOW)
        assert isinstance(outcome, Terminate)
        assert outcome.status == ExecutionStatus.SUCCESS


class TestConditions:
    """Tests for branching nodes."""

    @pytest.mark.asyncio
    async def test_field_check(self, interpreter):
        n = node(
            "condition/field_check",
            {"field": "trigger.data.visits", "operator": "greater_than", "value": 3},
            on_true="loyal",
            on_false="new",
        )
        outcome = await evaluate(interpreter, n)
        assert outcome.next_node_id == "loyal"
        assert outcome.context_patch["decision"] is True

    @pytest.mark.asyncio
    async def test_field_check_value_from_context(self, interpreter):
        n = node(
            "condition/field_check",
            {"field": "trigger.type", "operator": "equals", "value": "{{ trigger.type }}"},
            on_true="same",
            on_false="different",
        )
        assert (await evaluate(interpreter, n)).next_node_id == "same"

    @pytest.mark.asyncio
    async def test_field_check_accepts_template_path(self, interpreter):
        n = node(
            "condition/field_check",
            {"field": "{{ trigger.data.name }}", "operator": "equals", "value": "Luis"},
            on_true="known",
            on_false="unknown",
        )
        outcome = await evaluate(interpreter, n)
        assert outcome.next_node_id == "known"
        assert outcome.context_patch["decision"] is True

    @pytest.mark.asyncio
    async def test_response_check(self, interpreter):
        n = node(
            "condition/response_check",
            {"listens_to_node_id": "wait"},
            on_response="replied",
            on_no_response="silent",
        )
        assert (await evaluate(interpreter, n)).next_node_id == "replied"
        assert (await evaluate(interpreter, n, {"outputs": {}})).next_node_id == "silent"


class TestTerminals:
    """Tests for end nodes."""

    @pytest.mark.asyncio
    async def test_end_success(self, interpreter):
        outcome = await evaluate(interpreter, node("end/success"))
        assert outcome == Terminate(status=ExecutionStatus.SUCCESS, reason=None)

    @pytest.mark.asyncio
    async def test_end_error(self, interpreter):
        outcome = await evaluate(interpreter, node("end/error", {"reason": "no_consent"}))
        assert outcome.status == ExecutionStatus.ERROR
        assert outcome.reason == "no_consent"


class TestMergeNodeOutput:
    """Tests for merging node outputs into the context."""

    def test_merges_without_mutating(self):
        before = {"outputs": {"a": {"x": 1}}}
        after = merge_node_output(before, "a", {"y": 2}, "success", NOW)

        assert before == {"outputs": {"a": {"x": 1}}}
        assert after["outputs"]["a"]["x"] == 1
        assert after["outputs"]["a"]["y"] == 2
        assert after["outputs"]["a"]["status"] == "success"
        assert after["outputs"]["a"]["at"].startswith("2026-01-05T09:00:00")

    def test_creates_outputs(self):
        after = merge_node_output({}, "b", {}, "waiting", NOW)
        assert after["outputs"]["b"]["status"] == "waiting"
