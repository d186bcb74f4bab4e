"""Tests for the HTTP action gateway."""

import json

import httpx
import pytest

from flowengine.errors import ExternalActionError
from flowengine.models import Subject, SubjectType
from flowengine.services.actions import HttpActionGateway

SUBJECT = Subject(clinic_id=7, subject_type=SubjectType.LEAD, subject_id=1001)


def make_gateway(handler, api_token=None) -> HttpActionGateway:
    return HttpActionGateway(
        "https://clinic.example.com/api/",
        timeout=1.0,
        api_token=api_token,
        transport=httpx.MockTransport(handler),
    )


class TestHttpActionGateway:
    """Tests for HttpActionGateway."""

    @pytest.mark.asyncio
    async def test_send_message(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"message_id": "m-1"})

        gateway = make_gateway(handler, api_token="secret")
        result = await gateway.send_message(
            "whatsapp", "welcome", {"name": "Ana"}, "flow:e1:send:0", SUBJECT
        )
        await gateway.close()

        assert result == {"message_id": "m-1"}
        request = seen[0]
        assert request.url.path == "/api/messages/whatsapp"
        assert request.headers["Idempotency-Key"] == "flow:e1:send:0"
        assert request.headers["Authorization"] == "Bearer secret"
        assert json.loads(request.content) == {
            "clinic_id": 7,
            "subject_type": "lead",
            "subject_id": 1001,
            "template_key": "welcome",
            "variables": {"name": "Ana"},
        }

    @pytest.mark.asyncio
    async def test_email_subject_is_sent(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(202)

        gateway = make_gateway(handler)
        result = await gateway.send_message(
            "email", "reminder", {}, "k", SUBJECT, email_subject="Tu cita"
        )
        await gateway.close()

        assert result == {}
        assert bodies[0]["subject"] == "Tu cita"

    @pytest.mark.asyncio
    async def test_change_status_path(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json=["ok"])

        gateway = make_gateway(handler)
        result = await gateway.change_status(SUBJECT, {"new_status": "contacted"}, "k")
        await gateway.close()

        assert paths == ["/api/leads/1001/status"]
        assert result == {"result": ["ok"]}

    @pytest.mark.asyncio
    async def test_client_error_is_not_retriable(self):
        gateway = make_gateway(lambda request: httpx.Response(422, text="bad template"))
        with pytest.raises(ExternalActionError) as exc_info:
            await gateway.create_task(SUBJECT, {"title": "Call"}, "k")
        await gateway.close()

        assert exc_info.value.retriable is False
        assert exc_info.value.action == "create_task"
        assert "422" in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_server_error_is_retriable(self, status_code):
        gateway = make_gateway(lambda request: httpx.Response(status_code))
        with pytest.raises(ExternalActionError) as exc_info:
            await gateway.create_appointment_hold(SUBJECT, {}, "k")
        await gateway.close()

        assert exc_info.value.retriable is True

    @pytest.mark.asyncio
    async def test_transport_error_is_retriable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        gateway = make_gateway(handler)
        with pytest.raises(ExternalActionError) as exc_info:
            await gateway.create_task(SUBJECT, {"title": "Call"}, "k")
        await gateway.close()

        assert exc_info.value.retriable is True

    @pytest.mark.asyncio
    async def test_call_api(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": 9}, headers={"X-Request-Id": "r-1"})

        gateway = make_gateway(handler)
        result = await gateway.call_api(
            SUBJECT,
            {
                "method": "PUT",
                "url": "https://crm.example.com/leads/1001",
                "body": {"stage": "contacted"},
                "headers": {"X-Clinic": "7"},
            },
            "flow:e1:hook:0",
        )
        await gateway.close()

        request = seen[0]
        assert request.method == "PUT"
        assert str(request.url) == "https://crm.example.com/leads/1001"
        assert request.headers["X-Clinic"] == "7"
        assert request.headers["Idempotency-Key"] == "flow:e1:hook:0"
        assert json.loads(request.content) == {"stage": "contacted"}
        assert result["status_code"] == 201
        assert result["response_body"] == {"id": 9}
        assert result["response_headers"]["x-request-id"] == "r-1"

    @pytest.mark.asyncio
    async def test_call_api_relative_path_and_text_body(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="accepted")

        gateway = make_gateway(handler)
        result = await gateway.call_api(SUBJECT, {"method": "GET", "url": "/ping"}, "k")
        await gateway.close()

        assert seen[0].url.path == "/api/ping"
        assert seen[0].content == b""
        assert result["response_body"] == "accepted"

    @pytest.mark.asyncio
    async def test_call_api_server_error_is_retriable(self):
        gateway = make_gateway(lambda request: httpx.Response(502))
        with pytest.raises(ExternalActionError) as exc_info:
            await gateway.call_api(SUBJECT, {"method": "POST", "url": "/hooks"}, "k")
        await gateway.close()

        assert exc_info.value.action == "call_api"
        assert exc_info.value.retriable is True
