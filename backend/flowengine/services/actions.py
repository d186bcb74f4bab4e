"""External action gateway.

Side-effecting nodes never talk to messaging, agenda or CRM services
directly; they go through an ActionGateway. Every call carries the
deterministic idempotency key of the node visit so a replayed step can be
deduplicated downstream.
"""

import logging
from typing import Any, Protocol

import httpx

from flowengine.errors import ExternalActionError
from flowengine.models import Subject

logger = logging.getLogger(__name__)


class ActionGateway(Protocol):
    """Capabilities the interpreter may invoke. Each returns a result payload."""

    async def send_message(
        self,
        channel: str,
        template_key: str,
        variables: dict[str, Any],
        idempotency_key: str,
        subject: Subject,
        email_subject: str | None = None,
    ) -> dict[str, Any]: ...

    async def create_appointment_hold(
        self,
        subject: Subject,
        params: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any]: ...

    async def create_task(
        self,
        subject: Subject,
        params: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any]: ...

    async def change_status(
        self,
        subject: Subject,
        params: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any]: ...

    async def call_api(
        self,
        subject: Subject,
        params: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any]: ...


class HttpActionGateway:
    """ActionGateway backed by the clinic backend's HTTP services."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        api_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the gateway.

        Args:
            base_url: Root URL of the messaging/agenda/CRM services
            timeout: Request timeout in seconds
            api_token: Optional bearer token for service-to-service auth
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_token = api_token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        action: str,
        method: str,
        url: str,
        idempotency_key: str,
        payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                url,
                json=payload,
                headers={**(headers or {}), "Idempotency-Key": idempotency_key},
            )
        except httpx.TimeoutException as e:
            raise ExternalActionError(f"{action} timed out", action=action) from e
        except httpx.TransportError as e:
            raise ExternalActionError(f"{action} transport error: {e}", action=action) from e

        if response.status_code >= 400:
            # 429 and 5xx are worth retrying; other client errors are not
            retriable = response.status_code == 429 or response.status_code >= 500
            logger.warning(
                f"{action} failed with HTTP {response.status_code} (key {idempotency_key})"
            )
            raise ExternalActionError(
                f"{action} failed with HTTP {response.status_code}: {response.text[:200]}",
                action=action,
                retriable=retriable,
            )
        return response

    async def _post(
        self,
        action: str,
        path: str,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any]:
        response = await self._send(action, "POST", path, idempotency_key, payload)
        if not response.content:
            return {}
        body = response.json()
        return body if isinstance(body, dict) else {"result": body}

    async def send_message(
        self,
        channel: str,
        template_key: str,
        variables: dict[str, Any],
        idempotency_key: str,
        subject: Subject,
        email_subject: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "clinic_id": subject.clinic_id,
            "subject_type": subject.subject_type.value,
            "subject_id": subject.subject_id,
            "template_key": template_key,
            "variables": variables,
        }
        if email_subject:
            payload["subject"] = email_subject
        return await self._post("send_message", f"/messages/{channel}", payload, idempotency_key)

    async def create_appointment_hold(
        self,
        subject: Subject,
        params: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any]:
        payload = {"clinic_id": subject.clinic_id, "subject_id": subject.subject_id, **params}
        return await self._post(
            "create_appointment_hold", "/appointments/holds", payload, idempotency_key
        )

    async def create_task(
        self,
        subject: Subject,
        params: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any]:
        payload = {
            "clinic_id": subject.clinic_id,
            "subject_type": subject.subject_type.value,
            "subject_id": subject.subject_id,
            **params,
        }
        return await self._post("create_task", "/tasks", payload, idempotency_key)

    async def change_status(
        self,
        subject: Subject,
        params: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any]:
        path = f"/{subject.subject_type.value}s/{subject.subject_id}/status"
        payload = {"clinic_id": subject.clinic_id, **params}
        return await self._post("change_status", path, payload, idempotency_key)

    async def call_api(
        self,
        subject: Subject,
        params: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Call an arbitrary endpoint; relative URLs go to the clinic backend."""
        response = await self._send(
            "call_api",
            params["method"],
            params["url"],
            idempotency_key,
            params.get("body"),
            params.get("headers"),
        )
        try:
            body = response.json() if response.content else None
        except ValueError:
            body = response.text
        return {
            "status_code": response.status_code,
            "response_body": body,
            "response_headers": dict(response.headers),
        }
