"""httpx clients for the external collaborators.

Status mapping: network errors, timeouts, 408/425/429 and 5xx are transient;
every other 4xx is permanent.  The idempotency key travels in the
``Idempotency-Key`` header.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from cadence.config import CadenceConfig
from cadence.exceptions import PermanentServiceError, TransientServiceError
from cadence.services.base import Collaborators

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 425, 429}


class _HttpService:
    """Shared request/response handling for one collaborator base URL."""

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._client = client  # reused when supplied; otherwise one client per call

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        url = f"{self._base_url}{path}"
        kwargs: dict[str, Any] = {"headers": headers}
        if json is not None:
            kwargs["json"] = json
        if params:
            kwargs["params"] = params

        try:
            if self._client is not None:
                response = await self._client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise TransientServiceError(
                f"{self.service_name} unreachable: {exc}", service=self.service_name
            ) from exc

        status = response.status_code
        if status in _TRANSIENT_STATUS or status >= 500:
            raise TransientServiceError(
                f"{self.service_name} returned {status}",
                service=self.service_name,
                status_code=status,
            )
        if status >= 400:
            raise PermanentServiceError(
                f"{self.service_name} rejected request ({status}): {response.text[:200]}",
                service=self.service_name,
                status_code=status,
            )
        if not response.content:
            return None
        return response.json()


class HttpTaskService(_HttpService):
    service_name = "task_service"

    async def create(self, fields: dict[str, Any], idempotency_key: str) -> str:
        data = await self._request("POST", "/tasks", json=fields, idempotency_key=idempotency_key)
        if not isinstance(data, dict) or "id" not in data:
            raise PermanentServiceError("task_service response missing 'id'", service=self.service_name)
        return str(data["id"])


class HttpEmailService(_HttpService):
    service_name = "email_service"

    async def send(self, to: str, subject: str, body: str, idempotency_key: str) -> None:
        await self._request(
            "POST",
            "/emails",
            json={"to": to, "subject": subject, "body": body},
            idempotency_key=idempotency_key,
        )


class HttpEntityService(_HttpService):
    service_name = "entity_service"

    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/entities/{entity_type}/{entity_id}")
        return data or {}

    async def update_field(
        self,
        entity_type: str,
        entity_id: str,
        field: str,
        value: Any,
        idempotency_key: str,
    ) -> None:
        await self._request(
            "PATCH",
            f"/entities/{entity_type}/{entity_id}",
            json={field: value},
            idempotency_key=idempotency_key,
        )

    async def find_due(
        self, entity_type: str, date_field: str, due_before: datetime
    ) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/entities/{entity_type}/due",
            params={"date_field": date_field, "due_before": due_before.isoformat()},
        )
        if isinstance(data, dict):
            data = data.get("items", [])
        return list(data or [])


class HttpInteractionService(_HttpService):
    service_name = "interaction_service"

    async def log(self, fields: dict[str, Any], idempotency_key: str) -> Optional[str]:
        data = await self._request(
            "POST", "/interactions", json=fields, idempotency_key=idempotency_key
        )
        if isinstance(data, dict) and "id" in data:
            return str(data["id"])
        return None


def build_http_collaborators(
    config: CadenceConfig,
    client: Optional[httpx.AsyncClient] = None,
) -> Collaborators:
    """Wire all four collaborators from the service URLs in *config*."""
    common = {
        "api_key": config.service_api_key,
        "timeout_seconds": config.service_timeout_seconds,
        "client": client,
    }
    return Collaborators(
        tasks=HttpTaskService(config.task_service_url, **common),
        email=HttpEmailService(config.email_service_url, **common),
        entities=HttpEntityService(config.entity_service_url, **common),
        interactions=HttpInteractionService(config.interaction_service_url, **common),
    )
