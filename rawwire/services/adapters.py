from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from rawwire.core.errors import AdapterUnavailable
from rawwire.schemas.pipelines import ExecutionStatus, TriggerResult

logger = logging.getLogger(__name__)

PERMANENT_STATUS_CODES = {401, 403}


@dataclass(slots=True)
class GenerationResult:
    success: bool
    content: str | None = None
    error: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    permanent: bool = False


class GenerationAdapter(Protocol):
    async def generate(self, prompt: str, options: dict[str, Any] | None = None) -> GenerationResult: ...

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        options: dict[str, Any] | None = None,
    ) -> GenerationResult: ...


class RemoteSchedulerAdapter(Protocol):
    async def trigger(self, payload: dict[str, Any], *, async_: bool = False) -> TriggerResult: ...

    async def get_status(self, execution_id: str) -> ExecutionStatus: ...

    async def cancel(self, execution_id: str) -> bool: ...


class HttpGenerationAdapter:
    """Posts generation requests as JSON to a single endpoint.

    The endpoint receives ``{"mode", "model", "options", ...prompts}`` and answers
    ``{"content", "usage"}``. Failures never raise; they come back as
    ``GenerationResult(success=False)`` with ``permanent`` set for credential errors.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        api_key: str | None = None,
        model: str | None = None,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    async def generate(self, prompt: str, options: dict[str, Any] | None = None) -> GenerationResult:
        return await self._post({"mode": "generate", "prompt": prompt, "options": options or {}})

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        options: dict[str, Any] | None = None,
    ) -> GenerationResult:
        return await self._post(
            {
                "mode": "chat",
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "options": options or {},
            }
        )

    async def _post(self, payload: dict[str, Any]) -> GenerationResult:
        if self.model:
            payload["model"] = self.model
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(self.endpoint, json=payload, headers=self.headers)
        except httpx.HTTPError as exc:
            logger.warning("generation request failed endpoint=%s error=%s", self.endpoint, exc)
            return GenerationResult(success=False, error=f"transport error: {exc}")

        if response.status_code >= 400:
            return GenerationResult(
                success=False,
                error=f"generation endpoint returned HTTP {response.status_code}",
                permanent=response.status_code in PERMANENT_STATUS_CODES,
            )

        try:
            body = response.json()
        except ValueError:
            return GenerationResult(success=False, error="generation endpoint returned non-JSON body")
        if not isinstance(body, dict) or not isinstance(body.get("content"), str):
            return GenerationResult(success=False, error="generation endpoint response is missing content")

        usage = body.get("usage")
        return GenerationResult(success=True, content=body["content"], usage=usage if isinstance(usage, dict) else {})


class RemoteSchedulerClient:
    """Delegates pipeline runs to another host exposing the pipeline routes."""

    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        pipeline: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.pipeline = pipeline
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }

    async def trigger(self, payload: dict[str, Any], *, async_: bool = False) -> TriggerResult:
        response = await self._request(
            "POST",
            f"/pipelines/{self.pipeline}/trigger",
            json={"payload": payload, "async": async_},
        )
        response.raise_for_status()
        return TriggerResult.model_validate(response.json())

    async def get_status(self, execution_id: str) -> ExecutionStatus:
        response = await self._request("GET", f"/pipelines/executions/{execution_id}")
        if response.status_code == 404:
            return ExecutionStatus(execution_id=execution_id, status="unknown")
        response.raise_for_status()
        return ExecutionStatus.model_validate(response.json())

    async def cancel(self, execution_id: str) -> bool:
        response = await self._request("POST", f"/pipelines/executions/{execution_id}/cancel")
        if response.status_code in {404, 409}:
            return False
        response.raise_for_status()
        return bool(response.json().get("cancelled", False))

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.request(method, f"{self.base_url}{path}", headers=self.headers, **kwargs)
        except httpx.HTTPError as exc:
            raise AdapterUnavailable(f"remote scheduler unreachable: {exc}") from exc
        if response.status_code >= 500:
            raise AdapterUnavailable(f"remote scheduler returned HTTP {response.status_code}")
        if response.status_code in PERMANENT_STATUS_CODES:
            raise AdapterUnavailable(
                f"remote scheduler rejected credentials with HTTP {response.status_code}",
                permanent=True,
            )
        return response
