"""Renderer fleet API client."""

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

import httpx

from cast_orchestrator.config import normalize_base_url
from cast_orchestrator.domain.errors import (
    CapacityExceeded,
    InvalidTarget,
    RendererTimeout,
    RendererUnreachable,
)
from cast_orchestrator.domain.sessions import RendererHealth

_CAPACITY_STATUSES = {429, 503}
_INVALID_TARGET_STATUSES = {400, 422}
_GONE_STATUSES = {404, 410}


class RendererClient(Protocol):
    """Interface for renderer fleet interactions."""

    async def provision(self, session_id: UUID, game_url: str) -> str:
        """Request a new renderer instance and return its id."""

    async def check_health(self, instance_id: str) -> RendererHealth:
        """Return the current health of a renderer instance."""

    async def terminate(self, instance_id: str) -> None:
        """Tear down a renderer instance; unknown instances are not an error."""


@dataclass
class HttpxRendererClient(RendererClient):
    """HTTPX-backed renderer client. Calls are never retried here."""

    base_url: str
    http_client: httpx.AsyncClient
    api_key: str | None = None
    timeout: float = 10.0

    @classmethod
    def create(
        cls, base_url: str, api_key: str | None = None, timeout: float = 10.0
    ) -> "HttpxRendererClient":
        """Create a renderer client with a managed httpx session."""
        return cls(
            base_url=normalize_base_url(base_url),
            http_client=httpx.AsyncClient(),
            api_key=api_key,
            timeout=timeout,
        )

    async def provision(self, session_id: UUID, game_url: str) -> str:
        """Provision a browser instance pointed at the game URL."""
        response = await self._send(
            "POST",
            "/instances",
            json={"sessionId": str(session_id), "url": game_url},
        )
        if response.status_code in _CAPACITY_STATUSES:
            raise CapacityExceeded(_error_detail(response, "renderer fleet is full"))
        if response.status_code in _INVALID_TARGET_STATUSES:
            raise InvalidTarget(_error_detail(response, "game URL rejected"))
        _raise_for_status(response)
        instance_id = _json_object(response).get("instanceId")
        if not instance_id:
            raise RendererUnreachable("Renderer response did not include instanceId")
        return str(instance_id)

    async def check_health(self, instance_id: str) -> RendererHealth:
        """Fetch the health of an instance."""
        response = await self._send("GET", f"/instances/{instance_id}/health")
        if response.status_code in _GONE_STATUSES:
            return RendererHealth.FAILED
        _raise_for_status(response)
        raw_status = _json_object(response).get("status")
        try:
            return RendererHealth(raw_status)
        except ValueError as exc:
            raise RendererUnreachable(
                f"Unexpected renderer health status: {raw_status!r}"
            ) from exc

    async def terminate(self, instance_id: str) -> None:
        """Terminate an instance; already-gone instances count as success."""
        response = await self._send("DELETE", f"/instances/{instance_id}")
        if response.status_code in _GONE_STATUSES:
            return
        _raise_for_status(response)

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.http_client.aclose()

    async def _send(
        self, method: str, path: str, json: dict[str, object] | None = None
    ) -> httpx.Response:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            return await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise RendererTimeout(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise RendererUnreachable(f"{method} {path} failed: {exc}") from exc


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    raise RendererUnreachable(
        f"Renderer returned HTTP {response.status_code} for "
        f"{response.request.method} {response.request.url.path}"
    )


def _json_object(response: httpx.Response) -> dict[str, object]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise RendererUnreachable(
            f"Renderer returned a non-JSON body for "
            f"{response.request.method} {response.request.url.path}"
        ) from exc
    if not isinstance(payload, dict):
        raise RendererUnreachable(
            f"Renderer returned {type(payload).__name__} instead of an object for "
            f"{response.request.method} {response.request.url.path}"
        )
    return payload


def _error_detail(response: httpx.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        return fallback
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("detail")
        if detail:
            return str(detail)
    return fallback
