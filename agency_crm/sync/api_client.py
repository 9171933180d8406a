"""
HTTP client used by the sync queue.

Thin wrapper over `httpx.AsyncClient` that speaks the backend's JSON
envelope and folds every transport problem into `SyncTransportError`,
which the queue treats as "retry later".
"""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class SyncTransportError(Exception):
    """Network failure or non-2xx response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncResponseError(Exception):
    """The server answered 2xx but the body is not the expected JSON envelope."""


class SyncApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        access_token: str | None = None,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.access_token = access_token

    def set_access_token(self, token: str | None) -> None:
        self.access_token = token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        try:
            response = await self._client.request(method, path, params=params, json=json, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SyncTransportError(
                f"{method} {path} failed with {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise SyncTransportError(f"{method} {path} failed: {exc}") from exc

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise SyncResponseError(f"{method} {path} returned non-JSON body") from exc
        if not isinstance(body, dict):
            raise SyncResponseError(f"{method} {path} returned {type(body).__name__}, expected object")
        return body

    async def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, data: Any) -> dict[str, Any]:
        return await self._request("POST", path, json=data)

    async def put(self, path: str, data: Any) -> dict[str, Any]:
        return await self._request("PUT", path, json=data)

    async def delete(self, path: str) -> dict[str, Any]:
        return await self._request("DELETE", path)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
