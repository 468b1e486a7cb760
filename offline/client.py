"""HTTP access to the FoodJourney API.

Connectivity-class failures (transport errors, timeouts, 5xx) surface as
`ServerUnavailableError`; 4xx responses as `ServerRejectedError`. Callers in
this package treat the first as "offline" and the second as a real error.
"""
import logging
from typing import Any

import httpx

from offline.models import Entity


logger = logging.getLogger(__name__)


REQUEST_TIMEOUT = 15
HEALTH_TIMEOUT = 5


class ServerUnavailableError(Exception):
    pass


class ServerRejectedError(Exception):
    def __init__(self, status_code: int, body: Any = None) -> None:
        super().__init__(f"Server rejected request with {status_code}: {body}")
        self.status_code = status_code
        self.body = body


def api_client_factory(
    base_url: str,
    *,
    timeout: float = REQUEST_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url,
        headers={"Content-Type": "application/json"},
        timeout=timeout,
        transport=transport,
    )


def response_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class ApiClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        health_timeout: float = HEALTH_TIMEOUT,
    ) -> None:
        self._client = client
        self.health_timeout = health_timeout

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Send a request, mapping connectivity failures to one exception.

        Returns the response for any status below 500; the caller decides what
        a 4xx means.
        """
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = await self._client.request(
                method, url, json=json, params=params, **kwargs
            )
        except httpx.TransportError as e:
            raise ServerUnavailableError(f"{method} {url}: {e!r}") from e
        if resp.status_code >= 500:
            raise ServerUnavailableError(f"{method} {url}: {resp.status_code}")
        return resp

    async def send(self, method: str, url: str, *, json: Any = None) -> httpx.Response:
        """Send a write, raising `ServerRejectedError` unless it is a 2xx."""
        resp = await self.request(method, url, json=json)
        if not resp.is_success:
            raise ServerRejectedError(resp.status_code, response_body(resp))
        return resp

    async def write(self, method: str, url: str, *, json: Any = None) -> Any:
        """Send a write and return the decoded body of the 2xx response."""
        return response_body(await self.send(method, url, json=json))

    async def health(self) -> bool:
        try:
            resp = await self.request(
                "GET", "/api/health", timeout=self.health_timeout
            )
        except ServerUnavailableError as e:
            logger.debug("Health check failed: %s", e)
            return False
        return resp.is_success

    async def _get_json(self, url: str, **kwargs: Any) -> dict[str, Any]:
        resp = await self.request("GET", url, **kwargs)
        if not resp.is_success:
            raise ServerUnavailableError(f"GET {url}: {resp.status_code}")
        data = response_body(resp)
        if not isinstance(data, dict):
            raise ServerUnavailableError(f"GET {url}: unexpected body {data!r}")
        return data

    async def cache_snapshot(self) -> dict[str, Any]:
        return await self._get_json("/api/cache/snapshot")

    async def itineraries(self, user_id: str) -> list[Entity]:
        data = await self._get_json(f"/api/itineraries/{user_id}")
        return data.get("itineraries") or []

    async def favorites(self, user_id: str) -> list[Entity]:
        data = await self._get_json(f"/api/favorites/{user_id}")
        return data.get("favorites") or []

    async def reservations(self, user_id: str) -> list[Entity]:
        data = await self._get_json(f"/api/reservations/{user_id}")
        return data.get("reservations") or []

    async def budget(self, user_id: str, *, days: int = 30) -> dict[str, Any]:
        return await self._get_json(f"/api/budget/{user_id}", params={"days": days})

    async def close(self) -> None:
        await self._client.aclose()
