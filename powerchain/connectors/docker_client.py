"""Async REST client for the Docker Engine API."""
import logging
from typing import Any

import httpx

from powerchain.config import settings

logger = logging.getLogger(__name__)

# Lifecycle calls return 304 when the container is already in the target state
NOT_MODIFIED = 304


class DockerApiError(Exception):
    """Unexpected response from the Docker Engine API."""

    def __init__(self, status_code: int, message: str, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class DockerClient:
    """Docker Engine API client pinned to one API version."""

    def __init__(
        self,
        api_url: str,
        api_version: str | None = None,
        verify_ssl: bool = True,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        url = api_url.rstrip("/")
        if "://" not in url:
            url = f"http://{url}"
        self.api_url = url
        self.base_url = f"{url}/{api_version or settings.connectors.docker_api_version}"
        self.verify_ssl = verify_ssl
        self.timeout = timeout or settings.connectors.docker_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                verify=self.verify_ssl,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "DockerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def ping(self) -> bool:
        client = await self._get_client()
        response = await client.get(f"{self.base_url}/_ping")
        return response.status_code == 200

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        client = await self._get_client()
        response = await client.get(f"{self.base_url}{path}", params=params)
        if response.status_code != 200:
            raise DockerApiError(
                response.status_code,
                f"Docker GET {path} failed ({response.status_code}): {response.text}",
                response.text,
            )
        return response.json()

    async def post_lifecycle(self, path: str) -> int:
        """POST a start/stop call; returns the status code on success."""
        client = await self._get_client()
        response = await client.post(f"{self.base_url}{path}")
        if not (200 <= response.status_code < 300 or response.status_code == NOT_MODIFIED):
            raise DockerApiError(
                response.status_code,
                f"Docker POST {path} failed ({response.status_code}): {response.text}",
                response.text,
            )
        return response.status_code
