"""Async REST client for the Proxmox VE API."""
import logging
from typing import Any

import httpx

from powerchain.config import settings

logger = logging.getLogger(__name__)


class ProxmoxApiError(Exception):
    """Non-success response from the Proxmox API."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(message)


def normalize_proxmox_url(api_url: str) -> str:
    """Return ``https://host:port`` for a stored API URL or bare host."""
    url = api_url.rstrip("/")
    if "://" not in url:
        url = f"https://{url}"
    parsed = httpx.URL(url)
    if parsed.port is None:
        url = f"{parsed.scheme}://{parsed.host}:{settings.connectors.proxmox_default_port}"
    return url.removesuffix("/api2/json")


class ProxmoxClient:
    """Proxmox API client supporting API-token and ticket authentication.

    Token auth sends a static ``Authorization`` header. Password auth logs in
    once through ``/access/ticket`` and reuses the ticket for the client's
    lifetime: the cookie goes on every call, the CSRF header only on
    mutating calls.
    """

    def __init__(
        self,
        api_url: str,
        token_id: str | None = None,
        token_secret: str | None = None,
        username: str | None = None,
        password: str | None = None,
        verify_ssl: bool = False,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = f"{normalize_proxmox_url(api_url)}/api2/json"
        self.token_id = token_id
        self.token_secret = token_secret
        self.username = username
        self.password = password
        self.verify_ssl = verify_ssl
        self.timeout = timeout or settings.connectors.proxmox_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ticket: str | None = None
        self._csrf_token: str | None = None

    @property
    def uses_token(self) -> bool:
        return bool(self.token_id)

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

    async def __aenter__(self) -> "ProxmoxClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _login(self) -> None:
        client = await self._get_client()
        response = await client.post(
            f"{self.base_url}/access/ticket",
            data={"username": self.username or "", "password": self.password or ""},
        )
        if response.status_code != 200:
            raise ProxmoxApiError(
                response.status_code,
                f"Proxmox authentication failed ({response.status_code})",
            )
        data = response.json()["data"]
        self._ticket = data["ticket"]
        self._csrf_token = data["CSRFPreventionToken"]
        logger.debug(f"Obtained Proxmox ticket for {self.username}")

    async def _headers(self, method: str) -> dict[str, str]:
        if self.uses_token:
            return {"Authorization": f"PVEAPIToken={self.token_id}={self.token_secret}"}

        if self._ticket is None:
            await self._login()

        # Sent as a header so a shared client never keeps the ticket in its jar
        headers = {"Cookie": f"PVEAuthCookie={self._ticket}"}
        if method != "GET":
            headers["CSRFPreventionToken"] = self._csrf_token or ""
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        headers = await self._headers(method)
        client = await self._get_client()
        response = await client.request(
            method,
            f"{self.base_url}{path}",
            params=params,
            data=data,
            headers=headers,
        )
        if response.status_code != 200:
            raise ProxmoxApiError(
                response.status_code,
                f"Proxmox {method} {path} failed ({response.status_code}): {response.text}",
            )
        return response.json().get("data")

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, data: dict[str, Any] | None = None) -> Any:
        return await self._request("POST", path, data=data)
