# ABOUTME: Async client for Vault's KV version 2 secrets engine
# ABOUTME: Token-authenticated httpx client with tenacity retries and typed errors

"""
Vault KV v2 client.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The Secret Synchronizer writes service secrets into Vault and optionally
reads them back to verify. Only two KV v2 endpoints are needed:

    POST /v1/{mount}/data/{path}   body {"data": {...}}  -> write a new version
    GET  /v1/{mount}/data/{path}                         -> read latest version

Authentication uses the X-Vault-Token header; Vault Enterprise namespaces
add X-Vault-Namespace.

Error responses look like:
    {"errors": ["permission denied"]}

=============================================================================
LIFECYCLE
=============================================================================

Same shape as ArgocdClient:

    async with VaultClient(settings.vault) as vault:
        await vault.kv_put("craftista/dev/frontend/config", {"log_level": "info"})

Writes are whole-record overwrites: KV v2 stores the posted mapping as the
new version, fields not in the body are gone from that version.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from gitops_promoter.config import VaultSettings

logger = structlog.get_logger(__name__)


class VaultError(Exception):
    """
    Structured Vault API error.

    ``code`` is the HTTP status (403 for a bad token or policy, 404 for a
    missing path, 503 for a sealed Vault).
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Vault API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


class VaultClient:
    """Async Vault KV v2 client with retry on timeouts."""

    def __init__(
        self,
        settings: VaultSettings,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def mount(self) -> str:
        return self._settings.mount

    def data_path(self, path: str) -> str:
        """API path of a KV v2 record, relative to /v1."""
        return f"/{self._settings.mount}/data/{path.strip('/')}"

    async def __aenter__(self) -> VaultClient:
        headers = {
            "X-Vault-Token": self._settings.token.get_secret_value(),
            "Content-Type": "application/json",
        }
        if self._settings.namespace:
            headers["X-Vault-Namespace"] = self._settings.namespace

        self._client = httpx.AsyncClient(
            base_url=f"{self._settings.addr}/v1",
            headers=headers,
            timeout=self._timeout,
            verify=self._settings.verify_tls,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
    )
    async def _request(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make an HTTP request to the Vault API.

        Raises:
            VaultError: On API error (4xx, 5xx).
            httpx.TimeoutException: On timeout, after retries.
            RuntimeError: If used outside 'async with'.
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        # Path only; request bodies carry secret values and are never logged.
        log = logger.bind(method=method, path=path)
        log.debug("Making Vault API request")

        response = await self._client.request(method, path, json=json_data)

        if response.status_code >= 400:
            message = f"HTTP {response.status_code}"
            details = None
            try:
                errors = response.json().get("errors") or []
                if errors:
                    message = str(errors[0])
                    details = "; ".join(str(e) for e in errors[1:]) or None
            except ValueError:
                details = response.text[:200] or None
            log.warning("Vault API error", status=response.status_code, message=message)
            raise VaultError(code=response.status_code, message=message, details=details)

        return response.json() if response.content else {}

    async def kv_put(self, path: str, data: dict[str, str]) -> dict[str, Any]:
        """
        Write ``data`` as the new version of the record at ``path``.

        Vault API: POST /v1/{mount}/data/{path}

        Returns:
            Version metadata, e.g. {"version": 3, "created_time": "..."}.
        """
        body = await self._request("POST", self.data_path(path), json_data={"data": data})
        return body.get("data") or {}

    async def kv_get(self, path: str) -> dict[str, Any] | None:
        """
        Read the latest version of the record at ``path``.

        Vault API: GET /v1/{mount}/data/{path}

        Returns:
            The stored field mapping, or None if nothing is stored there.
        """
        try:
            body = await self._request("GET", self.data_path(path))
        except VaultError as e:
            if e.code == 404:
                return None
            raise
        return (body.get("data") or {}).get("data")
