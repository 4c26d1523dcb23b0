"""Caller client for one catalog's invocation surface.

Agents use ``CatalogClient`` to call tools through the gateway over HTTP.
Gateway error codes are mapped back to ``GatewayError`` subclasses, and
``BackendUnavailable`` is retried here, by the caller, a bounded number of
times.
"""

from typing import Any, Iterable

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from gateway_service.core.logging import get_logger
from gateway_service.errors import BackendUnavailable, error_from_code
from toolgate_common.auth import generate_caller_token

logger = get_logger(__name__)


class CatalogClient:
    """Client bound to one catalog of a gateway."""

    def __init__(
        self,
        base_url: str,
        catalog: str,
        caller: str,
        service_auth_secret: str,
        catalogs_claim: Iterable[str] | None = None,
        timeout: float = 120.0,
    ):
        """Initialize the client.

        Args:
            base_url: Gateway base URL (e.g., http://gateway-service:8010)
            catalog: Catalog whose tools this client calls
            caller: Caller name placed in the token's ``sub``
            service_auth_secret: Shared secret for caller JWTs
            catalogs_claim: Catalogs to restrict the token to (None = unrestricted)
            timeout: HTTP timeout; should exceed the longest tool deadline
        """
        self.base_url = base_url.rstrip("/")
        self.catalog = catalog
        self.caller = caller
        self.service_auth_secret = service_auth_secret
        self.catalogs_claim = list(catalogs_claim) if catalogs_claim is not None else None
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    def _auth_headers(self) -> dict[str, str]:
        token = generate_caller_token(self.caller, self.service_auth_secret, catalogs=self.catalogs_claim)
        return {"Authorization": f"Bearer {token}"}

    async def close(self) -> None:
        await self.client.aclose()

    async def list_tools(self) -> list[dict[str, Any]]:
        response = await self.client.get(
            f"/catalogs/{self.catalog}/tools", headers=self._auth_headers()
        )
        response.raise_for_status()
        return response.json()["tools"]

    @retry(
        retry=retry_if_exception_type(BackendUnavailable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def invoke(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Invoke a tool and return its MCP result payload.

        Raises:
            GatewayError: The gateway's error, rebuilt from its code
            httpx.HTTPStatusError: Auth or transport-level HTTP failures
        """
        payload: dict[str, Any] = {"tool_name": tool_name, "arguments": arguments or {}}
        if timeout is not None:
            payload["timeout"] = timeout

        response = await self.client.post(
            f"/catalogs/{self.catalog}/invoke",
            headers=self._auth_headers(),
            json=payload,
        )
        response.raise_for_status()
        body = response.json()

        if body["status"] == "success":
            return body.get("output") or {}

        error = body.get("error") or {}
        logger.warning(
            "Gateway returned error",
            catalog=self.catalog,
            tool=tool_name,
            code=error.get("code"),
        )
        raise error_from_code(error.get("code", ""), error.get("message", "unknown error"))
