"""Odoo JSON-RPC transport.

All calls are POSTed as JSON-RPC 2.0 envelopes:
- /web/session/authenticate for login
- /jsonrpc (service "object", method "execute_kw") for model calls
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional

import aiohttp

from connectors.erp_base import Credentials, Session, Transport, register_transport
from connectors.odoo.faults import classify_http_status, classify_jsonrpc_error
from core.config import ConnectionSettings
from core.errors import (
    AuthenticationError,
    AuthenticationExpiredError,
    TransientNetworkError,
    ValidationError,
)
from core.observability.logging import get_logger


logger = get_logger(__name__)


@register_transport("jsonrpc")
class JsonRpcTransport(Transport):
    """JSON-RPC client for Odoo.

    Usage:
        async with JsonRpcTransport(settings) as transport:
            await transport.authenticate(Credentials.from_settings(settings))
            ids = await transport.execute("res.partner", "search", [[]])
    """

    def __init__(self, settings: ConnectionSettings, http: Optional[aiohttp.ClientSession] = None):
        super().__init__(settings)
        self._http = http
        self._owns_http = http is None
        self._credentials: Optional[Credentials] = None
        self._ids = itertools.count(1)

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http and not self._http.closed:
            await self._http.close()
        self._http = None

    async def authenticate(self, credentials: Credentials) -> Session:
        try:
            result = await self._rpc("/web/session/authenticate", {
                "db": credentials.database,
                "login": credentials.username,
                "password": credentials.api_key,
            })
        except (AuthenticationExpiredError, ValidationError) as e:
            raise AuthenticationError(f"Authentication failed: {e}") from e

        uid = result.get("uid") if isinstance(result, dict) else None
        if not uid:
            raise AuthenticationError("Authentication failed: invalid credentials.")

        self._credentials = credentials
        self._session = Session(uid=int(uid), ttl_seconds=self.settings.session_ttl_seconds)
        logger.debug("Authenticated successfully", extra_fields={"uid": uid, "url": self.settings.url})
        return self._session

    async def execute(
        self,
        model: str,
        method: str,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if self._session is None or self._credentials is None:
            raise AuthenticationExpiredError("Not authenticated. Call authenticate() first.")

        return await self._rpc("/jsonrpc", {
            "service": "object",
            "method": "execute_kw",
            "args": [
                self._credentials.database,
                self._session.uid,
                self._credentials.api_key,
                model,
                method,
                args or [],
                kwargs or {},
            ],
        })

    async def _rpc(self, endpoint: str, params: Dict[str, Any]) -> Any:
        """Send one JSON-RPC request and return its ``result``."""
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": params,
            "id": next(self._ids),
        }
        url = self.settings.url.rstrip("/") + endpoint
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout_seconds)

        try:
            async with self._client().post(url, json=payload, timeout=timeout) as response:
                text = await response.text()
                http_error = classify_http_status(response.status, text)
                if http_error is not None:
                    raise http_error
                try:
                    body = await response.json(content_type=None)
                except ValueError as e:
                    raise TransientNetworkError(
                        f"Invalid JSON response from Odoo (HTTP {response.status}).",
                        status_code=response.status,
                    ) from e
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Request to {endpoint} timed out") from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"HTTP error: {e}") from e

        if not isinstance(body, dict):
            raise TransientNetworkError("Malformed JSON-RPC response")

        if body.get("error"):
            error = classify_jsonrpc_error(body["error"])
            logger.error("Odoo RPC error", extra_fields={"endpoint": endpoint, "error": str(error)})
            raise error

        return body.get("result")
