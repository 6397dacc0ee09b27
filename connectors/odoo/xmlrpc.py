"""Odoo XML-RPC transport.

Endpoints:
- /xmlrpc/2/common for authentication
- /xmlrpc/2/object for model calls (execute_kw)

Requests are marshalled with the standard library's ``xmlrpc.client`` and
sent over aiohttp so that both protocols share the same async I/O and
timeout handling.
"""

import asyncio
import xmlrpc.client
from xml.parsers.expat import ExpatError
from typing import Any, Dict, List, Optional

import aiohttp

from connectors.erp_base import Credentials, Session, Transport, register_transport
from connectors.odoo.faults import classify_http_status, classify_xmlrpc_fault
from core.config import ConnectionSettings
from core.errors import (
    AuthenticationError,
    AuthenticationExpiredError,
    TransientNetworkError,
    ValidationError,
)
from core.observability.logging import get_logger


logger = get_logger(__name__)


@register_transport("xmlrpc")
class XmlRpcTransport(Transport):
    """XML-RPC client for Odoo."""

    def __init__(self, settings: ConnectionSettings, http: Optional[aiohttp.ClientSession] = None):
        super().__init__(settings)
        self._http = http
        self._owns_http = http is None
        self._credentials: Optional[Credentials] = None

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
            uid = await self._call(
                "/xmlrpc/2/common",
                "authenticate",
                (credentials.database, credentials.username, credentials.api_key, {}),
            )
        except (AuthenticationExpiredError, ValidationError) as e:
            raise AuthenticationError(f"Authentication failed: {e}") from e

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

        return await self._call(
            "/xmlrpc/2/object",
            "execute_kw",
            (
                self._credentials.database,
                self._session.uid,
                self._credentials.api_key,
                model,
                method,
                args or [],
                kwargs or {},
            ),
        )

    async def _call(self, endpoint: str, method: str, params: tuple) -> Any:
        """Marshal, POST and unmarshal one XML-RPC call."""
        body = xmlrpc.client.dumps(params, method, allow_none=True)
        url = self.settings.url.rstrip("/") + endpoint
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout_seconds)

        try:
            async with self._client().post(
                url,
                data=body.encode("utf-8"),
                headers={"Content-Type": "text/xml"},
                timeout=timeout,
            ) as response:
                text = await response.text()
                http_error = classify_http_status(response.status, text)
                if http_error is not None:
                    raise http_error
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Request to {endpoint} timed out") from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"HTTP error: {e}") from e

        try:
            result, _ = xmlrpc.client.loads(text)
        except xmlrpc.client.Fault as fault:
            error = classify_xmlrpc_fault(fault.faultCode, fault.faultString)
            logger.error("Odoo XML-RPC fault", extra_fields={"endpoint": endpoint, "error": str(error)})
            raise error from fault
        except xmlrpc.client.ResponseError as e:
            raise TransientNetworkError(f"Malformed XML-RPC response: {e}") from e
        except ExpatError as e:
            raise TransientNetworkError(f"Malformed XML-RPC response: {e}") from e

        return result[0] if result else None
