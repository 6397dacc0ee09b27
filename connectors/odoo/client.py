"""Typed CRUD helpers over a Transport.

``RemoteClient`` is what module handlers and the sync engine talk to; it
builds ``execute_kw`` arguments and normalizes return values.
"""

from typing import Any, Dict, List, Optional

from connectors.erp_base import Credentials, Transport
from core.observability.logging import get_logger


logger = get_logger(__name__)


class RemoteClient:
    """High-level Odoo model API.

    Authenticates lazily on the first call.

    Usage:
        client = RemoteClient(transport, credentials)
        partner_id = await client.create("res.partner", {"name": "Ada"})
        await client.write("res.partner", [partner_id], {"email": "ada@example.com"})
    """

    def __init__(self, transport: Transport, credentials: Optional[Credentials] = None):
        self.transport = transport
        self.credentials = credentials

    @property
    def is_connected(self) -> bool:
        return self.transport.current_session_id() is not None

    async def _ensure_connected(self) -> None:
        session = self.transport.session
        if session is None or session.is_expired:
            await self.transport.authenticate(self.credentials)

    async def _call(
        self,
        model: str,
        method: str,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        await self._ensure_connected()
        try:
            return await self.transport.execute(model, method, args or [], kwargs or {})
        except Exception as e:
            logger.error(
                "API call failed",
                extra_fields={"model": model, "method": method, "error": str(e)},
            )
            raise

    @staticmethod
    def _paging(offset: int = 0, limit: int = 0, order: str = "") -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if offset > 0:
            kwargs["offset"] = offset
        if limit > 0:
            kwargs["limit"] = limit
        if order:
            kwargs["order"] = order
        return kwargs

    async def search(
        self,
        model: str,
        domain: Optional[List[Any]] = None,
        offset: int = 0,
        limit: int = 0,
        order: str = "",
    ) -> List[int]:
        """Ids of records matching ``domain`` (Odoo Polish notation)."""
        result = await self._call(model, "search", [domain or []], self._paging(offset, limit, order))
        return result if isinstance(result, list) else []

    async def search_read(
        self,
        model: str,
        domain: Optional[List[Any]] = None,
        fields: Optional[List[str]] = None,
        offset: int = 0,
        limit: int = 0,
        order: str = "",
    ) -> List[Dict[str, Any]]:
        kwargs = self._paging(offset, limit, order)
        if fields:
            kwargs["fields"] = fields
        result = await self._call(model, "search_read", [domain or []], kwargs)
        return result if isinstance(result, list) else []

    async def read(self, model: str, ids: List[int], fields: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        kwargs = {"fields": fields} if fields else {}
        result = await self._call(model, "read", [ids], kwargs)
        return result if isinstance(result, list) else []

    async def create(self, model: str, values: Dict[str, Any]) -> int:
        """Create a record and return its id."""
        result = await self._call(model, "create", [values])
        # Odoo 17+ returns a list of ids when create() is given a list
        if isinstance(result, list):
            result = result[0] if result else 0
        return int(result)

    async def write(self, model: str, ids: List[int], values: Dict[str, Any]) -> bool:
        return bool(await self._call(model, "write", [ids, values]))

    async def unlink(self, model: str, ids: List[int]) -> bool:
        return bool(await self._call(model, "unlink", [ids]))

    async def search_count(self, model: str, domain: Optional[List[Any]] = None) -> int:
        return int(await self._call(model, "search_count", [domain or []]) or 0)

    async def fields_get(self, model: str, attributes: Optional[List[str]] = None) -> Dict[str, Any]:
        """Field definitions for ``model``."""
        kwargs = {"attributes": attributes} if attributes else {}
        result = await self._call(model, "fields_get", [], kwargs)
        return result if isinstance(result, dict) else {}

    async def execute(
        self,
        model: str,
        method: str,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Call an arbitrary model method."""
        return await self._call(model, method, args, kwargs)

    async def close(self) -> None:
        await self.transport.close()
