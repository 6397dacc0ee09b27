"""Abstract ERP transport interface.

This module defines the contract every wire protocol must implement.
The sync engine depends only on ``Transport``; protocol choice is a
configuration setting resolved by ``create_transport()``.

DESIGN PRINCIPLE:
- A transport is stateless apart from its ``Session``
- Remote faults are raised as ``core.errors`` taxonomy errors, never as
  protocol-specific exceptions
- Retry, re-authentication and per-call timeouts live in
  ``connectors.retry.RetryingTransport``, not in the protocol classes
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from core.config import ConnectionSettings


# =============================================================================
# Authentication state
# =============================================================================

@dataclass
class Credentials:
    """Login material for the remote ERP.

    Attributes:
        database: Remote database name
        username: Login
        api_key: API key or password
    """
    database: str
    username: str
    api_key: str = field(repr=False)

    @classmethod
    def from_settings(cls, settings: ConnectionSettings) -> "Credentials":
        return cls(
            database=settings.database,
            username=settings.username,
            api_key=settings.api_key,
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """Authenticated session with expiration tracking.

    Lives only in process memory; never persisted.
    """
    uid: int
    ttl_seconds: int = 3600
    obtained_at: datetime = field(default_factory=_now)

    @property
    def expires_at(self) -> datetime:
        """When the session should no longer be trusted."""
        return self.obtained_at + timedelta(seconds=self.ttl_seconds)

    @property
    def is_expired(self) -> bool:
        """Check if the session is expired (with 60-second buffer)."""
        return _now() >= (self.expires_at - timedelta(seconds=60))


# =============================================================================
# Abstract Transport Interface
# =============================================================================

class Transport(ABC):
    """Capability set shared by all wire protocols.

    Implementations:
    - connectors/odoo/jsonrpc.py
    - connectors/odoo/xmlrpc.py
    - connectors/retry.py (decorator adding retry/re-auth/timeouts)
    """

    def __init__(self, settings: ConnectionSettings):
        self.settings = settings
        self._session: Optional[Session] = None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def current_session_id(self) -> Optional[int]:
        """Authenticated user id, or None before login."""
        return self._session.uid if self._session else None

    def invalidate_session(self) -> None:
        """Forget the current session so the next call logs in again."""
        self._session = None

    @abstractmethod
    async def authenticate(self, credentials: Credentials) -> Session:
        """Log in and store the resulting session.

        Raises:
            AuthenticationError: Credentials rejected
            TransientNetworkError: Remote unreachable
        """
        pass

    @abstractmethod
    async def execute(
        self,
        model: str,
        method: str,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Call ``method`` on remote ``model`` and return the decoded result.

        Raises:
            AuthenticationExpiredError: Session rejected by the remote side
            ValidationError: Rejected by remote business rules
            TransientNetworkError: Timeout, connection failure, 5xx
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


# =============================================================================
# Transport Factory
# =============================================================================

_transport_registry: Dict[str, type] = {}


def register_transport(protocol: str):
    """Decorator to register a transport implementation."""
    def decorator(cls):
        _transport_registry[protocol] = cls
        return cls
    return decorator


def create_transport(settings: ConnectionSettings) -> Transport:
    """Create a transport instance from configuration.

    Raises:
        ValueError: If the protocol is not registered
    """
    # Registration happens on import of the protocol modules.
    import connectors.odoo  # noqa: F401

    protocol = settings.protocol.lower()

    if protocol not in _transport_registry:
        available = list(_transport_registry.keys())
        raise ValueError(
            f"Unknown transport protocol: {protocol}. "
            f"Available: {available}"
        )

    transport_class = _transport_registry[protocol]
    return transport_class(settings)


def list_available_transports() -> List[str]:
    """List all registered transport protocols."""
    import connectors.odoo  # noqa: F401

    return list(_transport_registry.keys())
