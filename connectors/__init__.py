"""ERP Connectors - remote transport for the sync core.

This package contains the abstract Transport interface, the connection-level
retry decorator, and the Odoo protocol implementations (JSON-RPC, XML-RPC).

Key Design Principle:
- The sync engine depends ONLY on the Transport interface and RemoteClient
- Remote faults surface as core.errors taxonomy errors
- Protocol choice is configuration (ConnectionSettings.protocol)

To add a new protocol:
1. Implement Transport in a new module
2. Register it using the @register_transport decorator
"""

from connectors.erp_base import (
    Credentials,
    Session,
    Transport,
    create_transport,
    list_available_transports,
    register_transport,
)
from connectors.retry import RetryingTransport

__all__ = [
    "Credentials",
    "Session",
    "Transport",
    "create_transport",
    "list_available_transports",
    "register_transport",
    "RetryingTransport",
]
