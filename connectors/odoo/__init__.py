"""Odoo connector.

Importing this package registers the "jsonrpc" and "xmlrpc" transports.
"""

from connectors.odoo.client import RemoteClient
from connectors.odoo.jsonrpc import JsonRpcTransport
from connectors.odoo.xmlrpc import XmlRpcTransport

__all__ = [
    "JsonRpcTransport",
    "RemoteClient",
    "XmlRpcTransport",
]
