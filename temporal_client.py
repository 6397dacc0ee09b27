"""Temporal client factory.

Connects to Temporal Cloud when an API key is configured, otherwise to a
local development server.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from temporalio.client import Client, TLSConfig

env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


DEFAULT_ENDPOINT = "localhost:7233"


async def get_temporal_client() -> Client:
    """Create and return a connected Temporal client.

    Reads configuration from environment variables:
    - TEMPORAL_ENDPOINT: Server address (default "localhost:7233")
    - TEMPORAL_NAMESPACE: Namespace (default "default")
    - TEMPORAL_API_KEY: Temporal Cloud API key; enables TLS when set
    - TEMPORAL_CERT_PATH / TEMPORAL_KEY_PATH: Client certificate pair for mTLS

    Raises:
        ValueError: If only one half of the certificate pair is set
    """
    endpoint = os.getenv("TEMPORAL_ENDPOINT", DEFAULT_ENDPOINT)
    namespace = os.getenv("TEMPORAL_NAMESPACE", "default")
    api_key = os.getenv("TEMPORAL_API_KEY")
    cert_path = os.getenv("TEMPORAL_CERT_PATH")
    key_path = os.getenv("TEMPORAL_KEY_PATH")

    if bool(cert_path) != bool(key_path):
        raise ValueError("TEMPORAL_CERT_PATH and TEMPORAL_KEY_PATH must be set together")

    tls = False
    if cert_path:
        tls = TLSConfig(
            client_cert=Path(cert_path).read_bytes(),
            client_private_key=Path(key_path).read_bytes(),
        )
    elif api_key:
        tls = True

    return await Client.connect(
        endpoint,
        namespace=namespace,
        tls=tls,
        api_key=api_key or None,
    )
