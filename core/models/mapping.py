"""Entity identity mapping between the local platform and the ERP."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, field_validator


def compute_sync_hash(data: Mapping[str, Any]) -> str:
    """SHA-256 fingerprint of a payload.

    Keys are sorted so that two payloads with the same content always
    produce the same hash regardless of insertion order.
    """
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class EntityMapping(BaseModel):
    """Identity correspondence between a local entity and its remote counterpart.

    Attributes:
        tenant_id: Isolation boundary (site)
        module: Owning handler
        entity_type: Entity family within the module (e.g. "product")
        local_id: Local primary key
        remote_id: Remote primary key
        remote_model: Remote collection name (e.g. "res.partner")
        sync_hash: Fingerprint of the last successfully synced payload
        last_synced_at: When the last sync for this entity succeeded
        last_polled_at: When a pull-based module last saw this entity
    """
    tenant_id: str = Field(default="default")
    module: str
    entity_type: str
    local_id: str
    remote_id: str
    remote_model: str = Field(default="")
    sync_hash: str = Field(default="")
    last_synced_at: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None

    @field_validator("local_id", "remote_id", mode="before")
    @classmethod
    def _ids_to_str(cls, value: Any) -> str:
        return str(value)
