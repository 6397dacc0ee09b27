"""Module handlers: the pluggable business side of the sync.

A handler owns one module (e.g. "crm") and knows, for each of its entity
types, which remote model it maps to, how fields translate between the
two systems, and how to load and persist local entities. The core never
looks inside payloads; it only calls the capability methods below.

Handlers are assembled by composition:
- a ``FieldTranslator`` converts field dictionaries in both directions
- a ``LocalStore`` reads and writes the local platform
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from core.errors import ValidationError
from core.models.mapping import EntityMapping
from core.models.queue import Direction, QueueItem


# Odoo serializes datetimes as naive UTC "YYYY-MM-DD HH:MM:SS".
REMOTE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


# =============================================================================
# Capabilities
# =============================================================================

class FieldTranslator(ABC):
    """Converts entity data between local and remote field names."""

    @abstractmethod
    def to_remote(self, entity_type: str, local_data: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def to_local(self, entity_type: str, remote_record: Dict[str, Any]) -> Dict[str, Any]:
        pass


class FieldMapTranslator(FieldTranslator):
    """Translator driven by a static field map per entity type.

    Usage:
        FieldMapTranslator({"contact": {"name": "name", "email": "email"}})

    Keys are local field names, values remote field names. Fields absent
    from the map are dropped in both directions.
    """

    def __init__(self, field_maps: Dict[str, Dict[str, str]]):
        self.field_maps = field_maps

    def _map(self, entity_type: str) -> Dict[str, str]:
        if entity_type not in self.field_maps:
            raise ValidationError(f"No field map for entity type {entity_type!r}")
        return self.field_maps[entity_type]

    def to_remote(self, entity_type: str, local_data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            remote: local_data[local]
            for local, remote in self._map(entity_type).items()
            if local in local_data
        }

    def to_local(self, entity_type: str, remote_record: Dict[str, Any]) -> Dict[str, Any]:
        return {
            local: remote_record[remote]
            for local, remote in self._map(entity_type).items()
            if remote in remote_record
        }


class LocalStore(ABC):
    """Read/write access to local entities of one module."""

    @abstractmethod
    def load(self, entity_type: str, local_id: str) -> Optional[Dict[str, Any]]:
        """Current local data, or None if the entity no longer exists."""
        pass

    @abstractmethod
    def save(self, entity_type: str, data: Dict[str, Any], local_id: Optional[str] = None) -> str:
        """Create (local_id None) or update an entity; return its id."""
        pass

    @abstractmethod
    def delete(self, entity_type: str, local_id: str) -> bool:
        pass

    def modified_at(self, entity_type: str, local_id: str) -> Optional[datetime]:
        """Last local modification time, if the platform tracks it."""
        return None


# =============================================================================
# Handler
# =============================================================================

class RemoteCall(BaseModel):
    """What a push should send: target model, values, dedup search domain."""
    model: str
    values: Dict[str, Any]
    dedup_domain: List[Any] = Field(default_factory=list)


class ModuleHandler:
    """Translate/apply capability for one module.

    Args:
        module: Module identifier used in queue items
        models: Entity type -> remote model name (e.g. {"contact": "res.partner"})
        translator: Field translation strategy
        store: Local persistence
        dedup_fields: Entity type -> remote fields that identify an existing
            remote record before a create (e.g. {"contact": ["email"]})
    """

    remote_timestamp_field = "write_date"

    def __init__(
        self,
        module: str,
        models: Dict[str, str],
        translator: FieldTranslator,
        store: LocalStore,
        dedup_fields: Optional[Dict[str, List[str]]] = None,
    ):
        self.module = module
        self.models = dict(models)
        self.translator = translator
        self.store = store
        self.dedup_fields = dedup_fields or {}

    def remote_model(self, entity_type: str) -> str:
        try:
            return self.models[entity_type]
        except KeyError:
            raise ValidationError(
                f"Entity type {entity_type!r} is not handled by module {self.module!r}"
            ) from None

    def build_remote_call(self, job: QueueItem, mapping: Optional[EntityMapping]) -> RemoteCall:
        """Translate the job's local entity into remote values.

        A push job's queued payload wins over a fresh load; a producer that
        already captured the data spares a local read. Any other job (a pull
        turned into a push by conflict resolution) carries remote data, so
        the local entity is always loaded.
        """
        data = job.payload if job.direction is Direction.LOCAL_TO_REMOTE else None
        if not data:
            local_id = job.local_id or (mapping.local_id if mapping else None)
            if not local_id:
                raise ValidationError("Push job has no local id and no payload")
            data = self.store.load(job.entity_type, local_id)
            if data is None:
                raise ValidationError(f"Local {job.entity_type} {local_id} not found")

        values = self.translator.to_remote(job.entity_type, data)
        if not values:
            raise ValidationError("No data to push.")

        return RemoteCall(
            model=self.remote_model(job.entity_type),
            values=values,
            dedup_domain=self.dedup_domain(job.entity_type, values),
        )

    def apply_remote(
        self,
        job: QueueItem,
        record: Dict[str, Any],
        mapping: Optional[EntityMapping],
    ) -> str:
        """Write a remote record locally; return the local id."""
        data = self.translator.to_local(job.entity_type, record)
        local_id = job.local_id or (mapping.local_id if mapping else None)
        saved = self.store.save(job.entity_type, data, local_id)
        if not saved:
            raise ValidationError("Failed to save local data during pull.")
        return str(saved)

    def remote_values(self, entity_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """A remote record reduced to the values a push would send for it.

        Pull and push hash this same shape, so a record pulled and then
        pushed back unchanged hashes identically on both sides.
        """
        return self.translator.to_remote(entity_type, self.translator.to_local(entity_type, record))

    def delete_local(self, job: QueueItem, local_id: str) -> bool:
        return self.store.delete(job.entity_type, local_id)

    def local_modified_at(self, job: QueueItem, local_id: Optional[str]) -> Optional[datetime]:
        if not local_id:
            return None
        return self.store.modified_at(job.entity_type, local_id)

    def remote_modified_at(self, record: Dict[str, Any]) -> Optional[datetime]:
        """Remote modification time read from ``write_date``."""
        return parse_remote_datetime(record.get(self.remote_timestamp_field))

    def dedup_domain(self, entity_type: str, values: Dict[str, Any]) -> List[Any]:
        """Search domain locating an existing remote record, or []."""
        fields = self.dedup_fields.get(entity_type, [])
        return [[name, "=", values[name]] for name in fields if values.get(name)]


def parse_remote_datetime(value: Any) -> Optional[datetime]:
    """Parse a remote timestamp into a naive UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        try:
            dt = datetime.strptime(text, REMOTE_DATETIME_FORMAT)
        except ValueError:
            try:
                dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


# =============================================================================
# Registry
# =============================================================================

class HandlerRegistry:
    """Explicit module id -> handler mapping.

    Usage:
        registry = HandlerRegistry()
        registry.register(crm_handler)
        registry.get("crm")
    """

    def __init__(self, handlers: Iterable[ModuleHandler] = ()):
        self._handlers: Dict[str, ModuleHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: ModuleHandler) -> None:
        if handler.module in self._handlers:
            raise ValueError(f"Module {handler.module!r} is already registered")
        self._handlers[handler.module] = handler

    def get(self, module: str) -> Optional[ModuleHandler]:
        return self._handlers.get(module)

    def __contains__(self, module: str) -> bool:
        return module in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def modules(self) -> List[str]:
        return sorted(self._handlers)
