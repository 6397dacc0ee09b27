"""Shared fixtures: temporary database, fake ERP, in-memory local store."""

import itertools
import sys
from collections import defaultdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parent))

from connectors.erp_base import Session, Transport
from core.config import (
    AppSettings,
    BackoffPolicy,
    ConnectionSettings,
    NotifierSettings,
    RetryConfig,
    SyncSettings,
)
from core.errors import ValidationError
from notifications.channels import FailureEvent, NotificationChannel
from storage.db import init_db
from sync_engine.handlers import FieldMapTranslator, LocalStore, ModuleHandler


START = datetime(2026, 1, 5, 9, 0, 0)


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeTransport(Transport):
    """In-memory Odoo.

    Supports create/write/read/search/unlink/search_count on any model.
    Exceptions placed in ``failures`` are raised, in order, by the next
    ``execute`` calls before the call is applied.
    """

    def __init__(self, settings: Optional[ConnectionSettings] = None):
        super().__init__(settings or ConnectionSettings(
            url="http://odoo.test", database="odoo", username="sync", api_key="secret",
        ))
        self.records: Dict[str, Dict[int, Dict[str, Any]]] = defaultdict(dict)
        self.calls: List[tuple] = []
        self.failures: List[Exception] = []
        self.auth_count = 0
        self.write_date = "2026-01-05 09:00:00"
        self.closed = False
        self._ids = itertools.count(100)

    async def authenticate(self, credentials) -> Session:
        self.auth_count += 1
        self._session = Session(uid=2)
        return self._session

    async def execute(self, model, method, args=None, kwargs=None):
        args = args or []
        kwargs = kwargs or {}
        self.calls.append((model, method, args, kwargs))
        if self.failures:
            raise self.failures.pop(0)

        table = self.records[model]
        if method == "create":
            new_id = next(self._ids)
            table[new_id] = dict(args[0], id=new_id, write_date=self.write_date)
            return new_id
        if method == "write":
            for record_id in args[0]:
                table[record_id].update(args[1])
                table[record_id]["write_date"] = self.write_date
            return True
        if method == "read":
            fields = kwargs.get("fields")
            return [
                {k: v for k, v in table[i].items() if not fields or k in fields or k == "id"}
                for i in args[0] if i in table
            ]
        if method == "search":
            ids = [
                record_id for record_id, record in table.items()
                if all(record.get(name) == value for name, _, value in args[0])
            ]
            limit = kwargs.get("limit")
            return ids[:limit] if limit else ids
        if method == "search_count":
            return len(table)
        if method == "unlink":
            for record_id in args[0]:
                table.pop(record_id, None)
            return True
        raise ValidationError(f"Unsupported method {method}")

    def seed(self, model: str, record_id: int, **values) -> None:
        self.records[model][record_id] = dict(values, id=record_id, write_date=self.write_date)

    def methods(self, name: Optional[str] = None) -> List[str]:
        return [c[1] for c in self.calls if name is None or c[1] == name]

    async def close(self) -> None:
        self.closed = True


class MemoryStore(LocalStore):
    """Dict-backed local platform."""

    def __init__(self):
        self.entities: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.modified: Dict[tuple, datetime] = {}
        self._ids = itertools.count(1)

    def load(self, entity_type, local_id):
        data = self.entities[entity_type].get(str(local_id))
        return dict(data) if data is not None else None

    def save(self, entity_type, data, local_id=None):
        local_id = str(local_id) if local_id else str(next(self._ids))
        self.entities[entity_type].setdefault(local_id, {}).update(data)
        return local_id

    def delete(self, entity_type, local_id):
        return self.entities[entity_type].pop(str(local_id), None) is not None

    def modified_at(self, entity_type, local_id):
        return self.modified.get((entity_type, str(local_id)))


class RecordingChannel(NotificationChannel):
    def __init__(self, fail: bool = False):
        self.events: List[FailureEvent] = []
        self.fail = fail

    async def send(self, event: FailureEvent) -> None:
        if self.fail:
            raise RuntimeError("channel down")
        self.events.append(event)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "sync.db"
    init_db(path)
    return path


@pytest.fixture
def settings(db_path):
    return AppSettings(
        connection=ConnectionSettings(
            url="http://odoo.test", database="odoo", username="sync", api_key="secret",
        ),
        sync=SyncSettings(tenant_id="default", db_path=db_path),
        retry=RetryConfig(max_retries=3, base_delay=0, max_delay=0),
        backoff=BackoffPolicy(base_seconds=60, cap_seconds=3600, jitter_seconds=0),
        notifier=NotifierSettings(min_samples=100),
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def handler(store):
    return ModuleHandler(
        "crm",
        models={"contact": "res.partner"},
        translator=FieldMapTranslator({"contact": {"name": "name", "email": "email"}}),
        store=store,
        dedup_fields={"contact": ["email"]},
    )


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def context(settings, handler, transport, channel, clock):
    from sync_engine.context import build_context

    return build_context(settings, handlers=[handler], transport=transport, channel=channel, clock=clock)
