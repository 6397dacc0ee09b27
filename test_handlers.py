"""
Module Handler Tests

Handlers are composed from a field translator and a local store and are
looked up through an explicit registry.
"""

from datetime import datetime

import pytest

from conftest import START
from core.errors import ValidationError
from core.models.mapping import EntityMapping
from core.models.queue import Action, Direction, QueueItem
from sync_engine.handlers import (
    FieldMapTranslator,
    HandlerRegistry,
    ModuleHandler,
    parse_remote_datetime,
)


def job(**overrides) -> QueueItem:
    fields = dict(
        id=1,
        tenant_id="default",
        module="crm",
        direction=Direction.LOCAL_TO_REMOTE,
        entity_type="contact",
        local_id="1",
        action=Action.UPDATE,
        created_at=START,
    )
    fields.update(overrides)
    return QueueItem(**fields)


class TestFieldMapTranslator:

    def test_maps_both_directions_and_drops_unknown_fields(self):
        translator = FieldMapTranslator({"contact": {"name": "name", "mail": "email"}})

        assert translator.to_remote("contact", {"name": "Ada", "mail": "a@x", "age": 36}) == {
            "name": "Ada", "email": "a@x",
        }
        assert translator.to_local("contact", {"id": 5, "email": "a@x"}) == {"mail": "a@x"}

    def test_unknown_entity_type(self):
        with pytest.raises(ValidationError):
            FieldMapTranslator({}).to_remote("contact", {"name": "Ada"})


class TestModuleHandler:

    def test_build_remote_call_loads_local_entity(self, handler, store):
        store.save("contact", {"name": "Ada", "email": "ada@example.com"}, "1")

        call = handler.build_remote_call(job(), None)

        assert call.model == "res.partner"
        assert call.values == {"name": "Ada", "email": "ada@example.com"}
        assert call.dedup_domain == [["email", "=", "ada@example.com"]]

    def test_payload_used_instead_of_store(self, handler):
        call = handler.build_remote_call(job(payload={"name": "Grace"}), None)

        assert call.values == {"name": "Grace"}
        assert call.dedup_domain == []

    def test_pull_job_payload_never_pushed(self, handler, store):
        store.save("contact", {"name": "Local Ada"}, "1")
        pull = job(direction=Direction.REMOTE_TO_LOCAL, payload={"name": "Remote Ada"})

        assert handler.build_remote_call(pull, None).values == {"name": "Local Ada"}

    def test_remote_values_match_push_values(self, handler, store):
        record = {"id": 100, "name": "Ada", "email": "ada@example.com", "write_date": "2026-01-05 09:00:00"}
        store.save("contact", handler.translator.to_local("contact", record), "1")

        assert handler.remote_values("contact", record) == handler.build_remote_call(job(), None).values

    def test_local_id_falls_back_to_mapping(self, handler, store):
        store.save("contact", {"name": "Ada"}, "9")
        mapping = EntityMapping(
            tenant_id="default", module="crm", entity_type="contact", local_id="9", remote_id="100",
        )

        assert handler.build_remote_call(job(local_id=None, remote_id="100"), mapping).values == {"name": "Ada"}

    def test_missing_local_entity(self, handler):
        with pytest.raises(ValidationError, match="not found"):
            handler.build_remote_call(job(), None)

    def test_nothing_to_push(self, handler):
        with pytest.raises(ValidationError, match="No data to push."):
            handler.build_remote_call(job(payload={"unmapped": 1}), None)

    def test_unhandled_entity_type(self, handler):
        with pytest.raises(ValidationError):
            handler.remote_model("invoice")

    def test_apply_remote_creates_then_updates(self, handler, store):
        pull = job(direction=Direction.REMOTE_TO_LOCAL, local_id=None, remote_id="100")

        local_id = handler.apply_remote(pull, {"id": 100, "name": "Ada", "email": "a@x"}, None)
        assert store.entities["contact"][local_id] == {"name": "Ada", "email": "a@x"}

        again = job(direction=Direction.REMOTE_TO_LOCAL, local_id=local_id, remote_id="100")
        assert handler.apply_remote(again, {"id": 100, "name": "Ada L."}, None) == local_id
        assert store.entities["contact"][local_id]["name"] == "Ada L."

    def test_modification_times(self, handler, store):
        store.modified[("contact", "1")] = START

        assert handler.local_modified_at(job(), "1") == START
        assert handler.local_modified_at(job(), None) is None
        assert handler.remote_modified_at({"write_date": "2026-01-05 09:30:00"}) == datetime(2026, 1, 5, 9, 30)


class TestParseRemoteDatetime:

    @pytest.mark.parametrize("value,expected", [
        ("2026-01-05 09:30:00", datetime(2026, 1, 5, 9, 30)),
        ("2026-01-05T09:30:00Z", datetime(2026, 1, 5, 9, 30)),
        ("2026-01-05T10:30:00+01:00", datetime(2026, 1, 5, 9, 30)),
        (datetime(2026, 1, 5, 9, 30), datetime(2026, 1, 5, 9, 30)),
        (False, None),
        ("garbage", None),
    ])
    def test_parse(self, value, expected):
        assert parse_remote_datetime(value) == expected


class TestHandlerRegistry:

    def test_lookup(self, handler):
        registry = HandlerRegistry([handler])

        assert registry.get("crm") is handler
        assert registry.get("billing") is None
        assert "crm" in registry
        assert len(registry) == 1
        assert registry.modules() == ["crm"]

    def test_duplicate_registration_rejected(self, handler):
        registry = HandlerRegistry([handler])
        with pytest.raises(ValueError):
            registry.register(handler)
