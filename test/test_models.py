import pytest
import pydantic_core
from datetime import datetime, timedelta, timezone

from immutable_aggregates import (
    AggregateMeta,
    AggregateRoot,
    ModelEvent,
    UnhandledDomainEventError,
)

from conftest import DummyModel

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def created_event(**overrides) -> ModelEvent:
    fields = dict(
        name="DummyCreatedEvent",
        aggregate_id="1",
        data={"email": "john.doe@example.invalid"},
        created_at=NOW,
    )
    fields.update(overrides)
    return ModelEvent(**fields)


def test_meta_deleted():
    meta = AggregateMeta(id="1", version=3, created_at=NOW)
    assert meta.is_deleted is False

    deleted_at = NOW + timedelta(days=1)
    deleted = meta.deleted(deleted_at)
    assert deleted.is_deleted is True
    assert deleted.deleted_at == deleted_at
    assert deleted.version == 4
    assert deleted.id == "1"
    assert deleted.created_at == NOW
    # The prior meta is untouched
    assert meta.deleted_at is None
    assert meta.version == 3


def test_meta_is_immutable():
    meta = AggregateMeta(id="1", version=1, created_at=NOW)
    with pytest.raises(pydantic_core.ValidationError):
        meta.version = 2


def test_meta_version_starts_at_one():
    with pytest.raises(pydantic_core.ValidationError):
        AggregateMeta(id="1", version=0, created_at=NOW)


def test_event_is_immutable():
    event = created_event()
    with pytest.raises(pydantic_core.ValidationError):
        event.name = "DummyDeletedEvent"


def test_event_author_defaults_to_absent():
    assert created_event().created_by is None
    assert created_event(created_by="bob").created_by == "bob"


def test_apply_created_event():
    dummy = DummyModel.apply_event(created_event(), None)
    assert dummy.email == "john.doe@example.invalid"
    assert dummy.meta == AggregateMeta(id="1", version=1, created_at=NOW)


def test_apply_deleted_event():
    dummy = DummyModel.apply_event(created_event(), None)
    deleted_at = NOW + timedelta(hours=1)
    deleted = DummyModel.apply_event(
        ModelEvent(name="DummyDeletedEvent", aggregate_id="1", created_at=deleted_at), dummy
    )
    assert deleted.email == dummy.email
    assert deleted.meta.is_deleted is True
    assert deleted.meta.deleted_at == deleted_at
    assert deleted.meta.version == 2
    assert dummy.meta.is_deleted is False


def test_apply_event_is_deterministic():
    event = created_event()
    assert DummyModel.apply_event(event, None) == DummyModel.apply_event(event, None)

    prior = DummyModel.apply_event(event, None)
    deleted = ModelEvent(name="DummyDeletedEvent", aggregate_id="1", created_at=NOW)
    first = DummyModel.apply_event(deleted, prior)
    second = DummyModel.apply_event(deleted, prior)
    assert first == second
    assert first.model_dump() == second.model_dump()


@pytest.mark.parametrize("name", ["UserCreatedEvent", "DummyRenamedEvent", ""])
def test_apply_unknown_event(name):
    prior = DummyModel.apply_event(created_event(), None)
    with pytest.raises(UnhandledDomainEventError) as exc_info:
        DummyModel.apply_event(created_event(name=name), prior)
    assert exc_info.value.event_name == name


def test_base_root_handles_no_events():
    with pytest.raises(UnhandledDomainEventError, match="DummyCreatedEvent"):
        AggregateRoot.apply_event(created_event(), None)


def test_aggregate_round_trips_through_json():
    dummy = DummyModel.apply_event(created_event(), None)
    assert DummyModel.model_validate_json(dummy.model_dump_json()) == dummy


def test_event_payload_is_detached_from_caller():
    address = {"city": "Springfield", "tags": ["home"]}
    data = {"email": "john.doe@example.invalid", "address": address}
    event = created_event(data=data)

    address["city"] = "Shelbyville"
    address["tags"].append("work")
    data["email"] = "jane.doe@example.invalid"

    assert event.data == {
        "email": "john.doe@example.invalid",
        "address": {"city": "Springfield", "tags": ["home"]},
    }
