import os
import tempfile
from typing import Optional

from pytest_asyncio import fixture

from immutable_aggregates import (
    AggregateMeta,
    AggregateRepository,
    AggregateRoot,
    ModelEvent,
    sqlite_backend_factory,
)


class DummyModel(AggregateRoot):
    email: str

    @classmethod
    def apply_event(cls, event: ModelEvent, aggregate: Optional["DummyModel"] = None) -> "DummyModel":
        if event.name == "DummyCreatedEvent":
            return cls(
                email=event.data["email"],
                meta=AggregateMeta(id=event.aggregate_id, version=1, created_at=event.created_at),
            )
        if event.name == "DummyEmailChangedEvent":
            return cls(
                email=event.data["email"],
                meta=aggregate.meta.model_copy(update={"version": aggregate.meta.version + 1}),
            )
        if event.name == "DummyDeletedEvent":
            return cls(email=aggregate.email, meta=aggregate.meta.deleted(event.created_at))
        return super().apply_event(event, aggregate)


@fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "test.db")


@fixture
async def backend(db_path):
    """Provides a backend on a fresh database file for each test."""
    async with sqlite_backend_factory(db_path, pool_size=2) as handle:
        yield handle


@fixture
async def repository(backend):
    yield AggregateRepository(DummyModel, "dummy", backend)
