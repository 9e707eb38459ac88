"""
This module implements `AggregateRepository`, the read and write path for one
aggregate type.

Writes never modify an aggregate. `add` and `remove` describe the change as a
`ModelEvent`, fold it onto the prior state with the aggregate type's `apply_event`,
and hand event and resulting state to the backend, which stores both atomically.
Reads serve the stored projection, so no history is replayed on a normal read.

No write checks that the caller's aggregate is still the latest persisted version
unless asked to (`check_version` / `expected_version`). Without that, two
concurrent writers of one id both fold onto the same prior state and the last
write wins.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

import pydantic_core

from .errors import (
    EntryDeletedError,
    EntryNotFoundError,
    InvalidTransitionError,
    PayloadDecodeError,
)
from .models import AggregateRoot, ModelEvent, StoredEvent, StoredState
from .protocols import Repository, StorageHandle

T = TypeVar("T", bound=AggregateRoot)


class AggregateRepository(Repository, Generic[T]):
    def __init__(
        self,
        root: Type[T],
        alias: str,
        backend: StorageHandle,
        *,
        event_prefix: Optional[str] = None,
    ):
        self.root = root
        self.alias = alias
        self.backend = backend
        self.event_prefix = event_prefix or _default_event_prefix(root)

    @property
    def created_event_name(self) -> str:
        return f"{self.event_prefix}CreatedEvent"

    @property
    def deleted_event_name(self) -> str:
        return f"{self.event_prefix}DeletedEvent"

    @staticmethod
    def is_repository(candidate: Any) -> bool:
        """True if `candidate` is an aggregate repository, by subclass or registration."""
        return isinstance(candidate, Repository)

    async def add(self, attributes: Dict[str, Any], author: Optional[str] = None) -> ModelEvent:
        """
        Creates a new aggregate from `attributes` and returns its creation event.
        The id comes from the backend's sequence and is consumed even if the fold
        fails, so an id is never issued twice.
        """
        aggregate_id = await self.backend.next_id(self.alias)
        event = ModelEvent(
            name=self.created_event_name,
            aggregate_id=aggregate_id,
            data=dict(attributes),
            created_at=_now(),
            created_by=author,
        )
        aggregate = self.root.apply_event(event, None)
        await self._persist(event, aggregate)
        return event

    async def remove(
        self, aggregate: T, author: Optional[str] = None, *, check_version: bool = False
    ) -> ModelEvent:
        """
        Soft-deletes `aggregate`. The stored projection is replaced by its deleted
        successor, so the last known attributes stay readable via `EntryDeletedError`.
        """
        event = ModelEvent(
            name=self.deleted_event_name,
            aggregate_id=aggregate.meta.id,
            data={},
            created_at=_now(),
            created_by=author,
        )
        new_state = self.root.apply_event(event, aggregate)
        expected_version = aggregate.meta.version if check_version else None
        await self._persist(event, new_state, expected_version)
        return event

    async def persist_event(
        self, event: ModelEvent, *, expected_version: Optional[int] = None
    ) -> ModelEvent:
        """
        Applies any recognized non-creation event to the stored aggregate. The fold
        must keep the aggregate's id and advance its version by exactly one.
        """
        if event.name == self.created_event_name:
            raise InvalidTransitionError(
                f'{event.name} cannot be applied to the existing {self.alias} with id "{event.aggregate_id}"'
            )
        current = await self._load(event.aggregate_id)
        if current is None:
            raise EntryNotFoundError(self.alias, event.aggregate_id)
        new_state = self.root.apply_event(event, current)
        if new_state.meta.id != event.aggregate_id:
            raise InvalidTransitionError(
                f'{event.name} turned {self.alias} "{event.aggregate_id}" into id "{new_state.meta.id}"'
            )
        if new_state.meta.version != current.meta.version + 1:
            raise InvalidTransitionError(
                f'{event.name} moved {self.alias} "{event.aggregate_id}" from version '
                f"{current.meta.version} to {new_state.meta.version}"
            )
        await self._persist(event, new_state, expected_version)
        return event

    async def find_by_id(self, aggregate_id: str) -> Optional[T]:
        aggregate = await self._load(aggregate_id)
        if aggregate is None or aggregate.meta.is_deleted:
            return None
        return aggregate

    async def get_by_id(self, aggregate_id: str) -> T:
        aggregate = await self._load(aggregate_id)
        if aggregate is None:
            raise EntryNotFoundError(self.alias, aggregate_id)
        if aggregate.meta.is_deleted:
            raise EntryDeletedError(self.alias, aggregate_id, aggregate)
        return aggregate

    async def find_all(self) -> List[T]:
        aggregates = []
        async for stored in self.backend.load_states(self.alias):
            aggregate = self._deserialize(stored)
            if not aggregate.meta.is_deleted:
                aggregates.append(aggregate)
        return aggregates

    async def get_events(self, aggregate_id: str, *, skip_invalid: bool = False) -> List[ModelEvent]:
        """
        Returns the full event history of one aggregate, oldest first. An unreadable
        row raises `PayloadDecodeError`; with `skip_invalid` it is logged and left out.
        """
        events = []
        async for stored in self.backend.get_events(self.alias, aggregate_id, skip_invalid):
            try:
                data = pydantic_core.from_json(stored.data)
            except ValueError as e:
                if not skip_invalid:
                    raise PayloadDecodeError(
                        f'Stored event {stored.sequence_id} of {self.alias} with id "{aggregate_id}" is not valid JSON'
                    ) from e
                logging.warning(f"Skipping event {stored.sequence_id} of {self.alias} \"{aggregate_id}\" with unreadable data: {e}")
                continue
            events.append(
                ModelEvent(
                    name=stored.name,
                    aggregate_id=stored.aggregate_id,
                    data=data,
                    created_at=stored.created_at,
                    created_by=stored.created_by,
                )
            )
        return events

    async def replay(self, aggregate_id: str) -> Optional[T]:
        """
        Rebuilds an aggregate from its full history instead of its projection.
        Every row must be readable, a gap in the history raises `PayloadDecodeError`.
        """
        aggregate = None
        for event in await self.get_events(aggregate_id):
            aggregate = self.root.apply_event(event, aggregate)
        return aggregate

    async def _load(self, aggregate_id: str) -> Optional[T]:
        stored = await self.backend.load_state(self.alias, aggregate_id)
        if stored is None:
            return None
        return self._deserialize(stored)

    def _deserialize(self, stored: StoredState) -> T:
        try:
            return self.root.model_validate_json(stored.state)
        except pydantic_core.ValidationError as e:
            raise PayloadDecodeError(
                f'Stored state of {self.alias} with id "{stored.aggregate_id}" is not a valid {self.root.__name__}'
            ) from e

    async def _persist(self, event: ModelEvent, aggregate: T, expected_version: Optional[int] = None):
        await self.backend.append(
            self.alias,
            StoredEvent(
                aggregate_id=event.aggregate_id,
                name=event.name,
                created_at=event.created_at,
                created_by=event.created_by,
                data=pydantic_core.to_json(event.data),
            ),
            StoredState(
                aggregate_id=aggregate.meta.id,
                version=aggregate.meta.version,
                state=aggregate.model_dump_json().encode("utf-8"),
            ),
            expected_version,
        )


def _default_event_prefix(root: type) -> str:
    name = root.__name__
    if name.endswith("Model") and len(name) > len("Model"):
        return name[: -len("Model")]
    return name


def _now() -> datetime:
    return datetime.now(timezone.utc)
