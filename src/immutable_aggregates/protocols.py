"""
This module defines the abstract contracts between the repository and its storage.

`StorageHandle` is a `Protocol`: the repository only talks to this interface, so a
backend other than SQLite (e.g. Redis) can be plugged in without touching
`AggregateRepository`. Every method takes the alias of the aggregate type, and a
backend must keep the rows of one alias invisible to every other alias.

`Repository` is a nominal marker for objects usable as an aggregate repository.
Implementations subclass it, or are registered with `Repository.register`.
"""
import abc
from typing import Any, AsyncIterable, List, Optional, Protocol

from .models import ModelEvent, StoredEvent, StoredState


class StorageHandle(Protocol):
    async def next_id(self, alias: str) -> str:
        """Atomically increments the id sequence of `alias` and returns the new value."""
        ...

    async def append(
        self,
        alias: str,
        event: StoredEvent,
        state: StoredState,
        expected_version: Optional[int] = None,
    ) -> StoredEvent:
        """
        Appends `event` to the log, writes `state` as the current projection and
        records its id as known, all in one atomic step.
        """
        ...

    async def load_state(self, alias: str, aggregate_id: str) -> Optional[StoredState]:
        ...

    def load_states(self, alias: str) -> AsyncIterable[StoredState]:
        ...

    def get_events(
        self, alias: str, aggregate_id: str, skip_invalid: bool = False
    ) -> AsyncIterable[StoredEvent]:
        """Yields the event log of one aggregate. Undecodable rows raise unless `skip_invalid`."""
        ...

    async def clear(self, alias: str):
        ...


class Repository(abc.ABC):
    alias: str

    @abc.abstractmethod
    async def add(self, attributes: dict, author: Optional[str] = None) -> ModelEvent:
        ...

    @abc.abstractmethod
    async def remove(self, aggregate: Any, author: Optional[str] = None) -> ModelEvent:
        ...

    @abc.abstractmethod
    async def find_by_id(self, aggregate_id: str) -> Optional[Any]:
        ...

    @abc.abstractmethod
    async def get_by_id(self, aggregate_id: str) -> Any:
        ...

    @abc.abstractmethod
    async def find_all(self) -> List[Any]:
        ...
