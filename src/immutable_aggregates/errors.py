"""
Errors raised by the aggregate store.

`EntryNotFoundError` and `EntryDeletedError` are expected conditions that callers of
`get_by_id` handle. `UnhandledDomainEventError` means an aggregate type's fold does
not know an event name, i.e. the replay logic is out of sync with the event log.
"""
from typing import Any


class AggregateStoreError(Exception):
    pass


class EntryNotFoundError(AggregateStoreError):
    def __init__(self, alias: str, aggregate_id: str):
        self.alias = alias
        self.aggregate_id = aggregate_id
        super().__init__(f'{alias} with id "{aggregate_id}" not found.')


class EntryDeletedError(AggregateStoreError):
    def __init__(self, alias: str, aggregate_id: str, entry: Any):
        self.alias = alias
        self.aggregate_id = aggregate_id
        self.entry = entry  # The last known state, for error reporting
        super().__init__(f'{alias} with id "{aggregate_id}" is deleted.')


class UnhandledDomainEventError(AggregateStoreError):
    def __init__(self, event_name: str):
        self.event_name = event_name
        super().__init__(f'Unhandled domain event "{event_name}".')


class ConcurrencyConflictError(AggregateStoreError, ValueError):
    def __init__(self, alias: str, aggregate_id: str, expected_version: int, current_version: int | None):
        self.alias = alias
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f'Concurrency conflict: expected version {expected_version}, '
            f'but {alias} "{aggregate_id}" is at {current_version}'
        )


class PayloadDecodeError(AggregateStoreError):
    """A stored payload could not be decrypted or validated."""


class InvalidTransitionError(AggregateStoreError, ValueError):
    """An event cannot be applied to the stored aggregate it names."""
