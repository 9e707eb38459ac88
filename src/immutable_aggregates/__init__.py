"""
This module exports the aggregate models, the repository and the SQLite backend factory.
"""
from .models import AggregateMeta, AggregateRoot, ModelEvent, StoredEvent, StoredState
from .errors import (
    AggregateStoreError,
    ConcurrencyConflictError,
    EntryDeletedError,
    EntryNotFoundError,
    InvalidTransitionError,
    PayloadDecodeError,
    UnhandledDomainEventError,
)
from .protocols import Repository, StorageHandle
from .repository import AggregateRepository
from .adaptors.sqlite import sqlite_backend_factory

__all__ = [
    "AggregateMeta",
    "AggregateRoot",
    "ModelEvent",
    "StoredEvent",
    "StoredState",
    "AggregateRepository",
    "Repository",
    "StorageHandle",
    "sqlite_backend_factory",
    "AggregateStoreError",
    "ConcurrencyConflictError",
    "EntryDeletedError",
    "EntryNotFoundError",
    "InvalidTransitionError",
    "PayloadDecodeError",
    "UnhandledDomainEventError",
]
