"""
This module defines the core data models for the aggregate store using Pydantic.
Every model is frozen: an aggregate or event is never changed after construction,
a transition always produces a new instance.
"""
import copy
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import UnhandledDomainEventError


class AggregateMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    version: int = Field(ge=1)
    created_at: datetime
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def deleted(self, timestamp: datetime) -> "AggregateMeta":
        """Returns the soft-deleted successor of this meta, one version later."""
        return self.model_copy(
            update={"deleted_at": timestamp, "version": self.version + 1}
        )


class ModelEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    aggregate_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    created_by: Optional[str] = None  # None means unattributed

    @field_validator("data", mode="before")
    @classmethod
    def _copy_data(cls, value: Any) -> Any:
        # The payload must not share nested values with the caller.
        return copy.deepcopy(value)


class AggregateRoot(BaseModel):
    """
    Base class for every aggregate type stored by an `AggregateRepository`.

    Subclasses declare their domain fields and override `apply_event`, dispatching
    on `event.name`. Names a subclass does not recognize must end up here, where
    they are rejected:

        class User(AggregateRoot):
            email: str

            @classmethod
            def apply_event(cls, event, aggregate=None):
                if event.name == "UserCreatedEvent":
                    return cls(
                        email=event.data["email"],
                        meta=AggregateMeta(id=event.aggregate_id, version=1, created_at=event.created_at),
                    )
                if event.name == "UserDeletedEvent":
                    return aggregate.model_copy(update={"meta": aggregate.meta.deleted(event.created_at)})
                return super().apply_event(event, aggregate)
    """
    model_config = ConfigDict(frozen=True)

    meta: AggregateMeta

    @classmethod
    def apply_event(
        cls, event: ModelEvent, aggregate: Optional["AggregateRoot"] = None
    ) -> "AggregateRoot":
        raise UnhandledDomainEventError(event.name)


class StoredEvent(BaseModel):
    """An event row as handed to and read back from a storage backend."""
    aggregate_id: str
    name: str
    created_at: datetime
    created_by: Optional[str] = None
    data: bytes  # Serialized event payload
    sequence_id: Optional[int] = None  # Assigned by the backend on append


class StoredState(BaseModel):
    """The serialized current projection of one aggregate."""
    aggregate_id: str
    version: int
    state: bytes
