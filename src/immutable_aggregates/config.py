from typing import Optional

from pydantic import BaseModel, Field, field_validator


class SQLiteConfig(BaseModel):
    db_path: str
    key: Optional[bytes] = None  # Fernet key; enables encryption at rest
    pool_size: int = Field(default=10, ge=1)
    cache_size_kib: int = -16384  # Negative values are KiB, so 16MB
    busy_timeout_ms: int = Field(default=5000, ge=0)

    @field_validator("db_path")
    @classmethod
    def _require_db_path(cls, value: str) -> str:
        if not value:
            raise ValueError("`db_path` must be provided in the configuration.")
        return value

    @property
    def is_memory_db(self) -> bool:
        return self.db_path == ":memory:"
