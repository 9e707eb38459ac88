from .factory import sqlite_backend_factory
from .handle import SQLiteStorageHandle, sqlite_open_adapter

__all__ = ["sqlite_backend_factory", "SQLiteStorageHandle", "sqlite_open_adapter"]
