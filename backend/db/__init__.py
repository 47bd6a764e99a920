from .errors import (
    DataIntegrityError,
    DuplicateSlugError,
    EmbeddingError,
    MemoGraphError,
    NotFoundError,
    VectorStoreError,
)
from .sqlite_client import SQLiteClient, close_sqlite_client, get_sqlite_client

__all__ = [
    "DataIntegrityError",
    "DuplicateSlugError",
    "EmbeddingError",
    "MemoGraphError",
    "NotFoundError",
    "SQLiteClient",
    "VectorStoreError",
    "close_sqlite_client",
    "get_sqlite_client",
]
