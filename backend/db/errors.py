"""
Error taxonomy for the memo graph store.

Lookup/uniqueness failures subclass ValueError so API handlers that already
map ValueError to 4xx responses keep working. Infrastructure failures
(embedding, vector index, corrupted data) subclass RuntimeError.
"""

from typing import Optional


class MemoGraphError(Exception):
    """Base class for all store errors."""

    code = "memo_graph_error"


class DuplicateSlugError(MemoGraphError, ValueError):
    code = "duplicate_slug"

    def __init__(self, kind: str, slug: str):
        self.kind = kind
        self.slug = slug
        super().__init__(f"{kind.capitalize()} with slug '{slug}' already exists")


class NotFoundError(MemoGraphError, ValueError):
    code = "not_found"

    def __init__(self, kind: str, key: str, field: str = "slug"):
        self.kind = kind
        self.key = key
        self.field = field
        super().__init__(f"{kind.capitalize()} with {field} '{key}' not found")


class EmbeddingError(MemoGraphError, RuntimeError):
    code = "embedding_error"


class VectorStoreError(MemoGraphError, RuntimeError):
    code = "vector_store_error"


class DataIntegrityError(MemoGraphError, RuntimeError):
    """Stored data violates a structural invariant (e.g. a parent cycle)."""

    code = "data_integrity_error"

    def __init__(self, message: str, slug: Optional[str] = None):
        self.slug = slug
        super().__init__(message)
