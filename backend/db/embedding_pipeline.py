"""
Glue between the embedding generator and the vector index.

Vector ids are deterministic (`memo-<id>`, `fragment-<id>`), so re-running an
upsert for the same entity overwrites its previous vector instead of adding a
second one.
"""

import logging
from typing import Any, Dict, List, Optional

from .errors import EmbeddingError, VectorStoreError

logger = logging.getLogger(__name__)

ENTITY_KINDS = ("memo", "fragment")


def vector_id_for(kind: str, entity_id: str) -> str:
    if kind not in ENTITY_KINDS:
        raise ValueError(f"Unknown entity kind '{kind}'")
    return f"{kind}-{entity_id}"


def vector_metadata(kind: str, entity_id: str, slug: str) -> Dict[str, Any]:
    return {"kind": kind, f"{kind}_id": entity_id, "slug": slug}


class EmbeddingPipeline:
    def __init__(self, embedder: Any, index: Any):
        self.embedder = embedder
        self.index = index

    async def embed(self, text: str) -> List[float]:
        vector = await self.embedder.embed(text)
        if not vector:
            raise EmbeddingError("embedding generator returned an empty vector")
        return vector

    async def embed_and_upsert(
        self, kind: str, entity_id: str, slug: str, content: str
    ) -> str:
        """
        Embed content and store it under the entity's vector id.

        Raises EmbeddingError or VectorStoreError; callers running in the
        background are expected to log and absorb them.
        """
        vector_id = vector_id_for(kind, entity_id)
        vector = await self.embed(content)
        await self.index.upsert(vector_id, vector, vector_metadata(kind, entity_id, slug))
        return vector_id

    async def query(
        self,
        vector: List[float],
        top_k: int,
        threshold: float,
        kind: Optional[str] = None,
    ):
        return await self.index.query(vector, top_k=top_k, threshold=threshold, kind=kind)

    async def delete(self, vector_id: Optional[str]) -> bool:
        """Best-effort removal; tries every delete form the index exposes."""
        if not vector_id:
            return False
        for method_name, argument in (("delete_many", [vector_id]), ("delete_one", vector_id)):
            method = getattr(self.index, method_name, None)
            if method is None:
                continue
            try:
                await method(argument)
                return True
            except (VectorStoreError, NotImplementedError, TypeError) as exc:
                logger.debug("Vector %s via %s failed: %s", vector_id, method_name, exc)
        logger.warning("Failed to delete vector %s from index", vector_id)
        return False
