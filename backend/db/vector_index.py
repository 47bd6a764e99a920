"""
Local vector index stored next to the entities in the same SQLite database.

Any object exposing the same coroutine methods (`upsert`, `query`,
`delete_many`, `delete_one`) can stand in for it; the embedding pipeline only
relies on that surface.
"""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .errors import VectorStoreError


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    length = min(len(v1), len(v2))
    if length == 0:
        return 0.0
    dot = sum(v1[i] * v2[i] for i in range(length))
    norm1 = math.sqrt(sum(v1[i] * v1[i] for i in range(length)))
    norm2 = math.sqrt(sum(v2[i] * v2[i] for i in range(length)))
    if norm1 <= 0 or norm2 <= 0:
        return 0.0
    return float(dot / (norm1 * norm2))


class SQLiteVectorIndex:
    """Brute-force cosine index over the `vector_entries` table."""

    _CREATE_TABLE = """
        CREATE TABLE IF NOT EXISTS vector_entries (
            vector_id TEXT PRIMARY KEY,
            vector_values TEXT NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}',
            updated_at TEXT NOT NULL
        )
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._schema_ready = False

    async def _ensure_table(self) -> None:
        if self._schema_ready:
            return
        async with self.engine.begin() as conn:
            await conn.execute(text(self._CREATE_TABLE))
        self._schema_ready = True

    async def upsert(
        self, vector_id: str, values: List[float], metadata: Dict[str, Any]
    ) -> None:
        if not vector_id:
            raise VectorStoreError("vector_id is required")
        try:
            await self._ensure_table()
            async with self.engine.begin() as conn:
                await conn.execute(
                    text(
                        "INSERT INTO vector_entries(vector_id, vector_values, metadata, updated_at) "
                        "VALUES (:vector_id, :vector_values, :metadata, :updated_at) "
                        "ON CONFLICT(vector_id) DO UPDATE SET "
                        "vector_values = excluded.vector_values, "
                        "metadata = excluded.metadata, "
                        "updated_at = excluded.updated_at"
                    ),
                    {
                        "vector_id": vector_id,
                        "vector_values": json.dumps(
                            [float(v) for v in values], separators=(",", ":")
                        ),
                        "metadata": json.dumps(metadata or {}, ensure_ascii=False),
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                    },
                )
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"upsert of '{vector_id}' failed: {exc}") from exc

    async def query(
        self,
        values: List[float],
        top_k: int = 3,
        threshold: float = 0.0,
        kind: Optional[str] = None,
    ) -> List[VectorMatch]:
        try:
            await self._ensure_table()
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    text("SELECT vector_id, vector_values, metadata FROM vector_entries")
                )
                rows = result.fetchall()
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"vector query failed: {exc}") from exc

        matches: List[VectorMatch] = []
        for vector_id, raw_values, raw_metadata in rows:
            try:
                stored = json.loads(raw_values)
                metadata = json.loads(raw_metadata or "{}")
            except (TypeError, ValueError):
                continue
            if not isinstance(stored, list) or not isinstance(metadata, dict):
                continue
            if kind and metadata.get("kind") != kind:
                continue
            score = cosine_similarity(values, stored)
            if score < threshold:
                continue
            matches.append(VectorMatch(id=vector_id, score=score, metadata=metadata))

        matches.sort(key=lambda item: (-item.score, item.id))
        return matches[: max(0, int(top_k))]

    async def delete_many(self, ids: List[str]) -> int:
        if not ids:
            return 0
        try:
            await self._ensure_table()
            async with self.engine.begin() as conn:
                deleted = 0
                for vector_id in ids:
                    result = await conn.execute(
                        text("DELETE FROM vector_entries WHERE vector_id = :vector_id"),
                        {"vector_id": vector_id},
                    )
                    deleted += result.rowcount or 0
                return deleted
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"vector delete failed: {exc}") from exc

    async def delete_one(self, vector_id: str) -> int:
        return await self.delete_many([vector_id])

    async def get(self, vector_id: str) -> Optional[Dict[str, Any]]:
        await self._ensure_table()
        async with self.engine.connect() as conn:
            result = await conn.execute(
                text(
                    "SELECT vector_id, vector_values, metadata FROM vector_entries "
                    "WHERE vector_id = :vector_id"
                ),
                {"vector_id": vector_id},
            )
            row = result.fetchone()
        if row is None:
            return None
        return {
            "vector_id": row[0],
            "values": json.loads(row[1]),
            "metadata": json.loads(row[2] or "{}"),
        }
