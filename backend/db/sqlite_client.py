"""
SQLite Client for the Memo Graph

This module implements the entity store behind the agent:
- Memos: slug-addressed notes with `[[slug]]` backlinks and reply threads
- Fragments: speaker-attributed snippets, independent of the memo tree
- Fragment edges: directed, labeled, weighted relations between fragments
- Vector bookkeeping: which entities have been embedded, and under what id
"""

import asyncio
import json
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import aliased, declarative_base
from dotenv import find_dotenv, load_dotenv

from .backlinks import backlink_token, extract_backlinks
from .embedding_pipeline import ENTITY_KINDS, EmbeddingPipeline, vector_id_for
from .embeddings import EmbeddingClient
from .errors import DataIntegrityError, DuplicateSlugError, NotFoundError
from .migration_runner import apply_pending_migrations
from .records import MemoLinks, dump_json, load_json_object
from .vector_index import SQLiteVectorIndex

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

Base = declarative_base()

MEMO_SORT_FIELDS = ("created", "modified", "slug")
MEMO_SEARCH_FIELDS = ("content", "slug", "headers", "links", "all")

# SQLite caps bound parameters per statement; IN lists are chunked below it.
_IN_CHUNK_SIZE = 500

_last_timestamp: Optional[datetime] = None


def _utc_iso_now() -> str:
    """
    ISO-8601 UTC timestamp with microseconds and a trailing Z.

    Strictly increasing within the process, so ordering by `created` matches
    insertion order.
    """
    global _last_timestamp
    now = datetime.now(timezone.utc)
    if _last_timestamp is not None and now <= _last_timestamp:
        now = _last_timestamp + timedelta(microseconds=1)
    _last_timestamp = now
    return now.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _new_id() -> str:
    return str(uuid.uuid4())


def _chunked(values: List[str], size: int = _IN_CHUNK_SIZE) -> Iterable[List[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


# =============================================================================
# ORM Models
# =============================================================================


class Memo(Base):
    """A slug-addressed note.

    `links` holds `{"incoming": [...], "outgoing": [...]}`. Outgoing is derived
    from `[[slug]]` tokens in content; incoming is maintained by the memos that
    link here. `parent_id` arranges memos into reply threads.
    """

    __tablename__ = "memos"

    id = Column(String(36), primary_key=True, default=_new_id)
    slug = Column(String(512), nullable=False, unique=True)
    content = Column(Text, nullable=False, default="")
    headers = Column(Text, nullable=False, default="{}")
    links = Column(Text, nullable=False, default='{"incoming": [], "outgoing": []}')
    created = Column(String(40), nullable=False, default=_utc_iso_now)
    modified = Column(String(40), nullable=False, default=_utc_iso_now)
    summary = Column(Text, nullable=True)
    vector_id = Column(String(128), nullable=True)
    parent_id = Column(String(36), nullable=True)
    author = Column(String(128), nullable=True, default="user")

    __table_args__ = (
        Index("idx_memos_parent", "parent_id"),
        Index("idx_memos_vector", "vector_id"),
    )


class Fragment(Base):
    """A short, speaker-attributed snippet of conversation or knowledge."""

    __tablename__ = "fragments"

    id = Column(String(36), primary_key=True, default=_new_id)
    slug = Column(String(512), nullable=False, unique=True)
    content = Column(Text, nullable=False)
    speaker = Column(String(128), nullable=True)
    ts = Column(String(40), nullable=False, default=_utc_iso_now)
    convo_id = Column(String(128), nullable=True)
    # `metadata` is reserved on declarative classes
    meta = Column("metadata", Text, nullable=False, default="{}")
    vector_id = Column(String(128), nullable=True)
    created = Column(String(40), nullable=False, default=_utc_iso_now)
    modified = Column(String(40), nullable=False, default=_utc_iso_now)

    __table_args__ = (Index("idx_fragments_convo", "convo_id"),)


class FragmentEdge(Base):
    """Directed relation between two fragments. Edges are never updated."""

    __tablename__ = "fragment_edges"

    id = Column(String(36), primary_key=True, default=_new_id)
    from_id = Column(String(36), ForeignKey("fragments.id"), nullable=False)
    to_id = Column(String(36), ForeignKey("fragments.id"), nullable=False)
    rel = Column(String(128), nullable=False)
    weight = Column(Float, nullable=False, default=1.0)
    meta = Column("metadata", Text, nullable=False, default="{}")
    created = Column(String(40), nullable=False, default=_utc_iso_now)

    __table_args__ = (
        Index("idx_fragment_edges_from", "from_id"),
        Index("idx_fragment_edges_to", "to_id"),
    )


# =============================================================================
# SQLite Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite client for the memo graph.

    Core operations:
    - memos: create / reply / edit / delete, with backlink sync in the same
      transaction as the write
    - threads: root + breadth-first descendants of any memo
    - fragments: create / link / list, and the degree-ranked graph view
    - embeddings: per-entity embed + upsert, backfill of unembedded rows
    """

    def __init__(
        self,
        database_url: str,
        embedder: Optional[Any] = None,
        vector_index: Optional[Any] = None,
    ):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                          "sqlite+aiosqlite:///memo_graph.db"
            embedder: object with `async embed(text) -> list[float]`;
                      defaults to EmbeddingClient.from_env()
            vector_index: vector index adapter; defaults to a local
                          SQLiteVectorIndex in the same database
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.embedder = embedder or EmbeddingClient.from_env()
        self.vector_index = vector_index or SQLiteVectorIndex(self.engine)
        self.embeddings = EmbeddingPipeline(self.embedder, self.vector_index)
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        """Create tables and apply additive migrations once per client."""
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            await apply_pending_migrations(self.database_url)
            self._schema_ready = True

    async def init_db(self):
        await self.ensure_schema()

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager (schema is created lazily)."""
        await self.ensure_schema()
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # =========================================================================
    # Serialization
    # =========================================================================

    @staticmethod
    def _escape_like_pattern(value: str) -> str:
        return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

    @staticmethod
    def _memo_to_dict(memo: Memo) -> Dict[str, Any]:
        return {
            "id": memo.id,
            "slug": memo.slug,
            "content": memo.content,
            "headers": load_json_object(memo.headers, context=f"headers of memo '{memo.slug}'"),
            "links": MemoLinks.parse(memo.links, slug=memo.slug).to_dict(),
            "parent_id": memo.parent_id,
            "author": memo.author,
            "vector_id": memo.vector_id,
            "summary": memo.summary,
            "created": memo.created,
            "modified": memo.modified,
        }

    @staticmethod
    def _fragment_to_dict(fragment: Fragment) -> Dict[str, Any]:
        return {
            "id": fragment.id,
            "slug": fragment.slug,
            "content": fragment.content,
            "speaker": fragment.speaker,
            "ts": fragment.ts,
            "convo_id": fragment.convo_id,
            "metadata": load_json_object(
                fragment.meta, context=f"metadata of fragment '{fragment.slug}'"
            ),
            "vector_id": fragment.vector_id,
            "created": fragment.created,
            "modified": fragment.modified,
        }

    @staticmethod
    def _normalize_slug(slug: Optional[str]) -> str:
        value = (slug or "").strip()
        if not value:
            raise ValueError("slug must not be empty")
        return value

    # =========================================================================
    # Backlink Sync
    # =========================================================================

    async def _load_memo_by_slug(self, session: AsyncSession, slug: str) -> Optional[Memo]:
        result = await session.execute(select(Memo).where(Memo.slug == slug))
        return result.scalar_one_or_none()

    async def _memos_referencing(
        self,
        session: AsyncSession,
        slug: str,
        *,
        include_content: bool,
    ) -> List[Memo]:
        """Memos whose outgoing links (or, optionally, raw content) mention slug."""
        encoded = json.dumps(slug, ensure_ascii=False)
        conditions = [
            Memo.links.like(f"%{self._escape_like_pattern(encoded)}%", escape="\\")
        ]
        if include_content:
            token = self._escape_like_pattern(backlink_token(slug))
            conditions.append(Memo.content.like(f"%{token}%", escape="\\"))

        result = await session.execute(
            select(Memo).where(or_(*conditions)).order_by(Memo.created.asc())
        )
        matches: List[Memo] = []
        for memo in result.scalars().all():
            outgoing = MemoLinks.parse(memo.links, slug=memo.slug).outgoing
            if slug in outgoing:
                matches.append(memo)
            elif include_content and backlink_token(slug) in (memo.content or ""):
                matches.append(memo)
        return matches

    async def _sync_backlinks(
        self,
        session: AsyncSession,
        memo: Memo,
        *,
        previous_outgoing: List[str],
        seed_incoming: bool,
    ) -> MemoLinks:
        """
        Recompute memo's outgoing links and mirror them into the targets.

        Runs inside the caller's session so the memo write and every link
        update commit (or roll back) together. Re-running on unchanged content
        writes identical link sets.
        """
        outgoing = extract_backlinks(memo.content)
        links = MemoLinks.parse(memo.links, slug=memo.slug)
        links.outgoing = outgoing

        if seed_incoming:
            for source in await self._memos_referencing(
                session, memo.slug, include_content=False
            ):
                if source.id != memo.id:
                    links.add_incoming(source.slug)

        if memo.slug in outgoing:
            links.add_incoming(memo.slug)
        elif memo.slug in previous_outgoing:
            links.remove_incoming([memo.slug])
        memo.links = links.to_json()

        targets = [item for item in outgoing if item != memo.slug]
        for chunk in _chunked(targets):
            result = await session.execute(select(Memo).where(Memo.slug.in_(chunk)))
            for target in result.scalars().all():
                target_links = MemoLinks.parse(target.links, slug=target.slug)
                if target_links.add_incoming(memo.slug):
                    target.links = target_links.to_json()

        dropped = [
            item for item in previous_outgoing if item not in outgoing and item != memo.slug
        ]
        await self._remove_incoming_from(session, dropped, memo.slug)
        return links

    async def _remove_incoming_from(
        self, session: AsyncSession, target_slugs: List[str], source_slug: str
    ) -> None:
        for chunk in _chunked(target_slugs):
            result = await session.execute(select(Memo).where(Memo.slug.in_(chunk)))
            for target in result.scalars().all():
                target_links = MemoLinks.parse(target.links, slug=target.slug)
                if target_links.remove_incoming([source_slug]):
                    target.links = target_links.to_json()

    async def sync_backlinks(self, slug: str) -> Dict[str, Any]:
        """Re-run backlink sync for an existing memo; idempotent."""
        async with self.session() as session:
            memo = await self._load_memo_by_slug(session, slug)
            if memo is None:
                raise NotFoundError("memo", slug)
            previous = MemoLinks.parse(memo.links, slug=memo.slug).outgoing
            links = await self._sync_backlinks(
                session, memo, previous_outgoing=previous, seed_incoming=False
            )
            return {"slug": memo.slug, "links": links.to_dict()}

    # =========================================================================
    # Memo Operations
    # =========================================================================

    async def create_memo(
        self,
        slug: str,
        content: str,
        headers: Optional[Dict[str, Any]] = None,
        parent_id: Optional[str] = None,
        author: Optional[str] = "user",
    ) -> Dict[str, Any]:
        """
        Create a memo and synchronize its backlinks.

        Raises:
            DuplicateSlugError: a memo with this slug exists (nothing is written)
            NotFoundError: parent_id does not reference an existing memo
        """
        slug = self._normalize_slug(slug)
        try:
            async with self.session() as session:
                if await self._load_memo_by_slug(session, slug) is not None:
                    raise DuplicateSlugError("memo", slug)
                if parent_id and await session.get(Memo, parent_id) is None:
                    raise NotFoundError("memo", parent_id, field="id")

                now = _utc_iso_now()
                memo = Memo(
                    id=_new_id(),
                    slug=slug,
                    content=content or "",
                    headers=dump_json(headers),
                    links=MemoLinks().to_json(),
                    parent_id=parent_id or None,
                    author=author or "user",
                    created=now,
                    modified=now,
                )
                session.add(memo)
                await session.flush()
                await self._sync_backlinks(
                    session, memo, previous_outgoing=[], seed_incoming=True
                )
                payload = self._memo_to_dict(memo)
        except IntegrityError as exc:
            raise DuplicateSlugError("memo", slug) from exc

        payload["embed_targets"] = [{"kind": "memo", "id": payload["id"]}]
        return payload

    async def create_reply(
        self,
        parent_slug: str,
        content: str,
        author: Optional[str] = "user",
        headers: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create a child memo under parent_slug with a generated unique slug."""
        async with self.session() as session:
            parent = await self._load_memo_by_slug(session, parent_slug)
            if parent is None:
                raise NotFoundError("memo", parent_slug)
            parent_id = parent.id

        last_error: Optional[DuplicateSlugError] = None
        for _ in range(3):
            slug = f"{parent_slug}-reply-{uuid.uuid4().hex[:8]}"
            try:
                return await self.create_memo(
                    slug, content, headers=headers, parent_id=parent_id, author=author
                )
            except DuplicateSlugError as exc:
                last_error = exc
        raise last_error

    async def edit_memo(
        self,
        memo_id: str,
        slug: Optional[str] = None,
        content: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
        summary: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Update a memo's content and/or headers.

        A content update re-synchronizes backlinks and schedules a re-embed.
        Slugs are immutable; passing a different slug is rejected.
        """
        async with self.session() as session:
            memo = await session.get(Memo, memo_id)
            if memo is None:
                raise NotFoundError("memo", memo_id, field="id")
            if slug is not None and slug.strip() != memo.slug:
                raise ValueError(f"Memo slug is immutable (is '{memo.slug}')")

            previous_outgoing = MemoLinks.parse(memo.links, slug=memo.slug).outgoing
            content_changed = content is not None and content != memo.content
            if content is not None:
                memo.content = content
            if headers is not None:
                memo.headers = dump_json(headers)
            if summary is not None:
                memo.summary = summary
            memo.modified = _utc_iso_now()

            if content is not None:
                await self._sync_backlinks(
                    session,
                    memo,
                    previous_outgoing=previous_outgoing,
                    seed_incoming=False,
                )
            payload = self._memo_to_dict(memo)

        needs_embedding = content_changed or payload["vector_id"] is None
        payload["embed_targets"] = (
            [{"kind": "memo", "id": payload["id"]}] if needs_embedding else []
        )
        return payload

    async def delete_memo(self, memo_id: str) -> Dict[str, Any]:
        """
        Delete a memo by id.

        Children are not deleted; their parent_id is left dangling and thread
        resolution treats them as roots. The vector entry is removed on a
        best-effort basis.
        """
        async with self.session() as session:
            memo = await session.get(Memo, memo_id)
            if memo is None:
                raise NotFoundError("memo", memo_id, field="id")
            slug = memo.slug
            outgoing = MemoLinks.parse(memo.links, slug=slug).outgoing
            await self._remove_incoming_from(
                session, [item for item in outgoing if item != slug], slug
            )
            await session.delete(memo)

        vector_deleted = await self.embeddings.delete(vector_id_for("memo", memo_id))
        return {"deleted": True, "id": memo_id, "slug": slug, "vector_deleted": vector_deleted}

    async def get_memo(self, slug: str) -> Dict[str, Any]:
        async with self.session() as session:
            memo = await self._load_memo_by_slug(session, slug)
            if memo is None:
                raise NotFoundError("memo", slug)
            return self._memo_to_dict(memo)

    async def get_memo_by_id(self, memo_id: str) -> Dict[str, Any]:
        async with self.session() as session:
            memo = await session.get(Memo, memo_id)
            if memo is None:
                raise NotFoundError("memo", memo_id, field="id")
            return self._memo_to_dict(memo)

    async def list_memos(
        self,
        sort_by: str = "modified",
        sort_order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        if sort_by not in MEMO_SORT_FIELDS:
            raise ValueError(f"sort_by must be one of {', '.join(MEMO_SORT_FIELDS)}")
        if sort_order not in ("asc", "desc"):
            raise ValueError("sort_order must be 'asc' or 'desc'")

        column = getattr(Memo, sort_by)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        async with self.session() as session:
            result = await session.execute(
                select(Memo).order_by(ordering).limit(max(1, limit)).offset(max(0, offset))
            )
            return [self._memo_to_dict(memo) for memo in result.scalars().all()]

    async def search_memos(
        self, query: str, field: str = "all", limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Substring search (case-insensitive for ASCII) over one or all memo fields."""
        if field not in MEMO_SEARCH_FIELDS:
            raise ValueError(f"field must be one of {', '.join(MEMO_SEARCH_FIELDS)}")
        pattern = f"%{self._escape_like_pattern(query or '')}%"
        columns = {
            "content": [Memo.content],
            "slug": [Memo.slug],
            "headers": [Memo.headers],
            "links": [Memo.links],
            "all": [Memo.content, Memo.slug, Memo.headers, Memo.links],
        }[field]

        async with self.session() as session:
            result = await session.execute(
                select(Memo)
                .where(or_(*[column.like(pattern, escape="\\") for column in columns]))
                .order_by(Memo.modified.desc())
                .limit(max(1, limit))
            )
            return [self._memo_to_dict(memo) for memo in result.scalars().all()]

    async def find_backlinks(
        self, slug: str, include_content: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Memos that reference slug, through their outgoing links or a literal
        `[[slug]]` token in their content.
        """
        async with self.session() as session:
            if await self._load_memo_by_slug(session, slug) is None:
                raise NotFoundError("memo", slug)
            memos = await self._memos_referencing(session, slug, include_content=True)

        if include_content:
            return [self._memo_to_dict(memo) for memo in memos]
        return [
            {"id": memo.id, "slug": memo.slug, "created": memo.created, "modified": memo.modified}
            for memo in memos
        ]

    # =========================================================================
    # Threads
    # =========================================================================

    async def get_thread(self, slug: str) -> Dict[str, Any]:
        """
        Resolve the full reply thread containing slug.

        Returns:
            {"root": memo, "memos": [root and all descendants, created asc],
             "total": count}

        Raises:
            NotFoundError: slug does not exist
            DataIntegrityError: the parent chain contains a cycle
        """
        async with self.session() as session:
            start = await self._load_memo_by_slug(session, slug)
            if start is None:
                raise NotFoundError("memo", slug)

            root = start
            ancestors = {start.id}
            while root.parent_id:
                if root.parent_id in ancestors:
                    raise DataIntegrityError(
                        f"Parent cycle detected at memo '{root.slug}'", slug=root.slug
                    )
                parent = await session.get(Memo, root.parent_id)
                if parent is None:
                    # Orphan: its parent was deleted.
                    break
                ancestors.add(parent.id)
                root = parent

            collected: Dict[str, Memo] = {root.id: root}
            frontier = [root.id]
            while frontier:
                next_frontier: List[str] = []
                for chunk in _chunked(frontier):
                    result = await session.execute(
                        select(Memo).where(Memo.parent_id.in_(chunk))
                    )
                    for child in result.scalars().all():
                        if child.id in collected:
                            continue
                        collected[child.id] = child
                        next_frontier.append(child.id)
                frontier = next_frontier

            ordered = sorted(collected.values(), key=lambda memo: (memo.created or "", memo.slug))
            return {
                "root": self._memo_to_dict(root),
                "memos": [self._memo_to_dict(memo) for memo in ordered],
                "total": len(ordered),
            }

    # =========================================================================
    # Fragments
    # =========================================================================

    async def _load_fragment_by_slug(
        self, session: AsyncSession, slug: str
    ) -> Optional[Fragment]:
        result = await session.execute(select(Fragment).where(Fragment.slug == slug))
        return result.scalar_one_or_none()

    async def create_fragment(
        self,
        slug: str,
        content: str,
        speaker: Optional[str] = None,
        ts: Optional[str] = None,
        convo_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        slug = self._normalize_slug(slug)
        if not (content or "").strip():
            raise ValueError("fragment content must not be empty")
        try:
            async with self.session() as session:
                if await self._load_fragment_by_slug(session, slug) is not None:
                    raise DuplicateSlugError("fragment", slug)
                now = _utc_iso_now()
                fragment = Fragment(
                    id=_new_id(),
                    slug=slug,
                    content=content,
                    speaker=speaker,
                    ts=ts or now,
                    convo_id=convo_id,
                    meta=dump_json(metadata),
                    created=now,
                    modified=now,
                )
                session.add(fragment)
                await session.flush()
                payload = self._fragment_to_dict(fragment)
        except IntegrityError as exc:
            raise DuplicateSlugError("fragment", slug) from exc

        payload["embed_targets"] = [{"kind": "fragment", "id": payload["id"]}]
        return payload

    async def get_fragment(self, slug: str) -> Dict[str, Any]:
        async with self.session() as session:
            fragment = await self._load_fragment_by_slug(session, slug)
            if fragment is None:
                raise NotFoundError("fragment", slug)
            return self._fragment_to_dict(fragment)

    async def fragment_exists(self, slug: str) -> bool:
        async with self.session() as session:
            result = await session.execute(
                select(Fragment.id).where(Fragment.slug == slug).limit(1)
            )
            return result.first() is not None

    async def list_fragments(
        self, limit: int = 20, offset: int = 0, query: Optional[str] = None
    ) -> Dict[str, Any]:
        """Page of fragments (most recently modified first) plus the total count."""
        count_stmt = select(func.count()).select_from(Fragment)
        page_stmt = select(Fragment)
        if query:
            pattern = f"%{self._escape_like_pattern(query)}%"
            condition = or_(
                Fragment.content.like(pattern, escape="\\"),
                Fragment.slug.like(pattern, escape="\\"),
            )
            count_stmt = count_stmt.where(condition)
            page_stmt = page_stmt.where(condition)

        async with self.session() as session:
            total_result = await session.execute(count_stmt)
            result = await session.execute(
                page_stmt.order_by(Fragment.modified.desc())
                .limit(max(1, limit))
                .offset(max(0, offset))
            )
            return {
                "total": int(total_result.scalar() or 0),
                "items": [self._fragment_to_dict(item) for item in result.scalars().all()],
            }

    async def search_fragments(self, query: str, limit: int = 20) -> List[Dict[str, Any]]:
        page = await self.list_fragments(limit=limit, offset=0, query=query or "")
        return page["items"]

    async def delete_fragment(self, slug: str) -> Dict[str, Any]:
        """Delete a fragment together with every edge touching it."""
        async with self.session() as session:
            fragment = await self._load_fragment_by_slug(session, slug)
            if fragment is None:
                raise NotFoundError("fragment", slug)
            fragment_id = fragment.id
            edge_result = await session.execute(
                delete(FragmentEdge).where(
                    or_(FragmentEdge.from_id == fragment_id, FragmentEdge.to_id == fragment_id)
                )
            )
            await session.delete(fragment)

        vector_deleted = await self.embeddings.delete(vector_id_for("fragment", fragment_id))
        return {
            "deleted": True,
            "id": fragment_id,
            "slug": slug,
            "edges_deleted": int(edge_result.rowcount or 0),
            "vector_deleted": vector_deleted,
        }

    # =========================================================================
    # Fragment Graph
    # =========================================================================

    async def link_fragments(
        self,
        from_slug: str,
        to_slug: str,
        rel: str,
        weight: float = 1.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        rel = (rel or "").strip()
        if not rel:
            raise ValueError("rel must not be empty")
        async with self.session() as session:
            source = await self._load_fragment_by_slug(session, from_slug)
            if source is None:
                raise NotFoundError("fragment", from_slug)
            target = await self._load_fragment_by_slug(session, to_slug)
            if target is None:
                raise NotFoundError("fragment", to_slug)

            edge = FragmentEdge(
                id=_new_id(),
                from_id=source.id,
                to_id=target.id,
                rel=rel,
                weight=1.0 if weight is None else float(weight),
                meta=dump_json(metadata),
                created=_utc_iso_now(),
            )
            session.add(edge)
            await session.flush()
            return {
                "id": edge.id,
                "from_slug": source.slug,
                "to_slug": target.slug,
                "rel": edge.rel,
                "weight": edge.weight,
                "metadata": load_json_object(edge.meta),
                "created": edge.created,
            }

    async def fragment_links(self, slug: str) -> Dict[str, Any]:
        """Outgoing and incoming edges of a fragment, oldest first."""
        async with self.session() as session:
            fragment = await self._load_fragment_by_slug(session, slug)
            if fragment is None:
                raise NotFoundError("fragment", slug)

            outgoing_rows = await session.execute(
                select(FragmentEdge.rel, FragmentEdge.weight, Fragment.slug)
                .join(Fragment, Fragment.id == FragmentEdge.to_id)
                .where(FragmentEdge.from_id == fragment.id)
                .order_by(FragmentEdge.created.asc())
            )
            incoming_rows = await session.execute(
                select(FragmentEdge.rel, FragmentEdge.weight, Fragment.slug)
                .join(Fragment, Fragment.id == FragmentEdge.from_id)
                .where(FragmentEdge.to_id == fragment.id)
                .order_by(FragmentEdge.created.asc())
            )
            return {
                "fragment_slug": fragment.slug,
                "outgoing": [
                    {"rel": rel, "to_slug": to_slug, "weight": weight}
                    for rel, weight, to_slug in outgoing_rows.all()
                ],
                "incoming": [
                    {"rel": rel, "from_slug": from_slug, "weight": weight}
                    for rel, weight, from_slug in incoming_rows.all()
                ],
            }

    async def list_nodes(self, limit: int = 1000) -> List[Dict[str, Any]]:
        """
        Fragments ranked by degree (out-edges + in-edges), highest first.

        Degree is counted live from the edge table; a self-loop counts twice.
        """
        out_degree = (
            select(func.count(FragmentEdge.id))
            .where(FragmentEdge.from_id == Fragment.id)
            .correlate(Fragment)
            .scalar_subquery()
        )
        in_degree = (
            select(func.count(FragmentEdge.id))
            .where(FragmentEdge.to_id == Fragment.id)
            .correlate(Fragment)
            .scalar_subquery()
        )
        degree = (out_degree + in_degree).label("degree")
        async with self.session() as session:
            result = await session.execute(
                select(Fragment.id, Fragment.slug, degree)
                .order_by(degree.desc(), Fragment.slug.asc())
                .limit(max(1, limit))
            )
            return [
                {"id": fragment_id, "slug": slug, "degree": int(count or 0)}
                for fragment_id, slug, count in result.all()
            ]

    async def list_edges(self) -> List[Dict[str, Any]]:
        source = aliased(Fragment)
        target = aliased(Fragment)
        async with self.session() as session:
            result = await session.execute(
                select(source.slug, target.slug, FragmentEdge.rel, FragmentEdge.weight)
                .select_from(FragmentEdge)
                .join(source, source.id == FragmentEdge.from_id)
                .join(target, target.id == FragmentEdge.to_id)
                .order_by(FragmentEdge.created.asc())
            )
            return [
                {"source": from_slug, "target": to_slug, "rel": rel, "weight": weight}
                for from_slug, to_slug, rel, weight in result.all()
            ]

    async def fragment_graph(self, limit: int = 1000) -> Dict[str, Any]:
        """Node/link payload for graph rendering; links stay within the returned nodes."""
        nodes = await self.list_nodes(limit=limit)
        slugs = {node["slug"] for node in nodes}
        links = [
            {
                "source": edge["source"],
                "target": edge["target"],
                "type": edge["rel"],
                "weight": edge["weight"],
            }
            for edge in await self.list_edges()
            if edge["source"] in slugs and edge["target"] in slugs
        ]
        return {
            "nodes": [
                {"id": node["slug"], "slug": node["slug"], "link_count": node["degree"]}
                for node in nodes
            ],
            "links": links,
        }

    # =========================================================================
    # Embeddings
    # =========================================================================

    @staticmethod
    def _model_for(kind: str):
        if kind == "memo":
            return Memo
        if kind == "fragment":
            return Fragment
        raise ValueError(f"Unknown entity kind '{kind}'")

    async def embed_entity(self, kind: str, entity_id: str) -> Dict[str, Any]:
        """
        Embed the current content of an entity and record its vector id.

        Safe to run more than once for the same entity: the vector id is
        deterministic and the index upsert overwrites.
        """
        model = self._model_for(kind)
        async with self.session() as session:
            row = await session.get(model, entity_id)
            if row is None:
                raise NotFoundError(kind, entity_id, field="id")
            slug, content = row.slug, row.content

        vector_id = await self.embeddings.embed_and_upsert(kind, entity_id, slug, content)

        async with self.session() as session:
            result = await session.execute(
                update(model).where(model.id == entity_id).values(vector_id=vector_id)
            )
        if result.rowcount == 0:
            # Entity deleted mid-embed.
            await self.embeddings.delete(vector_id)
            raise NotFoundError(kind, entity_id, field="id")
        return {"kind": kind, "id": entity_id, "slug": slug, "vector_id": vector_id}

    async def list_unembedded(
        self, kind: Optional[str] = None, limit: int = 500
    ) -> List[Dict[str, str]]:
        kinds = [kind] if kind else list(ENTITY_KINDS)
        targets: List[Dict[str, str]] = []
        async with self.session() as session:
            for item_kind in kinds:
                model = self._model_for(item_kind)
                result = await session.execute(
                    select(model.id)
                    .where(model.vector_id.is_(None))
                    .order_by(model.created.asc())
                    .limit(max(1, limit))
                )
                targets.extend({"kind": item_kind, "id": row_id} for row_id in result.scalars())
        return targets[: max(1, limit)]

    async def fetch_entities(self, kind: str, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Entities of one kind keyed by id; missing ids are simply absent."""
        model = self._model_for(kind)
        to_dict = self._memo_to_dict if kind == "memo" else self._fragment_to_dict
        found: Dict[str, Dict[str, Any]] = {}
        async with self.session() as session:
            for chunk in _chunked(list(dict.fromkeys(ids))):
                result = await session.execute(select(model).where(model.id.in_(chunk)))
                for row in result.scalars().all():
                    found[row.id] = to_dict(row)
        return found

    async def get_store_status(self) -> Dict[str, Any]:
        """Table counts and embedding coverage."""
        async with self.session() as session:
            counts: Dict[str, int] = {}
            for name, model in (("memos", Memo), ("fragments", Fragment), ("fragment_edges", FragmentEdge)):
                result = await session.execute(select(func.count()).select_from(model))
                counts[name] = int(result.scalar() or 0)
            unembedded: Dict[str, int] = {}
            for name, model in (("memos", Memo), ("fragments", Fragment)):
                result = await session.execute(
                    select(func.count()).select_from(model).where(model.vector_id.is_(None))
                )
                unembedded[name] = int(result.scalar() or 0)

        return {
            "counts": counts,
            "unembedded": unembedded,
            "embedding": {
                "backend": getattr(self.embedder, "backend", type(self.embedder).__name__),
                "model": getattr(self.embedder, "model", None),
            },
        }


# =============================================================================
# Global Singleton
# =============================================================================

_sqlite_client: Optional[SQLiteClient] = None


def get_sqlite_client() -> SQLiteClient:
    """Get the global SQLiteClient instance."""
    global _sqlite_client
    if _sqlite_client is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        _sqlite_client = SQLiteClient(database_url)
    return _sqlite_client


async def close_sqlite_client():
    """Close the global SQLiteClient connection."""
    global _sqlite_client
    if _sqlite_client:
        await _sqlite_client.close()
        _sqlite_client = None
