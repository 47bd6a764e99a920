"""
Semantic context assembly for conversational turns.

Per turn: embed the utterance, fetch the nearest fragments from the vector
index, and render them as a numbered context block for the system prompt.
Retrieval is an enhancement: an embedding failure, an index failure or a
timeout yields an empty block marked `degraded`, never an error.
"""

import asyncio
import logging
import os
import re
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from db.errors import DuplicateSlugError, EmbeddingError, MemoGraphError, VectorStoreError
from runtime_state import TurnSession, runtime_state

logger = logging.getLogger(__name__)

PROMPT_SECTION_HEADER = "---- Related fragments ----"
DEFAULT_TOP_K = 3
DEFAULT_THRESHOLD = 0.75


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _append_degrade_reason(degrade_reasons: List[str], reason: str) -> None:
    if reason and reason not in degrade_reasons:
        degrade_reasons.append(reason)


@dataclass
class ContextItem:
    rank: int
    kind: str
    id: str
    slug: str
    content: str
    score: float


@dataclass
class ContextBlock:
    text: str = ""
    items: List[ContextItem] = field(default_factory=list)
    degraded: bool = False
    degrade_reasons: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "items": [asdict(item) for item in self.items],
            "degraded": self.degraded,
            "degrade_reasons": list(self.degrade_reasons),
        }


def _truncate(content: str, max_chars: Optional[int]) -> str:
    if not max_chars or len(content) <= max_chars:
        return content
    return content[:max_chars].rstrip() + "…"


def render_context(items: Iterable[ContextItem], max_chars: Optional[int] = None) -> str:
    """`#<rank> [[<slug>]]` headed blocks separated by blank lines."""
    return "\n\n".join(
        f"#{item.rank} [[{item.slug}]]\n{_truncate(item.content, max_chars)}" for item in items
    )


def build_prompt_section(block: ContextBlock) -> str:
    if block.is_empty:
        return ""
    return f"{PROMPT_SECTION_HEADER}\n{block.text}"


def _match_owner(metadata: Dict[str, Any]) -> Optional[tuple]:
    kind = metadata.get("kind")
    if kind not in ("memo", "fragment"):
        kind = "fragment" if "fragment_id" in metadata else "memo" if "memo_id" in metadata else None
    if kind is None:
        return None
    entity_id = metadata.get(f"{kind}_id")
    if not entity_id:
        return None
    return kind, str(entity_id)


async def _rank_entities(
    client: Any,
    query: str,
    *,
    top_k: int,
    threshold: float,
    kind: Optional[str],
    exclude_ids: Iterable[str],
    degrade_reasons: List[str],
) -> List[ContextItem]:
    try:
        vector = await client.embeddings.embed(query)
    except EmbeddingError as exc:
        logger.warning("Query embedding failed: %s", exc)
        _append_degrade_reason(degrade_reasons, "embedding_failed")
        return []

    excluded = set(exclude_ids)
    try:
        # Over-fetch so excluded or vanished entities do not starve top_k.
        matches = await client.embeddings.query(
            vector, top_k=top_k + len(excluded), threshold=threshold, kind=kind
        )
    except VectorStoreError as exc:
        logger.warning("Vector index query failed: %s", exc)
        _append_degrade_reason(degrade_reasons, "vector_query_failed")
        return []

    owners = []
    for match in matches:
        owner = _match_owner(match.metadata or {})
        if owner is None or owner[1] in excluded:
            continue
        owners.append((match, owner))

    ids_by_kind: Dict[str, List[str]] = {}
    for _, (owner_kind, owner_id) in owners:
        ids_by_kind.setdefault(owner_kind, []).append(owner_id)
    entities = {
        owner_kind: await client.fetch_entities(owner_kind, ids)
        for owner_kind, ids in ids_by_kind.items()
    }

    items: List[ContextItem] = []
    for match, (owner_kind, owner_id) in owners:
        entity = entities.get(owner_kind, {}).get(owner_id)
        if entity is None:
            continue
        items.append(
            ContextItem(
                rank=len(items) + 1,
                kind=owner_kind,
                id=owner_id,
                slug=entity["slug"],
                content=entity["content"],
                score=round(float(match.score), 6),
            )
        )
        if len(items) >= top_k:
            break
    return items


async def semantic_search(
    client: Any,
    query: str,
    *,
    top_k: int = 5,
    threshold: float = 0.0,
    kind: Optional[str] = None,
) -> Dict[str, Any]:
    """Ranked memos and/or fragments nearest to query, with similarity scores."""
    degrade_reasons: List[str] = []
    items = await _rank_entities(
        client,
        query,
        top_k=max(1, top_k),
        threshold=threshold,
        kind=kind,
        exclude_ids=(),
        degrade_reasons=degrade_reasons,
    )
    return {
        "query": query,
        "results": [asdict(item) for item in items],
        "degraded": bool(degrade_reasons),
        "degrade_reasons": degrade_reasons,
    }


async def assemble_context(
    client: Any,
    text: str,
    *,
    top_k: int = DEFAULT_TOP_K,
    threshold: float = DEFAULT_THRESHOLD,
    max_chars: Optional[int] = None,
    kind: Optional[str] = "fragment",
    exclude_ids: Iterable[str] = (),
) -> ContextBlock:
    degrade_reasons: List[str] = []
    items = await _rank_entities(
        client,
        text,
        top_k=max(1, top_k),
        threshold=threshold,
        kind=kind,
        exclude_ids=exclude_ids,
        degrade_reasons=degrade_reasons,
    )
    return ContextBlock(
        text=render_context(items, max_chars=max_chars),
        items=items,
        degraded=bool(degrade_reasons),
        degrade_reasons=degrade_reasons,
    )


async def assemble_with_timeout(
    client: Any,
    text: str,
    *,
    timeout_seconds: Optional[float] = None,
    **kwargs: Any,
) -> ContextBlock:
    if timeout_seconds is None:
        timeout_seconds = _env_float("CONTEXT_TIMEOUT_SEC", 5.0)
    try:
        return await asyncio.wait_for(
            assemble_context(client, text, **kwargs), timeout=max(0.01, timeout_seconds)
        )
    except asyncio.TimeoutError:
        logger.warning("Context assembly timed out after %.2fs", timeout_seconds)
        return ContextBlock(degraded=True, degrade_reasons=["context_timeout"])


def slugify_fragment(text: str) -> str:
    """First six words, lowercased and stripped of punctuation, joined by '-'."""
    cleaned = re.sub(r"[^a-z0-9\s]", "", (text or "").lower())
    words = cleaned.split()[:6]
    if not words:
        return f"fragment-{uuid.uuid4().hex[:8]}"
    return "-".join(words)


async def maybe_create_fragment(
    client: Any,
    session: TurnSession,
    *,
    message_id: str,
    content: str,
    speaker: str = "user",
    convo_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """
    Turn a sufficiently long message into a fragment, once per message id.

    Never raises: a slug collision or store failure is logged and the turn
    continues without a fragment.
    """
    if not session.auto_fragments:
        return None
    text = (content or "").strip()
    min_chars = int(_env_float("AUTO_FRAGMENT_MIN_CHARS", 20))
    if len(text) < min_chars:
        return None
    if not session.mark_processed(message_id):
        return None

    slug = slugify_fragment(text)
    try:
        fragment = await client.create_fragment(
            slug,
            text,
            speaker=speaker,
            convo_id=convo_id or session.session_id,
            metadata={"auto": True, "message_id": message_id, **(metadata or {})},
        )
    except DuplicateSlugError:
        logger.info("Auto fragment '%s' already exists; skipping", slug)
        return None
    except (MemoGraphError, ValueError) as exc:
        logger.warning("Auto fragment creation failed for message %s: %s", message_id, exc)
        return None

    session.auto_fragment_slugs.append(fragment["slug"])
    await runtime_state.dispatch_embeddings(
        client, fragment.pop("embed_targets", []), reason="auto_fragment"
    )
    return fragment


async def fragment_from_memo(client: Any, memo: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Derive a fragment from a user-authored memo when AUTO_FRAGMENT_FROM_MEMOS is on."""
    if (os.getenv("AUTO_FRAGMENT_FROM_MEMOS") or "").strip().lower() not in {"1", "true", "yes", "on"}:
        return None
    if (memo.get("author") or "user") != "user":
        return None
    session = await runtime_state.turn_sessions.get_or_create("memos")
    return await maybe_create_fragment(
        client,
        session,
        message_id=f"memo:{memo['id']}",
        content=memo.get("content") or "",
        speaker="user",
        convo_id=None,
        metadata={"source_memo": memo["slug"]},
    )


async def prepare_turn(
    client: Any,
    session: TurnSession,
    *,
    message_id: str,
    content: str,
    speaker: str = "user",
    timeout_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    """Auto-fragment the message (user turns only), then assemble its context."""
    fragment = None
    if speaker == "user":
        fragment = await maybe_create_fragment(
            client, session, message_id=message_id, content=content, speaker=speaker
        )

    block = await assemble_with_timeout(
        client,
        content,
        timeout_seconds=timeout_seconds,
        top_k=session.top_k,
        threshold=session.threshold,
        max_chars=session.max_chars,
        exclude_ids=[fragment["id"]] if fragment else (),
    )
    return {
        "session": session.to_dict(),
        "auto_fragment": fragment,
        "context": block.to_dict(),
        "prompt_section": build_prompt_section(block),
    }
