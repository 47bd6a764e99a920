import asyncio
from pathlib import Path

import pytest

import context_assembler
from context_assembler import (
    PROMPT_SECTION_HEADER,
    ContextBlock,
    ContextItem,
    assemble_context,
    assemble_with_timeout,
    build_prompt_section,
    maybe_create_fragment,
    prepare_turn,
    render_context,
    semantic_search,
    slugify_fragment,
)
from db.embeddings import EmbeddingClient, hash_embedding
from db.errors import EmbeddingError, VectorStoreError
from db.sqlite_client import SQLiteClient
from runtime_state import RuntimeState, TurnSession


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _FailingEmbedder:
    async def embed(self, text: str):
        raise EmbeddingError("generator offline")


class _SlowEmbedder:
    async def embed(self, text: str):
        await asyncio.sleep(1.0)
        return hash_embedding(text, 64)


class _BrokenIndex:
    async def upsert(self, vector_id, values, metadata):
        raise VectorStoreError("index offline")

    async def query(self, values, top_k=3, threshold=0.0, kind=None):
        raise VectorStoreError("index offline")


@pytest.fixture
def inline_runtime(monkeypatch):
    monkeypatch.setenv("RUNTIME_EMBED_WORKER_ENABLED", "false")
    monkeypatch.delenv("AUTO_FRAGMENT_MIN_CHARS", raising=False)
    state = RuntimeState()
    monkeypatch.setattr(context_assembler, "runtime_state", state)
    return state


async def _client_with_fragments(tmp_path: Path, **kwargs) -> SQLiteClient:
    client = SQLiteClient(
        _sqlite_url(tmp_path / "context.db"),
        embedder=kwargs.pop("embedder", EmbeddingClient(backend="hash")),
        **kwargs,
    )
    await client.init_db()
    return client


async def _embedded_fragment(client: SQLiteClient, slug: str, content: str) -> dict:
    fragment = await client.create_fragment(slug, content, speaker="user")
    await client.embed_entity("fragment", fragment["id"])
    return fragment


def test_render_context_numbers_blocks_and_truncates() -> None:
    items = [
        ContextItem(rank=1, kind="fragment", id="1", slug="a", content="hello world", score=0.9),
        ContextItem(rank=2, kind="fragment", id="2", slug="b", content="short", score=0.8),
    ]

    assert render_context(items) == "#1 [[a]]\nhello world\n\n#2 [[b]]\nshort"
    assert render_context(items, max_chars=5) == "#1 [[a]]\nhello…\n\n#2 [[b]]\nshort"


def test_prompt_section_is_empty_for_empty_block() -> None:
    assert build_prompt_section(ContextBlock()) == ""
    block = ContextBlock(
        text="#1 [[a]]\nA",
        items=[ContextItem(rank=1, kind="fragment", id="1", slug="a", content="A", score=1.0)],
    )
    assert build_prompt_section(block) == f"{PROMPT_SECTION_HEADER}\n#1 [[a]]\nA"


def test_slugify_fragment_uses_first_six_words() -> None:
    assert slugify_fragment("Hello, World! This is a long message here") == (
        "hello-world-this-is-a-long"
    )
    assert slugify_fragment("?!...").startswith("fragment-")


@pytest.mark.asyncio
async def test_assemble_context_ranks_nearest_fragments(tmp_path: Path) -> None:
    client = await _client_with_fragments(tmp_path)
    try:
        await _embedded_fragment(client, "coffee", "coffee helps me focus in the morning")
        await _embedded_fragment(client, "garden", "tomatoes need full sun and water")

        block = await assemble_context(
            client, "coffee helps me focus in the morning", top_k=3, threshold=0.99
        )

        assert not block.degraded
        assert [item.slug for item in block.items] == ["coffee"]
        assert block.items[0].score == pytest.approx(1.0)
        assert block.text == "#1 [[coffee]]\ncoffee helps me focus in the morning"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_vanished_entities_are_dropped_silently(tmp_path: Path) -> None:
    client = await _client_with_fragments(tmp_path)
    try:
        await _embedded_fragment(client, "coffee", "coffee helps me focus")
        await client.vector_index.upsert(
            "fragment-ghost",
            hash_embedding("coffee helps me focus", 64),
            {"kind": "fragment", "fragment_id": "ghost", "slug": "ghost"},
        )

        block = await assemble_context(client, "coffee helps me focus", threshold=0.99)

        assert [(item.rank, item.slug) for item in block.items] == [(1, "coffee")]
        assert not block.degraded
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_embedding_outage_yields_empty_degraded_context(tmp_path: Path) -> None:
    client = await _client_with_fragments(tmp_path, embedder=_FailingEmbedder())
    try:
        block = await assemble_context(client, "anything at all")

        assert block.is_empty
        assert block.text == ""
        assert block.degraded is True
        assert block.degrade_reasons == ["embedding_failed"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_vector_index_outage_yields_empty_degraded_search(tmp_path: Path) -> None:
    client = await _client_with_fragments(tmp_path, vector_index=_BrokenIndex())
    try:
        result = await semantic_search(client, "anything")

        assert result["results"] == []
        assert result["degraded"] is True
        assert result["degrade_reasons"] == ["vector_query_failed"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_slow_retrieval_times_out_to_empty_context(tmp_path: Path) -> None:
    client = await _client_with_fragments(tmp_path, embedder=_SlowEmbedder())
    try:
        block = await assemble_with_timeout(client, "slow query", timeout_seconds=0.05)

        assert block.is_empty
        assert block.degrade_reasons == ["context_timeout"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_semantic_search_filters_by_kind(tmp_path: Path) -> None:
    client = await _client_with_fragments(tmp_path)
    try:
        memo = await client.create_memo("coffee-memo", "coffee helps me focus")
        await client.embed_entity("memo", memo["id"])
        await _embedded_fragment(client, "coffee", "coffee helps me focus")

        everything = await semantic_search(client, "coffee helps me focus", threshold=0.99)
        assert {item["kind"] for item in everything["results"]} == {"memo", "fragment"}

        memos_only = await semantic_search(
            client, "coffee helps me focus", threshold=0.99, kind="memo"
        )
        assert [item["slug"] for item in memos_only["results"]] == ["coffee-memo"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_auto_fragment_is_created_once_per_message(tmp_path: Path, inline_runtime) -> None:
    client = await _client_with_fragments(tmp_path)
    try:
        session = TurnSession(session_id="chat-1")

        too_short = await maybe_create_fragment(
            client, session, message_id="m0", content="short note"
        )
        assert too_short is None

        fragment = await maybe_create_fragment(
            client, session, message_id="m1", content="I water the tomatoes every evening"
        )
        assert fragment["slug"] == "i-water-the-tomatoes-every-evening"
        assert fragment["metadata"] == {"auto": True, "message_id": "m1"}
        assert fragment["convo_id"] == "chat-1"
        assert session.auto_fragment_slugs == [fragment["slug"]]

        again = await maybe_create_fragment(
            client, session, message_id="m1", content="I water the tomatoes every evening"
        )
        assert again is None
        assert (await client.list_fragments())["total"] == 1
        assert (await client.get_fragment(fragment["slug"]))["vector_id"] is not None
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_auto_fragment_slug_collision_is_absorbed(tmp_path: Path, inline_runtime) -> None:
    client = await _client_with_fragments(tmp_path)
    try:
        await client.create_fragment("i-water-the-tomatoes-every-evening", "existing")
        session = TurnSession(session_id="chat-1")

        fragment = await maybe_create_fragment(
            client, session, message_id="m1", content="I water the tomatoes every evening, really"
        )

        assert fragment is None
        assert session.auto_fragment_slugs == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_prepare_turn_excludes_the_fragment_it_just_created(
    tmp_path: Path, inline_runtime
) -> None:
    client = await _client_with_fragments(tmp_path)
    try:
        await _embedded_fragment(client, "tomatoes", "tomatoes need water every evening")
        session = TurnSession(session_id="chat-1", top_k=3, threshold=0.0)

        turn = await prepare_turn(
            client,
            session,
            message_id="m1",
            content="do my tomatoes need water every evening",
            timeout_seconds=5,
        )

        created_slug = turn["auto_fragment"]["slug"]
        returned = [item["slug"] for item in turn["context"]["items"]]
        assert created_slug not in returned
        assert returned == ["tomatoes"]
        assert turn["prompt_section"].startswith(PROMPT_SECTION_HEADER)
        assert turn["session"]["processed_messages"] == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_prepare_turn_skips_auto_fragment_for_assistant(
    tmp_path: Path, inline_runtime
) -> None:
    client = await _client_with_fragments(tmp_path)
    try:
        session = TurnSession(session_id="chat-1", threshold=0.0)

        turn = await prepare_turn(
            client,
            session,
            message_id="m1",
            content="here is a long assistant answer about gardening",
            speaker="assistant",
        )

        assert turn["auto_fragment"] is None
        assert turn["prompt_section"] == ""
        assert (await client.list_fragments())["total"] == 0
    finally:
        await client.close()
