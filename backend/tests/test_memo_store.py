import sqlite3
from pathlib import Path

import pytest

from db.embeddings import EmbeddingClient
from db.errors import DuplicateSlugError, NotFoundError
from db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _new_client(tmp_path: Path) -> SQLiteClient:
    client = SQLiteClient(
        _sqlite_url(tmp_path / "memo.db"), embedder=EmbeddingClient(backend="hash")
    )
    await client.init_db()
    return client


@pytest.mark.asyncio
async def test_create_memo_derives_outgoing_links_and_rejects_duplicates(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        memo = await client.create_memo("reading", "Next: [[dune]] and [[neuromancer]]")
        assert memo["links"] == {"incoming": [], "outgoing": ["dune", "neuromancer"]}
        assert memo["author"] == "user"
        assert memo["embed_targets"] == [{"kind": "memo", "id": memo["id"]}]

        with pytest.raises(DuplicateSlugError):
            await client.create_memo("reading", "overwritten?")

        stored = await client.get_memo("reading")
        assert stored["content"] == "Next: [[dune]] and [[neuromancer]]"
        assert len(await client.list_memos()) == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_link_before_target_exists_is_seeded_on_target_creation(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        await client.create_memo("a", "points at [[b]]")
        b = await client.create_memo("b", "no links of its own")

        assert b["links"] == {"incoming": ["a"], "outgoing": []}
        assert (await client.get_memo("a"))["links"]["outgoing"] == ["b"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_edit_mirrors_added_and_removed_links(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        a = await client.create_memo("a", "nothing yet")
        await client.create_memo("b", "target")
        await client.create_memo("c", "target")

        await client.edit_memo(a["id"], content="see [[b]] and [[c]]")
        assert (await client.get_memo("b"))["links"]["incoming"] == ["a"]
        assert (await client.get_memo("c"))["links"]["incoming"] == ["a"]

        edited = await client.edit_memo(a["id"], content="only [[c]] now")
        assert edited["links"]["outgoing"] == ["c"]
        assert (await client.get_memo("b"))["links"]["incoming"] == []
        assert (await client.get_memo("c"))["links"]["incoming"] == ["a"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_edit_keeps_incoming_links_and_resync_is_idempotent(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        await client.create_memo("a", "[[b]]")
        b = await client.create_memo("b", "first")

        edited = await client.edit_memo(b["id"], content="second version")
        assert edited["links"]["incoming"] == ["a"]

        first = await client.sync_backlinks("a")
        second = await client.sync_backlinks("a")
        assert first == second
        assert (await client.get_memo("b"))["links"]["incoming"] == ["a"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_self_link_appears_in_both_directions(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        memo = await client.create_memo("loop", "I mention [[loop]]")
        assert memo["links"] == {"incoming": ["loop"], "outgoing": ["loop"]}

        edited = await client.edit_memo(memo["id"], content="no longer")
        assert edited["links"] == {"incoming": [], "outgoing": []}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_edit_rejects_slug_change_and_unknown_id(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        memo = await client.create_memo("fixed", "content")

        with pytest.raises(ValueError, match="immutable"):
            await client.edit_memo(memo["id"], slug="renamed", content="x")
        with pytest.raises(NotFoundError):
            await client.edit_memo("missing-id", content="x")

        unchanged = await client.edit_memo(memo["id"], slug="fixed", headers={"k": 1})
        assert unchanged["headers"] == {"k": 1}
        assert unchanged["content"] == "content"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_edit_schedules_embedding_only_when_content_changes(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        memo = await client.create_memo("note", "body")
        await client.embed_entity("memo", memo["id"])

        headers_only = await client.edit_memo(memo["id"], headers={"tag": "x"})
        assert headers_only["embed_targets"] == []

        same_content = await client.edit_memo(memo["id"], content="body")
        assert same_content["embed_targets"] == []

        changed = await client.edit_memo(memo["id"], content="new body")
        assert changed["embed_targets"] == [{"kind": "memo", "id": memo["id"]}]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_delete_memo_prunes_incoming_links_of_targets(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        a = await client.create_memo("a", "[[b]]")
        await client.create_memo("b", "target")

        result = await client.delete_memo(a["id"])
        assert result["deleted"] is True
        assert result["slug"] == "a"

        assert (await client.get_memo("b"))["links"]["incoming"] == []
        with pytest.raises(NotFoundError):
            await client.get_memo("a")
        with pytest.raises(NotFoundError):
            await client.delete_memo(a["id"])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_list_memos_sorting_and_validation(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        for slug in ("charlie", "alpha", "bravo"):
            await client.create_memo(slug, slug)

        by_slug = await client.list_memos(sort_by="slug", sort_order="asc")
        assert [memo["slug"] for memo in by_slug] == ["alpha", "bravo", "charlie"]

        newest_first = await client.list_memos(sort_by="created", sort_order="desc", limit=2)
        assert [memo["slug"] for memo in newest_first] == ["bravo", "alpha"]

        with pytest.raises(ValueError):
            await client.list_memos(sort_by="content")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_memos_escapes_like_wildcards(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        await client.create_memo("sure", "I am 100% sure")
        await client.create_memo("percent", "I am 100 percent sure")

        results = await client.search_memos("100%", field="content")
        assert [memo["slug"] for memo in results] == ["sure"]

        by_slug = await client.search_memos("perc", field="slug")
        assert [memo["slug"] for memo in by_slug] == ["percent"]

        with pytest.raises(ValueError):
            await client.search_memos("x", field="author")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_find_backlinks_returns_summaries_unless_content_requested(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        await client.create_memo("target", "the target")
        await client.create_memo("first", "links [[target]]")
        await client.create_memo("second", "also [[target]]")
        await client.create_memo("unrelated", "nothing")

        summaries = await client.find_backlinks("target")
        assert [item["slug"] for item in summaries] == ["first", "second"]
        assert set(summaries[0]) == {"id", "slug", "created", "modified"}

        full = await client.find_backlinks("target", include_content=True)
        assert full[0]["content"] == "links [[target]]"

        with pytest.raises(NotFoundError):
            await client.find_backlinks("missing")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_malformed_links_column_reads_as_empty(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        await client.create_memo("damaged", "plain")
    finally:
        await client.close()

    with sqlite3.connect(tmp_path / "memo.db") as conn:
        conn.execute("UPDATE memos SET links = '{oops' WHERE slug = 'damaged'")
        conn.commit()

    client = await _new_client(tmp_path)
    try:
        memo = await client.get_memo("damaged")
        assert memo["links"] == {"incoming": [], "outgoing": []}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_init_db_upgrades_legacy_memos_table(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.db"
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE memos (
                id TEXT PRIMARY KEY,
                slug TEXT NOT NULL UNIQUE,
                content TEXT NOT NULL,
                headers TEXT NOT NULL DEFAULT '{}',
                links TEXT NOT NULL DEFAULT '{}',
                created TEXT NOT NULL,
                modified TEXT NOT NULL
            )
            """
        )
        conn.execute(
            "INSERT INTO memos (id, slug, content, headers, links, created, modified) "
            "VALUES ('legacy-id', 'legacy', 'old [[new]]', '{}', "
            "'{\"incoming\": [], \"outgoing\": [\"new\"]}', "
            "'2020-01-01T00:00:00.000000Z', '2020-01-01T00:00:00.000000Z')"
        )
        conn.commit()

    client = SQLiteClient(_sqlite_url(db_path), embedder=EmbeddingClient(backend="hash"))
    try:
        await client.init_db()
        legacy = await client.get_memo("legacy")
        assert legacy["author"] == "user"
        assert legacy["parent_id"] is None

        created = await client.create_memo("new", "fresh")
        assert created["links"]["incoming"] == ["legacy"]
    finally:
        await client.close()

    with sqlite3.connect(db_path) as conn:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(memos)").fetchall()}
        assert {"vector_id", "parent_id", "author", "summary"} <= columns
        versions = [row[0] for row in conn.execute("SELECT version FROM schema_migrations")]
        assert versions == ["0001", "0002"]
