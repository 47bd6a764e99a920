import re
from pathlib import Path

import pytest
from sqlalchemy import update

from db.embeddings import EmbeddingClient
from db.errors import DataIntegrityError, NotFoundError
from db.sqlite_client import Memo, SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _new_client(tmp_path: Path) -> SQLiteClient:
    client = SQLiteClient(
        _sqlite_url(tmp_path / "threads.db"), embedder=EmbeddingClient(backend="hash")
    )
    await client.init_db()
    return client


@pytest.mark.asyncio
async def test_reply_slug_is_derived_from_parent(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        root = await client.create_memo("topic", "root post")
        reply = await client.create_reply("topic", "a reply", author="assistant")

        assert re.fullmatch(r"topic-reply-[0-9a-f]{8}", reply["slug"])
        assert reply["parent_id"] == root["id"]
        assert reply["author"] == "assistant"

        with pytest.raises(NotFoundError):
            await client.create_reply("missing", "orphan reply")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_thread_is_identical_from_any_member(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        await client.create_memo("topic", "root post")
        first = await client.create_reply("topic", "first")
        second = await client.create_reply("topic", "second")
        nested = await client.create_reply(first["slug"], "nested")
        await client.create_memo("other", "separate thread")

        expected = ["topic", first["slug"], second["slug"], nested["slug"]]
        for member in expected:
            thread = await client.get_thread(member)
            assert thread["root"]["slug"] == "topic"
            assert [memo["slug"] for memo in thread["memos"]] == expected
            assert thread["total"] == 4
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_deep_thread_resolves_to_its_root(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        await client.create_memo("deep", "level 0")
        parent_slug = "deep"
        for level in range(1, 60):
            reply = await client.create_reply(parent_slug, f"level {level}")
            parent_slug = reply["slug"]

        thread = await client.get_thread(parent_slug)
        assert thread["root"]["slug"] == "deep"
        assert thread["total"] == 60
        assert thread["memos"][-1]["slug"] == parent_slug
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_reply_whose_parent_was_deleted_becomes_root(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        root = await client.create_memo("topic", "root post")
        child = await client.create_reply("topic", "child")
        grandchild = await client.create_reply(child["slug"], "grandchild")

        await client.delete_memo(root["id"])

        thread = await client.get_thread(grandchild["slug"])
        assert thread["root"]["slug"] == child["slug"]
        assert [memo["slug"] for memo in thread["memos"]] == [child["slug"], grandchild["slug"]]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_parent_cycle_raises_data_integrity_error(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        a = await client.create_memo("a", "first")
        b = await client.create_reply("a", "second")

        async with client.session() as session:
            await session.execute(update(Memo).where(Memo.id == a["id"]).values(parent_id=b["id"]))

        with pytest.raises(DataIntegrityError) as excinfo:
            await client.get_thread(b["slug"])
        assert excinfo.value.code == "data_integrity_error"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_thread_of_unknown_slug_is_not_found(tmp_path: Path) -> None:
    client = await _new_client(tmp_path)
    try:
        with pytest.raises(NotFoundError):
            await client.get_thread("nope")
    finally:
        await client.close()
