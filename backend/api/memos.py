"""
Memos API - slug-addressed notes, reply threads and backlinks.

Write endpoints share the maintenance API key guard; reads are open.
"""

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from context_assembler import fragment_from_memo
from db import get_sqlite_client
from db.errors import DataIntegrityError
from runtime_state import runtime_state
from .errors import to_http_exception
from .maintenance import require_maintenance_api_key

router = APIRouter(prefix="/memos", tags=["memos"])


class MemoCreate(BaseModel):
    slug: str = Field(min_length=1)
    content: str = ""
    headers: dict[str, Any] | None = None
    parent_id: str | None = None
    author: str | None = "user"


class MemoUpdate(BaseModel):
    slug: str | None = None
    content: str | None = None
    headers: dict[str, Any] | None = None
    summary: str | None = None


class ReplyCreate(BaseModel):
    parent_slug: str = Field(min_length=1)
    content: str
    author: str | None = "user"


async def _schedule_embeddings(client, payload: dict[str, Any], reason: str) -> dict[str, Any]:
    await runtime_state.ensure_started(get_sqlite_client)
    targets = payload.pop("embed_targets", [])
    payload["embedding"] = await runtime_state.dispatch_embeddings(client, targets, reason=reason)
    return payload


@router.get("")
async def list_memos(
    sort_by: Literal["created", "modified", "slug"] = Query("modified"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    client = get_sqlite_client()
    memos = await client.list_memos(
        sort_by=sort_by, sort_order=sort_order, limit=limit, offset=offset
    )
    return {"success": True, "memos": memos, "count": len(memos)}


@router.get("/search")
async def search_memos(
    query: str = Query(..., min_length=1),
    field: Literal["content", "slug", "headers", "links", "all"] = Query("all"),
    limit: int = Query(10, ge=1, le=200),
):
    client = get_sqlite_client()
    memos = await client.search_memos(query, field=field, limit=limit)
    return {"success": True, "memos": memos, "count": len(memos)}


@router.get("/thread")
async def get_thread(slug: str = Query(..., min_length=1)):
    """
    Resolve the reply thread containing a memo: its root and every descendant,
    oldest first.
    """
    client = get_sqlite_client()
    try:
        thread = await client.get_thread(slug)
    except (ValueError, DataIntegrityError) as e:
        raise to_http_exception(e)
    return {"success": True, **thread}


@router.get("/backlinks")
async def get_backlinks(
    slug: str = Query(..., min_length=1),
    include_content: bool = Query(False),
):
    client = get_sqlite_client()
    try:
        memos = await client.find_backlinks(slug, include_content=include_content)
    except ValueError as e:
        raise to_http_exception(e)
    return {"success": True, "slug": slug, "backlinks": memos, "count": len(memos)}


@router.get("/by-slug/{slug}")
async def get_memo(slug: str):
    client = get_sqlite_client()
    try:
        memo = await client.get_memo(slug)
    except ValueError as e:
        raise to_http_exception(e)
    return {"success": True, "memo": memo}


@router.post("")
async def create_memo(
    body: MemoCreate,
    _auth: None = Depends(require_maintenance_api_key),
):
    client = get_sqlite_client()
    try:
        memo = await client.create_memo(
            body.slug,
            body.content,
            headers=body.headers,
            parent_id=body.parent_id,
            author=body.author,
        )
    except ValueError as e:
        raise to_http_exception(e)

    memo = await _schedule_embeddings(client, memo, reason="create_memo")
    fragment = await fragment_from_memo(client, memo)
    return {
        "success": True,
        "memo": memo,
        "auto_fragment": fragment["slug"] if fragment else None,
    }


@router.post("/reply")
async def create_reply(
    body: ReplyCreate,
    _auth: None = Depends(require_maintenance_api_key),
):
    client = get_sqlite_client()
    try:
        memo = await client.create_reply(body.parent_slug, body.content, author=body.author)
    except ValueError as e:
        raise to_http_exception(e)

    memo = await _schedule_embeddings(client, memo, reason="create_reply")
    return {"success": True, "memo": memo}


@router.put("/{memo_id}")
async def edit_memo(
    memo_id: str,
    body: MemoUpdate,
    _auth: None = Depends(require_maintenance_api_key),
):
    if body.content is None and body.headers is None and body.summary is None:
        raise HTTPException(status_code=422, detail="Nothing to update")

    client = get_sqlite_client()
    try:
        memo = await client.edit_memo(
            memo_id,
            slug=body.slug,
            content=body.content,
            headers=body.headers,
            summary=body.summary,
        )
    except ValueError as e:
        raise to_http_exception(e)

    memo = await _schedule_embeddings(client, memo, reason="edit_memo")
    return {"success": True, "memo": memo}


@router.delete("/{memo_id}")
async def delete_memo(
    memo_id: str,
    _auth: None = Depends(require_maintenance_api_key),
):
    client = get_sqlite_client()
    try:
        result = await client.delete_memo(memo_id)
    except ValueError as e:
        raise to_http_exception(e)
    return {"success": True, **result}
