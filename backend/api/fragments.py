"""
Fragments API - speaker-attributed snippets and the relation graph between them.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from db import get_sqlite_client
from runtime_state import runtime_state
from .errors import to_http_exception
from .maintenance import require_maintenance_api_key

router = APIRouter(prefix="/fragments", tags=["fragments"])


class FragmentCreate(BaseModel):
    slug: str = Field(min_length=1)
    content: str = Field(min_length=1)
    speaker: str | None = None
    ts: str | None = None
    convo_id: str | None = None
    metadata: dict[str, Any] | None = None


class FragmentLink(BaseModel):
    from_slug: str = Field(min_length=1)
    to_slug: str = Field(min_length=1)
    rel: str = Field(min_length=1)
    weight: float = 1.0
    metadata: dict[str, Any] | None = None


@router.get("")
async def list_fragments(
    limit: int = Query(20, ge=1, le=500),
    offset: int = Query(0, ge=0),
    query: str | None = Query(None),
    q: str | None = Query(None),
):
    client = get_sqlite_client()
    page = await client.list_fragments(limit=limit, offset=offset, query=query or q)
    return {"success": True, **page}


@router.get("/exists")
async def fragment_exists(slug: str = Query(..., min_length=1)):
    client = get_sqlite_client()
    return {"success": True, "slug": slug, "exists": await client.fragment_exists(slug)}


@router.get("/graph")
async def fragment_graph(limit: int = Query(1000, ge=1, le=10000)):
    """
    Degree-ranked fragment nodes and the edges between them, shaped for
    force-directed rendering.
    """
    client = get_sqlite_client()
    return await client.fragment_graph(limit=limit)


@router.get("/{slug}")
async def get_fragment(slug: str):
    client = get_sqlite_client()
    try:
        fragment = await client.get_fragment(slug)
    except ValueError as e:
        raise to_http_exception(e)
    return {"success": True, "fragment": fragment}


@router.get("/{slug}/links")
async def get_fragment_links(slug: str):
    client = get_sqlite_client()
    try:
        links = await client.fragment_links(slug)
    except ValueError as e:
        raise to_http_exception(e)
    return {"success": True, **links}


@router.post("")
async def create_fragment(
    body: FragmentCreate,
    _auth: None = Depends(require_maintenance_api_key),
):
    client = get_sqlite_client()
    try:
        fragment = await client.create_fragment(
            body.slug,
            body.content,
            speaker=body.speaker,
            ts=body.ts,
            convo_id=body.convo_id,
            metadata=body.metadata,
        )
    except ValueError as e:
        raise to_http_exception(e)

    await runtime_state.ensure_started(get_sqlite_client)
    fragment["embedding"] = await runtime_state.dispatch_embeddings(
        client, fragment.pop("embed_targets", []), reason="create_fragment"
    )
    return {"success": True, "fragment": fragment}


@router.post("/link")
async def link_fragments(
    body: FragmentLink,
    _auth: None = Depends(require_maintenance_api_key),
):
    client = get_sqlite_client()
    try:
        edge = await client.link_fragments(
            body.from_slug,
            body.to_slug,
            body.rel,
            weight=body.weight,
            metadata=body.metadata,
        )
    except ValueError as e:
        raise to_http_exception(e)
    return {"success": True, "edge": edge}


@router.delete("/{slug}")
async def delete_fragment(
    slug: str,
    _auth: None = Depends(require_maintenance_api_key),
):
    client = get_sqlite_client()
    try:
        result = await client.delete_fragment(slug)
    except ValueError as e:
        raise to_http_exception(e)
    return {"success": True, **result}
