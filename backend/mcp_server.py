"""
MCP Server for the Memo Graph (SQLite Backend)

Tools the conversational agent uses to keep notes:
- memos:      create_memo / create_reply / edit_memo / get_memo / delete_memo,
              list_memos / search_memos / find_backlinks / get_thread
- fragments:  create_fragment / get_fragment / list_fragments /
              search_fragments / link_fragments / get_fragment_links
- retrieval:  semantic_search

Every tool returns a JSON string `{"ok": bool, "message": str, ...}` and never
raises to the agent.
"""

import json
import logging
import os
import sys
from typing import Any, Dict, Optional

from dotenv import find_dotenv, load_dotenv

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP
from context_assembler import semantic_search as run_semantic_search
from db.errors import MemoGraphError
from db.sqlite_client import (
    MEMO_SEARCH_FIELDS,
    MEMO_SORT_FIELDS,
    close_sqlite_client,
    get_sqlite_client,
)
from runtime_state import runtime_state

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

logger = logging.getLogger(__name__)

mcp = FastMCP("Memo Graph Interface")


# =============================================================================
# Helper Functions
# =============================================================================


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _tool_error(exc: Exception) -> str:
    return _tool_response(
        ok=False,
        message=f"Error: {exc}",
        error=getattr(exc, "code", "invalid_request"),
    )


async def _dispatch_embeddings(client: Any, payload: Dict[str, Any], *, reason: str) -> None:
    await runtime_state.ensure_started(get_sqlite_client)
    await runtime_state.dispatch_embeddings(
        client, payload.pop("embed_targets", []), reason=reason
    )


# =============================================================================
# Memo Tools
# =============================================================================


@mcp.tool()
async def create_memo(
    slug: str,
    content: str,
    headers: Optional[Dict[str, Any]] = None,
    parent_id: Optional[str] = None,
    author: str = "user",
) -> str:
    """
    Creates a new memo.

    Reference other memos with [[slug]] inside content; the referenced memos
    record this memo as an incoming link.

    Args:
        slug: Unique, permanent name of the memo (e.g. "project-ideas")
        content: Memo text
        headers: Optional free-form metadata object
        parent_id: Optional id of the memo this one replies to
        author: Who wrote it ("user" or "assistant")

    Returns:
        JSON with the created memo, or ok=false if the slug is taken or the
        parent does not exist

    Examples:
        create_memo("reading-list", "Next up: [[dune]] and [[neuromancer]]")
    """
    client = get_sqlite_client()
    try:
        memo = await client.create_memo(
            slug, content, headers=headers, parent_id=parent_id, author=author
        )
        await _dispatch_embeddings(client, memo, reason="mcp.create_memo")
        return _tool_response(ok=True, message=f"Created memo '{memo['slug']}'.", memo=memo)
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)
    except Exception as e:
        logger.exception("create_memo failed")
        return _tool_error(e)


@mcp.tool()
async def create_reply(parent_slug: str, content: str, author: str = "assistant") -> str:
    """
    Replies to an existing memo, extending its thread.

    Args:
        parent_slug: Slug of the memo being replied to
        content: Reply text
        author: Who wrote the reply

    Returns:
        JSON with the reply memo (its slug is generated from the parent's)
    """
    client = get_sqlite_client()
    try:
        memo = await client.create_reply(parent_slug, content, author=author)
        await _dispatch_embeddings(client, memo, reason="mcp.create_reply")
        return _tool_response(ok=True, message=f"Created reply '{memo['slug']}'.", memo=memo)
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)
    except Exception as e:
        logger.exception("create_reply failed")
        return _tool_error(e)


@mcp.tool()
async def edit_memo(
    slug: str,
    content: Optional[str] = None,
    headers: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Edits a memo's content and/or headers. The slug itself cannot change.

    Args:
        slug: Slug of the memo to edit
        content: New content (replaces the old content entirely)
        headers: New headers object (replaces the old one)
    """
    if content is None and headers is None:
        return _tool_response(ok=False, message="Error: nothing to update.")
    client = get_sqlite_client()
    try:
        current = await client.get_memo(slug)
        memo = await client.edit_memo(current["id"], content=content, headers=headers)
        await _dispatch_embeddings(client, memo, reason="mcp.edit_memo")
        return _tool_response(ok=True, message=f"Updated memo '{slug}'.", memo=memo)
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)
    except Exception as e:
        logger.exception("edit_memo failed")
        return _tool_error(e)


@mcp.tool()
async def get_memo(slug: str) -> str:
    """Reads one memo by slug, including its incoming and outgoing links."""
    client = get_sqlite_client()
    try:
        memo = await client.get_memo(slug)
        return _tool_response(ok=True, message="ok", memo=memo)
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)


@mcp.tool()
async def delete_memo(slug: str) -> str:
    """
    Deletes a memo. Replies to it are kept and become thread roots.

    Args:
        slug: Slug of the memo to delete
    """
    client = get_sqlite_client()
    try:
        current = await client.get_memo(slug)
        result = await client.delete_memo(current["id"])
        return _tool_response(ok=True, message=f"Deleted memo '{slug}'.", **result)
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)
    except Exception as e:
        logger.exception("delete_memo failed")
        return _tool_error(e)


@mcp.tool()
async def list_memos(sort_by: str = "modified", sort_order: str = "desc", limit: int = 20) -> str:
    """
    Lists memos.

    Args:
        sort_by: One of "created", "modified", "slug"
        sort_order: "asc" or "desc"
        limit: Maximum number of memos
    """
    client = get_sqlite_client()
    try:
        memos = await client.list_memos(sort_by=sort_by, sort_order=sort_order, limit=limit)
        return _tool_response(
            ok=True,
            message=f"{len(memos)} memo(s).",
            memos=memos,
            sort_fields=list(MEMO_SORT_FIELDS),
        )
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)


@mcp.tool()
async def search_memos(query: str, field: str = "all", limit: int = 10) -> str:
    """
    Substring search over memos.

    Args:
        query: Text to look for
        field: One of "content", "slug", "headers", "links", "all"
        limit: Maximum number of results
    """
    client = get_sqlite_client()
    try:
        memos = await client.search_memos(query, field=field, limit=limit)
        return _tool_response(
            ok=True,
            message=f"{len(memos)} memo(s) match.",
            memos=memos,
            fields=list(MEMO_SEARCH_FIELDS),
        )
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)


@mcp.tool()
async def find_backlinks(slug: str, include_content: bool = False) -> str:
    """Lists the memos that link to slug via [[slug]]."""
    client = get_sqlite_client()
    try:
        memos = await client.find_backlinks(slug, include_content=include_content)
        return _tool_response(
            ok=True, message=f"{len(memos)} memo(s) link to '{slug}'.", backlinks=memos
        )
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)


@mcp.tool()
async def get_thread(slug: str) -> str:
    """Returns the whole reply thread containing slug, oldest memo first."""
    client = get_sqlite_client()
    try:
        thread = await client.get_thread(slug)
        return _tool_response(ok=True, message=f"{thread['total']} memo(s) in thread.", **thread)
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)


# =============================================================================
# Fragment Tools
# =============================================================================


@mcp.tool()
async def create_fragment(
    slug: str,
    content: str,
    speaker: Optional[str] = None,
    convo_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Stores a short fragment of knowledge or conversation.

    Args:
        slug: Unique fragment name
        content: Fragment text
        speaker: Who said it
        convo_id: Conversation the fragment came from
        metadata: Optional free-form object
    """
    client = get_sqlite_client()
    try:
        fragment = await client.create_fragment(
            slug, content, speaker=speaker, convo_id=convo_id, metadata=metadata
        )
        await _dispatch_embeddings(client, fragment, reason="mcp.create_fragment")
        return _tool_response(
            ok=True, message=f"Created fragment '{fragment['slug']}'.", fragment=fragment
        )
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)
    except Exception as e:
        logger.exception("create_fragment failed")
        return _tool_error(e)


@mcp.tool()
async def get_fragment(slug: str) -> str:
    client = get_sqlite_client()
    try:
        fragment = await client.get_fragment(slug)
        return _tool_response(ok=True, message="ok", fragment=fragment)
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)


@mcp.tool()
async def list_fragments(limit: int = 20, offset: int = 0) -> str:
    """Lists fragments, most recently modified first."""
    client = get_sqlite_client()
    try:
        page = await client.list_fragments(limit=limit, offset=offset)
        return _tool_response(ok=True, message=f"{page['total']} fragment(s) total.", **page)
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)


@mcp.tool()
async def search_fragments(query: str, limit: int = 20) -> str:
    client = get_sqlite_client()
    try:
        fragments = await client.search_fragments(query, limit=limit)
        return _tool_response(
            ok=True, message=f"{len(fragments)} fragment(s) match.", fragments=fragments
        )
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)


@mcp.tool()
async def link_fragments(
    from_slug: str,
    to_slug: str,
    rel: str,
    weight: float = 1.0,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Creates a directed relation between two fragments.

    Args:
        from_slug: Source fragment
        to_slug: Target fragment
        rel: Relation label (e.g. "supports", "contradicts", "follows")
        weight: Relation strength, 1.0 by default
        metadata: Optional free-form object

    Examples:
        link_fragments("coffee-helps-focus", "morning-routine", "supports")
    """
    client = get_sqlite_client()
    try:
        edge = await client.link_fragments(
            from_slug, to_slug, rel, weight=weight, metadata=metadata
        )
        return _tool_response(
            ok=True, message=f"Linked '{from_slug}' -[{rel}]-> '{to_slug}'.", edge=edge
        )
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)


@mcp.tool()
async def get_fragment_links(slug: str) -> str:
    """Lists a fragment's outgoing and incoming relations."""
    client = get_sqlite_client()
    try:
        links = await client.fragment_links(slug)
        return _tool_response(ok=True, message="ok", **links)
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)


# =============================================================================
# Retrieval
# =============================================================================


@mcp.tool()
async def semantic_search(
    query: str,
    top_k: int = 5,
    threshold: float = 0.0,
    kind: Optional[str] = None,
) -> str:
    """
    Finds memos and fragments by meaning rather than exact words.

    Args:
        query: Natural-language query
        top_k: Maximum number of results
        threshold: Minimum cosine similarity (0 keeps everything)
        kind: Restrict to "memo" or "fragment"
    """
    if kind not in (None, "memo", "fragment"):
        return _tool_response(ok=False, message="Error: kind must be 'memo' or 'fragment'.")
    client = get_sqlite_client()
    try:
        result = await run_semantic_search(
            client, query, top_k=top_k, threshold=threshold, kind=kind
        )
    except (ValueError, MemoGraphError) as e:
        return _tool_error(e)
    except Exception as e:
        logger.exception("semantic_search failed")
        return _tool_error(e)
    message = f"{len(result['results'])} result(s)."
    if result["degraded"]:
        message += " Semantic search is degraded: " + ", ".join(result["degrade_reasons"])
    return _tool_response(ok=True, message=message, **result)


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Initialize the database on startup."""
    client = get_sqlite_client()
    await client.init_db()
    # mcp.run() starts its own event loop; pooled connections from this one can't follow.
    await close_sqlite_client()


if __name__ == "__main__":
    import asyncio

    asyncio.run(startup())
    mcp.run()
