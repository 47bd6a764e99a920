"""
Context API - semantic search and per-turn context assembly for the agent.

Retrieval failures never fail these endpoints; responses carry `degraded`
and `degrade_reasons` instead.
"""

from typing import Literal

from fastapi import APIRouter
from pydantic import BaseModel, Field

from context_assembler import (
    DEFAULT_THRESHOLD,
    DEFAULT_TOP_K,
    assemble_with_timeout,
    build_prompt_section,
    prepare_turn,
    semantic_search,
)
from db import get_sqlite_client
from runtime_state import runtime_state

router = APIRouter(prefix="/context", tags=["context"])


class SemanticSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=100)
    threshold: float = Field(default=0.0, ge=-1.0, le=1.0)
    kind: Literal["memo", "fragment"] | None = None


class AssembleRequest(BaseModel):
    text: str = Field(min_length=1)
    top_k: int = Field(default=DEFAULT_TOP_K, ge=1, le=50)
    threshold: float = Field(default=DEFAULT_THRESHOLD, ge=-1.0, le=1.0)
    max_chars: int | None = Field(default=None, ge=1)
    kind: Literal["memo", "fragment"] | None = "fragment"
    timeout_seconds: float | None = Field(default=None, gt=0)


class TurnRequest(BaseModel):
    session_id: str | None = None
    message_id: str = Field(min_length=1)
    content: str
    speaker: str = "user"
    top_k: int | None = Field(default=None, ge=1, le=50)
    threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    max_chars: int | None = Field(default=None, ge=1)
    auto_fragments: bool | None = None


@router.post("/search")
async def search(body: SemanticSearchRequest):
    client = get_sqlite_client()
    result = await semantic_search(
        client, body.query, top_k=body.top_k, threshold=body.threshold, kind=body.kind
    )
    return {"success": True, **result}


@router.post("/assemble")
async def assemble(body: AssembleRequest):
    client = get_sqlite_client()
    block = await assemble_with_timeout(
        client,
        body.text,
        timeout_seconds=body.timeout_seconds,
        top_k=body.top_k,
        threshold=body.threshold,
        max_chars=body.max_chars,
        kind=body.kind,
    )
    return {
        "success": True,
        **block.to_dict(),
        "prompt_section": build_prompt_section(block),
    }


@router.post("/turn")
async def turn(body: TurnRequest):
    """
    Prepare one conversational turn: turn the user message into a fragment
    (once per message id) and return the related-fragments prompt section.
    """
    client = get_sqlite_client()
    await runtime_state.ensure_started(get_sqlite_client)
    session = await runtime_state.turn_sessions.get_or_create(
        body.session_id,
        top_k=body.top_k,
        threshold=body.threshold,
        max_chars=body.max_chars,
        auto_fragments=body.auto_fragments,
    )
    result = await prepare_turn(
        client,
        session,
        message_id=body.message_id,
        content=body.content,
        speaker=body.speaker,
    )
    return {"success": True, **result}
