"""
Maintenance API - embedding worker control and the shared API key guard.

The guard accepts the key from `X-MCP-API-Key` or `Authorization: Bearer`.
Without a configured MCP_API_KEY every guarded request is rejected, unless
MCP_API_KEY_ALLOW_INSECURE_LOCAL is set and the caller is on loopback.
"""

import hmac
import os
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from db import get_sqlite_client
from runtime_state import runtime_state
from .errors import to_http_exception

_API_KEY_ENV = "MCP_API_KEY"
_API_KEY_HEADER = "X-MCP-API-Key"
_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _configured_api_key() -> str:
    return str(os.getenv(_API_KEY_ENV) or "").strip()


def _allow_insecure_local() -> bool:
    value = str(os.getenv(_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def _is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    scheme, _, token = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _auth_failure(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "maintenance_auth_failed", "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_maintenance_api_key(
    request: Request,
    x_mcp_api_key: Optional[str] = Header(default=None, alias=_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    configured = _configured_api_key()
    if not configured:
        if _allow_insecure_local() and _is_loopback_request(request):
            return
        raise _auth_failure(
            "insecure_local_override_requires_loopback"
            if _allow_insecure_local()
            else "api_key_not_configured"
        )

    provided = str(x_mcp_api_key or "").strip() or _extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise _auth_failure("invalid_or_missing_api_key")


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


class EmbeddingJobRetryRequest(BaseModel):
    reason: str = Field(default="", max_length=120)


def _raise_on_enqueue_drop(enqueue_result: Dict[str, Any], *, operation: str) -> None:
    if not enqueue_result.get("dropped"):
        return
    reason = str(enqueue_result.get("reason") or "queue_full")
    raise HTTPException(
        status_code=(
            status.HTTP_503_SERVICE_UNAVAILABLE
            if reason == "queue_full"
            else status.HTTP_409_CONFLICT
        ),
        detail={
            "error": "embedding_enqueue_dropped",
            "reason": reason,
            "operation": operation,
            "job_id": enqueue_result.get("job_id"),
        },
    )


@router.get("/embedding/worker")
async def get_embedding_worker_status():
    await runtime_state.ensure_started(get_sqlite_client)
    return await runtime_state.embedding_worker.status()


@router.get("/embedding/status")
async def get_embedding_status():
    client = get_sqlite_client()
    return {
        "store": await client.get_store_status(),
        "worker": await runtime_state.embedding_worker.status(),
        "turn_sessions": await runtime_state.turn_sessions.status(),
    }


@router.get("/embedding/job/{job_id}")
async def get_embedding_job(job_id: str):
    await runtime_state.ensure_started(get_sqlite_client)
    result = await runtime_state.embedding_worker.get_job(job_id=job_id)
    if not result.get("ok"):
        raise HTTPException(status_code=404, detail=str(result.get("error") or "job not found"))
    result["runtime_worker"] = await runtime_state.embedding_worker.status()
    return result


@router.post("/embedding/job/{job_id}/retry")
async def retry_embedding_job(job_id: str, payload: Optional[EmbeddingJobRetryRequest] = None):
    await runtime_state.ensure_started(get_sqlite_client)
    original = await runtime_state.embedding_worker.get_job(job_id=job_id)
    if not original.get("ok"):
        raise HTTPException(status_code=404, detail=str(original.get("error") or "job not found"))

    job = original.get("job") or {}
    task_type = str(job.get("task_type") or "")
    current_status = str(job.get("status") or "").lower()
    if current_status not in {"failed", "dropped"}:
        raise HTTPException(
            status_code=409,
            detail={
                "error": "job_retry_not_allowed",
                "reason": f"status:{current_status or 'unknown'}",
                "job_id": job_id,
            },
        )

    retry_reason = f"retry:{job_id}"
    if payload is not None and payload.reason.strip():
        retry_reason = payload.reason.strip()

    if task_type == "embed_entity":
        enqueue_result = await runtime_state.embedding_worker.enqueue_embed(
            kind=str(job.get("kind")),
            entity_id=str(job.get("entity_id")),
            reason=retry_reason,
        )
    elif task_type == "backfill":
        enqueue_result = await runtime_state.embedding_worker.enqueue_backfill(
            reason=retry_reason
        )
    else:
        raise HTTPException(
            status_code=409,
            detail={"error": "job_retry_unsupported_task_type", "job_id": job_id},
        )
    _raise_on_enqueue_drop(enqueue_result, operation=f"retry_{task_type}")

    return {
        "ok": True,
        "retry_of_job_id": job_id,
        "task_type": task_type,
        "reason": retry_reason,
        **enqueue_result,
        "runtime_worker": await runtime_state.embedding_worker.status(),
    }


@router.post("/embedding/backfill")
async def backfill_embeddings(reason: str = "api", wait: bool = False, timeout_seconds: int = 30):
    """Embed every memo and fragment that still has no vector."""
    client = get_sqlite_client()
    await runtime_state.ensure_started(get_sqlite_client)

    if not runtime_state.embedding_worker.is_running():
        targets = await client.list_unembedded()
        outcomes = await runtime_state.dispatch_embeddings(
            client, targets, reason=f"backfill:{reason or 'api'}"
        )
        return {
            "ok": True,
            "queued": False,
            "executed_sync": True,
            "candidates": len(targets),
            "failed": sum(1 for item in outcomes if item.get("error")),
        }

    enqueue_result = await runtime_state.embedding_worker.enqueue_backfill(
        reason=reason or "api"
    )
    _raise_on_enqueue_drop(enqueue_result, operation="backfill")
    response: Dict[str, Any] = {"ok": True, "reason": reason or "api", **enqueue_result}
    job_id = enqueue_result.get("job_id")
    if wait and isinstance(job_id, str) and job_id:
        response["wait_result"] = await runtime_state.embedding_worker.wait_for_job(
            job_id=job_id, timeout_seconds=max(1.0, float(timeout_seconds))
        )
    response["runtime_worker"] = await runtime_state.embedding_worker.status()
    return response


@router.post("/embedding/{kind}/{entity_id}")
async def reembed_entity(kind: Literal["memo", "fragment"], entity_id: str, reason: str = "api"):
    client = get_sqlite_client()
    await runtime_state.ensure_started(get_sqlite_client)

    if not runtime_state.embedding_worker.is_running():
        try:
            result = await client.embed_entity(kind, entity_id)
        except ValueError as e:
            raise to_http_exception(e)
        except RuntimeError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"ok": True, "queued": False, "executed_sync": True, "result": result}

    enqueue_result = await runtime_state.embedding_worker.enqueue_embed(
        kind=kind, entity_id=entity_id, reason=reason or "api"
    )
    _raise_on_enqueue_drop(enqueue_result, operation="reembed")
    return {"ok": True, **enqueue_result}
