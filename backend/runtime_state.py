"""
Runtime state for the memo graph service.

This module provides:
1) Background embedding worker: embeds memos/fragments off the request path.
2) Turn sessions: per-conversation retrieval settings and the set of
   messages already turned into fragments.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple


logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_session_id(session_id: Optional[str]) -> str:
    value = (session_id or "").strip()
    return value if value else "default"


@dataclass
class EmbeddingTask:
    job_id: str
    task_type: str
    kind: Optional[str]
    entity_id: Optional[str]
    reason: str
    requested_at: str
    attempt: int = 1


class EmbeddingTaskWorker:
    """Background worker that embeds entities serially.

    Jobs are de-duplicated per entity while queued or running. A failed job is
    recorded and logged; it is re-queued only while `attempt` is below
    RUNTIME_EMBED_MAX_ATTEMPTS (1 by default, i.e. no automatic retry).
    """

    _FINAL_STATES: Set[str] = {"succeeded", "failed", "dropped"}

    def __init__(self) -> None:
        self._enabled = _env_bool("RUNTIME_EMBED_WORKER_ENABLED", True)
        self._queue_maxsize = _env_int("RUNTIME_EMBED_QUEUE_MAXSIZE", 256, minimum=8)
        self._recent_limit = _env_int("RUNTIME_EMBED_RECENT_JOBS", 30, minimum=5)
        self._max_attempts = _env_int("RUNTIME_EMBED_MAX_ATTEMPTS", 1, minimum=1)

        self._queue: asyncio.Queue[EmbeddingTask] = asyncio.Queue(maxsize=self._queue_maxsize)
        self._client_factory: Optional[Callable[[], Any]] = None
        self._runner: Optional[asyncio.Task] = None
        self._guard = asyncio.Lock()

        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._job_events: Dict[str, asyncio.Event] = {}
        self._recent_job_ids: Deque[str] = deque()
        self._pending_entity_jobs: Dict[Tuple[str, str], str] = {}
        self._backfill_job_id: Optional[str] = None

        self._enqueued_total = 0
        self._succeeded_total = 0
        self._failed_total = 0
        self._dropped_total = 0
        self._retried_total = 0
        self._active_job_id: Optional[str] = None
        self._last_error: Optional[str] = None
        self._last_finished_at: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def ensure_started(self, client_factory: Callable[[], Any]) -> None:
        if not self._enabled:
            return
        async with self._guard:
            self._client_factory = client_factory
            if self._runner is None or self._runner.done():
                self._runner = asyncio.create_task(
                    self._run_loop(), name="runtime-embedding-worker"
                )

    async def shutdown(self) -> None:
        async with self._guard:
            runner = self._runner
            self._runner = None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass

    def _new_job_locked(self, task: EmbeddingTask) -> asyncio.Event:
        event = asyncio.Event()
        self._job_events[task.job_id] = event
        record: Dict[str, Any] = {
            "job_id": task.job_id,
            "task_type": task.task_type,
            "reason": task.reason,
            "requested_at": task.requested_at,
            "attempt": task.attempt,
            "status": "queued",
        }
        if task.kind is not None:
            record["kind"] = task.kind
            record["entity_id"] = task.entity_id
        self._jobs[task.job_id] = record
        return event

    def _drop_locked(self, task: EmbeddingTask, event: asyncio.Event) -> Dict[str, Any]:
        record = self._jobs[task.job_id]
        record["status"] = "dropped"
        record["error"] = "queue_full"
        record["finished_at"] = _utc_iso_now()
        self._dropped_total += 1
        event.set()
        self._append_recent_job_locked(task.job_id)
        return {"queued": False, "dropped": True, "job_id": task.job_id, "reason": "queue_full"}

    async def enqueue_embed(
        self, *, kind: str, entity_id: str, reason: str = "write"
    ) -> Dict[str, Any]:
        if kind not in ("memo", "fragment"):
            raise ValueError(f"Unknown entity kind '{kind}'.")
        if not entity_id:
            raise ValueError("entity_id is required.")
        if not self._enabled:
            return {"queued": False, "reason": "embedding_worker_disabled"}

        key = (kind, entity_id)
        async with self._guard:
            existing_job_id = self._pending_entity_jobs.get(key)
            if existing_job_id:
                return {
                    "queued": False,
                    "deduped": True,
                    "job_id": existing_job_id,
                    "kind": kind,
                    "entity_id": entity_id,
                }

            task = EmbeddingTask(
                job_id=f"emb-{uuid.uuid4().hex[:10]}",
                task_type="embed_entity",
                kind=kind,
                entity_id=entity_id,
                reason=reason or "write",
                requested_at=_utc_iso_now(),
            )
            event = self._new_job_locked(task)
            try:
                self._queue.put_nowait(task)
            except asyncio.QueueFull:
                payload = self._drop_locked(task, event)
                payload.update({"kind": kind, "entity_id": entity_id})
                return payload

            self._pending_entity_jobs[key] = task.job_id
            self._enqueued_total += 1
            return {"queued": True, "job_id": task.job_id, "kind": kind, "entity_id": entity_id}

    async def enqueue_backfill(self, *, reason: str = "manual") -> Dict[str, Any]:
        """Queue a job that enqueues every entity still missing a vector."""
        if not self._enabled:
            return {"queued": False, "reason": "embedding_worker_disabled"}

        async with self._guard:
            if self._backfill_job_id:
                return {"queued": False, "deduped": True, "job_id": self._backfill_job_id}

            task = EmbeddingTask(
                job_id=f"emb-{uuid.uuid4().hex[:10]}",
                task_type="backfill",
                kind=None,
                entity_id=None,
                reason=reason or "manual",
                requested_at=_utc_iso_now(),
            )
            event = self._new_job_locked(task)
            try:
                self._queue.put_nowait(task)
            except asyncio.QueueFull:
                return self._drop_locked(task, event)

            self._backfill_job_id = task.job_id
            self._enqueued_total += 1
            return {"queued": True, "job_id": task.job_id}

    async def wait_for_job(
        self, *, job_id: str, timeout_seconds: float = 10.0
    ) -> Dict[str, Any]:
        if not job_id:
            return {"ok": False, "error": "job_id is required."}
        async with self._guard:
            job = dict(self._jobs.get(job_id, {}))
            event = self._job_events.get(job_id)
        if not job:
            return {"ok": False, "error": f"job '{job_id}' not found."}
        if job.get("status") in self._FINAL_STATES or event is None:
            return {"ok": True, "job": job}
        try:
            await asyncio.wait_for(event.wait(), timeout=max(0.1, float(timeout_seconds)))
        except asyncio.TimeoutError:
            pass
        async with self._guard:
            current = dict(self._jobs.get(job_id, {}))
        return {"ok": True, "job": current}

    async def get_job(self, *, job_id: str) -> Dict[str, Any]:
        async with self._guard:
            job = self._jobs.get(job_id)
            if not job:
                return {"ok": False, "error": f"job '{job_id}' not found."}
            return {"ok": True, "job": dict(job)}

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            recent_jobs = [
                dict(self._jobs[job_id])
                for job_id in self._recent_job_ids
                if job_id in self._jobs
            ]
            return {
                "enabled": self._enabled,
                "running": self.is_running(),
                "queue_depth": self._queue.qsize(),
                "queue_maxsize": self._queue_maxsize,
                "max_attempts": self._max_attempts,
                "active_job_id": self._active_job_id,
                "pending_entity_jobs": len(self._pending_entity_jobs),
                "backfill_pending": self._backfill_job_id is not None,
                "stats": {
                    "enqueued": self._enqueued_total,
                    "succeeded": self._succeeded_total,
                    "failed": self._failed_total,
                    "dropped": self._dropped_total,
                    "retried": self._retried_total,
                },
                "last_error": self._last_error,
                "last_finished_at": self._last_finished_at,
                "recent_jobs": recent_jobs,
            }

    async def _run_loop(self) -> None:
        while True:
            task = await self._queue.get()
            await self._mark_running(task)
            try:
                payload = await self._execute_task(task)
            except asyncio.CancelledError:
                await self._mark_finished(task, status="failed", error="worker_cancelled")
                raise
            except Exception as exc:
                logger.warning(
                    "Embedding job %s (%s %s) failed on attempt %d: %s",
                    task.job_id,
                    task.kind or task.task_type,
                    task.entity_id or "",
                    task.attempt,
                    exc,
                )
                if not await self._requeue_for_retry(task, str(exc)):
                    await self._mark_finished(task, status="failed", error=str(exc))
            else:
                await self._mark_finished(task, status="succeeded", result=payload)
            finally:
                self._queue.task_done()

    async def _requeue_for_retry(self, task: EmbeddingTask, error: str) -> bool:
        if task.task_type != "embed_entity" or task.attempt >= self._max_attempts:
            return False
        async with self._guard:
            record = self._jobs.get(task.job_id)
            if record is None:
                return False
            task.attempt += 1
            try:
                self._queue.put_nowait(task)
            except asyncio.QueueFull:
                return False
            record["status"] = "queued"
            record["attempt"] = task.attempt
            record["last_attempt_error"] = error
            self._retried_total += 1
            if self._active_job_id == task.job_id:
                self._active_job_id = None
            return True

    async def _execute_task(self, task: EmbeddingTask) -> Dict[str, Any]:
        async with self._guard:
            factory = self._client_factory
        if not callable(factory):
            raise RuntimeError("embedding worker is not initialized with sqlite client factory.")
        client = factory()

        if task.task_type == "embed_entity":
            result = client.embed_entity(task.kind, task.entity_id)
        elif task.task_type == "backfill":
            result = self._run_backfill(client=client, reason=task.reason)
        else:
            raise ValueError(f"Unknown embedding task type '{task.task_type}'.")

        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, dict):
            return result
        return {"result": result}

    async def _run_backfill(self, *, client: Any, reason: str) -> Dict[str, Any]:
        targets = client.list_unembedded()
        if inspect.isawaitable(targets):
            targets = await targets
        summary = {"candidates": len(targets), "queued": 0, "deduped": 0, "dropped": 0}
        for target in targets:
            outcome = await self.enqueue_embed(
                kind=target["kind"], entity_id=target["id"], reason=f"backfill:{reason}"
            )
            if outcome.get("queued"):
                summary["queued"] += 1
            elif outcome.get("deduped"):
                summary["deduped"] += 1
            else:
                summary["dropped"] += 1
        return summary

    async def _mark_running(self, task: EmbeddingTask) -> None:
        async with self._guard:
            record = self._jobs.get(task.job_id)
            if record is None:
                return
            record["status"] = "running"
            record["started_at"] = _utc_iso_now()
            self._active_job_id = task.job_id
            # Later writes must queue a fresh job once this one has read the entity.
            if task.kind is not None and task.entity_id is not None:
                key = (task.kind, task.entity_id)
                if self._pending_entity_jobs.get(key) == task.job_id:
                    self._pending_entity_jobs.pop(key, None)

    async def _mark_finished(
        self,
        task: EmbeddingTask,
        *,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        finished_at = _utc_iso_now()
        async with self._guard:
            record = self._jobs.get(task.job_id)
            if record is None:
                return
            record["status"] = status
            record["finished_at"] = finished_at
            if result is not None:
                record["result"] = result
            if error:
                record["error"] = error
                if status == "failed":
                    self._last_error = error
            if task.kind is not None and task.entity_id is not None:
                key = (task.kind, task.entity_id)
                if self._pending_entity_jobs.get(key) == task.job_id:
                    self._pending_entity_jobs.pop(key, None)
            if task.task_type == "backfill" and self._backfill_job_id == task.job_id:
                self._backfill_job_id = None
            if status == "succeeded":
                self._succeeded_total += 1
            elif status == "failed":
                self._failed_total += 1
            self._last_finished_at = finished_at
            if self._active_job_id == task.job_id:
                self._active_job_id = None

            event = self._job_events.get(task.job_id)
            if event is not None:
                event.set()
            self._append_recent_job_locked(task.job_id)

    def _append_recent_job_locked(self, job_id: str) -> None:
        if job_id in self._recent_job_ids:
            self._recent_job_ids.remove(job_id)
        self._recent_job_ids.appendleft(job_id)
        while len(self._recent_job_ids) > self._recent_limit:
            stale_id = self._recent_job_ids.pop()
            if stale_id in self._jobs:
                if self._jobs[stale_id].get("status") in self._FINAL_STATES:
                    self._jobs.pop(stale_id, None)
                    self._job_events.pop(stale_id, None)


@dataclass
class TurnSession:
    """Retrieval settings and auto-fragment bookkeeping for one conversation."""

    session_id: str
    top_k: int = 3
    threshold: float = 0.75
    max_chars: Optional[int] = None
    auto_fragments: bool = True
    processed_message_ids: Set[str] = field(default_factory=set)
    auto_fragment_slugs: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_iso_now)

    def mark_processed(self, message_id: str) -> bool:
        """Record message_id; False when it had already been processed."""
        if message_id in self.processed_message_ids:
            return False
        self.processed_message_ids.add(message_id)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "top_k": self.top_k,
            "threshold": self.threshold,
            "max_chars": self.max_chars,
            "auto_fragments": self.auto_fragments,
            "processed_messages": len(self.processed_message_ids),
            "auto_fragment_slugs": list(self.auto_fragment_slugs),
            "created_at": self.created_at,
        }


class TurnSessionRegistry:
    """Process-local turn sessions, least recently used evicted first."""

    def __init__(self) -> None:
        self._max_sessions = _env_int("RUNTIME_TURN_SESSIONS_MAX", 256, minimum=1)
        self._defaults = {
            "top_k": _env_int("CONTEXT_TOP_K", 3, minimum=1),
            "threshold": _env_float("CONTEXT_THRESHOLD", 0.75),
            "max_chars": _env_int("CONTEXT_MAX_CHARS", 0, minimum=0) or None,
            "auto_fragments": _env_bool("AUTO_FRAGMENT_ENABLED", True),
        }
        self._sessions: "OrderedDict[str, TurnSession]" = OrderedDict()
        self._guard = asyncio.Lock()

    async def get_or_create(self, session_id: Optional[str], **overrides: Any) -> TurnSession:
        sid = _normalize_session_id(session_id)
        settings = {key: value for key, value in overrides.items() if value is not None}
        async with self._guard:
            session = self._sessions.get(sid)
            if session is None:
                session = TurnSession(session_id=sid, **{**self._defaults, **settings})
                self._sessions[sid] = session
                while len(self._sessions) > self._max_sessions:
                    self._sessions.popitem(last=False)
            else:
                for key, value in settings.items():
                    setattr(session, key, value)
                self._sessions.move_to_end(sid)
            return session

    async def drop(self, session_id: Optional[str]) -> bool:
        async with self._guard:
            return self._sessions.pop(_normalize_session_id(session_id), None) is not None

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {
                "sessions": len(self._sessions),
                "max_sessions": self._max_sessions,
                "defaults": dict(self._defaults),
            }


class RuntimeState:
    def __init__(self) -> None:
        self.embedding_worker = EmbeddingTaskWorker()
        self.turn_sessions = TurnSessionRegistry()

    async def ensure_started(self, client_factory: Callable[[], Any]) -> None:
        await self.embedding_worker.ensure_started(client_factory)

    async def dispatch_embeddings(
        self,
        client: Any,
        targets: List[Dict[str, str]],
        *,
        reason: str = "write",
    ) -> List[Dict[str, Any]]:
        """
        Hand embed targets to the background worker, or embed them inline
        when the worker is not running. Failures never reach the caller.
        """
        outcomes: List[Dict[str, Any]] = []
        for target in targets or []:
            kind, entity_id = target.get("kind"), target.get("id")
            if not kind or not entity_id:
                continue
            if self.embedding_worker.is_running():
                outcomes.append(
                    await self.embedding_worker.enqueue_embed(
                        kind=kind, entity_id=entity_id, reason=reason
                    )
                )
                continue
            try:
                result = await client.embed_entity(kind, entity_id)
                outcomes.append({"queued": False, "executed_sync": True, **result})
            except Exception as exc:
                logger.warning("Inline embedding of %s %s failed: %s", kind, entity_id, exc)
                outcomes.append(
                    {
                        "queued": False,
                        "executed_sync": True,
                        "kind": kind,
                        "id": entity_id,
                        "error": str(exc),
                    }
                )
        return outcomes

    async def shutdown(self) -> None:
        await self.embedding_worker.shutdown()


runtime_state = RuntimeState()
