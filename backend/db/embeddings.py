"""
Embedding generators.

Backends (RETRIEVAL_EMBEDDING_BACKEND):
- hash:   deterministic local feature hashing (default, works offline)
- api / openai / router: OpenAI-compatible `POST {base}/embeddings`
- none / off / disabled: every call fails with EmbeddingError
"""

import hashlib
import math
import os
import re
from typing import Any, List, Optional

import httpx

from .errors import EmbeddingError

_REMOTE_BACKENDS = {"api", "openai", "router"}
_DISABLED_BACKENDS = {"none", "off", "disabled", "false", "0"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
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


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


def _normalize_embedding_api_base(base: str) -> str:
    normalized = (base or "").strip().rstrip("/")
    if normalized.lower().endswith("/embeddings"):
        return normalized[: -len("/embeddings")]
    return normalized


def extract_embedding_from_response(payload: Any) -> Optional[List[float]]:
    """Pull the first embedding out of an OpenAI-style (or bare) response body."""
    candidates: List[Any] = []
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list) and data:
            first_item = data[0]
            if isinstance(first_item, dict):
                candidates.append(first_item.get("embedding"))
            elif isinstance(first_item, list):
                candidates.append(first_item)
        candidates.append(payload.get("embedding"))
    elif isinstance(payload, list):
        candidates.append(payload)

    for candidate in candidates:
        if not isinstance(candidate, list) or not candidate:
            continue
        try:
            return [float(v) for v in candidate]
        except (TypeError, ValueError):
            continue
    return None


def hash_embedding(content: str, dim: int) -> List[float]:
    """Unit-length token hashing embedding; identical text gives identical vectors."""
    vector = [0.0] * dim

    normalized = re.sub(r"\s+", " ", content.strip().lower())
    tokens = re.findall(r"[a-z0-9_]+", normalized)
    if not tokens and normalized:
        tokens = list(normalized)

    for token in tokens:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        for i in range(0, 8, 2):
            idx = digest[i] % dim
            sign = -1.0 if (digest[i + 1] & 1) else 1.0
            weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
            vector[idx] += sign * weight

    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 0:
        return [0.0] * dim
    return [v / norm for v in vector]


class EmbeddingClient:
    """Turns text into a dense vector using the configured backend."""

    def __init__(
        self,
        backend: str = "hash",
        model: str = "hash-v1",
        api_base: str = "",
        api_key: str = "",
        dim: int = 64,
        timeout_sec: float = 8.0,
    ):
        self.backend = (backend or "hash").strip().lower()
        self.model = model
        self.api_base = _normalize_embedding_api_base(api_base)
        self.api_key = api_key
        self.dim = max(16, dim)
        self.timeout_sec = max(1.0, timeout_sec)

    @classmethod
    def from_env(cls) -> "EmbeddingClient":
        backend = os.getenv("RETRIEVAL_EMBEDDING_BACKEND", "hash").strip().lower() or "hash"
        return cls(
            backend=backend,
            model=_first_env(
                ["RETRIEVAL_EMBEDDING_MODEL", "OPENAI_EMBEDDING_MODEL"],
                default="hash-v1",
            ),
            api_base=_first_env(
                ["RETRIEVAL_EMBEDDING_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"]
            ),
            api_key=_first_env(["RETRIEVAL_EMBEDDING_API_KEY", "OPENAI_API_KEY"]),
            dim=_env_int("RETRIEVAL_EMBEDDING_DIM", 64),
            timeout_sec=_env_float("RETRIEVAL_REMOTE_TIMEOUT_SEC", 8.0),
        )

    @property
    def enabled(self) -> bool:
        return self.backend not in _DISABLED_BACKENDS

    async def embed(self, text: str) -> List[float]:
        if not self.enabled:
            raise EmbeddingError("embedding backend is disabled")
        if self.backend in _REMOTE_BACKENDS:
            return await self._fetch_remote_embedding(text)
        if self.backend in {"hash", "local"}:
            return hash_embedding(text, self.dim)
        raise EmbeddingError(f"unsupported embedding backend '{self.backend}'")

    async def _fetch_remote_embedding(self, text: str) -> List[float]:
        if not self.api_base or not self.model:
            raise EmbeddingError("embedding api base or model is not configured")

        url = f"{self.api_base}/embeddings"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_sec)) as client:
                response = await client.post(
                    url, json={"model": self.model, "input": text}, headers=headers
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
            raise EmbeddingError(f"embedding request failed: {exc}") from exc

        embedding = extract_embedding_from_response(payload)
        if embedding is None:
            raise EmbeddingError("embedding response did not contain a vector")
        return embedding
