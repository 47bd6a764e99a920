"""
Typed views over the JSON columns stored on memos and fragments.

The store persists `headers`, `links` and `metadata` as JSON text. They are
parsed exactly once at the store boundary; a malformed value is logged as a
data-integrity warning and replaced by an empty structure so that a single
corrupted row never breaks a listing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


def load_json_object(raw: Optional[str], *, context: str = "") -> Dict[str, Any]:
    """Parse a JSON object column, returning {} for empty or malformed values."""
    if raw is None or raw == "":
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Malformed JSON in %s; treating as empty", context or "column")
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Non-object JSON in %s; treating as empty", context or "column")
        return {}
    return parsed


def dump_json(value: Optional[Dict[str, Any]]) -> str:
    return json.dumps(value or {}, ensure_ascii=False)


def _clean_slug_list(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    seen = set()
    cleaned: List[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        value = item.strip()
        if not value or value in seen:
            continue
        seen.add(value)
        cleaned.append(value)
    return cleaned


@dataclass
class MemoLinks:
    """Bidirectional link sets of a memo, in first-seen order."""

    incoming: List[str] = field(default_factory=list)
    outgoing: List[str] = field(default_factory=list)

    @classmethod
    def parse(cls, raw: Optional[str], *, slug: str = "") -> "MemoLinks":
        data = load_json_object(raw, context=f"links of memo '{slug}'")
        return cls(
            incoming=_clean_slug_list(data.get("incoming")),
            outgoing=_clean_slug_list(data.get("outgoing")),
        )

    def add_incoming(self, slug: str) -> bool:
        if slug in self.incoming:
            return False
        self.incoming.append(slug)
        return True

    def remove_incoming(self, slugs: Iterable[str]) -> bool:
        drop = set(slugs)
        kept = [item for item in self.incoming if item not in drop]
        changed = len(kept) != len(self.incoming)
        self.incoming = kept
        return changed

    def to_dict(self) -> Dict[str, List[str]]:
        return {"incoming": list(self.incoming), "outgoing": list(self.outgoing)}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)
