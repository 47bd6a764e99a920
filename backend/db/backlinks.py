"""Backlink token extraction for memo content."""

import re
from typing import List

BACKLINK_PATTERN = re.compile(r"\[\[(.*?)\]\]")


def extract_backlinks(content: str) -> List[str]:
    """
    Return the slugs referenced by `[[slug]]` tokens in content.

    Tokens are stripped, empty tokens are dropped, and duplicates are removed
    keeping the first occurrence. Nested brackets are matched non-greedily, so
    `[[a[[b]]` yields `a[[b`.
    """
    seen = set()
    slugs: List[str] = []
    for match in BACKLINK_PATTERN.finditer(content or ""):
        slug = match.group(1).strip()
        if not slug or slug in seen:
            continue
        seen.add(slug)
        slugs.append(slug)
    return slugs


def backlink_token(slug: str) -> str:
    return f"[[{slug}]]"
