"""Genre normalization and author-key sanitization.

Catalog genres arrive from several ingestion sources with inconsistent naming
("Sci-Fi", "Science Fiction & Fantasy", "Fiction / Mystery & Detective").
Everything that keys a weight map goes through these helpers so that variant
spellings merge into one key.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Optional

from bookrec.config import DEFAULT_GENRE_MAPPING

_WHITESPACE = re.compile(r"\s+")
_INVALID_AUTHOR_CHARS = re.compile(r"[.$]")

MappingItems = tuple[tuple[str, tuple[str, ...]], ...]


def _collapse(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


@lru_cache(maxsize=32)
def _compile(mapping_items: MappingItems) -> list[tuple[str, str, re.Pattern]]:
    """(canonical, matched name, whole-word pattern) for every known name."""
    compiled = []
    for canonical, synonyms in mapping_items:
        for name in (canonical, *synonyms):
            pattern = re.compile(rf"(?<!\w){re.escape(name)}(?!\w)", re.IGNORECASE)
            compiled.append((canonical, name, pattern))
    return compiled


def _freeze(mapping: dict[str, list[str]]) -> MappingItems:
    return tuple((canonical, tuple(synonyms)) for canonical, synonyms in mapping.items())


def normalize_genre(genre: str, mapping: Optional[dict[str, list[str]]] = None) -> str:
    """Fold a raw genre label into its lower-case canonical key.

    The longest known name found in the label wins, so "Young Adult Fiction"
    folds to "young adult" and "Fiction / Mystery & Detective" to "mystery".
    Ties go to the canonical genre listed first. Unknown labels are just
    lower-cased.
    """
    cleaned = _collapse(genre or "")
    if not cleaned:
        return ""
    best: Optional[tuple[int, str]] = None
    for canonical, name, pattern in _compile(_freeze(mapping or DEFAULT_GENRE_MAPPING)):
        if (best is None or len(name) > best[0]) and pattern.search(cleaned):
            best = (len(name), canonical)
    if best is not None:
        return best[1].lower()
    return cleaned.lower()


def normalize_genres(genres: list[str], mapping: Optional[dict[str, list[str]]] = None) -> list[str]:
    """Normalize and dedupe, keeping first-seen order."""
    seen: dict[str, None] = {}
    for genre in genres:
        key = normalize_genre(genre, mapping)
        if key:
            seen.setdefault(key, None)
    return list(seen)


def display_genre(key: str) -> str:
    return key.title()


def sanitize_author(author: str) -> str:
    """Author names become weight-map keys; drop characters that are unsafe in keys."""
    return _collapse(_INVALID_AUTHOR_CHARS.sub("", author or ""))
