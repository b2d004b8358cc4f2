"""
Normalisation helpers shared by the cache, the rating table and the scorer.
"""
import re


def normalize_key(text: str | None) -> str:
    """Case-fold, trim and collapse whitespace. Used for cache keys."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip().lower()


def normalize_title(text: str | None) -> str:
    """
    Normalise a book title for loose comparison: lowercase, punctuation
    deleted ("Ender's" becomes "enders"), whitespace collapsed.
    """
    if not text:
        return ""
    normalized = re.sub(r"[^\w\s]", "", text.lower())
    return re.sub(r"\s+", " ", normalized).strip()


def contains_either_way(a: str, b: str) -> bool:
    """Bidirectional substring containment. Empty strings never match."""
    if not a or not b:
        return False
    return a in b or b in a


def slugify(title: str, author: str) -> str:
    """Stable identifier for a title/author pair."""
    return re.sub(r"[^a-z0-9]", "-", f"{title.strip()}-{author.strip()}".lower())
