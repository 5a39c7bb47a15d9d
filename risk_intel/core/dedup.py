from __future__ import annotations

import re
from typing import Iterable


STOP_WORDS = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
        "her", "was", "one", "our", "out", "has", "have", "been", "were", "will",
        "more", "when", "who", "may", "says", "said", "from", "with", "this",
        "that", "their", "what", "would", "about", "which", "could", "into",
    }
)

DEFAULT_SIMILARITY = 0.7

_NON_WORD = re.compile(r"[^\w\s]")


def tokenize_title(title: str | None) -> list[str]:
    """Lowercased title words longer than two characters, minus stop words."""
    words = _NON_WORD.sub(" ", str(title or "").lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOP_WORDS]


def jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    sa, sb = set(a), set(b)
    if not sa or not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


def find_duplicate(
    title: str | None,
    seen: Iterable[tuple[int, list[str]]],
    threshold: float = DEFAULT_SIMILARITY,
) -> tuple[int, float] | None:
    """
    First `(event_id, similarity)` in `seen` whose title tokens overlap `title`
    by at least `threshold`, or None. An empty token list never matches.
    """
    tokens = tokenize_title(title)
    if not tokens or threshold <= 0:
        return None
    for event_id, other in seen:
        sim = jaccard_similarity(tokens, other)
        if sim >= threshold:
            return int(event_id), sim
    return None
