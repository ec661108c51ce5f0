"""
Fuzzy name matching for "did you mean" suggestions.

Pure functions over plain name lists: the planner hands in a snapshot of
the catalog's tag or field names and gets back the closest matches.
Similarity is the better of a normalized edit distance (adjacent
transpositions count as one edit) and a token-overlap score, so both
"tsak" -> "task" and "project meeting" -> "meeting project" match.
"""
import re
from typing import Iterable, List, Optional

DEFAULT_THRESHOLD = 0.5
DEFAULT_MAX_RESULTS = 3

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def edit_distance(a: str, b: str) -> int:
    """Optimal string alignment distance between two strings."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    prev_prev: List[int] = []
    prev = list(range(len(b) + 1))
    for i in range(1, len(a) + 1):
        cur = [i] + [0] * len(b)
        for j in range(1, len(b) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            cur[j] = min(
                prev[j] + 1,         # deletion
                cur[j - 1] + 1,      # insertion
                prev[j - 1] + cost,  # substitution
            )
            if (i > 1 and j > 1 and a[i - 1] == b[j - 2]
                    and a[i - 2] == b[j - 1]):
                cur[j] = min(cur[j], prev_prev[j - 2] + 1)
        prev_prev, prev = prev, cur
    return prev[len(b)]


def token_overlap(a: str, b: str) -> float:
    """Jaccard overlap of the alphanumeric tokens of two names."""
    tokens_a = set(_TOKEN_RE.findall(a.lower()))
    tokens_b = set(_TOKEN_RE.findall(b.lower()))
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def similarity(a: str, b: str) -> float:
    """Similarity ratio between two names in [0, 1], case-insensitive."""
    if not a or not b:
        return 0.0

    lower_a = a.lower()
    lower_b = b.lower()
    if lower_a == lower_b:
        return 1.0

    dist = edit_distance(lower_a, lower_b)
    ratio = 1 - dist / max(len(lower_a), len(lower_b))
    return max(ratio, token_overlap(lower_a, lower_b))


def find_similar(name: str, candidates: Iterable[str],
                 threshold: float = DEFAULT_THRESHOLD,
                 max_results: int = DEFAULT_MAX_RESULTS) -> List[str]:
    """
    Find candidate names similar to ``name``.

    Args:
        name: The unresolved name
        candidates: Known names in scope
        threshold: Similarity floor; weaker matches are dropped
        max_results: Maximum number of names returned

    Returns:
        Matching names, best first; ties keep alphabetical order
    """
    if not name:
        return []

    scored = []
    seen = set()
    for candidate in candidates:
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        score = similarity(name, candidate)
        if score >= threshold:
            scored.append((score, candidate))

    scored.sort(key=lambda item: (-item[0], item[1].lower()))
    return [candidate for _, candidate in scored[:max_results]]


def format_suggestion(matches: List[str]) -> Optional[str]:
    """Render matches as a "Did you mean" hint, or None if there are none."""
    if not matches:
        return None
    return f"Did you mean: {', '.join(matches)}?"
