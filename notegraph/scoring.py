"""
Relevance scoring for notegraph.

Combines graph distance, optional semantic similarity and recency into a
single score in [0, 1]. Used to rank graph query results and by context
assembly, which wants the nearest, most relevant, freshest nodes first.

Weights:
    without semantic similarity: distance 0.6, recency 0.4
    with semantic similarity:    distance 0.4, semantic 0.35, recency 0.25
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

DISTANCE_WEIGHT = 0.6
RECENCY_WEIGHT = 0.4

SEMANTIC_DISTANCE_WEIGHT = 0.4
SEMANTIC_WEIGHT = 0.35
SEMANTIC_RECENCY_WEIGHT = 0.25

NEUTRAL_RECENCY = 0.5
DEFAULT_HALF_LIFE_DAYS = 30.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EmbeddingLookup(Protocol):
    """Source of precomputed embedding vectors."""

    def vector_for_text(self, text: str) -> Optional[Sequence[float]]:
        ...

    def vector_for_node(self, node_id: str) -> Optional[Sequence[float]]:
        ...


@dataclass
class ScoringOptions:
    """Inputs shared by every score in one ranking pass."""
    now: Optional[datetime] = None
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS
    clock: Callable[[], datetime] = field(default=_utcnow)

    def current_time(self) -> datetime:
        return self.now if self.now is not None else self.clock()


@dataclass
class ScoreComponents:
    distance: float
    recency: float
    semantic_sim: Optional[float] = None

    def to_dict(self) -> Dict[str, float]:
        data = {"distance": self.distance, "recency": self.recency}
        if self.semantic_sim is not None:
            data["semantic_sim"] = self.semantic_sim
        return data


@dataclass
class RelevanceScore:
    total: float
    components: ScoreComponents


@dataclass
class ScoringCandidate:
    """One node to rank: its hop distance and optional signals."""
    node_id: str
    distance: int
    semantic_sim: Optional[float] = None
    created: Optional[datetime] = None
    payload: Any = None


@dataclass
class ScoredNode:
    candidate: ScoringCandidate
    score: RelevanceScore
    index: int = field(default=0)


def distance_score(distance: int) -> float:
    """1 / (distance + 1); 1.0 for the start node, never zero."""
    if distance < 0:
        raise ValueError(f"distance must be >= 0, got {distance}")
    return 1.0 / (distance + 1)


def recency_score(created: Optional[datetime], options: ScoringOptions) -> float:
    """
    Halve the score every half_life_days of age.

    A missing timestamp scores the neutral midpoint; timestamps in the
    future count as brand new.
    """
    if created is None:
        return NEUTRAL_RECENCY
    age_days = (options.current_time() - created).total_seconds() / 86400.0
    if age_days <= 0:
        return 1.0
    return math.pow(0.5, age_days / options.half_life_days)


def score_node(distance: int, semantic_sim: Optional[float] = None,
               created: Optional[datetime] = None,
               options: Optional[ScoringOptions] = None) -> RelevanceScore:
    """Score a single node."""
    options = options or ScoringOptions()

    d = distance_score(distance)
    r = recency_score(created, options)

    if semantic_sim is None:
        total = DISTANCE_WEIGHT * d + RECENCY_WEIGHT * r
    else:
        total = (SEMANTIC_DISTANCE_WEIGHT * d
                 + SEMANTIC_WEIGHT * semantic_sim
                 + SEMANTIC_RECENCY_WEIGHT * r)

    total = min(1.0, max(0.0, total))
    return RelevanceScore(total=total, components=ScoreComponents(
        distance=d, recency=r, semantic_sim=semantic_sim
    ))


def score_and_sort(candidates: Sequence[ScoringCandidate],
                   options: Optional[ScoringOptions] = None) -> List[ScoredNode]:
    """
    Score every candidate and sort by total descending.

    Ties keep input order; each result carries its original index.
    """
    options = options or ScoringOptions()
    scored = [
        ScoredNode(
            candidate=c,
            score=score_node(c.distance, c.semantic_sim, c.created, options),
            index=i,
        )
        for i, c in enumerate(candidates)
    ]
    scored.sort(key=lambda s: (-s.score.total, s.index))
    return scored


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clamped to [0, 1]; 0.0 for empty or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))
