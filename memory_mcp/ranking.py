"""
Ranking policy for recalled memories
Copyright 2025 Jurden Bruce

Each candidate gets one score from four signals: text match, vector
similarity, recency of last touch, and stored importance. Text and vector
weights depend on which signals the request carries; the weighted sum is
divided by the total weight actually in play, so scores stay on a 0..1
scale whichever signals fired.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Collection, List, Optional, Sequence, Tuple

from .models import MemoryRecord
from .similarity import cosine_similarity
from .utils import utc_now

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class RankingWeights:
    text_only: float = 0.55
    text_with_vector: float = 0.40
    vector_only: float = 0.60
    vector_with_text: float = 0.35
    recency: float = 0.15
    importance: float = 0.10
    half_life_days: float = 30.0
    default_recency: float = 0.6
    default_importance: float = 0.5
    # text signal for items that reached the pool only via the vector path
    vector_only_text_score: float = 0.3
    no_query_text_score: float = 0.5


@dataclass
class ScoredMemory:
    record: MemoryRecord
    score: float
    text_score: float
    embed_score: float
    recency: float
    importance: float


def recency_decay(
    last_touched: Optional[datetime],
    now: Optional[datetime] = None,
    half_life_days: float = 30.0,
    default: float = 0.6,
) -> float:
    """1 / (1 + days_elapsed / half_life); `default` when never touched"""
    if last_touched is None:
        return default
    days = ((now or utc_now()) - last_touched).total_seconds() / SECONDS_PER_DAY
    return 1.0 / (1.0 + max(days, 0.0) / half_life_days)


class RankingPolicy:
    """Scores a candidate pool and selects the top k"""

    def __init__(self, weights: Optional[RankingWeights] = None):
        self.weights = weights or RankingWeights()

    def signal_weights(self, has_query: bool, has_vector: bool) -> Tuple[float, float]:
        """(text weight, vector weight) for a request"""
        w = self.weights
        text_weight = (w.text_with_vector if has_vector else w.text_only) if has_query else 0.0
        embed_weight = (w.vector_with_text if has_query else w.vector_only) if has_vector else 0.0
        return text_weight, embed_weight

    def score(
        self,
        record: MemoryRecord,
        has_query: bool,
        matched_text: bool,
        query_vector: Optional[Sequence[float]] = None,
        now: Optional[datetime] = None,
    ) -> ScoredMemory:
        w = self.weights
        has_vector = bool(query_vector)
        text_weight, embed_weight = self.signal_weights(has_query, has_vector)

        if has_query:
            text_score = 1.0 if matched_text else w.vector_only_text_score
        else:
            text_score = w.no_query_text_score

        embed_score = 0.0
        if has_vector and record.embedding:
            embed_score = max(cosine_similarity(query_vector, record.embedding), 0.0)

        recency = recency_decay(
            record.last_touched(), now, w.half_life_days, w.default_recency
        )
        importance = record.importance if record.importance is not None else w.default_importance

        total_weight = text_weight + embed_weight + w.recency + w.importance
        raw = (
            text_score * text_weight
            + embed_score * embed_weight
            + recency * w.recency
            + importance * w.importance
        )
        score = raw / total_weight if total_weight else 0.0
        return ScoredMemory(record, score, text_score, embed_score, recency, importance)

    def rank(
        self,
        pool: Sequence[MemoryRecord],
        k: int,
        has_query: bool,
        text_matches: Collection[str] = (),
        query_vector: Optional[Sequence[float]] = None,
        now: Optional[datetime] = None,
    ) -> List[ScoredMemory]:
        """Top k of the pool by score; ties keep pool order"""
        now = now or utc_now()
        scored = [
            self.score(record, has_query, record.id in text_matches, query_vector, now)
            for record in pool
        ]
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored[:k]
