"""
Ranking and selection of the final result list.

- deterministic_ranking: availability + preference score, always available
- AIRanker: LLM ranking with cache and deterministic fallback
- select_bundle: per-item slot filling under a shared budget
"""
from concierge.recommendation.ranking import RankingResult, deterministic_ranking
from concierge.recommendation.ai_ranking import AIRanker
from concierge.recommendation.bundles import select_bundle

__all__ = [
    "RankingResult",
    "deterministic_ranking",
    "AIRanker",
    "select_bundle",
]
