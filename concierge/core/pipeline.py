"""
Concierge pipeline: shopper query + candidate pool -> ordered product handles.

Stages:
1. Intent parsing (LLM)
2. Facet vocabulary discovery over the pool
3. Avoid-term exclusion
4. Hard-term gating (facet values are handled as constraints, not gated),
   then primary item-type anchoring
5. Facet constraints with staged relaxation
6. Bundle selection, or AI ranking with cache and deterministic fallback
7. Diversity pass

When the intent is unavailable the pipeline does not guess terms from the
raw query: gating and constraints are skipped and the whole pool is ranked.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from concierge.catalog.models import CandidateProduct
from concierge.core.config import ConciergeConfig, get_config
from concierge.matching.constraints import (
    FacetConstraint,
    convert_hard_facets_to_constraints,
    filter_with_relaxation,
)
from concierge.matching.facets import FacetMappingConfig, FacetVocabulary, discover_facet_vocabulary
from concierge.matching.gating import exclude_avoided, gate, gate_with_expansion, non_facet_hard_terms
from concierge.matching.type_lexicon import anchor_to_type, build_type_lexicon
from concierge.parsing.intent_parser import ParsedIntent, parse_intent
from concierge.recommendation.ai_ranking import AIRanker
from concierge.recommendation.bundles import select_bundle
from concierge.recommendation.diversity import ensure_result_diversity, generate_empty_result_suggestions
from concierge.recommendation.ranking import SOURCE_DETERMINISTIC, RankingResult
from concierge.recommendation.reasoning import FALLBACK_REASONING, clean_reasoning
from concierge.utils.logger import get_logger

logger = get_logger("core.pipeline")

SOURCE_BUNDLE = "bundle"
SOURCE_NONE = "none"


@dataclass
class PipelineResult:
    handles: List[str] = field(default_factory=list)
    reasoning: str = ""
    intent_used: bool = False
    relaxation: Dict[str, Any] = field(default_factory=dict)
    source: str = SOURCE_NONE
    intent: Optional[ParsedIntent] = None
    suggestions: List[str] = field(default_factory=list)


def facet_terms_to_constraints(hard_terms: List[str], vocabulary: FacetVocabulary) -> List[FacetConstraint]:
    """Hard terms that are known facet values become constraints on that facet."""
    constraints = []
    for term in hard_terms:
        value = (term or "").lower().strip()
        if not value:
            continue
        for name in sorted(vocabulary.option_name_to_values):
            if value in vocabulary.option_name_to_values[name]:
                constraints.append(FacetConstraint(name, value))
                break
    return constraints


def _dedupe_by_key(constraints: List[FacetConstraint]) -> List[FacetConstraint]:
    # Explicit hard facets come first and win over facet-valued terms
    seen = set()
    result = []
    for constraint in constraints:
        if constraint.key not in seen:
            seen.add(constraint.key)
            result.append(constraint)
    return result


def intent_text(query: str, history: Optional[List[Dict[str, str]]] = None) -> str:
    """Shopper messages (history, then the current query) as one ranking intent."""
    parts = [m.get("content", "") for m in (history or []) if m.get("role") == "user"]
    parts.append(query or "")
    return " ".join(p.strip() for p in parts if p and p.strip())


class ConciergePipeline:
    """Runs one recommendation request end to end."""

    def __init__(
        self,
        config: Optional[ConciergeConfig] = None,
        intent_client: Optional[AsyncOpenAI] = None,
        ranker: Optional[AIRanker] = None,
        facet_mapping: Optional[FacetMappingConfig] = None,
    ):
        self.config = config or get_config()
        self.intent_client = intent_client
        self.ranker = ranker or AIRanker(config=self.config)
        self.facet_mapping = facet_mapping

    async def run(
        self,
        shop_id: Optional[str],
        query: str,
        candidates: List[CandidateProduct],
        result_count: int = 8,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> PipelineResult:
        parsed = await parse_intent(query, history, client=self.intent_client, config=self.config)
        intent = parsed.intent if parsed.success else None
        user_intent = intent_text(query, history)

        if intent is None:
            logger.warning(f"Intent unavailable ({parsed.error}); ranking full pool without gating")
            ranking = await self.ranker.rank(user_intent, candidates, result_count, shop_id)
            total = len(candidates)
            return self._finish(ranking, candidates, result_count, user_intent, None, {}, total, total)

        vocabulary = discover_facet_vocabulary(candidates, self.facet_mapping)
        pool = exclude_avoided(candidates, intent.avoid_terms, self.config.description_search_chars)
        global_constraints = _dedupe_by_key(
            convert_hard_facets_to_constraints(intent.hard_facets.model_dump())
            + facet_terms_to_constraints(intent.hard_terms, vocabulary)
        )

        if intent.is_bundle:
            selection = select_bundle(
                pool, intent, result_count, global_constraints, self.config.description_search_chars
            )
            if selection.handles:
                ranking = RankingResult(selection.handles, selection.reasoning, SOURCE_BUNDLE)
                return self._finish(
                    ranking, pool, result_count, user_intent, intent, {}, len(pool), len(candidates)
                )
            logger.info("Bundle selection found nothing; ranking as a single request")

        terms = non_facet_hard_terms(intent.hard_terms, vocabulary)
        if self.config.enable_term_expansion:
            gated, expanded = gate_with_expansion(pool, terms, self.config.description_search_chars)
        else:
            gated, expanded = gate(pool, terms, self.config.description_search_chars), False

        anchor = None
        if self.config.enable_type_anchor:
            gated, anchor = anchor_to_type(gated, terms, build_type_lexicon(candidates))

        min_results = self.config.min_results_before_relax or result_count
        matches, relaxation = filter_with_relaxation(gated, global_constraints, vocabulary, min_results)
        relaxation["expansion_used"] = expanded
        relaxation["type_anchor"] = anchor

        ranking = await self.ranker.rank(
            user_intent,
            matches,
            result_count,
            shop_id,
            constraints={c.key: c.value for c in relaxation["met_constraints"]},
            preferences=intent.preferences,
            include_terms=intent.hard_terms + intent.soft_terms,
            avoid_terms=intent.avoid_terms,
        )
        return self._finish(
            ranking, matches, result_count, user_intent, intent, relaxation, len(gated), len(candidates)
        )

    def _finish(
        self,
        ranking: RankingResult,
        pool: List[CandidateProduct],
        result_count: int,
        user_intent: str,
        intent: Optional[ParsedIntent],
        relaxation: Dict[str, Any],
        filtered_count: int,
        total_count: int,
    ) -> PipelineResult:
        handles = ranking.ranked_handles
        if ranking.source != SOURCE_BUNDLE:
            handles = ensure_result_diversity(
                handles, pool, result_count, self.config.max_per_vendor, self.config.max_per_type
            )

        reasoning = clean_reasoning(ranking.reasoning) or (FALLBACK_REASONING if handles else "")
        relaxed = relaxation.get("relaxed_constraints") or []
        if relaxed and handles:
            names = ", ".join(sorted({c.key for c in relaxed}))
            reasoning = f"{reasoning} We relaxed your {names} preference to find more options.".strip()

        suggestions = []
        if not handles:
            suggestions = generate_empty_result_suggestions(user_intent, filtered_count, total_count)

        source = ranking.source if handles else SOURCE_NONE
        if not handles and ranking.source == SOURCE_DETERMINISTIC:
            reasoning = ""
        logger.info(f"Pipeline finished: {len(handles)} products via {source}")
        return PipelineResult(
            handles=handles,
            reasoning=reasoning,
            intent_used=intent is not None,
            relaxation=_serializable_relaxation(relaxation),
            source=source,
            intent=intent,
            suggestions=suggestions,
        )


def _serializable_relaxation(relaxation: Dict[str, Any]) -> Dict[str, Any]:
    if not relaxation:
        return {}
    result = dict(relaxation)
    for key in ("met_constraints", "relaxed_constraints"):
        result[key] = [{"key": c.key, "value": c.value} for c in relaxation.get(key, [])]
    return result
