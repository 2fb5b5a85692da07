"""
AI ranking of a gated candidate pool.

Flow for one request:
1. Feature flag / API key check (deterministic ranking when off)
2. Cache lookup (exact key, same shop, unexpired)
3. BM25 prefilter down to the prompt limit
4. One model call with a fixed timeout, retried at most ``ranking_max_retries`` times
5. Handle validation (exact, then case-insensitive; unknown handles dropped)
6. Deterministic fallback when nothing valid comes back

Ranking never bills. Billing happens once per session on delivery.
"""
import asyncio
import json
import os
import re
from typing import Any, Dict, List, Optional, Set

from openai import AsyncOpenAI

from concierge.catalog.models import CandidateProduct
from concierge.core.config import ConciergeConfig, get_config
from concierge.matching.facets import normalize_option_name
from concierge.matching.text import bm25_prefilter, clean_description
from concierge.recommendation.cache import RankingCache, generate_cache_key, get_ranking_cache
from concierge.recommendation.ranking import (
    Preferences,
    RankingResult,
    SOURCE_AI,
    deterministic_ranking,
)
from concierge.utils.logger import get_logger

logger = get_logger("recommendation.ai_ranking")

DEFAULT_AI_REASONING = "AI-ranked products based on user intent"
NO_INTENT_TEXT = "No specific intent provided"

_ABBREVIATIONS = {
    "w/o": "without",
    "w/": "with",
    "vs": "versus",
    "e.g.": "for example",
    "etc.": "and so on",
    "approx": "approximately",
    "min": "minimum",
    "max": "maximum",
}

_INTENT_PATTERNS = [
    (re.compile(r"\bi'm looking for\b", re.IGNORECASE), "I need"),
    (re.compile(r"\bi want\b", re.IGNORECASE), "I need"),
    (re.compile(r"\bi need\b", re.IGNORECASE), "I need"),
    (re.compile(r"\bsomething\b", re.IGNORECASE), "a product"),
    (re.compile(r"\bstuff\b", re.IGNORECASE), "items"),
    (re.compile(r"\bthings\b", re.IGNORECASE), "products"),
]

RANKING_SYSTEM_PROMPT = """You are an expert product recommendation assistant for an e-commerce store. Your task is to understand the shopper's intent and match it with the most relevant products from the catalog.

CRITICAL RULES:
- Return ONLY valid JSON matching the schema
- Use the EXACT handle values from the candidate list (case-sensitive, no modifications)

MATCHING STRATEGY (in priority order):
1. Semantic understanding: read each description and match the product's purpose and use cases to the shopper's need
2. Intent alignment: the problem being solved, the occasion, implicit quality or style needs
3. Product attributes: title, tags, type, vendor, price range, availability
4. Variant matching: requested options are a tie-breaker, not a hard filter; never invent variant availability
5. Keywords: include terms are desired, avoid terms are undesired

It is better to return fewer products that truly fit than to pad the list.
Do not include personal information in the reasoning.

Output schema:
{
  "ranked_handles": ["exact-handle-1", "exact-handle-2"],
  "reasoning": "Brief explanation of why these products were selected"
}"""


def enhance_user_intent(user_intent: Optional[str]) -> str:
    """Expand shopping abbreviations and normalize 'I want' phrasing for the prompt."""
    if not user_intent or not user_intent.strip():
        return NO_INTENT_TEXT
    enhanced = user_intent.strip()
    for abbrev, expansion in _ABBREVIATIONS.items():
        # \b does not anchor after punctuation, so anchor on non-word boundaries instead
        pattern = rf"(?<!\w){re.escape(abbrev)}(?!\w)"
        enhanced = re.sub(pattern, expansion, enhanced, flags=re.IGNORECASE)
    for pattern, replacement in _INTENT_PATTERNS:
        enhanced = pattern.sub(replacement, enhanced)
    return enhanced


def _product_facets(product: CandidateProduct) -> Dict[str, List[str]]:
    facets: Dict[str, List[str]] = {}
    for name, values in product.option_values.items():
        bucket = facets.setdefault(normalize_option_name(name), [])
        for value in values:
            if value not in bucket:
                bucket.append(value)
    for variant in product.variants:
        for option in variant.selected_options:
            bucket = facets.setdefault(normalize_option_name(option.name), [])
            if option.value not in bucket:
                bucket.append(option.value)
    return facets


def format_candidate(index: int, product: CandidateProduct, max_description_length: int = 1000) -> str:
    description = clean_description(product.description)
    if len(description) > max_description_length:
        description = description[:max_description_length] + "..."
    facets = _product_facets(product)

    def _join(name: str) -> str:
        return ", ".join(facets.get(name, [])) or "none"

    price = f"{product.price:.2f}" if product.price is not None else "unknown"
    return (
        f"{index}. Handle: {product.handle}\n"
        f"   Title: {product.title}\n"
        f"   Tags: {', '.join(product.tags) or 'none'}\n"
        f"   Type: {product.product_type or 'unknown'}\n"
        f"   Vendor: {product.vendor or 'unknown'}\n"
        f"   Price: {price}\n"
        f"   Description: {description or 'No description available'}\n"
        f"   Available: {'yes' if product.available else 'no'}\n"
        f"   Sizes: {_join('size')}\n"
        f"   Colors: {_join('color')}\n"
        f"   Materials: {_join('material')}\n"
        f"   OptionValues: {json.dumps(facets, sort_keys=True)}"
    )


def build_ranking_prompt(
    user_intent: str,
    candidates: List[CandidateProduct],
    result_count: int,
    constraints: Optional[Dict[str, str]] = None,
    preferences: Preferences = None,
    include_terms: Optional[List[str]] = None,
    avoid_terms: Optional[List[str]] = None,
    max_description_length: int = 1000,
) -> str:
    """User prompt listing the shopper intent, variant inputs and every candidate."""
    sections = [f"Shopper Intent:\n{enhance_user_intent(user_intent)}"]

    if constraints:
        lines = "\n".join(f"- {key.title()}: {value}" for key, value in sorted(constraints.items()))
        sections.append(
            "Variant preferences:\n" + lines +
            "\nPrefer products that offer these options. If none match all of them, "
            "return the closest matches and say which were unmet."
        )
    if preferences:
        sections.append(
            "Shopper preferences (use only the candidates' listed options and text):\n"
            + json.dumps(preferences, indent=2, sort_keys=True)
        )
    keyword_lines = []
    if include_terms:
        keyword_lines.append(f"- Include terms: {', '.join(include_terms)}")
    if avoid_terms:
        keyword_lines.append(f"- Avoid terms: {', '.join(avoid_terms)}")
    if keyword_lines:
        sections.append("Keyword preferences:\n" + "\n".join(keyword_lines))

    product_list = "\n\n".join(
        format_candidate(i + 1, p, max_description_length) for i, p in enumerate(candidates)
    )
    sections.append(f"Candidate Products ({len(candidates)} total):\n{product_list}")
    sections.append(
        f"Rank the top {result_count} products that best match the shopper's intent. "
        "Copy handles exactly. Return ONLY the JSON object with ranked_handles and reasoning."
    )
    return "\n\n".join(sections)


def validate_handles(returned: Any, candidates: List[CandidateProduct]) -> List[str]:
    """
    Map model output onto candidate handles.

    Exact match first, then case-insensitive (returning the candidate's own
    casing). Unknown and duplicate handles are dropped, order is kept.
    """
    if not isinstance(returned, list):
        return []
    exact = {p.handle for p in candidates}
    by_lower = {}
    for product in candidates:
        by_lower.setdefault(product.handle.lower(), product.handle)

    valid: List[str] = []
    seen: Set[str] = set()
    for handle in returned:
        if not isinstance(handle, str) or not handle.strip():
            continue
        trimmed = handle.strip()
        matched = trimmed if trimmed in exact else by_lower.get(trimmed.lower())
        if matched and matched not in seen:
            seen.add(matched)
            valid.append(matched)
    dropped = len(returned) - len(valid)
    if dropped:
        logger.warning(f"Dropped {dropped} unknown or duplicate handles from AI response")
    return valid


class AIRanker:
    """
    Ranks candidates with an LLM, backed by a ranking cache and a
    deterministic fallback. ``rank`` always returns a result.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        cache: Optional[RankingCache] = None,
        config: Optional[ConciergeConfig] = None,
    ):
        self.config = config or get_config()
        self._client = client
        self.cache = cache if cache is not None else get_ranking_cache(self.config)
        self._pending: Set[asyncio.Task] = set()

    @property
    def client(self) -> Optional[AsyncOpenAI]:
        if self._client is None and os.getenv("OPENAI_API_KEY"):
            # Retries are counted here, not by the SDK
            self._client = AsyncOpenAI(max_retries=0)
        return self._client

    async def rank(
        self,
        user_intent: str,
        candidates: List[CandidateProduct],
        result_count: int,
        shop_id: Optional[str] = None,
        constraints: Optional[Dict[str, str]] = None,
        preferences: Preferences = None,
        include_terms: Optional[List[str]] = None,
        avoid_terms: Optional[List[str]] = None,
    ) -> RankingResult:
        if not candidates:
            logger.info("No candidates to rank; using deterministic ranking")
            return deterministic_ranking(candidates, result_count, preferences)
        if not self.config.ai_ranking_enabled:
            logger.info("AI ranking disabled; using deterministic ranking")
            return deterministic_ranking(candidates, result_count, preferences)
        client = self.client
        if client is None:
            logger.info("OPENAI_API_KEY not set; using deterministic ranking")
            return deterministic_ranking(candidates, result_count, preferences)

        handles = [p.handle for p in candidates]
        cache_key = generate_cache_key(
            user_intent, handles, result_count, constraints, preferences, include_terms, avoid_terms
        )
        if shop_id:
            cached = await asyncio.to_thread(self.cache.get, cache_key, shop_id)
            if cached is not None and cached.ranked_handles:
                return cached

        pool = bm25_prefilter(
            candidates,
            " ".join([user_intent or ""] + list(include_terms or [])),
            self.config.ranking_candidate_limit,
        )
        if len(pool) < len(candidates):
            logger.info(f"BM25 prefilter kept {len(pool)}/{len(candidates)} candidates")

        prompt = build_ranking_prompt(
            user_intent, pool, result_count, constraints, preferences, include_terms, avoid_terms,
            self.config.ranking_max_description_length,
        )

        attempts = self.config.ranking_max_retries + 1
        for attempt in range(attempts):
            if attempt > 0:
                logger.info(f"AI ranking retry {attempt} of {self.config.ranking_max_retries}")
            try:
                result = await self._call_model(client, prompt, pool, result_count)
            except asyncio.TimeoutError:
                logger.error(f"AI ranking timed out after {self.config.ranking_timeout_s}s")
                continue
            except Exception as e:
                logger.error(f"AI ranking error: {e}")
                continue
            if result is None:
                continue

            if shop_id:
                self._schedule_cache_write(cache_key, shop_id, user_intent, handles, result, result_count)
            logger.info(f"AI ranked {len(result.ranked_handles)} products")
            return result

        logger.warning("All AI ranking attempts failed; using deterministic ranking")
        return deterministic_ranking(candidates, result_count, preferences)

    async def _call_model(
        self,
        client: AsyncOpenAI,
        prompt: str,
        pool: List[CandidateProduct],
        result_count: int,
    ) -> Optional[RankingResult]:
        response = await asyncio.wait_for(
            client.chat.completions.create(
                model=self.config.ranking_model,
                messages=[
                    {"role": "system", "content": RANKING_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self.config.ranking_temperature,
                max_tokens=self.config.ranking_max_tokens,
            ),
            timeout=self.config.ranking_timeout_s,
        )
        content = response.choices[0].message.content
        if not content:
            logger.error("No content in AI ranking response")
            return None
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"AI ranking response was not valid JSON: {e}")
            return None
        if not isinstance(data, dict) or not isinstance(data.get("ranked_handles"), list):
            logger.error("AI ranking response missing ranked_handles array")
            return None

        valid = validate_handles(data["ranked_handles"], pool)
        if not valid:
            logger.error("No valid handles in AI ranking response")
            return None
        reasoning = data.get("reasoning") if isinstance(data.get("reasoning"), str) else ""
        return RankingResult(
            ranked_handles=valid[:result_count],
            reasoning=reasoning.strip() or DEFAULT_AI_REASONING,
            source=SOURCE_AI,
        )

    def _schedule_cache_write(self, cache_key, shop_id, user_intent, handles, result, result_count) -> None:
        task = asyncio.create_task(
            asyncio.to_thread(self.cache.set, cache_key, shop_id, user_intent, handles, result, result_count)
        )
        self._pending.add(task)
        task.add_done_callback(self._on_cache_write_done)

    def _on_cache_write_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Error caching AI ranking (non-blocking): {task.exception()}")

    async def drain(self) -> None:
        """Wait for in-flight cache writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
