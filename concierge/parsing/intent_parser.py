"""
Intent parser for shopper queries.

Uses LLM with structured output to extract:
1. Hard terms (concrete, searchable product terms)
2. Soft terms, avoid terms and style preferences
3. Size/color/material facets
4. Bundle structure (multiple distinct items) and budget

There is no pattern-based fallback: on failure the caller gets
``fallback_used=True`` and decides what to do without an intent.
"""
import asyncio
from dataclasses import dataclass
import json
import os
import random
from typing import Any, Dict, List, Optional

from openai import APITimeoutError, AsyncOpenAI
from pydantic import BaseModel, Field

from concierge.core.config import ConciergeConfig, get_config
from concierge.utils.logger import get_logger

logger = get_logger("parsing.intent_parser")


class HardFacets(BaseModel):
    """Facet constraints stated for the whole request."""
    size: Optional[str] = Field(None, description="Size constraint if specified (e.g., 'Large', 'XL', '250ml')")
    color: Optional[str] = Field(None, description="Color constraint if specified (e.g., 'Blue', 'Red')")
    material: Optional[str] = Field(None, description="Material constraint if specified (e.g., 'Cotton', 'Leather')")


class OptionConstraint(BaseModel):
    """One option requirement for a bundle item (e.g., name='color', value='navy')."""
    name: str = Field(description="Option name such as size, color, material, scent")
    value: str = Field(description="Required option value")


class BundleItemConstraints(BaseModel):
    option_constraints: List[OptionConstraint] = Field(
        default_factory=list,
        description="Option requirements that apply only to this item"
    )
    price_ceiling: Optional[float] = Field(None, description="Maximum price for this item if stated")
    include_terms: List[str] = Field(default_factory=list, description="Extra terms this item should match")
    exclude_terms: List[str] = Field(default_factory=list, description="Terms this item must not match")


class BundleItem(BaseModel):
    hard_terms: List[str] = Field(
        default_factory=list,
        description="Product terms for this item (e.g., ['suit'], ['coffee', 'table'])"
    )
    quantity: int = Field(1, description="Quantity requested for this item (default 1)")
    constraints: BundleItemConstraints = Field(default_factory=BundleItemConstraints)


class ParsedIntent(BaseModel):
    """Structured shopper intent."""
    is_bundle: bool = Field(
        False,
        description="True only if the user wants multiple distinct products (e.g., 'laptop and mouse')"
    )
    hard_terms: List[str] = Field(
        default_factory=list,
        description="Concrete product terms and attributes that must match (e.g., 'blue', 'shirt', 'wireless')"
    )
    soft_terms: List[str] = Field(
        default_factory=list,
        description="Context or occasion terms that guide but do not gate (e.g., 'formal', 'work')"
    )
    avoid_terms: List[str] = Field(
        default_factory=list,
        description="Terms to exclude ('no prints' -> 'prints', 'without parabens' -> 'parabens')"
    )
    hard_facets: HardFacets = Field(default_factory=HardFacets)
    bundle_items: List[BundleItem] = Field(
        default_factory=list,
        description="Bundle items, only populated when is_bundle is true"
    )
    total_budget: Optional[float] = Field(None, description="Total budget if stated (e.g., 500 for '$500')")
    total_budget_currency: Optional[str] = Field(None, description="Currency code if detected (e.g., 'USD')")
    preferences: List[str] = Field(
        default_factory=list,
        description="Style or feature preferences (e.g., 'plain', 'organic', 'rechargeable')"
    )


@dataclass
class IntentParseResult:
    success: bool
    intent: Optional[ParsedIntent] = None
    error: Optional[str] = None
    fallback_used: bool = False


SYSTEM_PROMPT = """You are an expert at understanding shopping queries and extracting structured intent.

Your job is to analyze the shopper's message and extract:
1. **Hard terms**: Concrete, searchable product terms and attributes (e.g., "blue", "shirt", "laptop", "cotton", "wireless")
2. **Soft terms**: Context, occasion or style concepts (e.g., "formal", "casual", "work", "wedding")
3. **Avoid terms**: Things the shopper wants excluded
4. **Hard facets**: Size, color or material constraints if clearly stated
5. **Bundle detection**: Whether the shopper wants multiple distinct products
6. **Preferences**: Style or feature preferences that guide selection

## Rules

### Product vs preference
- "i want plain" is a preference for plain style, NOT a product
- "plain shirt" is a product with a "plain" attribute
- "i want wireless" is a preference; "wireless headphones" is a product

### Avoid terms
- "no X", "avoid X", "not X", "without X" -> put X in avoid_terms

### Bundles
- is_bundle=true ONLY for multiple DISTINCT products ("laptop and mouse", "sofa and chair")
- A single item with several attributes is NOT a bundle
- Each bundle item gets its own hard_terms; item-specific options go in that item's constraints

### Exact terms
- Extract terms as the shopper wrote them: no synonym expansion, no assumptions
- Work for ANY industry (fashion, electronics, home, beauty, food, automotive...)
- Use the conversation history to resolve follow-ups

## Examples
- "Blue shirt but no prints or floral, i want plain" -> hard_terms ["blue", "shirt"], avoid_terms ["prints", "floral"], preferences ["plain"]
- "Wireless headphones under $100" -> hard_terms ["wireless", "headphones"], total_budget 100, preferences ["wireless"]
- "Sofa and coffee table" -> is_bundle true, bundle_items [{hard_terms ["sofa"]}, {hard_terms ["coffee", "table"]}]
- "Organic face cream without parabens" -> hard_terms ["organic", "face", "cream"], avoid_terms ["parabens"], preferences ["organic"]
- "Suit, shirt and trousers for $500" -> is_bundle true, three items, total_budget 500
- "Large vanilla candle" -> hard_terms ["candle"], hard_facets {size: "large"}, preferences ["vanilla"]"""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _string_list(value: Any, lowercase: bool = True) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set)):
        return []
    result = []
    for item in value:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if lowercase:
            text = text.lower()
        if text and text not in result:
            result.append(text)
    return result


def _positive_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _facet_value(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip().lower()
    return text or None


def _coerce_bundle_item(raw: Any) -> Optional[BundleItem]:
    if not isinstance(raw, dict):
        return None
    hard_terms = _string_list(raw.get("hard_terms"))
    if not hard_terms:
        return None

    try:
        quantity = int(raw.get("quantity") or 1)
    except (TypeError, ValueError):
        quantity = 1

    constraints = raw.get("constraints") if isinstance(raw.get("constraints"), dict) else {}
    option_constraints = []
    for option in constraints.get("option_constraints") or []:
        if isinstance(option, dict):
            name, value = _facet_value(option.get("name")), _facet_value(option.get("value"))
            if name and value:
                option_constraints.append(OptionConstraint(name=name, value=value))

    return BundleItem(
        hard_terms=hard_terms,
        quantity=max(1, quantity),
        constraints=BundleItemConstraints(
            option_constraints=option_constraints,
            price_ceiling=_positive_number(constraints.get("price_ceiling")),
            include_terms=_string_list(constraints.get("include_terms")),
            exclude_terms=_string_list(constraints.get("exclude_terms")),
        ),
    )


def coerce_intent(payload: Any) -> ParsedIntent:
    """
    Validate and normalize a raw intent payload.

    Every field is re-checked because the model's schema compliance is not
    fully trusted: arrays are coerced to lists of trimmed strings, budgets
    must be positive, and a bundle with fewer than two valid items becomes
    a single-item intent with no bundle items.
    """
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    if not isinstance(payload, dict):
        payload = {}

    facets = payload.get("hard_facets") if isinstance(payload.get("hard_facets"), dict) else {}
    items = []
    if isinstance(payload.get("bundle_items"), list):
        for raw in payload["bundle_items"]:
            item = _coerce_bundle_item(raw)
            if item is not None:
                items.append(item)

    is_bundle = bool(payload.get("is_bundle")) and len(items) >= 2
    if not is_bundle:
        items = []

    currency = payload.get("total_budget_currency")
    currency = str(currency).strip().upper() if isinstance(currency, str) and currency.strip() else None

    return ParsedIntent(
        is_bundle=is_bundle,
        hard_terms=_string_list(payload.get("hard_terms")),
        soft_terms=_string_list(payload.get("soft_terms")),
        avoid_terms=_string_list(payload.get("avoid_terms")),
        hard_facets=HardFacets(
            size=_facet_value(facets.get("size")),
            color=_facet_value(facets.get("color")),
            material=_facet_value(facets.get("material")),
        ),
        bundle_items=items,
        total_budget=_positive_number(payload.get("total_budget")),
        total_budget_currency=currency,
        preferences=_string_list(payload.get("preferences")),
    )


# ---------------------------------------------------------------------------
# LLM call
# ---------------------------------------------------------------------------

def build_messages(
    query: str,
    history: Optional[List[Dict[str, str]]] = None,
    history_window: int = 6,
) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    if history:
        for msg in history[-history_window:]:
            if msg.get("role") in ("user", "assistant") and msg.get("content"):
                messages.append({"role": msg["role"], "content": msg["content"]})
    messages.append({
        "role": "user",
        "content": f"Extract the shopping intent from this message:\n\n\"{query}\""
    })
    return messages


async def parse_intent(
    query: str,
    history: Optional[List[Dict[str, str]]] = None,
    client: Optional[AsyncOpenAI] = None,
    config: Optional[ConciergeConfig] = None,
) -> IntentParseResult:
    """
    Parse a shopper query (with optional history) into a ParsedIntent.

    The timeout grows with history length. Only timeouts are retried (once,
    after a random jitter); any other failure returns immediately with
    ``fallback_used=True``.
    """
    config = config or get_config()
    if client is None:
        if not os.getenv("OPENAI_API_KEY"):
            return IntentParseResult(success=False, error="OPENAI_API_KEY not set", fallback_used=True)
        # Retries are handled here, not by the SDK
        client = AsyncOpenAI(max_retries=0)

    messages = build_messages(query, history, config.intent_history_window)
    timeout = config.intent_timeout_for(len(history or []))

    response = None
    for attempt in range(2):
        try:
            response = await asyncio.wait_for(
                client.beta.chat.completions.parse(
                    model=config.intent_model,
                    messages=messages,
                    response_format=ParsedIntent,
                    temperature=config.intent_temperature,
                    max_tokens=config.intent_max_tokens,
                ),
                timeout=timeout,
            )
            break
        except (asyncio.TimeoutError, APITimeoutError):
            if attempt == 0:
                delay = random.uniform(config.intent_retry_jitter_min_s, config.intent_retry_jitter_max_s)
                logger.warning(f"Intent parse timed out after {timeout:.1f}s; retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
                continue
            logger.error(f"Intent parse timed out twice (timeout={timeout:.1f}s)")
            return IntentParseResult(success=False, error="Intent parsing timed out", fallback_used=True)
        except Exception as e:
            logger.error(f"Failed to parse intent: {e}")
            return IntentParseResult(success=False, error=str(e), fallback_used=True)

    message = response.choices[0].message
    if message.parsed is not None:
        payload = message.parsed
    elif message.content:
        try:
            payload = json.loads(message.content)
        except json.JSONDecodeError as e:
            logger.error(f"Intent response was not valid JSON: {e}")
            return IntentParseResult(success=False, error="Invalid JSON from intent model", fallback_used=True)
    else:
        logger.error("Intent response was empty")
        return IntentParseResult(success=False, error="Empty response from intent model", fallback_used=True)

    intent = coerce_intent(payload)
    logger.info(
        f"Parsed intent: hard={intent.hard_terms} avoid={intent.avoid_terms} "
        f"facets={intent.hard_facets.model_dump(exclude_none=True)} bundle={intent.is_bundle} "
        f"budget={intent.total_budget}"
    )
    return IntentParseResult(success=True, intent=intent, fallback_used=False)
