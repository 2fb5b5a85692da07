"""
Concierge - AI-assisted product discovery for Shopify storefronts

Turns a shopper's free-text request into a short, ordered list of products:
- LLM intent parsing (hard terms, facets, bundles, budget)
- Industry-agnostic facet discovery, gating and constraint relaxation
- AI ranking with cache and deterministic fallback
- Exactly-once billing per delivered session
"""

from concierge.core.config import ConciergeConfig, get_config, set_config
from concierge.core.pipeline import ConciergePipeline, PipelineResult

__all__ = [
    'ConciergeConfig',
    'get_config',
    'set_config',
    'ConciergePipeline',
    'PipelineResult',
]

__version__ = '0.1.0'
