"""Pytest configuration for concierge tests."""

import pytest

from concierge.catalog.models import CandidateProduct, SelectedOption, Variant
from concierge.core.config import ConciergeConfig, set_config
from concierge.db import database


# ---------------------------------------------------------------------------
# Environment isolation: a developer .env must never turn on real model calls
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function", autouse=True)
def _isolate_env(monkeypatch):
    for name in (
        "OPENAI_API_KEY", "OPENAI_MODEL", "FEATURE_AI_RANKING",
        "DATABASE_URL", "REDIS_URL", "SHOPIFY_ACCESS_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def config():
    """Default configuration installed as the global config."""
    cfg = ConciergeConfig()
    set_config(cfg)
    yield cfg
    set_config(None)


@pytest.fixture
def db_factory(tmp_path, config):
    """Session factory bound to a fresh SQLite file database."""
    factory = database.init_db(f"sqlite:///{tmp_path / 'concierge-test.db'}")
    yield factory
    database.engine.dispose()
    database.engine = None
    database.SessionLocal = None


def make_product(
    handle,
    title="",
    tags=None,
    product_type="",
    vendor="",
    price=None,
    description="",
    available=True,
    variants=None,
    option_values=None,
):
    """Build a CandidateProduct; variants are given as [({name: value}, available), ...]."""
    built_variants = []
    for options, variant_available in variants or []:
        built_variants.append(Variant(
            selected_options=[SelectedOption(name=k, value=v) for k, v in options.items()],
            available_for_sale=variant_available,
        ))
    return CandidateProduct(
        handle=handle,
        title=title or handle.replace("-", " ").title(),
        tags=tags or [],
        product_type=product_type,
        vendor=vendor,
        price=price,
        description=description,
        available=available,
        variants=built_variants,
        option_values=option_values or {},
    )
