"""
HTTP API flow: start, message, process, poll.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from concierge.api.server import create_app
from concierge.billing.coordinator import DeliveryCoordinator
from concierge.catalog.source import CatalogClient
from concierge.core.pipeline import PipelineResult
from concierge.sessions.service import SessionService


@pytest.fixture
def pipeline():
    mock = MagicMock()
    mock.run = AsyncMock(return_value=PipelineResult(
        handles=["wool-coat"], reasoning="Warm and classic.", source="ai", intent_used=True,
    ))
    return mock


CATALOG_NODE = {
    "handle": "wool-coat",
    "title": "Wool Coat",
    "productType": "Coat",
    "priceRangeV2": {"minVariantPrice": {"amount": "180.0", "currencyCode": "USD"}},
    "variants": {"nodes": [{"availableForSale": True, "price": "180.0", "selectedOptions": []}]},
}


@pytest.fixture
def catalog_calls():
    return []


@pytest.fixture
def catalog_factory(catalog_calls):
    def factory(shop_domain):
        def handler(request):
            catalog_calls.append(shop_domain)
            page = {"pageInfo": {"hasNextPage": False}, "nodes": [CATALOG_NODE]}
            return httpx.Response(200, json={"data": {"products": page}})
        return CatalogClient(shop_domain, "token-1", transport=httpx.MockTransport(handler))
    return factory


@pytest.fixture
def make_client(db_factory, config, pipeline):
    def _make(catalog_factory=None):
        app = create_app(
            service=SessionService(pipeline=pipeline, session_factory=db_factory),
            coordinator=DeliveryCoordinator(db_factory, config),
            catalog_factory=catalog_factory,
        )
        return TestClient(app)
    return _make


@pytest.fixture
def client(make_client, catalog_factory):
    with make_client(catalog_factory) as test_client:
        yield test_client


PRODUCTS = [
    {"handle": "wool-coat", "title": "Wool Coat", "body_html": "<p>Warm</p>", "tags": "winter, wool"},
    {"title": "No handle"},
]


def _session_with_message(client, text="warm coat"):
    token = client.post("/sessions", json={"shop_id": "shop-a.myshopify.com"}).json()["token"]
    client.post(f"/sessions/{token}/messages", json={"text": text})
    return token


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_full_flow_bills_once(client, pipeline):
    response = client.post("/sessions", json={"shop_id": "shop-a"})
    assert response.status_code == 200
    token = response.json()["token"]

    response = client.post(f"/sessions/{token}/messages", json={"text": "warm coat"})
    assert response.status_code == 200
    assert response.json()["messages"] == [{"role": "user", "content": "warm coat"}]

    response = client.post(f"/sessions/{token}/process", json={"products": PRODUCTS})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "COMPLETE"
    assert body["product_count"] == 1
    assert body["source"] == "ai"
    candidates = pipeline.run.call_args.args[2]
    assert [p.handle for p in candidates] == ["wool-coat"]

    first = client.get(f"/sessions/{token}").json()
    assert first["product_handles"] == ["wool-coat"]
    assert first["reasoning"] == "Warm and classic."
    assert first["charged"] is True

    second = client.get(f"/sessions/{token}").json()
    assert second["product_handles"] == ["wool-coat"]
    assert second["charged"] is False


def test_poll_before_processing(client):
    token = client.post("/sessions", json={"shop_id": "shop-a"}).json()["token"]
    body = client.get(f"/sessions/{token}").json()
    assert body["status"] == "COLLECTING"
    assert body["product_handles"] == []


def test_errors(client, pipeline):
    assert client.post("/sessions", json={"shop_id": "shop-a", "result_count": 9}).status_code == 400
    assert client.get("/sessions/missing").status_code == 404
    assert client.post("/sessions/missing/messages", json={"text": "hi"}).status_code == 404
    assert client.post("/sessions/missing/process", json={"products": []}).status_code == 404
    assert client.post("/sessions/missing/process", json={}).status_code == 404

    token = client.post("/sessions", json={"shop_id": "shop-a"}).json()["token"]
    assert client.post(f"/sessions/{token}/messages", json={"text": " "}).status_code == 400
    assert client.post(f"/sessions/{token}/process", json={"products": []}).status_code == 409

    client.post(f"/sessions/{token}/messages", json={"text": "coat"})
    pipeline.run.side_effect = RuntimeError("boom")
    assert client.post(f"/sessions/{token}/process", json={"products": []}).status_code == 500
    assert client.get(f"/sessions/{token}").json()["status"] == "FAILED"


# ============================================================================
# Shop catalog
# ============================================================================

def test_process_fetches_shop_catalog_when_no_products_posted(client, pipeline, catalog_calls):
    token = _session_with_message(client)

    response = client.post(f"/sessions/{token}/process", json={})

    assert response.status_code == 200
    assert catalog_calls == ["shop-a.myshopify.com"]
    candidates = pipeline.run.call_args.args[2]
    assert [p.handle for p in candidates] == ["wool-coat"]
    assert candidates[0].product_type == "Coat"


def test_posted_products_skip_the_catalog(client, catalog_calls):
    token = _session_with_message(client)
    assert client.post(f"/sessions/{token}/process", json={"products": PRODUCTS}).status_code == 200
    assert catalog_calls == []


def test_no_catalog_credentials(make_client):
    with make_client() as client:
        token = _session_with_message(client)
        response = client.post(f"/sessions/{token}/process", json={})
    assert response.status_code == 400


def test_catalog_failure(make_client):
    def failing(shop_domain):
        transport = httpx.MockTransport(lambda request: httpx.Response(401, text="unauthorized"))
        return CatalogClient(shop_domain, "bad", transport=transport)

    with make_client(failing) as client:
        token = _session_with_message(client)
        response = client.post(f"/sessions/{token}/process", json={})
        assert response.status_code == 502
        assert client.get(f"/sessions/{token}").json()["status"] == "COLLECTING"


# ============================================================================
# Request handling
# ============================================================================

def test_request_id_is_echoed_or_generated(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"

    generated = client.get("/health").headers["X-Request-ID"]
    assert len(generated) == 36


def test_database_routes_run_off_the_event_loop(client):
    endpoints = {
        (route.path, method): route.endpoint
        for route in client.app.routes
        if hasattr(route, "methods")
        for method in route.methods
    }
    for key in (("/sessions", "POST"), ("/sessions/{token}/messages", "POST"), ("/sessions/{token}", "GET")):
        assert not asyncio.iscoroutinefunction(endpoints[key])
