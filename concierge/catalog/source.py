"""
Catalog source: fetches candidate products from the shop's Admin GraphQL API.

Only the fields the matching core needs are requested. Every node is decoded
through ``decode_catalog_products`` so callers receive canonical products.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from concierge.catalog.decoders import decode_catalog_products
from concierge.catalog.models import CandidateProduct

logger = logging.getLogger("concierge.catalog.source")

SHOPIFY_API_VERSION = os.environ.get("SHOPIFY_API_VERSION", "2024-10")

# Timeout for catalog HTTP calls
CATALOG_REQUEST_TIMEOUT = float(os.environ.get("CATALOG_REQUEST_TIMEOUT", "20.0"))

PRODUCTS_QUERY = """
query Products($first: Int!, $after: String, $query: String) {
  products(first: $first, after: $after, query: $query) {
    pageInfo { hasNextPage endCursor }
    nodes {
      handle
      title
      descriptionHtml
      productType
      vendor
      tags
      totalInventory
      priceRangeV2 { minVariantPrice { amount currencyCode } }
      options { name values }
      variants(first: 100) {
        nodes {
          availableForSale
          price
          selectedOptions { name value }
        }
      }
    }
  }
}
"""


class CatalogSourceError(Exception):
    """Raised when the catalog API cannot be reached or rejects the request."""


class CatalogClient:
    """Minimal async client for the Admin GraphQL products connection."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = SHOPIFY_API_VERSION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.url = f"https://{shop_domain}/admin/api/{api_version}/graphql.json"
        self._transport = transport

    async def _post(self, client: httpx.AsyncClient, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await client.post(
                self.url,
                json={"query": PRODUCTS_QUERY, "variables": variables},
                headers={"X-Shopify-Access-Token": self.access_token},
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("catalog: %s HTTP %s body=%s", self.shop_domain, e.response.status_code, e.response.text[:500])
            raise CatalogSourceError(f"Catalog request failed with HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("catalog: %s request failed: %s", self.shop_domain, e)
            raise CatalogSourceError(f"Catalog unreachable: {e}") from e

        body = resp.json()
        if body.get("errors"):
            raise CatalogSourceError(f"Catalog query errors: {body['errors']}")
        return (body.get("data") or {}).get("products") or {}

    async def fetch_products(
        self,
        search_query: Optional[str] = None,
        page_size: int = 100,
        max_products: int = 500,
    ) -> List[CandidateProduct]:
        """Fetch up to ``max_products`` products, following cursors."""
        raw_nodes: List[Dict[str, Any]] = []
        cursor = None
        async with httpx.AsyncClient(timeout=CATALOG_REQUEST_TIMEOUT, transport=self._transport) as client:
            while len(raw_nodes) < max_products:
                page = await self._post(client, {
                    "first": min(page_size, max_products - len(raw_nodes)),
                    "after": cursor,
                    "query": search_query,
                })
                for node in page.get("nodes") or []:
                    # Admin API names the range priceRangeV2
                    if "priceRangeV2" in node and "priceRange" not in node:
                        node["priceRange"] = node.pop("priceRangeV2")
                    raw_nodes.append(node)
                page_info = page.get("pageInfo") or {}
                if not page_info.get("hasNextPage"):
                    break
                cursor = page_info.get("endCursor")

        logger.info("catalog: fetched %d products from %s", len(raw_nodes), self.shop_domain)
        return decode_catalog_products(raw_nodes)

    async def fetch_products_by_handles(self, handles: List[str]) -> List[CandidateProduct]:
        """Fetch products by handle, returned in the order of ``handles``."""
        if not handles:
            return []
        search = " OR ".join(f"handle:{h}" for h in handles)
        products = await self.fetch_products(search_query=search, max_products=len(handles))
        by_handle = {p.handle: p for p in products}
        return [by_handle[h] for h in handles if h in by_handle]


def catalog_client_from_env(shop_domain: str) -> Optional[CatalogClient]:
    """
    Client for a shop using the SHOPIFY_ACCESS_TOKEN environment variable.

    Returns None when no token is configured; callers then expect catalog
    payloads to be posted with the request.
    """
    access_token = os.environ.get("SHOPIFY_ACCESS_TOKEN")
    if not access_token or not shop_domain:
        return None
    return CatalogClient(shop_domain, access_token)
