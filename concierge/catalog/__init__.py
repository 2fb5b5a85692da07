"""
Catalog types, decoding of Shopify product payloads, and the Admin API source.
"""
from concierge.catalog.models import CandidateProduct, SelectedOption, Variant
from concierge.catalog.decoders import decode_catalog_product, decode_catalog_products
from concierge.catalog.source import CatalogClient, CatalogSourceError, catalog_client_from_env

__all__ = [
    "CandidateProduct",
    "SelectedOption",
    "Variant",
    "decode_catalog_product",
    "decode_catalog_products",
    "CatalogClient",
    "CatalogSourceError",
    "catalog_client_from_env",
]
