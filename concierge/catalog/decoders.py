"""
Decoding of catalog payloads into CandidateProduct.

The catalog source returns products in two shapes: the Admin REST shape
(``body_html``, comma separated tags, ``option1..3`` on variants) and the
GraphQL shape (``descriptionHtml``, ``selectedOptions``, connection-style
``variants``). Each shape has its own payload model; ``decode_catalog_product``
picks the shape once and returns the canonical product so nothing downstream
branches on the source format.
"""
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

from concierge.catalog.models import CandidateProduct, SelectedOption, Variant
from concierge.utils.logger import get_logger

logger = get_logger("catalog.decoders")


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        value = value.get("amount")
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _option_values(options: List[Dict[str, Any]]) -> Dict[str, List[str]]:
    values: Dict[str, List[str]] = {}
    for option in options or []:
        name = str(option.get("name") or "").strip()
        if not name:
            continue
        raw_values = option.get("values")
        if raw_values is None:
            # Newer GraphQL API: optionValues [{name}]
            raw_values = [v.get("name") for v in option.get("optionValues") or [] if isinstance(v, dict)]
        values[name] = [str(v).strip() for v in raw_values or [] if v is not None and str(v).strip()]
    return values


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def _min_price(prices: List[Optional[float]]) -> Optional[float]:
    known = [p for p in prices if p is not None]
    return min(known) if known else None


# ---------------------------------------------------------------------------
# REST shape
# ---------------------------------------------------------------------------

class RestVariantPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    option1: Optional[str] = None
    option2: Optional[str] = None
    option3: Optional[str] = None
    price: Optional[Any] = None
    available: Optional[bool] = None
    inventory_quantity: Optional[int] = None
    inventory_policy: Optional[str] = None

    def is_available(self) -> bool:
        if self.available is not None:
            return self.available
        if self.inventory_policy == "continue" or self.inventory_quantity is None:
            return True
        return self.inventory_quantity > 0


class RestProductPayload(BaseModel):
    """Admin REST product payload."""
    model_config = ConfigDict(extra="ignore")

    handle: str
    title: str = ""
    body_html: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    options: List[Dict[str, Any]] = Field(default_factory=list)
    variants: List[RestVariantPayload] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value

    def to_candidate(self) -> CandidateProduct:
        option_names = [str(o.get("name") or "").strip() for o in self.options]
        variants = []
        for raw in self.variants:
            selected = []
            for index, value in enumerate((raw.option1, raw.option2, raw.option3)):
                if value is None or index >= len(option_names) or not option_names[index]:
                    continue
                selected.append(SelectedOption(name=option_names[index], value=value))
            variants.append(Variant(
                selected_options=selected,
                available_for_sale=raw.is_available(),
                price=_to_float(raw.price),
            ))
        return CandidateProduct(
            handle=self.handle,
            title=self.title,
            tags=_dedupe(self.tags),
            product_type=self.product_type or "",
            vendor=self.vendor or "",
            price=_min_price([v.price for v in variants]),
            description=self.body_html or "",
            available=any(v.available_for_sale for v in variants) if variants else True,
            variants=variants,
            option_values=_option_values(self.options),
        )


# ---------------------------------------------------------------------------
# GraphQL shape
# ---------------------------------------------------------------------------

class GraphQLVariantPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    selected_options: List[Dict[str, Any]] = Field(default_factory=list, alias="selectedOptions")
    available_for_sale: Optional[bool] = Field(None, alias="availableForSale")
    price: Optional[Any] = None


class GraphQLProductPayload(BaseModel):
    """Admin/Storefront GraphQL product node."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    handle: str
    title: str = ""
    description_html: Optional[str] = Field(None, alias="descriptionHtml")
    description: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = Field(None, alias="productType")
    tags: List[str] = Field(default_factory=list)
    options: List[Dict[str, Any]] = Field(default_factory=list)
    variants: List[GraphQLVariantPayload] = Field(default_factory=list)
    available_for_sale: Optional[bool] = Field(None, alias="availableForSale")
    total_inventory: Optional[int] = Field(None, alias="totalInventory")
    price_range: Optional[Dict[str, Any]] = Field(None, alias="priceRange")

    @field_validator("variants", mode="before")
    @classmethod
    def unwrap_connection(cls, value):
        if value is None:
            return []
        if isinstance(value, dict):
            if "edges" in value:
                return [edge.get("node") or {} for edge in value.get("edges") or []]
            return value.get("nodes") or []
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value

    def _range_price(self) -> Optional[float]:
        if not self.price_range:
            return None
        return _to_float((self.price_range.get("minVariantPrice") or {}).get("amount"))

    def to_candidate(self) -> CandidateProduct:
        variants = []
        for raw in self.variants:
            selected = [
                SelectedOption(name=str(o.get("name")), value=str(o.get("value")))
                for o in raw.selected_options
                if o.get("name") is not None and o.get("value") is not None
            ]
            variants.append(Variant(
                selected_options=selected,
                available_for_sale=True if raw.available_for_sale is None else raw.available_for_sale,
                price=_to_float(raw.price),
            ))

        if self.available_for_sale is not None:
            available = self.available_for_sale
        elif variants:
            available = any(v.available_for_sale for v in variants)
        elif self.total_inventory is not None:
            available = self.total_inventory > 0
        else:
            available = True

        price = self._range_price()
        if price is None:
            price = _min_price([v.price for v in variants])

        return CandidateProduct(
            handle=self.handle,
            title=self.title,
            tags=_dedupe(self.tags),
            product_type=self.product_type or "",
            vendor=self.vendor or "",
            price=price,
            description=self.description_html or self.description or "",
            available=available,
            variants=variants,
            option_values=_option_values(self.options),
        )


CatalogPayload = Union[RestProductPayload, GraphQLProductPayload]

_GRAPHQL_MARKERS = ("descriptionHtml", "productType", "availableForSale", "priceRange", "totalInventory")


def parse_catalog_payload(raw: Dict[str, Any]) -> CatalogPayload:
    """Pick the payload shape for a raw catalog product dict."""
    variants = raw.get("variants")
    if isinstance(variants, dict) or any(marker in raw for marker in _GRAPHQL_MARKERS):
        return GraphQLProductPayload.model_validate(raw)
    if isinstance(variants, list) and variants and isinstance(variants[0], dict) and "selectedOptions" in variants[0]:
        return GraphQLProductPayload.model_validate(raw)
    return RestProductPayload.model_validate(raw)


def decode_catalog_product(raw: Union[Dict[str, Any], CandidateProduct]) -> CandidateProduct:
    """Decode one catalog payload (REST or GraphQL) into a CandidateProduct."""
    if isinstance(raw, CandidateProduct):
        return raw
    return parse_catalog_payload(raw).to_candidate()


def decode_catalog_products(raw_products: List[Dict[str, Any]]) -> List[CandidateProduct]:
    """Decode a list of payloads, skipping (and logging) malformed entries."""
    products = []
    for raw in raw_products or []:
        try:
            products.append(decode_catalog_product(raw))
        except Exception as e:
            handle = raw.get("handle") if isinstance(raw, dict) else None
            logger.warning(f"Skipping malformed catalog product {handle!r}: {e}")
    return products
