"""
Canonical catalog types consumed by the matching and ranking core.

Candidate products are ephemeral: fetched per request from the catalog
source, decoded once at the boundary, never persisted by the pipeline.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class SelectedOption(BaseModel):
    """One option value carried by a variant (e.g. Size = M)."""
    name: str
    value: str


class Variant(BaseModel):
    """A purchasable variant of a product."""
    selected_options: List[SelectedOption] = Field(default_factory=list)
    available_for_sale: bool = Field(True, description="Defaults to available when the source omits inventory")
    price: Optional[float] = None


class CandidateProduct(BaseModel):
    """A product in the candidate pool for one ranking request."""
    handle: str = Field(description="Unique, stable product identifier")
    title: str = ""
    tags: List[str] = Field(default_factory=list)
    product_type: str = ""
    vendor: str = ""
    price: Optional[float] = None
    description: str = Field("", description="Raw description, may contain HTML")
    available: bool = True
    variants: List[Variant] = Field(default_factory=list)
    option_values: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Flat option name -> values map (e.g. {'Color': ['Red', 'Blue']})"
    )
