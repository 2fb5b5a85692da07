"""
Request/response models for the concierge HTTP API.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class StartSessionRequest(BaseModel):
    shop_id: str = Field(description="Shop domain or id")
    experience_id: Optional[str] = None
    result_count: int = Field(8, description="Number of products to return (8, 12 or 16)")


class MessageRequest(BaseModel):
    text: str
    role: str = "user"


class ProcessRequest(BaseModel):
    """Catalog payloads in Admin REST or GraphQL shape; omit to fetch the shop's catalog."""
    products: Optional[List[Dict[str, Any]]] = None


class MessageOut(BaseModel):
    role: str
    content: str


class SessionResponse(BaseModel):
    token: str
    shop_id: str
    experience_id: Optional[str] = None
    status: str
    result_count: int
    error: Optional[str] = None
    messages: List[MessageOut] = Field(default_factory=list)


class ProcessResponse(BaseModel):
    token: str
    status: str
    product_count: int
    source: str
    intent_used: bool
    relaxation: Dict[str, Any] = Field(default_factory=dict)
    suggestions: List[str] = Field(default_factory=list)


class DeliveryResponse(BaseModel):
    token: str
    status: str
    product_handles: List[str] = Field(default_factory=list)
    reasoning: Optional[str] = None
    error: Optional[str] = None
    charged: bool = False
