"""
Checkout Schemas

Pydantic models for the checkout API. Field names on the wire are camelCase
to match the storefront; Python attributes are snake_case.
"""
import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ==================== Requests ====================


class CheckoutItem(CamelModel):
    """One cart line."""
    product_slug: str = Field(..., alias="productSlug", min_length=1, max_length=200)
    product_name: str = Field(..., alias="productName", min_length=1, max_length=200)
    price_pln: float = Field(..., alias="pricePLN", gt=0)
    quantity: int = Field(1, ge=1, le=100)

    @field_validator("product_slug")
    @classmethod
    def validate_slug(cls, v):
        v = v.strip()
        if not re.fullmatch(r"[a-z0-9][a-z0-9\-_/]*", v):
            raise ValueError("productSlug must be a lowercase slug")
        return v


class CustomerInfo(CamelModel):
    email: str = Field(..., min_length=3, max_length=200)
    phone: str = Field(..., min_length=5, max_length=30)
    name: Optional[str] = Field(None, max_length=200)
    street: str = Field(..., min_length=1, max_length=200)
    postal_code: str = Field(..., alias="postalCode", min_length=2, max_length=20)
    city: str = Field(..., min_length=1, max_length=100)
    country: str = Field("PL", min_length=2, max_length=2)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        v = v.strip()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid email address")
        return v

    @field_validator("country")
    @classmethod
    def validate_country(cls, v):
        return v.upper()


class CheckoutRequest(CamelModel):
    """Body of create-payment-intent and start."""
    items: List[CheckoutItem] = Field(..., min_length=1, max_length=50)
    delivery_method: Literal["courier", "inpost"] = Field("courier", alias="deliveryMethod")
    inpost_point: Optional[Dict[str, Any]] = Field(None, alias="inpostPoint")
    customer: CustomerInfo
    allow_backorder: bool = Field(False, alias="allowBackorder")

    @model_validator(mode="after")
    def validate_cart(self):
        slugs = [item.product_slug for item in self.items]
        if len(slugs) != len(set(slugs)):
            raise ValueError("Each productSlug may appear only once per cart")
        return self

    @property
    def quantities(self) -> Dict[str, int]:
        return {item.product_slug: item.quantity for item in self.items}


class SubmitPaymentRequest(CamelModel):
    payment_intent_id: str = Field(..., alias="paymentIntentId", min_length=1)

    @field_validator("payment_intent_id")
    @classmethod
    def strip_id(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Missing paymentIntentId")
        return v


# ==================== Responses ====================


class ReservationSummary(CamelModel):
    reserved_by_slug: Dict[str, int] = Field(default_factory=dict, serialization_alias="reservedBySlug")
    backorder_by_slug: Dict[str, int] = Field(default_factory=dict, serialization_alias="backorderBySlug")
    expires_at: str = Field(..., serialization_alias="expiresAt")


class PaymentIntentResponse(ReservationSummary):
    client_secret: str = Field(..., serialization_alias="clientSecret")
    payment_intent_id: str = Field(..., serialization_alias="paymentIntentId")
    amount: int


class CheckoutSessionResponse(ReservationSummary):
    url: str
    session_id: str = Field(..., serialization_alias="sessionId")
