"""Pydantic schemas for engine inputs and the payloads handed to the routing layer."""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class FlashSaleProductInput(BaseModel):
    product_id: str = Field(..., min_length=1)
    flash_price: Decimal = Field(..., gt=0)
    stock: Optional[int] = Field(None, ge=0)
    max_per_customer: Optional[int] = Field(None, ge=0)  # 0 = unlimited


class BundleItemInput(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    discount_type: Literal["percentage", "fixed"] = "percentage"
    discount_value: Decimal = Field(Decimal("0"), ge=0)


class CheckoutRequest(BaseModel):
    points_to_apply: int = Field(0, ge=0)
    redemption_code: Optional[str] = None
    idempotency_key: Optional[str] = None
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class CartLineSnapshot(BaseModel):
    id: str
    product_id: str
    name: str
    sku: Optional[str] = None
    image: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    source: str
    source_id: Optional[str] = None
    saved_for_later: bool
    added_at: datetime


class CartSnapshot(BaseModel):
    user_id: str
    lines: list[CartLineSnapshot]
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    item_count: int
    coupon_code: Optional[str] = None


class OrderItemSnapshot(BaseModel):
    product_id: str
    name: str
    sku: Optional[str] = None
    image: Optional[str] = None
    unit_price: Decimal
    quantity: int
    line_total: Decimal
    source: str


class OrderPricingSnapshot(BaseModel):
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    coupon_discount: Decimal
    loyalty_discount: Decimal
    reward_discount: Decimal
    total_discount: Decimal
    total: Decimal
    currency: str


class TimelineEntry(BaseModel):
    from_state: str
    to_state: str
    timestamp: datetime
    actor: str
    message: str


class OrderSnapshot(BaseModel):
    id: str
    order_number: str
    user_id: str
    status: str
    payment_status: str
    items: list[OrderItemSnapshot]
    pricing: OrderPricingSnapshot
    timeline: list[TimelineEntry]
    tracking_number: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class TimeRemaining(BaseModel):
    type: Literal["upcoming", "active", "ended"]
    milliseconds: int = Field(..., ge=0)
    days: int
    hours: int
    minutes: int
    seconds: int


class FlashSaleProductStatus(BaseModel):
    product_id: str
    stock: int
    sold_count: int
    stock_percentage: int


class FlashSaleStatusPayload(BaseModel):
    sale_id: str
    status: Literal["scheduled", "active", "paused", "ended", "sold_out"]
    time_remaining: TimeRemaining
    products: list[FlashSaleProductStatus]
    total_progress: int


class LoyaltyStatusPayload(BaseModel):
    user_id: str
    tier: str
    total_points: int
    available_points: int = Field(..., ge=0)
    lifetime_points: int
    tier_progress: int = Field(..., ge=0, le=100)
    next_tier: Optional[str] = None
    points_to_next_tier: int
    multiplier: Decimal
    last_earned_at: Optional[datetime] = None
