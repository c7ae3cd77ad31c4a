"""Billing API schemas."""

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from coursebill.models import RECURRING_INTERVALS


# ============ Request Schemas ============


class CreateCheckoutRequest(BaseModel):
    """Request to start a subscription checkout."""

    price_id: str = Field(..., description="Stripe price of an active plan")
    promotion_code: Optional[str] = Field(default=None, description="Customer-facing promotion code")
    is_mobile: bool = Field(default=False, description="Redirect back to the mobile app")


class CreateCourseCheckoutRequest(BaseModel):
    """Request to start a one-time checkout for a product."""

    product_id: UUID
    promotion_code: Optional[str] = None
    is_mobile: bool = False


class RefundRequest(BaseModel):
    """Operator refund. Partial refunds need an amount."""

    type: Literal["full", "partial"]
    order_year: int = Field(..., ge=2000, le=9999, description="Partition year of the order")
    amount_cents: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def check_amount(self) -> "RefundRequest":
        if self.type == "partial" and self.amount_cents is None:
            raise ValueError("amount_cents is required for partial refunds")
        return self


class CancelSubscriptionRequest(BaseModel):
    """Operator cancellation."""

    cancel_at_period_end: bool = Field(
        default=True,
        description="Keep access until the current period ends instead of ending now",
    )
    reason: Optional[str] = Field(default=None, max_length=500)


class PlanCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    amount_cents: int = Field(..., ge=0)
    currency: Optional[str] = Field(default=None, pattern=r"^[a-zA-Z]{3}$")
    recurring_interval: str = Field(default="month")
    recurring_interval_count: int = Field(default=1, ge=1)
    description: Optional[str] = None
    slug: Optional[str] = None
    trial_days: int = Field(default=0, ge=0)
    product_ids: List[UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_interval(self) -> "PlanCreateRequest":
        if self.recurring_interval not in RECURRING_INTERVALS:
            raise ValueError(f"recurring_interval must be one of {', '.join(RECURRING_INTERVALS)}")
        return self


class PlanUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, pattern=r"^[a-zA-Z]{3}$")
    recurring_interval: Optional[str] = None
    recurring_interval_count: Optional[int] = Field(default=None, ge=1)
    slug: Optional[str] = None
    trial_days: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    product_ids: Optional[List[UUID]] = None


class ProductPriceRequest(BaseModel):
    amount_cents: int = Field(..., ge=0)


# ============ Response Schemas ============


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class PortalSessionResponse(BaseModel):
    url: str


class SubscriptionStatusResponse(BaseModel):
    has_subscription: bool
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None


class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    amount_cents: int
    currency: str
    recurring_interval: str
    recurring_interval_count: int
    trial_days: int
    is_active: bool
    is_archived: bool
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None


class ProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    content_type: str
    amount_cents: int
    currency: str
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_year: int
    order_number: str
    status: str
    order_type: str
    customer_id: UUID
    currency: str
    total_cents: int
    refund_amount_cents: int
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    plan_id: Optional[UUID] = None
    status: str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class AccessResponse(BaseModel):
    product_id: UUID
    has_access: bool


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
