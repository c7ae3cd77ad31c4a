"""API schemas (Pydantic models)."""

from .billing import (
    AccessResponse,
    CancelSubscriptionRequest,
    CheckoutSessionResponse,
    CreateCheckoutRequest,
    CreateCourseCheckoutRequest,
    OrderResponse,
    PlanCreateRequest,
    PlanResponse,
    PlanUpdateRequest,
    PortalSessionResponse,
    ProductPriceRequest,
    ProductResponse,
    RefundRequest,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    WebhookAck,
)

__all__ = [
    "AccessResponse",
    "CancelSubscriptionRequest",
    "CheckoutSessionResponse",
    "CreateCheckoutRequest",
    "CreateCourseCheckoutRequest",
    "OrderResponse",
    "PlanCreateRequest",
    "PlanResponse",
    "PlanUpdateRequest",
    "PortalSessionResponse",
    "ProductPriceRequest",
    "ProductResponse",
    "RefundRequest",
    "SubscriptionResponse",
    "SubscriptionStatusResponse",
    "WebhookAck",
]
