"""Decoded payment provider events."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventType:
    """Provider event kinds the reconciliation engine acts on."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"


class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: Dict[str, Any] = Field(default_factory=dict)
    previous_attributes: Optional[Dict[str, Any]] = None


class StripeEvent(BaseModel):
    """Envelope of a verified webhook event. `data.object` stays a plain dict."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    created: int
    livemode: bool = False
    api_version: Optional[str] = None
    data: EventData = Field(default_factory=EventData)

    @property
    def payload(self) -> Dict[str, Any]:
        return self.data.object


def object_id(value: Any) -> Optional[str]:
    """Provider references arrive either as an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None
