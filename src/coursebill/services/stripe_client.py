"""Stripe payment gateway client.

Thin async wrapper over the Stripe REST API: form-encoded requests with
bearer auth, plus webhook signature verification. Every method returns the
decoded JSON object; failures raise StripeAPIError.
"""

import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from coursebill.core import (
    StripeAPIError,
    StripeNotConfigured,
    WebhookSignatureInvalid,
    get_logger,
    settings,
)
from coursebill.services.events import StripeEvent

logger = get_logger(__name__)

# Refund reasons the provider accepts as-is; anything else travels as metadata
STRIPE_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def flatten_params(data: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """
    Flatten nested params into Stripe's bracket form encoding.

    {"metadata": {"a": 1}, "expand": ["x"]} -> [("metadata[a]", "1"), ("expand[]", "x")]
    Lists of dicts are indexed: line_items[0][price]. None values are dropped.
    """
    pairs: List[Tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(flatten_params(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(flatten_params(item, f"{name}[{index}]"))
                else:
                    pairs.append((f"{name}[]", _encode_value(item)))
        else:
            pairs.append((name, _encode_value(value)))
    return pairs


class StripeClient:
    """Client for the Stripe REST API."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.base_url = (base_url or settings.stripe_api_base).rstrip("/")
        self.api_version = api_version or settings.stripe_api_version
        self.timeout = timeout or settings.stripe_timeout_seconds
        self.transport = transport

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make a request to the Stripe API."""
        if not self.secret_key:
            raise StripeNotConfigured()

        url = f"{self.base_url}/v1{endpoint}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if self.api_version:
            headers["Stripe-Version"] = self.api_version

        params = flatten_params(data or {})

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                if method == "GET":
                    response = await client.get(url, headers=headers, params=params)
                elif method == "POST":
                    response = await client.post(
                        url,
                        headers={**headers, "Content-Type": "application/x-www-form-urlencoded"},
                        content=urlencode(params),
                    )
                elif method == "DELETE":
                    response = await client.delete(url, headers=headers)
                else:
                    raise ValueError(f"Unsupported method: {method}")
        except httpx.HTTPError as e:
            logger.error("Stripe request failed", method=method, endpoint=endpoint, error=str(e))
            raise StripeAPIError(
                message=f"Stripe request failed: {e}",
                details={"endpoint": endpoint},
            ) from e

        if response.status_code >= 400:
            try:
                error = response.json().get("error", {})
            except ValueError:
                error = {}
            logger.error(
                "Stripe API error",
                status=response.status_code,
                endpoint=endpoint,
                error_type=error.get("type"),
                error_code=error.get("code"),
            )
            raise StripeAPIError(
                message=error.get("message") or f"Stripe API error: {response.status_code}",
                details={"endpoint": endpoint, "type": error.get("type"), "code": error.get("code")},
                remote_status=response.status_code,
            )

        return response.json()

    # ============ Customers ============

    async def create_customer(self, email: str, name: Optional[str] = None, metadata: Optional[dict] = None) -> dict:
        return await self._make_request(
            "POST", "/customers", data={"email": email, "name": name or None, "metadata": metadata}
        )

    # ============ Checkout / portal ============

    async def _promotion_params(self, promotion_code: Optional[str]) -> dict:
        """Apply a known promotion code, otherwise let the customer enter one."""
        if promotion_code:
            codes = await self.list_promotion_codes(code=promotion_code, active=True, limit=1)
            if codes:
                return {"discounts": [{"promotion_code": codes[0]["id"]}]}
            logger.info("Promotion code not found, allowing manual entry", code=promotion_code)
        return {"allow_promotion_codes": True}

    async def create_checkout_session(
        self,
        stripe_customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        promotion_code: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        """Create a subscription-mode checkout session."""
        data = {
            "customer": stripe_customer_id,
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        data.update(await self._promotion_params(promotion_code))
        return await self._make_request("POST", "/checkout/sessions", data=data)

    async def create_one_time_checkout_session(
        self,
        stripe_customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict,
        promotion_code: Optional[str] = None,
    ) -> dict:
        """Create a payment-mode checkout session.

        The metadata is copied onto the payment intent too, so the
        completed-checkout event can name the customer and product.
        """
        data = {
            "customer": stripe_customer_id,
            "mode": "payment",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "payment_intent_data": {"metadata": metadata},
            "metadata": metadata,
        }
        data.update(await self._promotion_params(promotion_code))
        return await self._make_request("POST", "/checkout/sessions", data=data)

    async def create_portal_session(self, stripe_customer_id: str, return_url: str) -> dict:
        return await self._make_request(
            "POST",
            "/billing_portal/sessions",
            data={"customer": stripe_customer_id, "return_url": return_url},
        )

    async def list_promotion_codes(self, code: str, active: bool = True, limit: int = 1) -> List[dict]:
        response = await self._make_request(
            "GET", "/promotion_codes", data={"code": code, "active": active, "limit": limit}
        )
        return response.get("data", [])

    # ============ Products / prices ============

    async def create_product(
        self, name: str, description: Optional[str] = None, metadata: Optional[dict] = None
    ) -> dict:
        return await self._make_request(
            "POST",
            "/products",
            data={"name": name, "description": description or None, "metadata": metadata},
        )

    async def update_product(
        self,
        product_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        return await self._make_request(
            "POST",
            f"/products/{product_id}",
            data={"name": name, "description": description, "metadata": metadata},
        )

    async def create_price(
        self,
        product_id: str,
        unit_amount: int,
        currency: str,
        recurring_interval: Optional[str] = None,
        recurring_interval_count: Optional[int] = None,
    ) -> dict:
        """Create a price; one-time when no recurring interval is given."""
        data: Dict[str, Any] = {
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": currency,
        }
        if recurring_interval:
            data["recurring"] = {
                "interval": recurring_interval,
                "interval_count": recurring_interval_count,
            }
        return await self._make_request("POST", "/prices", data=data)

    async def archive_price(self, price_id: str) -> dict:
        """Deactivate a price. Prices are immutable, so this is the only way to retire one."""
        return await self._make_request("POST", f"/prices/{price_id}", data={"active": False})

    async def list_active_prices(self, recurring_only: bool = True) -> List[dict]:
        data: Dict[str, Any] = {"active": True, "expand": ["data.product"], "limit": 100}
        if recurring_only:
            data["type"] = "recurring"
        response = await self._make_request("GET", "/prices", data=data)
        return response.get("data", [])

    # ============ Subscriptions ============

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        """Fetch a subscription with its items' prices expanded."""
        return await self._make_request(
            "GET",
            f"/subscriptions/{subscription_id}",
            data={"expand": ["items.data.price.product"]},
        )

    async def cancel_subscription(self, subscription_id: str, cancel_at_period_end: bool) -> dict:
        if cancel_at_period_end:
            return await self._make_request(
                "POST", f"/subscriptions/{subscription_id}", data={"cancel_at_period_end": True}
            )
        return await self._make_request("DELETE", f"/subscriptions/{subscription_id}")

    # ============ Refunds ============

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> dict:
        """Refund a payment intent, fully when no amount is given."""
        data: Dict[str, Any] = {"payment_intent": payment_intent_id, "amount": amount_cents}
        if reason in STRIPE_REFUND_REASONS:
            data["reason"] = reason
        elif reason:
            data["metadata"] = {"reason": reason}
        return await self._make_request("POST", "/refunds", data=data)

    # ============ Webhooks ============

    def verify_signature(
        self,
        payload: bytes,
        signature_header: str,
        tolerance: Optional[int] = None,
        now: Optional[int] = None,
    ) -> None:
        """
        Verify a Stripe-Signature header.

        The header carries a timestamp and one or more v1 signatures; each
        v1 is HMAC-SHA256 of "{timestamp}.{payload}" keyed by the endpoint
        secret. Raises WebhookSignatureInvalid on any mismatch.
        """
        if not self.webhook_secret:
            raise StripeNotConfigured(message="Stripe webhook secret not configured")
        if not signature_header:
            raise WebhookSignatureInvalid(message="Missing Stripe-Signature header")

        timestamp = None
        signatures = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)

        if not timestamp or not timestamp.isdigit() or not signatures:
            raise WebhookSignatureInvalid(message="Malformed Stripe-Signature header")

        signed_payload = timestamp.encode() + b"." + payload
        expected = hmac.new(self.webhook_secret.encode(), signed_payload, hashlib.sha256).hexdigest()
        if not any(hmac.compare_digest(expected, signature) for signature in signatures):
            raise WebhookSignatureInvalid()

        tolerance = tolerance if tolerance is not None else settings.stripe_webhook_tolerance_seconds
        now = now if now is not None else int(time.time())
        if abs(now - int(timestamp)) > tolerance:
            raise WebhookSignatureInvalid(message="Webhook timestamp outside the tolerance zone")

    def construct_event(self, payload: bytes, signature_header: str) -> StripeEvent:
        """Verify the signature, then decode the payload into a StripeEvent."""
        self.verify_signature(payload, signature_header)
        try:
            return StripeEvent.model_validate(json.loads(payload))
        except (ValueError, ValidationError) as e:
            raise WebhookSignatureInvalid(message="Invalid webhook payload", details={"error": str(e)}) from e


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value. Used by local tooling and tests."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"
