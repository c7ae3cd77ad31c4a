"""Hosted checkout and billing-portal sessions.

Sessions only start payment; the ledger is written later by the webhook
engine when Stripe reports the completed checkout.
"""

from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.core import (
    AlreadyPurchased,
    CheckoutFailed,
    CustomerNotFound,
    InvalidRequest,
    PlanNotFound,
    StripeAPIError,
    StripeNotConfigured,
    get_logger,
    settings,
)
from coursebill.db import atomic
from coursebill.db.repositories import CustomerRepository, PlanRepository, SubscriptionRepository
from coursebill.models import Customer, SubscriptionPlan
from coursebill.services.access_service import AccessService
from coursebill.services.catalog_service import CatalogService
from coursebill.services.stripe_client import StripeClient
from coursebill.services.webhook_service import METADATA_CUSTOMER_ID, METADATA_PRODUCT_ID

logger = get_logger(__name__)


def _redirect_urls(is_mobile: bool) -> Dict[str, str]:
    base = settings.mobile_callback_url if is_mobile else f"{settings.frontend_url}/checkout"
    return {
        "success_url": f"{base}/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base}/cancel",
    }


class CheckoutService:
    """Starts subscription and one-time checkouts for customers."""

    def __init__(self, session: AsyncSession, stripe_client: Optional[StripeClient] = None):
        self.session = session
        self.stripe = stripe_client or StripeClient()
        self.customer_repo = CustomerRepository(session)
        self.plan_repo = PlanRepository(session)
        self.subscription_repo = SubscriptionRepository(session)

    async def get_active_plans(self) -> List[SubscriptionPlan]:
        return await self.plan_repo.list_active()

    async def _get_customer(self, customer_id: UUID) -> Customer:
        customer = await self.customer_repo.get_by_id(customer_id)
        if customer is None:
            raise CustomerNotFound(details={"customer_id": str(customer_id)})
        return customer

    async def _ensure_stripe_customer(self, customer: Customer) -> str:
        """Return the customer's Stripe id, creating the remote customer on first use."""
        if customer.stripe_customer_id:
            return customer.stripe_customer_id

        remote = await self.stripe.create_customer(
            email=customer.email,
            name=customer.full_name,
            metadata={METADATA_CUSTOMER_ID: str(customer.id)},
        )
        async with atomic(self.session):
            customer.stripe_customer_id = remote["id"]
        logger.info("Stripe customer created", customer_id=str(customer.id), stripe_customer_id=remote["id"])
        return remote["id"]

    async def create_checkout_session(
        self,
        customer_id: UUID,
        price_id: str,
        promotion_code: Optional[str] = None,
        is_mobile: bool = False,
    ) -> Dict[str, Any]:
        """Subscription checkout for an active plan price."""
        customer = await self._get_customer(customer_id)

        plan = await self.plan_repo.get_by_stripe_price_id(price_id)
        if plan is None or not plan.is_active or plan.is_archived:
            raise PlanNotFound(message="No active plan for this price", details={"price_id": price_id})

        try:
            stripe_customer_id = await self._ensure_stripe_customer(customer)
            session = await self.stripe.create_checkout_session(
                stripe_customer_id=stripe_customer_id,
                price_id=price_id,
                promotion_code=promotion_code,
                metadata={METADATA_CUSTOMER_ID: str(customer.id)},
                **_redirect_urls(is_mobile),
            )
        except (StripeAPIError, StripeNotConfigured) as e:
            logger.error("Failed to create checkout session", customer_id=str(customer_id), error=e.message)
            raise CheckoutFailed(details={"stripe_error": e.message}) from e

        logger.info("Checkout session created", customer_id=str(customer_id), plan_id=str(plan.id))
        return {"session_id": session["id"], "url": session.get("url")}

    async def create_course_checkout_session(
        self,
        customer_id: UUID,
        product_id: UUID,
        promotion_code: Optional[str] = None,
        is_mobile: bool = False,
    ) -> Dict[str, Any]:
        """One-time checkout for a paid product the customer cannot access yet."""
        customer = await self._get_customer(customer_id)

        catalog = CatalogService(self.session, self.stripe)
        product = await catalog.get_product(product_id)
        if product.is_free:
            raise InvalidRequest(
                message="Free products do not need checkout",
                details={"product_id": str(product_id)},
            )
        if await AccessService(self.session).has_access(customer.id, product.id):
            raise AlreadyPurchased(details={"product_id": str(product_id)})

        product = await catalog.sync_course_product_to_stripe(product.id)

        try:
            stripe_customer_id = await self._ensure_stripe_customer(customer)
            session = await self.stripe.create_one_time_checkout_session(
                stripe_customer_id=stripe_customer_id,
                price_id=product.stripe_price_id,
                promotion_code=promotion_code,
                metadata={
                    METADATA_CUSTOMER_ID: str(customer.id),
                    METADATA_PRODUCT_ID: str(product.id),
                },
                **_redirect_urls(is_mobile),
            )
        except (StripeAPIError, StripeNotConfigured) as e:
            logger.error("Failed to create course checkout session", product_id=str(product_id), error=e.message)
            raise CheckoutFailed(details={"stripe_error": e.message}) from e

        logger.info("Course checkout session created", customer_id=str(customer_id), product_id=str(product_id))
        return {"session_id": session["id"], "url": session.get("url")}

    async def create_portal_session(self, customer_id: UUID) -> Dict[str, Any]:
        customer = await self._get_customer(customer_id)
        if not customer.stripe_customer_id:
            raise InvalidRequest(message="Customer has no billing account yet")

        try:
            session = await self.stripe.create_portal_session(
                customer.stripe_customer_id, return_url=f"{settings.frontend_url}/account"
            )
        except (StripeAPIError, StripeNotConfigured) as e:
            raise CheckoutFailed(message="Failed to create billing portal session", details={"stripe_error": e.message}) from e
        return {"url": session["url"]}

    async def get_subscription_status(self, customer_id: UUID) -> Dict[str, Any]:
        """Current live subscription summary, or `has_subscription: False`."""
        await self._get_customer(customer_id)
        subscription = await self.subscription_repo.get_live_for_customer(customer_id)
        if subscription is None:
            return {"has_subscription": False}

        plan = await self.plan_repo.get_by_id(subscription.plan_id) if subscription.plan_id else None
        return {
            "has_subscription": True,
            "subscription_id": str(subscription.id),
            "status": subscription.status,
            "plan_id": str(plan.id) if plan else None,
            "plan_name": plan.name if plan else None,
            "current_period_end": subscription.current_period_end.isoformat(),
            "cancel_at_period_end": subscription.cancel_at_period_end,
        }
