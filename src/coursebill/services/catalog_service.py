"""Plan/product catalog and its Stripe product/price lifecycle.

Stripe prices are immutable, so a pricing change creates a new price and
archives the old one. Local Stripe ids change only after the remote calls
succeed; any remote failure surfaces as StripeSyncFailed.
"""

from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.core import (
    InvalidRequest,
    PlanNotFound,
    ProductNotFound,
    StripeAPIError,
    StripeNotConfigured,
    StripeSyncFailed,
    get_logger,
    settings,
)
from coursebill.db import atomic
from coursebill.db.repositories import PlanRepository, ProductRepository
from coursebill.models import RECURRING_INTERVALS, Product, SubscriptionPlan
from coursebill.services.stripe_client import StripeClient

logger = get_logger(__name__)

PRICING_FIELDS = ("amount_cents", "currency", "recurring_interval", "recurring_interval_count")
METADATA_FIELDS = ("name", "description")
LOCAL_FIELDS = ("slug", "trial_days", "is_active")

GATEWAY_ERRORS = (StripeAPIError, StripeNotConfigured)


class CatalogService:
    """Subscription plans and course products, mirrored to Stripe on demand."""

    def __init__(self, session: AsyncSession, stripe_client: Optional[StripeClient] = None):
        self.session = session
        self.stripe = stripe_client or StripeClient()
        self.plan_repo = PlanRepository(session)
        self.product_repo = ProductRepository(session)

    # ============ Plans ============

    async def list_plans(self, include_archived: bool = False) -> List[SubscriptionPlan]:
        return await self.plan_repo.list_all(include_archived=include_archived)

    async def get_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = await self.plan_repo.get_by_id(plan_id)
        if plan is None:
            raise PlanNotFound(details={"plan_id": str(plan_id)})
        return plan

    async def get_plan_product_ids(self, plan_id: UUID) -> List[UUID]:
        return await self.plan_repo.get_product_ids(plan_id)

    async def create_plan(
        self,
        name: str,
        amount_cents: int,
        recurring_interval: str = "month",
        recurring_interval_count: int = 1,
        currency: Optional[str] = None,
        description: Optional[str] = None,
        slug: Optional[str] = None,
        trial_days: int = 0,
        product_ids: Optional[List[UUID]] = None,
    ) -> SubscriptionPlan:
        """Create a plan locally, then sync it to Stripe when it is paid."""
        if recurring_interval not in RECURRING_INTERVALS:
            raise InvalidRequest(message=f"recurring_interval must be one of {', '.join(RECURRING_INTERVALS)}")
        if amount_cents < 0:
            raise InvalidRequest(message="amount_cents must not be negative")

        async with atomic(self.session):
            plan = await self.plan_repo.create(
                SubscriptionPlan(
                    name=name,
                    slug=slug,
                    description=description,
                    amount_cents=amount_cents,
                    currency=(currency or settings.default_currency).lower(),
                    recurring_interval=recurring_interval,
                    recurring_interval_count=recurring_interval_count,
                    trial_days=trial_days,
                ),
                product_ids=product_ids,
            )

        logger.info("Subscription plan created", plan_id=str(plan.id), name=name)
        return await self.sync_plan_to_stripe(plan.id)

    async def sync_plan_to_stripe(self, plan_id: UUID) -> SubscriptionPlan:
        """
        Create the Stripe product/price for a plan that has none yet.

        Already-synced and free plans are returned unchanged. A product
        created before a failing price call is kept so the retry reuses it.
        """
        plan = await self.get_plan(plan_id)

        if plan.stripe_product_id and plan.stripe_price_id:
            return plan
        if not plan.amount_cents or plan.amount_cents <= 0:
            logger.debug("Free plan not synced to Stripe", plan_id=str(plan.id))
            return plan

        stripe_product_id = plan.stripe_product_id
        try:
            if not stripe_product_id:
                product = await self.stripe.create_product(
                    name=plan.name,
                    description=plan.description,
                    metadata={"plan_id": str(plan.id)},
                )
                stripe_product_id = product["id"]

            price = await self.stripe.create_price(
                product_id=stripe_product_id,
                unit_amount=plan.amount_cents,
                currency=plan.currency,
                recurring_interval=plan.recurring_interval,
                recurring_interval_count=plan.recurring_interval_count,
            )
        except GATEWAY_ERRORS as e:
            logger.error("Failed to sync plan to Stripe", plan_id=str(plan.id), error=e.message)
            if stripe_product_id and stripe_product_id != plan.stripe_product_id:
                async with atomic(self.session):
                    plan.stripe_product_id = stripe_product_id
            raise StripeSyncFailed(
                message="Failed to sync plan to Stripe",
                details={"plan_id": str(plan.id), "stripe_error": e.message},
            ) from e

        async with atomic(self.session):
            plan.stripe_product_id = stripe_product_id
            plan.stripe_price_id = price["id"]

        logger.info(
            "Plan synced to Stripe",
            plan_id=str(plan.id),
            stripe_product_id=stripe_product_id,
            stripe_price_id=price["id"],
        )
        return plan

    async def sync_all_plans(self) -> List[Dict[str, Any]]:
        """Sync every non-archived paid plan lacking a price. One result per plan."""
        results = []
        for plan in await self.plan_repo.list_unsynced():
            try:
                synced = await self.sync_plan_to_stripe(plan.id)
            except StripeSyncFailed as e:
                results.append({"plan_id": str(plan.id), "name": plan.name, "status": "failed", "error": e.message})
                continue
            results.append(
                {
                    "plan_id": str(synced.id),
                    "name": synced.name,
                    "status": "synced",
                    "stripe_product_id": synced.stripe_product_id,
                    "stripe_price_id": synced.stripe_price_id,
                }
            )
        return results

    async def update_plan(self, plan_id: UUID, changes: Dict[str, Any]) -> SubscriptionPlan:
        """
        Update a plan.

        On a synced plan, name/description changes update the Stripe product
        and pricing changes create a replacement price and archive the old
        one. Local fields are written only after Stripe accepted the change.
        """
        plan = await self.get_plan(plan_id)
        changes = {key: value for key, value in changes.items() if value is not None}
        product_ids = changes.pop("product_ids", None)

        if "recurring_interval" in changes and changes["recurring_interval"] not in RECURRING_INTERVALS:
            raise InvalidRequest(message=f"recurring_interval must be one of {', '.join(RECURRING_INTERVALS)}")
        if changes.get("amount_cents", 0) < 0:
            raise InvalidRequest(message="amount_cents must not be negative")
        if "currency" in changes:
            changes["currency"] = changes["currency"].lower()

        metadata_changes = {k: v for k, v in changes.items() if k in METADATA_FIELDS and v != getattr(plan, k)}
        pricing_changes = {k: v for k, v in changes.items() if k in PRICING_FIELDS and v != getattr(plan, k)}
        local_changes = {k: v for k, v in changes.items() if k in LOCAL_FIELDS}

        new_price_id = None
        if plan.stripe_product_id:
            try:
                if metadata_changes:
                    await self.stripe.update_product(
                        plan.stripe_product_id,
                        name=metadata_changes.get("name"),
                        description=metadata_changes.get("description"),
                    )
                if pricing_changes and plan.stripe_price_id:
                    price = await self.stripe.create_price(
                        product_id=plan.stripe_product_id,
                        unit_amount=pricing_changes.get("amount_cents", plan.amount_cents),
                        currency=pricing_changes.get("currency", plan.currency),
                        recurring_interval=pricing_changes.get("recurring_interval", plan.recurring_interval),
                        recurring_interval_count=pricing_changes.get(
                            "recurring_interval_count", plan.recurring_interval_count
                        ),
                    )
                    await self.stripe.archive_price(plan.stripe_price_id)
                    new_price_id = price["id"]
            except GATEWAY_ERRORS as e:
                logger.error("Failed to sync plan update to Stripe", plan_id=str(plan.id), error=e.message)
                raise StripeSyncFailed(
                    message="Failed to update plan in Stripe",
                    details={"plan_id": str(plan.id), "stripe_error": e.message},
                ) from e
        elif metadata_changes or pricing_changes:
            logger.warning("Plan has no Stripe product, skipping Stripe sync", plan_id=str(plan.id))

        async with atomic(self.session):
            for key, value in {**metadata_changes, **pricing_changes, **local_changes}.items():
                setattr(plan, key, value)
            if new_price_id:
                plan.stripe_price_id = new_price_id
            if product_ids is not None:
                await self.plan_repo.replace_products(plan.id, product_ids)

        logger.info(
            "Subscription plan updated",
            plan_id=str(plan.id),
            fields=",".join(sorted({**metadata_changes, **pricing_changes, **local_changes})),
            new_price_id=new_price_id,
        )
        return plan

    async def archive_plan(self, plan_id: UUID) -> SubscriptionPlan:
        """Archive a plan. Retiring the Stripe price is best-effort."""
        plan = await self.get_plan(plan_id)

        if plan.stripe_price_id:
            try:
                await self.stripe.archive_price(plan.stripe_price_id)
            except GATEWAY_ERRORS as e:
                logger.error("Failed to archive Stripe price", price_id=plan.stripe_price_id, error=e.message)

        async with atomic(self.session):
            plan.is_archived = True

        logger.info("Subscription plan archived", plan_id=str(plan.id))
        return plan

    async def unarchive_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = await self.get_plan(plan_id)
        async with atomic(self.session):
            plan.is_archived = False
        logger.info("Subscription plan unarchived", plan_id=str(plan.id))
        return plan

    # ============ Course products ============

    async def get_product(self, product_id: UUID) -> Product:
        product = await self.product_repo.get_by_id(product_id)
        if product is None:
            raise ProductNotFound(details={"product_id": str(product_id)})
        return product

    async def sync_course_product_to_stripe(self, product_id: UUID) -> Product:
        """Create the Stripe product and one-time price for a paid product not yet synced."""
        product = await self.get_product(product_id)

        if product.is_free:
            logger.debug("Free product not synced to Stripe", product_id=str(product.id))
            return product
        if product.stripe_product_id and product.stripe_price_id:
            return product

        stripe_product_id = product.stripe_product_id
        try:
            if not stripe_product_id:
                remote = await self.stripe.create_product(
                    name=product.name,
                    description=product.description,
                    metadata={"product_id": str(product.id)},
                )
                stripe_product_id = remote["id"]

            price = await self.stripe.create_price(
                product_id=stripe_product_id,
                unit_amount=product.amount_cents,
                currency=product.currency,
            )
        except GATEWAY_ERRORS as e:
            logger.error("Failed to sync product to Stripe", product_id=str(product.id), error=e.message)
            if stripe_product_id and stripe_product_id != product.stripe_product_id:
                async with atomic(self.session):
                    product.stripe_product_id = stripe_product_id
            raise StripeSyncFailed(
                message="Failed to sync course product to Stripe",
                details={"product_id": str(product.id), "stripe_error": e.message},
            ) from e

        async with atomic(self.session):
            product.stripe_product_id = stripe_product_id
            product.stripe_price_id = price["id"]

        logger.info(
            "Product synced to Stripe",
            product_id=str(product.id),
            stripe_product_id=stripe_product_id,
            stripe_price_id=price["id"],
        )
        return product

    async def update_course_price(self, product_id: UUID, amount_cents: int) -> Product:
        """Reprice a product; a synced product gets a new one-time price and the old one is archived."""
        if amount_cents < 0:
            raise InvalidRequest(message="amount_cents must not be negative")

        product = await self.get_product(product_id)
        if amount_cents == product.amount_cents:
            return product

        new_price_id = None
        if product.stripe_product_id and product.stripe_price_id and amount_cents > 0:
            try:
                price = await self.stripe.create_price(
                    product_id=product.stripe_product_id,
                    unit_amount=amount_cents,
                    currency=product.currency,
                )
                await self.stripe.archive_price(product.stripe_price_id)
                new_price_id = price["id"]
            except GATEWAY_ERRORS as e:
                logger.error("Failed to update Stripe price", product_id=str(product.id), error=e.message)
                raise StripeSyncFailed(
                    message="Failed to update course price in Stripe",
                    details={"product_id": str(product.id), "stripe_error": e.message},
                ) from e
        elif not product.stripe_price_id:
            logger.info("Product has no Stripe price yet, updating locally", product_id=str(product.id))

        async with atomic(self.session):
            product.amount_cents = amount_cents
            if new_price_id:
                product.stripe_price_id = new_price_id

        logger.info("Product price updated", product_id=str(product.id), amount_cents=amount_cents)
        return product
