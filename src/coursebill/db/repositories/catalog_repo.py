"""Catalog repositories - products and subscription plans."""

from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.models import Product, SubscriptionPlan, SubscriptionPlanProduct


class ProductRepository:
    """Repository for Product model."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, product_id: UUID) -> Optional[Product]:
        """Get a product by ID, excluding soft-deleted rows."""
        return await self.session.scalar(
            select(Product).where(Product.id == product_id, Product.deleted_at.is_(None))
        )

    async def get_by_stripe_price_id(self, stripe_price_id: str) -> Optional[Product]:
        return await self.session.scalar(
            select(Product).where(
                Product.stripe_price_id == stripe_price_id,
                Product.deleted_at.is_(None),
            )
        )



class PlanRepository:
    """Repository for SubscriptionPlan and its product links."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, plan: SubscriptionPlan, product_ids: Optional[List[UUID]] = None) -> SubscriptionPlan:
        """Create a plan and link it to the given products."""
        self.session.add(plan)
        await self.session.flush()
        for product_id in dict.fromkeys(product_ids or []):
            self.session.add(SubscriptionPlanProduct(plan_id=plan.id, product_id=product_id))
        await self.session.flush()
        await self.session.refresh(plan)
        return plan

    async def get_by_id(self, plan_id: UUID) -> Optional[SubscriptionPlan]:
        return await self.session.get(SubscriptionPlan, plan_id)

    async def get_by_stripe_price_id(self, stripe_price_id: str) -> Optional[SubscriptionPlan]:
        return await self.session.scalar(
            select(SubscriptionPlan).where(SubscriptionPlan.stripe_price_id == stripe_price_id)
        )

    async def list_all(self, include_archived: bool = False) -> List[SubscriptionPlan]:
        query = select(SubscriptionPlan)
        if not include_archived:
            query = query.where(SubscriptionPlan.is_archived.is_(False))
        result = await self.session.execute(query.order_by(SubscriptionPlan.amount_cents.asc()))
        return list(result.scalars().all())

    async def list_active(self) -> List[SubscriptionPlan]:
        """Plans a customer can subscribe to right now."""
        result = await self.session.execute(
            select(SubscriptionPlan)
            .where(
                SubscriptionPlan.is_active.is_(True),
                SubscriptionPlan.is_archived.is_(False),
                SubscriptionPlan.stripe_price_id.is_not(None),
            )
            .order_by(SubscriptionPlan.amount_cents.asc())
        )
        return list(result.scalars().all())

    async def list_unsynced(self) -> List[SubscriptionPlan]:
        """Non-archived paid plans that have no remote price yet."""
        result = await self.session.execute(
            select(SubscriptionPlan)
            .where(
                SubscriptionPlan.is_archived.is_(False),
                SubscriptionPlan.stripe_price_id.is_(None),
                SubscriptionPlan.amount_cents > 0,
            )
            .order_by(SubscriptionPlan.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_product_ids(self, plan_id: UUID) -> List[UUID]:
        """Product IDs linked to a plan, oldest link first."""
        result = await self.session.execute(
            select(SubscriptionPlanProduct.product_id)
            .where(SubscriptionPlanProduct.plan_id == plan_id)
            .order_by(SubscriptionPlanProduct.created_at.asc(), SubscriptionPlanProduct.id.asc())
        )
        return list(result.scalars().all())

    async def get_first_product_id(self, plan_id: UUID) -> Optional[UUID]:
        product_ids = await self.get_product_ids(plan_id)
        return product_ids[0] if product_ids else None

    async def plan_includes_product(self, plan_id: UUID, product_id: UUID) -> bool:
        link = await self.session.scalar(
            select(SubscriptionPlanProduct.id).where(
                SubscriptionPlanProduct.plan_id == plan_id,
                SubscriptionPlanProduct.product_id == product_id,
            )
        )
        return link is not None

    async def replace_products(self, plan_id: UUID, product_ids: List[UUID]) -> None:
        """Make the plan's product links exactly `product_ids`."""
        current = set(await self.get_product_ids(plan_id))
        wanted = set(product_ids)

        for product_id in current - wanted:
            link = await self.session.scalar(
                select(SubscriptionPlanProduct).where(
                    SubscriptionPlanProduct.plan_id == plan_id,
                    SubscriptionPlanProduct.product_id == product_id,
                )
            )
            if link:
                await self.session.delete(link)
        for product_id in dict.fromkeys(product_ids):
            if product_id not in current:
                self.session.add(SubscriptionPlanProduct(plan_id=plan_id, product_id=product_id))
        await self.session.flush()
