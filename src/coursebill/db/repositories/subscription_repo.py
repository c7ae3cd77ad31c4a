"""Subscription repository."""

from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.models import Subscription, SubscriptionStatus


class SubscriptionRepository:
    """Repository for Subscription model."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, subscription: Subscription) -> Subscription:
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def get_by_id(self, subscription_id: UUID, for_update: bool = False) -> Optional[Subscription]:
        query = select(Subscription).where(Subscription.id == subscription_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        return await self.session.scalar(query)

    async def get_by_stripe_id(
        self, stripe_subscription_id: str, for_update: bool = False
    ) -> Optional[Subscription]:
        query = select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        return await self.session.scalar(query)

    async def get_live_for_customer(self, customer_id: UUID) -> Optional[Subscription]:
        """Most recent active or trialing subscription."""
        return await self.session.scalar(
            select(Subscription)
            .where(
                Subscription.customer_id == customer_id,
                Subscription.status.in_(SubscriptionStatus.LIVE),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )

    async def list_live_for_customer(self, customer_id: UUID) -> List[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.customer_id == customer_id,
                Subscription.status.in_(SubscriptionStatus.LIVE),
            )
        )
        return list(result.scalars().all())
