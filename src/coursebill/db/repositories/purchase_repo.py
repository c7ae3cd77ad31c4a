"""Purchase (entitlement) repository."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.models import Purchase, PurchaseStatus
from coursebill.utils.timestamps import utcnow


class PurchaseRepository:
    """Repository for Purchase model.

    Several rows may exist per (customer, product) over time, so every
    entitlement query filters on status rather than existence.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, purchase: Purchase) -> Purchase:
        self.session.add(purchase)
        await self.session.flush()
        return purchase

    async def _revoke(self, condition, reason: str) -> int:
        result = await self.session.execute(
            select(Purchase)
            .where(condition, Purchase.status == PurchaseStatus.ACTIVE)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        purchases = list(result.scalars().all())
        revoked_at = utcnow()
        for purchase in purchases:
            purchase.status = PurchaseStatus.REVOKED
            purchase.revoked_at = revoked_at
            purchase.revoke_reason = reason
        await self.session.flush()
        return len(purchases)

    async def revoke_for_order(self, order_id: UUID, reason: str) -> int:
        """Revoke every active purchase granted by an order. Returns rows revoked."""
        return await self._revoke(Purchase.order_id == order_id, reason)

    async def revoke_for_subscription(self, subscription_id: UUID, reason: str) -> int:
        """Revoke every active purchase derived from a subscription. Returns rows revoked."""
        return await self._revoke(Purchase.subscription_id == subscription_id, reason)

    async def find_valid(
        self, customer_id: UUID, product_id: UUID, at: Optional[datetime] = None
    ) -> Optional[Purchase]:
        """An active, unexpired purchase of `product_id`, if any."""
        at = at or utcnow()
        return await self.session.scalar(
            select(Purchase)
            .where(
                Purchase.customer_id == customer_id,
                Purchase.product_id == product_id,
                Purchase.status == PurchaseStatus.ACTIVE,
                or_(Purchase.expires_at.is_(None), Purchase.expires_at > at),
            )
            .limit(1)
        )

    async def list_valid_for_customer(self, customer_id: UUID, at: Optional[datetime] = None) -> List[Purchase]:
        at = at or utcnow()
        result = await self.session.execute(
            select(Purchase)
            .where(
                Purchase.customer_id == customer_id,
                Purchase.status == PurchaseStatus.ACTIVE,
                or_(Purchase.expires_at.is_(None), Purchase.expires_at > at),
            )
            .order_by(Purchase.granted_at.desc())
        )
        return list(result.scalars().all())
