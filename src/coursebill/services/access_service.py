"""Entitlement queries."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.db.repositories import PlanRepository, PurchaseRepository, SubscriptionRepository
from coursebill.utils.timestamps import as_utc, utcnow


class AccessService:
    """Answers whether a customer may use a product right now."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.purchase_repo = PurchaseRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.plan_repo = PlanRepository(session)

    async def has_access(self, customer_id: UUID, product_id: UUID, at: Optional[datetime] = None) -> bool:
        """
        True when the customer holds an active, unexpired purchase of the
        product, or a live in-period subscription whose plan includes it.
        """
        at = at or utcnow()

        if await self.purchase_repo.find_valid(customer_id, product_id, at=at):
            return True

        for subscription in await self.subscription_repo.list_live_for_customer(customer_id):
            if subscription.plan_id is None:
                continue
            if as_utc(subscription.current_period_end) <= at:
                continue
            if await self.plan_repo.plan_includes_product(subscription.plan_id, product_id):
                return True
        return False

    async def list_active_entitlements(self, customer_id: UUID) -> List[Dict[str, Any]]:
        """Valid purchases, newest first."""
        purchases = await self.purchase_repo.list_valid_for_customer(customer_id)
        return [
            {
                "purchase_id": str(p.id),
                "product_id": str(p.product_id),
                "is_lifetime": p.is_lifetime,
                "order_id": str(p.order_id) if p.order_id else None,
                "subscription_id": str(p.subscription_id) if p.subscription_id else None,
                "granted_at": p.granted_at.isoformat() if p.granted_at else None,
                "expires_at": p.expires_at.isoformat() if p.expires_at else None,
            }
            for p in purchases
        ]
