"""Customer repository and aggregate counters."""

from typing import Optional
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.models import Customer


class CustomerRepository:
    """Repository for Customer model."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, customer_id: UUID) -> Optional[Customer]:
        """Get a non-deleted customer by ID."""
        return await self.session.scalar(
            select(Customer).where(Customer.id == customer_id, Customer.deleted_at.is_(None))
        )

    async def get_by_stripe_id(self, stripe_customer_id: str) -> Optional[Customer]:
        """Get a customer by provider customer ID."""
        return await self.session.scalar(
            select(Customer).where(
                Customer.stripe_customer_id == stripe_customer_id,
                Customer.deleted_at.is_(None),
            )
        )

    # ============ Aggregate counters ============
    # Relative SQL updates, never read-modify-write.

    async def record_paid_order(self, customer_id: UUID, amount_cents: int) -> None:
        """Count one more paid order and add its total to lifetime spend."""
        await self.session.execute(
            update(Customer)
            .where(Customer.id == customer_id)
            .values(
                total_orders=Customer.total_orders + 1,
                total_spent_cents=Customer.total_spent_cents + amount_cents,
            )
            .execution_options(synchronize_session="fetch")
        )

    async def subtract_spent(self, customer_id: UUID, amount_cents: int) -> None:
        """Take a refunded total back out of lifetime spend, flooring at zero."""
        await self.session.execute(
            update(Customer)
            .where(Customer.id == customer_id)
            .values(
                total_spent_cents=case(
                    (Customer.total_spent_cents > amount_cents, Customer.total_spent_cents - amount_cents),
                    else_=0,
                )
            )
            .execution_options(synchronize_session="fetch")
        )

    async def increment_active_subscriptions(self, customer_id: UUID) -> None:
        await self.session.execute(
            update(Customer)
            .where(Customer.id == customer_id)
            .values(active_subscriptions=Customer.active_subscriptions + 1)
            .execution_options(synchronize_session="fetch")
        )

    async def decrement_active_subscriptions(self, customer_id: UUID) -> None:
        await self.session.execute(
            update(Customer)
            .where(Customer.id == customer_id)
            .values(
                active_subscriptions=case(
                    (Customer.active_subscriptions > 0, Customer.active_subscriptions - 1),
                    else_=0,
                )
            )
            .execution_options(synchronize_session="fetch")
        )
