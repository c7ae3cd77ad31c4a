"""Order repository.

Orders live in year partitions, so the natural key is (id, created_year).
Lookups by external id scan all partitions through the secondary indexes.
"""

import secrets
import time
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.core import settings
from coursebill.models import Order, OrderItem


def _base36(value: int) -> str:
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def generate_order_number(prefix: Optional[str] = None) -> str:
    """Human-readable order number: PREFIX-<base36 millis>-<6 hex>."""
    timestamp = _base36(int(time.time() * 1000))
    random_part = secrets.token_hex(3).upper()
    return f"{prefix or settings.order_number_prefix}-{timestamp}-{random_part}"


class OrderRepository:
    """Repository for Order and OrderItem models."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, order: Order) -> Order:
        """Create a new order, assigning an order number when missing."""
        if not order.order_number:
            order.order_number = generate_order_number()
        self.session.add(order)
        await self.session.flush()
        return order

    async def add_item(self, order: Order, item: OrderItem) -> OrderItem:
        """Attach a line item to an already-flushed order."""
        item.order_id = order.id
        item.order_year = order.created_year
        if item.currency is None:
            item.currency = order.currency
        self.session.add(item)
        await self.session.flush()
        return item

    async def get(self, order_id: UUID, order_year: int, for_update: bool = False) -> Optional[Order]:
        """Get an order by its natural key."""
        query = select(Order).where(Order.id == order_id, Order.created_year == order_year)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        return await self.session.scalar(query)

    async def get_by_payment_intent(
        self, stripe_payment_intent_id: str, for_update: bool = False
    ) -> Optional[Order]:
        query = (
            select(Order)
            .where(Order.stripe_payment_intent_id == stripe_payment_intent_id)
            .order_by(Order.created_year.desc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        return await self.session.scalar(query)

    async def get_by_invoice(self, stripe_invoice_id: str, for_update: bool = False) -> Optional[Order]:
        query = (
            select(Order)
            .where(Order.stripe_invoice_id == stripe_invoice_id)
            .order_by(Order.created_year.desc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        return await self.session.scalar(query)
