"""Operator-initiated refunds.

The remote refund is created first; local state changes only after Stripe
accepts it, through the same ledger routine the charge.refunded webhook uses.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.core import (
    OrderNotFound,
    OrderNotRefundable,
    RefundFailed,
    StripeAPIError,
    StripeNotConfigured,
    get_logger,
)
from coursebill.db import atomic
from coursebill.db.repositories import OrderRepository
from coursebill.models import Order, OrderStatus
from coursebill.services.ledger_service import LedgerService
from coursebill.services.stripe_client import StripeClient

logger = get_logger(__name__)


class RefundService:
    """Full and partial refunds of paid orders."""

    def __init__(self, session: AsyncSession, stripe_client: Optional[StripeClient] = None):
        self.session = session
        self.stripe = stripe_client or StripeClient()
        self.order_repo = OrderRepository(session)
        self.ledger = LedgerService(session)

    async def _get_refundable_order(self, order_id: UUID, order_year: int) -> Order:
        order = await self.order_repo.get(order_id, order_year)
        if order is None:
            raise OrderNotFound(details={"order_id": str(order_id), "order_year": order_year})

        if order.status not in OrderStatus.REFUNDABLE:
            raise OrderNotRefundable(
                message=f"Order status '{order.status}' cannot be refunded",
                details={"order_id": str(order_id), "status": order.status},
            )
        if not order.stripe_payment_intent_id:
            raise OrderNotRefundable(
                message="Order has no Stripe payment intent to refund",
                details={"order_id": str(order_id)},
            )
        return order

    async def _create_remote_refund(
        self, order: Order, amount_cents: Optional[int], reason: Optional[str]
    ) -> dict:
        try:
            return await self.stripe.create_refund(
                order.stripe_payment_intent_id,
                amount_cents=amount_cents,
                reason=reason,
            )
        except (StripeAPIError, StripeNotConfigured) as e:
            logger.error("Stripe refund failed", order_number=order.order_number, error=e.message)
            raise RefundFailed(
                message="Stripe refund request failed",
                details={"order_id": str(order.id), "stripe_error": e.message},
            ) from e

    async def issue_full_refund(self, order_id: UUID, order_year: int, reason: Optional[str] = None) -> Order:
        """
        Refund whatever remains of an order and revoke its entitlements.

        Raises:
            OrderNotFound: no order with this (id, year)
            OrderNotRefundable: order not paid / partially refunded, or has no payment intent
            RefundFailed: Stripe rejected the refund; nothing changed locally
        """
        order = await self._get_refundable_order(order_id, order_year)
        # Stripe refunds the remaining balance when no amount is given
        await self._create_remote_refund(order, None, reason)

        async with atomic(self.session):
            outcome = await self.ledger.apply_refund(
                order,
                order.total_cents,
                reason=reason,
                revoke_reason=reason,
            )

        logger.info(
            "Full refund issued",
            order_number=outcome.order.order_number,
            amount_cents=outcome.order.refund_amount_cents,
            purchases_revoked=outcome.revoked,
        )
        return outcome.order

    async def issue_partial_refund(
        self,
        order_id: UUID,
        order_year: int,
        amount_cents: int,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Refund part of an order. Access and customer totals stay untouched.

        Partial refunds accumulate; one that would reach the order total is
        rejected so the caller uses issue_full_refund instead. The limit is
        checked before Stripe is called and again under the order lock.

        Raises:
            OrderNotFound, OrderNotRefundable, RefundFailed as for full refunds
            RefundValidationError: amount not positive, or not below the remaining total
        """
        order = await self._get_refundable_order(order_id, order_year)
        self.ledger.check_partial_refund(order, amount_cents)

        await self._create_remote_refund(order, amount_cents, reason)

        async with atomic(self.session):
            outcome = await self.ledger.add_partial_refund(order, amount_cents, reason=reason)

        logger.info(
            "Partial refund issued",
            order_number=outcome.order.order_number,
            amount_cents=amount_cents,
            refund_total_cents=outcome.order.refund_amount_cents,
        )
        return outcome.order
