"""Ledger mutation routines shared by every writer.

The reconciliation engine and the operator commands both go through these
methods, so each ledger invariant is enforced in exactly one place. None of
them commit: callers wrap them in `coursebill.db.atomic` so every effect of
one business event lands in a single transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.core import OrderNotRefundable, RefundValidationError, get_logger
from coursebill.db.repositories import (
    CustomerRepository,
    OrderRepository,
    PlanRepository,
    PurchaseRepository,
    SubscriptionRepository,
)
from coursebill.models import (
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    Purchase,
    PurchaseStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from coursebill.utils.timestamps import utcnow

logger = get_logger(__name__)

REVOKE_REASON_SUBSCRIPTION_CANCELED = "Subscription canceled"
REVOKE_REASON_FULL_REFUND = "Full refund issued"


@dataclass
class InvoiceLine:
    """One resolved invoice line ready to become an OrderItem."""

    product_id: UUID
    amount_cents: int
    quantity: int = 1
    tax_cents: int = 0
    currency: Optional[str] = None
    subscription_id: Optional[UUID] = None


@dataclass
class InvoiceTotals:
    """Amounts taken from the invoice itself, never recomputed from lines."""

    currency: str
    subtotal_cents: int
    discount_cents: int
    tax_cents: int
    total_cents: int
    amount_due_cents: int
    lines: List[InvoiceLine] = field(default_factory=list)


@dataclass
class RefundOutcome:
    order: Order
    changed: bool
    became_full: bool
    revoked: int = 0


class LedgerService:
    """Shared ledger writes for orders, subscriptions, entitlements and counters."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.order_repo = OrderRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.purchase_repo = PurchaseRepository(session)
        self.customer_repo = CustomerRepository(session)
        self.plan_repo = PlanRepository(session)

    # ============ Paid orders ============

    async def record_one_time_purchase(
        self,
        customer_id: UUID,
        product_id: UUID,
        payment_intent_id: str,
        amount_total_cents: int,
        currency: str,
        paid_at: Optional[datetime] = None,
    ) -> Order:
        """Paid checkout order + one line item + lifetime entitlement + customer totals."""
        order = await self.order_repo.create(
            Order(
                customer_id=customer_id,
                status=OrderStatus.PAID,
                order_type=OrderType.CHECKOUT,
                currency=currency,
                subtotal_cents=amount_total_cents,
                discount_cents=0,
                tax_cents=0,
                total_cents=amount_total_cents,
                amount_due_cents=amount_total_cents,
                stripe_payment_intent_id=payment_intent_id,
                paid_at=paid_at or utcnow(),
            )
        )
        await self.order_repo.add_item(
            order,
            OrderItem(
                product_id=product_id,
                quantity=1,
                unit_amount_cents=amount_total_cents,
                discount_cents=0,
                tax_cents=0,
                total_cents=amount_total_cents,
                currency=currency,
            ),
        )
        await self.purchase_repo.create(
            Purchase(
                customer_id=customer_id,
                product_id=product_id,
                order_id=order.id,
                order_year=order.created_year,
                unit_amount_cents=amount_total_cents,
                currency=currency,
                status=PurchaseStatus.ACTIVE,
                is_lifetime=True,
            )
        )
        await self.customer_repo.record_paid_order(customer_id, amount_total_cents)
        return order

    async def record_invoice_order(
        self,
        customer_id: UUID,
        stripe_invoice_id: str,
        totals: InvoiceTotals,
        paid_at: Optional[datetime] = None,
    ) -> Order:
        """Paid renewal order with one item per resolved invoice line + customer totals."""
        order = await self.order_repo.create(
            Order(
                customer_id=customer_id,
                status=OrderStatus.PAID,
                order_type=OrderType.SUBSCRIPTION,
                currency=totals.currency,
                subtotal_cents=totals.subtotal_cents,
                discount_cents=totals.discount_cents,
                tax_cents=totals.tax_cents,
                total_cents=totals.total_cents,
                amount_due_cents=totals.amount_due_cents,
                stripe_invoice_id=stripe_invoice_id,
                paid_at=paid_at or utcnow(),
            )
        )
        for line in totals.lines:
            await self.order_repo.add_item(
                order,
                OrderItem(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_amount_cents=line.amount_cents,
                    discount_cents=0,
                    tax_cents=line.tax_cents,
                    total_cents=line.amount_cents,
                    currency=line.currency or totals.currency,
                    subscription_id=line.subscription_id,
                ),
            )
        await self.customer_repo.record_paid_order(customer_id, totals.total_cents)
        return order

    async def mark_payment_failed(self, order: Order) -> bool:
        """Move a pending order to payment_failed. Orders already paid keep their status."""
        order = await self.order_repo.get(order.id, order.created_year, for_update=True)
        if order is None or order.status != OrderStatus.PENDING:
            return False
        order.status = OrderStatus.PAYMENT_FAILED
        await self.session.flush()
        return True

    # ============ Subscriptions ============

    async def record_subscription(
        self,
        subscription: Subscription,
        plan: Optional[SubscriptionPlan],
    ) -> Subscription:
        """New subscription + one entitlement per plan product + active-subscription count."""
        subscription.plan_id = plan.id if plan else None
        subscription = await self.subscription_repo.create(subscription)

        if plan is not None:
            for product_id in await self.plan_repo.get_product_ids(plan.id):
                await self.purchase_repo.create(
                    Purchase(
                        customer_id=subscription.customer_id,
                        product_id=product_id,
                        subscription_id=subscription.id,
                        unit_amount_cents=plan.amount_cents,
                        currency=plan.currency,
                        status=PurchaseStatus.ACTIVE,
                        is_lifetime=False,
                    )
                )

        await self.customer_repo.increment_active_subscriptions(subscription.customer_id)
        return subscription

    async def finalize_cancellation(
        self,
        subscription_id: UUID,
        reason: str = REVOKE_REASON_SUBSCRIPTION_CANCELED,
        canceled_at: Optional[datetime] = None,
    ) -> bool:
        """
        Terminal cancellation: status canceled + ended_at, revoke the
        subscription's active entitlements, decrement active_subscriptions.

        Keyed on ended_at so the webhook and the operator path can both run
        it for the same subscription and the effects apply once. Returns
        False when there was nothing left to finalize.
        """
        subscription = await self.subscription_repo.get_by_id(subscription_id, for_update=True)
        if subscription is None:
            return False
        if subscription.ended_at is not None:
            logger.debug("Subscription already finalized", subscription_id=str(subscription_id))
            return False

        now = utcnow()
        subscription.status = SubscriptionStatus.CANCELED
        subscription.canceled_at = subscription.canceled_at or canceled_at or now
        subscription.ended_at = now
        await self.session.flush()

        revoked = await self.purchase_repo.revoke_for_subscription(subscription.id, reason)
        await self.customer_repo.decrement_active_subscriptions(subscription.customer_id)

        logger.info(
            "Subscription cancellation finalized",
            subscription_id=str(subscription.id),
            customer_id=str(subscription.customer_id),
            purchases_revoked=revoked,
        )
        return True

    # ============ Refunds ============

    async def apply_refund(
        self,
        order: Order,
        refunded_amount_cents: int,
        reason: Optional[str] = None,
        revoke_reason: Optional[str] = None,
    ) -> RefundOutcome:
        """
        Record the cumulative refunded amount for an order.

        A refunded amount covering the total makes the order `refunded`,
        revokes its entitlements and takes the total back out of the
        customer's lifetime spend. Less than the total makes it
        `partially_refunded` and leaves access alone. The recorded amount
        never decreases and a `refunded` order never changes again, so
        redelivered events and operator/webhook overlap converge.
        """
        locked = await self.order_repo.get(order.id, order.created_year, for_update=True)
        if locked is None:
            return RefundOutcome(order=order, changed=False, became_full=False)
        order = locked

        if order.status == OrderStatus.REFUNDED:
            return RefundOutcome(order=order, changed=False, became_full=False)
        if order.status not in OrderStatus.REFUNDABLE:
            logger.debug(
                "Refund ignored for order that was never paid",
                order_number=order.order_number,
                status=order.status,
            )
            return RefundOutcome(order=order, changed=False, became_full=False)

        previous = order.refund_amount_cents or 0
        amount = max(previous, refunded_amount_cents)
        is_full = amount >= order.total_cents
        new_status = OrderStatus.REFUNDED if is_full else OrderStatus.PARTIALLY_REFUNDED

        if amount == previous and new_status == order.status:
            return RefundOutcome(order=order, changed=False, became_full=False)

        order.status = new_status
        order.refund_amount_cents = amount
        if reason:
            order.refund_reason = reason
        order.refunded_at = utcnow()
        await self.session.flush()

        revoked = 0
        if is_full:
            revoked = await self.purchase_repo.revoke_for_order(
                order.id, revoke_reason or REVOKE_REASON_FULL_REFUND
            )
            await self.customer_repo.subtract_spent(order.customer_id, order.total_cents)

        return RefundOutcome(order=order, changed=True, became_full=is_full, revoked=revoked)

    def check_partial_refund(self, order: Order, amount_cents: int) -> None:
        """Raise unless `amount_cents` can be refunded without reaching the order total."""
        if amount_cents <= 0:
            raise RefundValidationError(
                message="Refund amount must be positive",
                details={"amount_cents": amount_cents},
            )

        already_refunded = order.refund_amount_cents or 0
        if already_refunded + amount_cents >= order.total_cents:
            raise RefundValidationError(
                message="Partial refund amount must be less than order total. Use full refund instead.",
                details={
                    "amount_cents": amount_cents,
                    "total_cents": order.total_cents,
                    "already_refunded_cents": already_refunded,
                },
            )

    async def add_partial_refund(
        self,
        order: Order,
        amount_cents: int,
        reason: Optional[str] = None,
    ) -> RefundOutcome:
        """
        Add `amount_cents` to the refunded amount of a locked order.

        The limit is checked again against the locked row, so a refund
        committed since the caller read the order is added to, not replaced.

        Raises:
            OrderNotRefundable: the order left `paid`/`partially_refunded` meanwhile
            RefundValidationError: the sum would reach the order total
        """
        locked = await self.order_repo.get(order.id, order.created_year, for_update=True)
        if locked is None or locked.status not in OrderStatus.REFUNDABLE:
            raise OrderNotRefundable(
                message="Order can no longer be partially refunded",
                details={"order_id": str(order.id), "status": locked.status if locked else None},
            )
        order = locked
        self.check_partial_refund(order, amount_cents)

        order.status = OrderStatus.PARTIALLY_REFUNDED
        order.refund_amount_cents = (order.refund_amount_cents or 0) + amount_cents
        if reason:
            order.refund_reason = reason
        order.refunded_at = utcnow()
        await self.session.flush()

        return RefundOutcome(order=order, changed=True, became_full=False)
