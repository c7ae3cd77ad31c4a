"""Webhook reconciliation engine.

Turns verified Stripe events into ledger state. Every handler deduplicates on
a natural provider key (payment intent, invoice, subscription id) that the
ledger already indexes, so redelivery is a no-op and no separate processed
event log is kept.

Outcomes:
- processed: the event changed the ledger
- duplicate: the event's effect was already recorded
- dropped:   the event cannot be applied and a retry would not help; logged
- ignored:   the event kind or target is not tracked locally

Permanent data problems never raise to the transport. Database and gateway
failures do, so the provider retries the delivery.
"""

from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.core import StripeAPIError, get_logger, settings
from coursebill.db import atomic
from coursebill.db.repositories import (
    CustomerRepository,
    OrderRepository,
    PlanRepository,
    ProductRepository,
    SubscriptionRepository,
)
from coursebill.models import OrderStatus, Product, Subscription, SubscriptionStatus
from coursebill.services.events import EventType, StripeEvent, object_id
from coursebill.services.ledger_service import InvoiceLine, InvoiceTotals, LedgerService
from coursebill.services.stripe_client import StripeClient
from coursebill.utils.timestamps import as_utc, from_unix

logger = get_logger(__name__)

STRIPE_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.PAUSED,
}

# Checkout session metadata written by CheckoutService
METADATA_CUSTOMER_ID = "customer_id"
METADATA_PRODUCT_ID = "product_id"

PROVIDER_REFUND_REASON = "Refunded via Stripe dashboard"


class EventOutcome:
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"
    IGNORED = "ignored"


class UnresolvableEvent(Exception):
    """Event data that no amount of redelivery can fix."""

    def __init__(self, message: str, level: str = "error", **context):
        super().__init__(message)
        self.level = level
        self.context = context


def _parse_uuid(value: Any) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _sum_amounts(entries: Optional[List[Dict[str, Any]]]) -> int:
    return sum(int(entry.get("amount") or 0) for entry in entries or [])


class WebhookService:
    """Applies provider events to the ledger."""

    def __init__(self, session: AsyncSession, stripe_client: Optional[StripeClient] = None):
        self.session = session
        self.stripe = stripe_client or StripeClient()
        self.ledger = LedgerService(session)
        self.order_repo = OrderRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.customer_repo = CustomerRepository(session)
        self.plan_repo = PlanRepository(session)
        self.product_repo = ProductRepository(session)

    async def process_event(self, event: StripeEvent) -> str:
        """
        Apply one event and report the outcome.

        A uniqueness violation means a concurrent delivery of the same event
        won the insert; the handler runs once more so its idempotency check
        sees the committed row. A second violation is not a race and propagates.
        """
        handler = self._get_webhook_handler(event.type)
        if handler is None:
            logger.debug("Unhandled webhook event type", event_type=event.type, event_id=event.id)
            return EventOutcome.IGNORED

        try:
            return await self._run(handler, event)
        except IntegrityError:
            await self.session.rollback()
            logger.info("Concurrent write detected, re-checking event", event_type=event.type, event_id=event.id)
            return await self._run(handler, event)

    async def _run(self, handler, event: StripeEvent) -> str:
        try:
            return await handler(event)
        except UnresolvableEvent as e:
            await self.session.rollback()
            log = logger.warning if e.level == "warning" else logger.error
            log(
                f"Webhook event dropped: {e}",
                event_type=event.type,
                event_id=event.id,
                **e.context,
            )
            return EventOutcome.DROPPED

    def _get_webhook_handler(self, event_type: str):
        """Get handler for webhook event type."""
        handlers = {
            EventType.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            EventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EventType.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_payment_succeeded,
            EventType.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
            EventType.CHARGE_REFUNDED: self._handle_charge_refunded,
        }
        return handlers.get(event_type)

    # ============ Checkout ============

    async def _handle_checkout_completed(self, event: StripeEvent) -> str:
        checkout = event.payload
        mode = checkout.get("mode")

        if mode == "payment":
            return await self._handle_one_time_checkout(checkout)

        stripe_subscription_id = object_id(checkout.get("subscription"))
        if mode != "subscription" or not stripe_subscription_id:
            logger.debug("Checkout session without billable mode", session_id=checkout.get("id"), mode=mode)
            return EventOutcome.IGNORED

        return await self._handle_subscription_checkout(stripe_subscription_id, event)

    async def _handle_one_time_checkout(self, checkout: Dict[str, Any]) -> str:
        payment_intent_id = object_id(checkout.get("payment_intent"))
        if not payment_intent_id:
            raise UnresolvableEvent("one-time checkout has no payment_intent", session_id=checkout.get("id"))

        if await self.order_repo.get_by_payment_intent(payment_intent_id):
            logger.debug("Order for payment intent already exists", payment_intent=payment_intent_id)
            return EventOutcome.DUPLICATE

        metadata = checkout.get("metadata") or {}
        customer_id = _parse_uuid(metadata.get(METADATA_CUSTOMER_ID))
        product_id = _parse_uuid(metadata.get(METADATA_PRODUCT_ID))
        if customer_id is None or product_id is None:
            raise UnresolvableEvent(
                "one-time checkout missing metadata (customer_id or product_id)",
                session_id=checkout.get("id"),
                payment_intent=payment_intent_id,
            )

        if await self.customer_repo.get_by_id(customer_id) is None:
            raise UnresolvableEvent("checkout names an unknown customer", customer_id=str(customer_id))
        # Soft-deleted products still honor purchases made before deletion
        if await self.session.get(Product, product_id) is None:
            raise UnresolvableEvent("checkout names an unknown product", product_id=str(product_id))

        amount_total = int(checkout.get("amount_total") or 0)
        currency = checkout.get("currency") or settings.default_currency

        async with atomic(self.session):
            order = await self.ledger.record_one_time_purchase(
                customer_id=customer_id,
                product_id=product_id,
                payment_intent_id=payment_intent_id,
                amount_total_cents=amount_total,
                currency=currency,
            )

        logger.info(
            "One-time purchase recorded",
            order_number=order.order_number,
            customer_id=str(customer_id),
            product_id=str(product_id),
            total_cents=amount_total,
        )
        return EventOutcome.PROCESSED

    async def _handle_subscription_checkout(self, stripe_subscription_id: str, event: StripeEvent) -> str:
        if await self.subscription_repo.get_by_stripe_id(stripe_subscription_id):
            logger.debug("Subscription already exists", stripe_subscription_id=stripe_subscription_id)
            return EventOutcome.DUPLICATE

        # The checkout event lacks period and price detail
        try:
            stripe_subscription = await self.stripe.retrieve_subscription(stripe_subscription_id)
        except StripeAPIError as e:
            if e.remote_status == 404:
                raise UnresolvableEvent(
                    "subscription does not exist at Stripe",
                    stripe_subscription_id=stripe_subscription_id,
                ) from e
            raise

        stripe_customer_id = object_id(stripe_subscription.get("customer"))
        customer = await self.customer_repo.get_by_stripe_id(stripe_customer_id) if stripe_customer_id else None
        if customer is None:
            raise UnresolvableEvent("no customer found for Stripe customer", stripe_customer_id=stripe_customer_id)

        items = (stripe_subscription.get("items") or {}).get("data") or []
        if not items:
            raise UnresolvableEvent("subscription has no items", stripe_subscription_id=stripe_subscription_id)
        first_item = items[0]
        price = first_item.get("price") or {}
        recurring = price.get("recurring") or {}

        period_start = from_unix(
            first_item.get("current_period_start") or stripe_subscription.get("current_period_start")
        )
        period_end = from_unix(first_item.get("current_period_end") or stripe_subscription.get("current_period_end"))
        if period_start is None or period_end is None:
            raise UnresolvableEvent("subscription has no billing period", stripe_subscription_id=stripe_subscription_id)

        plan = await self.plan_repo.get_by_stripe_price_id(price.get("id")) if price.get("id") else None
        if plan is None:
            logger.info("Subscription price matches no plan, recording as legacy", price_id=price.get("id"))

        subscription = Subscription(
            customer_id=customer.id,
            status=STRIPE_STATUS_MAP.get(stripe_subscription.get("status"), SubscriptionStatus.ACTIVE),
            currency=stripe_subscription.get("currency") or price.get("currency") or settings.default_currency,
            unit_amount_cents=int(price.get("unit_amount") or 0),
            recurring_interval=recurring.get("interval") or "month",
            recurring_interval_count=int(recurring.get("interval_count") or 1),
            quantity=int(first_item.get("quantity") or 1),
            trial_start=from_unix(stripe_subscription.get("trial_start")),
            trial_end=from_unix(stripe_subscription.get("trial_end")),
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(stripe_subscription.get("cancel_at_period_end")),
            stripe_subscription_id=stripe_subscription_id,
            last_event_at=from_unix(event.created),
        )

        async with atomic(self.session):
            subscription = await self.ledger.record_subscription(subscription, plan)

        logger.info(
            "Subscription created",
            subscription_id=str(subscription.id),
            customer_id=str(customer.id),
            plan_id=str(plan.id) if plan else None,
        )
        return EventOutcome.PROCESSED

    # ============ Subscription lifecycle ============

    async def _handle_subscription_updated(self, event: StripeEvent) -> str:
        data = event.payload
        stripe_subscription_id = data.get("id")

        status = STRIPE_STATUS_MAP.get(data.get("status"))
        if status is None:
            raise UnresolvableEvent(
                "unknown Stripe subscription status",
                level="warning",
                status=data.get("status"),
                stripe_subscription_id=stripe_subscription_id,
            )

        event_at = from_unix(event.created)

        async with atomic(self.session):
            subscription = await self.subscription_repo.get_by_stripe_id(stripe_subscription_id, for_update=True)
            if subscription is None:
                logger.debug("Update for untracked subscription", stripe_subscription_id=stripe_subscription_id)
                return EventOutcome.IGNORED

            last_applied = as_utc(subscription.last_event_at)
            if event_at and last_applied and event_at < last_applied:
                logger.info(
                    "Stale subscription event skipped",
                    stripe_subscription_id=stripe_subscription_id,
                    event_at=event_at.isoformat(),
                    last_applied=last_applied.isoformat(),
                )
                return EventOutcome.IGNORED

            if subscription.ended_at is not None and status != SubscriptionStatus.CANCELED:
                logger.warning(
                    "Ignoring status change on ended subscription",
                    stripe_subscription_id=stripe_subscription_id,
                    status=status,
                )
                return EventOutcome.IGNORED

            items = (data.get("items") or {}).get("data") or []
            first_item = items[0] if items else {}
            period_start = from_unix(first_item.get("current_period_start") or data.get("current_period_start"))
            period_end = from_unix(first_item.get("current_period_end") or data.get("current_period_end"))

            subscription.status = status
            if period_start is not None:
                subscription.current_period_start = period_start
            if period_end is not None:
                subscription.current_period_end = period_end
            subscription.cancel_at_period_end = bool(data.get("cancel_at_period_end"))
            subscription.canceled_at = from_unix(data.get("canceled_at"))
            if "trial_end" in data:
                subscription.trial_end = from_unix(data.get("trial_end"))
            if event_at is not None:
                subscription.last_event_at = event_at

        logger.info("Subscription updated", stripe_subscription_id=stripe_subscription_id, status=status)
        return EventOutcome.PROCESSED

    async def _handle_subscription_deleted(self, event: StripeEvent) -> str:
        data = event.payload
        stripe_subscription_id = data.get("id")

        subscription = await self.subscription_repo.get_by_stripe_id(stripe_subscription_id)
        if subscription is None:
            logger.debug("Deletion for untracked subscription", stripe_subscription_id=stripe_subscription_id)
            return EventOutcome.IGNORED

        async with atomic(self.session):
            finalized = await self.ledger.finalize_cancellation(
                subscription.id,
                canceled_at=from_unix(data.get("canceled_at")),
            )

        return EventOutcome.PROCESSED if finalized else EventOutcome.DUPLICATE

    # ============ Invoices ============

    @staticmethod
    def _line_price_id(line: Dict[str, Any]) -> Optional[str]:
        """Price reference of an invoice line (pricing.price_details first, then legacy price)."""
        price_details = (line.get("pricing") or {}).get("price_details") or {}
        return object_id(price_details.get("price")) or object_id(line.get("price"))

    async def _resolve_line_product(self, price_id: Optional[str]) -> Optional[UUID]:
        """price id -> plan -> first linked product, or a one-time product priced directly."""
        if not price_id:
            return None
        plan = await self.plan_repo.get_by_stripe_price_id(price_id)
        if plan is not None:
            return await self.plan_repo.get_first_product_id(plan.id)
        product = await self.product_repo.get_by_stripe_price_id(price_id)
        return product.id if product else None

    async def _resolve_line_subscription(self, line: Dict[str, Any]) -> Optional[UUID]:
        details = (line.get("parent") or {}).get("subscription_item_details") or {}
        stripe_subscription_id = object_id(details.get("subscription")) or object_id(line.get("subscription"))
        if not stripe_subscription_id:
            return None
        subscription = await self.subscription_repo.get_by_stripe_id(stripe_subscription_id)
        return subscription.id if subscription else None

    async def _handle_invoice_payment_succeeded(self, event: StripeEvent) -> str:
        invoice = event.payload
        invoice_id = invoice.get("id")
        if not invoice_id:
            raise UnresolvableEvent("invoice has no id")

        if await self.order_repo.get_by_invoice(invoice_id):
            logger.debug("Order for invoice already exists", invoice_id=invoice_id)
            return EventOutcome.DUPLICATE

        stripe_customer_id = object_id(invoice.get("customer"))
        customer = await self.customer_repo.get_by_stripe_id(stripe_customer_id) if stripe_customer_id else None
        if customer is None:
            raise UnresolvableEvent(
                "no customer found for Stripe customer",
                stripe_customer_id=stripe_customer_id,
                invoice_id=invoice_id,
            )

        currency = invoice.get("currency") or settings.default_currency
        lines = []
        for line in (invoice.get("lines") or {}).get("data") or []:
            price_id = self._line_price_id(line)
            product_id = await self._resolve_line_product(price_id)
            if product_id is None:
                logger.warning("Skipping invoice line with unresolvable price", invoice_id=invoice_id, price_id=price_id)
                continue
            lines.append(
                InvoiceLine(
                    product_id=product_id,
                    amount_cents=int(line.get("amount") or 0),
                    quantity=int(line.get("quantity") or 1),
                    tax_cents=_sum_amounts(line.get("taxes") or line.get("tax_amounts")),
                    currency=line.get("currency") or currency,
                    subscription_id=await self._resolve_line_subscription(line),
                )
            )

        if "total_taxes" in invoice:
            tax_cents = _sum_amounts(invoice.get("total_taxes"))
        else:
            tax_cents = int(invoice.get("tax") or 0)

        totals = InvoiceTotals(
            currency=currency,
            subtotal_cents=int(invoice.get("subtotal") or 0),
            discount_cents=_sum_amounts(invoice.get("total_discount_amounts")),
            tax_cents=tax_cents,
            total_cents=int(invoice.get("total") or 0),
            amount_due_cents=int(invoice.get("amount_due") or 0),
            lines=lines,
        )
        paid_at = from_unix((invoice.get("status_transitions") or {}).get("paid_at"))

        async with atomic(self.session):
            order = await self.ledger.record_invoice_order(customer.id, invoice_id, totals, paid_at=paid_at)

        logger.info(
            "Invoice order recorded",
            order_number=order.order_number,
            invoice_id=invoice_id,
            total_cents=totals.total_cents,
            items=len(lines),
        )
        return EventOutcome.PROCESSED

    async def _handle_invoice_payment_failed(self, event: StripeEvent) -> str:
        invoice = event.payload
        invoice_id = invoice.get("id")
        if not invoice_id:
            raise UnresolvableEvent("invoice has no id")

        order = await self.order_repo.get_by_invoice(invoice_id)
        if order is None:
            # Invoices usually fail before any local order exists
            raise UnresolvableEvent("invoice payment failed with no local order", level="warning", invoice_id=invoice_id)

        async with atomic(self.session):
            changed = await self.ledger.mark_payment_failed(order)

        if not changed:
            logger.warning(
                "Payment failure for order past pending, status kept",
                order_number=order.order_number,
                status=order.status,
            )
            return EventOutcome.DUPLICATE

        logger.warning("Order payment failed", order_number=order.order_number, invoice_id=invoice_id)
        return EventOutcome.PROCESSED

    # ============ Refunds ============

    async def _handle_charge_refunded(self, event: StripeEvent) -> str:
        charge = event.payload
        payment_intent_id = object_id(charge.get("payment_intent"))
        if not payment_intent_id:
            raise UnresolvableEvent("charge.refunded has no payment_intent", level="warning", charge_id=charge.get("id"))

        order = await self.order_repo.get_by_payment_intent(payment_intent_id)
        if order is None:
            raise UnresolvableEvent(
                "no order found for refunded payment intent",
                level="warning",
                payment_intent=payment_intent_id,
            )

        async with atomic(self.session):
            outcome = await self.ledger.apply_refund(
                order,
                int(charge.get("amount_refunded") or 0),
                reason=PROVIDER_REFUND_REASON,
            )

        if not outcome.changed:
            if outcome.order.status not in OrderStatus.REFUNDABLE and outcome.order.status != OrderStatus.REFUNDED:
                raise UnresolvableEvent(
                    "refund reported for an order that was never paid",
                    level="warning",
                    order_number=outcome.order.order_number,
                    status=outcome.order.status,
                )
            logger.debug("Refund already recorded", order_number=order.order_number)
            return EventOutcome.DUPLICATE

        logger.info(
            "Charge refund recorded",
            order_number=outcome.order.order_number,
            status=outcome.order.status,
            refund_amount_cents=outcome.order.refund_amount_cents,
            purchases_revoked=outcome.revoked,
        )
        return EventOutcome.PROCESSED
