"""Tests for operator refunds."""

from uuid import uuid4

import pytest
from sqlalchemy import select

from coursebill.core import (
    OrderNotFound,
    OrderNotRefundable,
    RefundFailed,
    RefundValidationError,
    StripeAPIError,
)
from coursebill.models import Customer, Order, OrderStatus, Purchase, PurchaseStatus
from coursebill.services.events import EventType
from coursebill.services.ledger_service import LedgerService
from coursebill.services.refund_service import RefundService
from coursebill.services.webhook_service import EventOutcome, WebhookService


@pytest.fixture
def refund_service(session, stripe_client):
    return RefundService(session, stripe_client)


class TestFullRefund:
    """issue_full_refund."""

    @pytest.mark.asyncio
    async def test_refunds_revokes_and_subtracts(self, refund_service, session, stripe_client, customer, course, make_order):
        order = await make_order(customer, course)

        result = await refund_service.issue_full_refund(order.id, order.created_year, reason="requested_by_customer")

        assert result.status == OrderStatus.REFUNDED
        assert result.refund_amount_cents == 4900
        assert result.refund_reason == "requested_by_customer"
        stripe_client.create_refund.assert_awaited_once_with(
            "pi_123", amount_cents=None, reason="requested_by_customer"
        )

        purchase = await session.scalar(select(Purchase).where(Purchase.order_id == order.id))
        assert purchase.status == PurchaseStatus.REVOKED
        assert purchase.revoke_reason == "requested_by_customer"
        await session.refresh(customer)
        assert customer.total_spent_cents == 0

    @pytest.mark.asyncio
    async def test_remaining_balance_after_partial(self, refund_service, session, customer, course, make_order):
        order = await make_order(customer, course)
        await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=900)

        result = await refund_service.issue_full_refund(order.id, order.created_year)

        assert result.status == OrderStatus.REFUNDED
        assert result.refund_amount_cents == 4900
        purchase = await session.scalar(select(Purchase).where(Purchase.order_id == order.id))
        assert purchase.revoke_reason == "Full refund issued"

    @pytest.mark.asyncio
    async def test_gateway_failure_changes_nothing(self, refund_service, session, stripe_client, customer, course, make_order):
        order = await make_order(customer, course)
        stripe_client.create_refund.side_effect = StripeAPIError(message="Charge already refunded", remote_status=400)

        with pytest.raises(RefundFailed):
            await refund_service.issue_full_refund(order.id, order.created_year)

        await session.refresh(order)
        assert order.status == OrderStatus.PAID
        assert order.refund_amount_cents == 0
        purchase = await session.scalar(select(Purchase).where(Purchase.order_id == order.id))
        assert purchase.status == PurchaseStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_order(self, refund_service):
        with pytest.raises(OrderNotFound):
            await refund_service.issue_full_refund(uuid4(), 2024)

    @pytest.mark.asyncio
    async def test_already_refunded_order_is_rejected(self, refund_service, stripe_client, customer, course, make_order):
        order = await make_order(customer, course, status=OrderStatus.REFUNDED)

        with pytest.raises(OrderNotRefundable):
            await refund_service.issue_full_refund(order.id, order.created_year)
        stripe_client.create_refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_order_without_payment_intent_is_rejected(self, refund_service, customer, course, make_order):
        order = await make_order(customer, course, payment_intent=None)

        with pytest.raises(OrderNotRefundable):
            await refund_service.issue_full_refund(order.id, order.created_year)

    @pytest.mark.asyncio
    async def test_webhook_after_operator_refund_is_duplicate(
        self, refund_service, session, stripe_client, customer, course, make_order, make_event
    ):
        order = await make_order(customer, course)
        await refund_service.issue_full_refund(order.id, order.created_year)

        event = make_event(
            EventType.CHARGE_REFUNDED,
            {"id": "ch_1", "payment_intent": "pi_123", "amount_refunded": 4900},
        )
        outcome = await WebhookService(session, stripe_client).process_event(event)

        assert outcome == EventOutcome.DUPLICATE
        refreshed = await session.get(Customer, customer.id, populate_existing=True)
        assert refreshed.total_spent_cents == 0


class TestPartialRefund:
    """issue_partial_refund."""

    @pytest.mark.asyncio
    async def test_partial_keeps_access(self, refund_service, session, stripe_client, customer, course, make_order):
        order = await make_order(customer, course)

        result = await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=1000, reason="late start")

        assert result.status == OrderStatus.PARTIALLY_REFUNDED
        assert result.refund_amount_cents == 1000
        stripe_client.create_refund.assert_awaited_once_with("pi_123", amount_cents=1000, reason="late start")
        purchase = await session.scalar(select(Purchase).where(Purchase.order_id == order.id))
        assert purchase.status == PurchaseStatus.ACTIVE
        await session.refresh(customer)
        assert customer.total_spent_cents == 4900

    @pytest.mark.asyncio
    async def test_partials_accumulate(self, refund_service, customer, course, make_order):
        order = await make_order(customer, course)

        await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=1000)
        result = await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=1500)

        assert result.refund_amount_cents == 2500
        assert result.status == OrderStatus.PARTIALLY_REFUNDED

    @pytest.mark.asyncio
    async def test_amount_reaching_total_is_rejected(self, refund_service, stripe_client, customer, course, make_order):
        order = await make_order(customer, course)
        await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=4000)

        with pytest.raises(RefundValidationError):
            await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=900)
        assert stripe_client.create_refund.await_count == 1

    @pytest.mark.asyncio
    async def test_non_positive_amount_is_rejected(self, refund_service, customer, course, make_order):
        order = await make_order(customer, course)

        with pytest.raises(RefundValidationError):
            await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=0)

    @pytest.mark.asyncio
    async def test_pending_order_is_rejected(self, refund_service, customer, course, make_order):
        order = await make_order(customer, course, status=OrderStatus.PENDING)

        with pytest.raises(OrderNotRefundable):
            await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=100)

    @pytest.mark.asyncio
    async def test_error_payload_is_a_validation_error(self, refund_service, customer, course, make_order):
        order = await make_order(customer, course)

        with pytest.raises(RefundValidationError) as exc_info:
            await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=4900)

        payload = exc_info.value.to_dict()
        assert payload["error"] == "VALIDATION_ERROR"
        assert exc_info.value.status_code == 400
        assert payload["details"]["total_cents"] == 4900

    @pytest.mark.asyncio
    async def test_full_refund_is_persisted(self, refund_service, session, customer, course, make_order):
        order = await make_order(customer, course)
        await refund_service.issue_full_refund(order.id, order.created_year)

        stored = await session.scalar(select(Order).where(Order.id == order.id))
        assert stored.status == OrderStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_amount_above_total_is_rejected(
        self, refund_service, session, stripe_client, customer, course, make_order
    ):
        order = await make_order(customer, course)

        with pytest.raises(RefundValidationError) as exc_info:
            await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=15000)

        assert exc_info.value.details["amount_cents"] == 15000
        stripe_client.create_refund.assert_not_awaited()
        await session.refresh(order)
        assert order.status == OrderStatus.PAID
        assert order.refund_amount_cents == 0


class TestConcurrentPartialRefunds:
    """A refund committed by another writer while Stripe is being called."""

    @staticmethod
    def commit_refund_elsewhere(session_factory, order, amount_cents):
        async def create_refund(*args, **kwargs):
            async with session_factory() as other:
                await LedgerService(other).apply_refund(order, amount_cents)
                await other.commit()
            return {"id": "re_123", "status": "succeeded"}

        return create_refund

    @pytest.mark.asyncio
    async def test_concurrent_refund_is_added_to(
        self, refund_service, session, session_factory, stripe_client, customer, course, make_order
    ):
        order = await make_order(customer, course)
        stripe_client.create_refund.side_effect = self.commit_refund_elsewhere(session_factory, order, 1000)

        result = await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=1000)

        assert result.refund_amount_cents == 2000
        assert result.status == OrderStatus.PARTIALLY_REFUNDED
        stored = await session.get(Order, (order.id, order.created_year), populate_existing=True)
        assert stored.refund_amount_cents == 2000

    @pytest.mark.asyncio
    async def test_limit_is_checked_against_locked_amount(
        self, refund_service, session, session_factory, stripe_client, customer, course, make_order
    ):
        order = await make_order(customer, course)
        order_key = (order.id, order.created_year)
        stripe_client.create_refund.side_effect = self.commit_refund_elsewhere(session_factory, order, 4000)

        with pytest.raises(RefundValidationError) as exc_info:
            await refund_service.issue_partial_refund(order.id, order.created_year, amount_cents=1000)

        assert exc_info.value.details["already_refunded_cents"] == 4000
        stored = await session.get(Order, order_key, populate_existing=True)
        assert stored.refund_amount_cents == 4000
        assert stored.status == OrderStatus.PARTIALLY_REFUNDED
