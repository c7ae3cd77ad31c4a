"""Shared fixtures: an in-memory ledger, a seeded catalog and a fake Stripe client."""

import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from coursebill.models import (
    Base,
    Customer,
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    Product,
    Purchase,
    Subscription,
    SubscriptionPlan,
    SubscriptionPlanProduct,
    SubscriptionStatus,
)
from coursebill.services.events import StripeEvent
from coursebill.services.stripe_client import StripeClient
from coursebill.utils.timestamps import utcnow


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite shared by every connection of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def stripe_client():
    """StripeClient double; async methods are AsyncMocks."""
    client = MagicMock(spec=StripeClient)
    client.create_customer.return_value = {"id": "cus_new"}
    client.create_product.return_value = {"id": "prod_new"}
    client.create_price.return_value = {"id": "price_new"}
    client.archive_price.return_value = {"id": "price_old", "active": False}
    client.create_refund.return_value = {"id": "re_123", "status": "succeeded"}
    client.cancel_subscription.return_value = {"id": "sub_123"}
    client.create_checkout_session.return_value = {"id": "cs_sub", "url": "https://checkout.stripe.com/c/cs_sub"}
    client.create_one_time_checkout_session.return_value = {
        "id": "cs_pay",
        "url": "https://checkout.stripe.com/c/cs_pay",
    }
    client.create_portal_session.return_value = {"url": "https://billing.stripe.com/p/session"}
    return client


# ============ Catalog ============


@pytest_asyncio.fixture
async def customer(session):
    customer = Customer(email="ada@example.com", first_name="Ada", last_name="Lovelace", stripe_customer_id="cus_ada")
    session.add(customer)
    await session.commit()
    return customer


@pytest_asyncio.fixture
async def course(session):
    product = Product(
        name="Intro to Watercolor",
        amount_cents=4900,
        currency="usd",
        stripe_product_id="prod_course",
        stripe_price_id="price_course",
    )
    session.add(product)
    await session.commit()
    return product


@pytest_asyncio.fixture
async def plan(session, course):
    """Monthly plan that includes `course`."""
    plan = SubscriptionPlan(
        name="All Access",
        amount_cents=1900,
        currency="usd",
        recurring_interval="month",
        stripe_product_id="prod_plan",
        stripe_price_id="price_plan",
    )
    session.add(plan)
    await session.flush()
    session.add(SubscriptionPlanProduct(plan_id=plan.id, product_id=course.id))
    await session.commit()
    return plan


# ============ Ledger rows ============


@pytest.fixture
def make_order(session):
    async def _make_order(customer, product, total_cents=4900, status=OrderStatus.PAID, payment_intent="pi_123"):
        order = Order(
            order_number=f"CB-TEST-{payment_intent}",
            customer_id=customer.id,
            status=status,
            order_type=OrderType.CHECKOUT,
            currency="usd",
            subtotal_cents=total_cents,
            total_cents=total_cents,
            amount_due_cents=total_cents,
            stripe_payment_intent_id=payment_intent,
            paid_at=utcnow(),
        )
        session.add(order)
        await session.flush()
        session.add(
            OrderItem(
                order_id=order.id,
                order_year=order.created_year,
                product_id=product.id,
                unit_amount_cents=total_cents,
                total_cents=total_cents,
            )
        )
        session.add(
            Purchase(
                customer_id=customer.id,
                product_id=product.id,
                order_id=order.id,
                order_year=order.created_year,
                unit_amount_cents=total_cents,
                is_lifetime=True,
            )
        )
        customer.total_orders = (customer.total_orders or 0) + 1
        customer.total_spent_cents = (customer.total_spent_cents or 0) + total_cents
        await session.commit()
        return order

    return _make_order


@pytest.fixture
def make_subscription(session):
    async def _make_subscription(customer, plan, stripe_id="sub_123", status=SubscriptionStatus.ACTIVE, days_left=20):
        now = utcnow()
        subscription = Subscription(
            customer_id=customer.id,
            plan_id=plan.id if plan else None,
            status=status,
            unit_amount_cents=plan.amount_cents if plan else 0,
            current_period_start=now - timedelta(days=10),
            current_period_end=now + timedelta(days=days_left),
            stripe_subscription_id=stripe_id,
        )
        session.add(subscription)
        await session.flush()
        if plan is not None:
            session.add(
                Purchase(
                    customer_id=customer.id,
                    product_id=(await _first_product(session, plan)),
                    subscription_id=subscription.id,
                    unit_amount_cents=plan.amount_cents,
                )
            )
        customer.active_subscriptions = (customer.active_subscriptions or 0) + 1
        await session.commit()
        return subscription

    return _make_subscription


async def _first_product(session, plan):
    from coursebill.db.repositories import PlanRepository

    return await PlanRepository(session).get_first_product_id(plan.id)


# ============ Events ============


@pytest.fixture
def make_event():
    counter = {"n": 0}

    def _make_event(event_type, data_object, created=None):
        counter["n"] += 1
        return StripeEvent.model_validate(
            {
                "id": f"evt_{counter['n']}",
                "type": event_type,
                "created": created if created is not None else int(time.time()),
                "data": {"object": data_object},
            }
        )

    return _make_event
