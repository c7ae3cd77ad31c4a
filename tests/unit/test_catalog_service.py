"""Tests for the plan/product catalog and its Stripe sync."""

from uuid import uuid4

import pytest

from coursebill.core import InvalidRequest, PlanNotFound, ProductNotFound, StripeAPIError, StripeSyncFailed
from coursebill.models import Product, SubscriptionPlan
from coursebill.services.catalog_service import CatalogService


@pytest.fixture
def catalog(session, stripe_client):
    return CatalogService(session, stripe_client)


@pytest.fixture
def unsynced_plan(session):
    async def _unsynced_plan(name="Monthly", amount_cents=2900):
        plan = SubscriptionPlan(name=name, amount_cents=amount_cents, currency="usd", recurring_interval="month")
        session.add(plan)
        await session.commit()
        return plan

    return _unsynced_plan


# =============================================================================
# PLAN SYNC
# =============================================================================


class TestSyncPlan:
    """sync_plan_to_stripe."""

    @pytest.mark.asyncio
    async def test_creates_product_and_recurring_price(self, catalog, stripe_client, unsynced_plan):
        plan = await unsynced_plan()

        result = await catalog.sync_plan_to_stripe(plan.id)

        assert result.stripe_product_id == "prod_new"
        assert result.stripe_price_id == "price_new"
        stripe_client.create_product.assert_awaited_once_with(
            name="Monthly", description=None, metadata={"plan_id": str(plan.id)}
        )
        stripe_client.create_price.assert_awaited_once_with(
            product_id="prod_new",
            unit_amount=2900,
            currency="usd",
            recurring_interval="month",
            recurring_interval_count=1,
        )

    @pytest.mark.asyncio
    async def test_already_synced_plan_is_untouched(self, catalog, stripe_client, plan):
        result = await catalog.sync_plan_to_stripe(plan.id)

        assert result.stripe_price_id == "price_plan"
        stripe_client.create_product.assert_not_awaited()
        stripe_client.create_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_free_plan_is_never_synced(self, catalog, stripe_client, unsynced_plan):
        plan = await unsynced_plan(name="Free", amount_cents=0)

        result = await catalog.sync_plan_to_stripe(plan.id)

        assert result.stripe_price_id is None
        stripe_client.create_product.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_price_failure_keeps_remote_product_for_retry(self, catalog, session, stripe_client, unsynced_plan):
        plan = await unsynced_plan()
        stripe_client.create_price.side_effect = StripeAPIError(message="Invalid currency", remote_status=400)

        with pytest.raises(StripeSyncFailed):
            await catalog.sync_plan_to_stripe(plan.id)

        await session.refresh(plan)
        assert plan.stripe_product_id == "prod_new"
        assert plan.stripe_price_id is None

        stripe_client.create_price.side_effect = None
        stripe_client.create_price.return_value = {"id": "price_retry"}
        result = await catalog.sync_plan_to_stripe(plan.id)

        assert result.stripe_price_id == "price_retry"
        assert stripe_client.create_product.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_plan(self, catalog):
        with pytest.raises(PlanNotFound):
            await catalog.sync_plan_to_stripe(uuid4())


class TestSyncAllPlans:
    """sync_all_plans."""

    @pytest.mark.asyncio
    async def test_reports_each_plan(self, catalog, stripe_client, plan, unsynced_plan):
        first = await unsynced_plan(name="Monthly")
        second = await unsynced_plan(name="Yearly", amount_cents=29000)
        await unsynced_plan(name="Free", amount_cents=0)

        async def create_product(name, **kwargs):
            return {"id": f"prod_{name.lower()}"}

        async def create_price(product_id, **kwargs):
            if product_id == "prod_yearly":
                raise StripeAPIError(message="Rate limited", remote_status=429)
            return {"id": "price_monthly"}

        stripe_client.create_product.side_effect = create_product
        stripe_client.create_price.side_effect = create_price

        results = await catalog.sync_all_plans()

        by_name = {result["name"]: result for result in results}
        assert set(by_name) == {"Monthly", "Yearly"}
        assert by_name["Monthly"]["status"] == "synced"
        assert by_name["Monthly"]["plan_id"] == str(first.id)
        assert by_name["Monthly"]["stripe_price_id"] == "price_monthly"
        assert by_name["Yearly"]["status"] == "failed"
        assert by_name["Yearly"]["plan_id"] == str(second.id)


# =============================================================================
# PLAN LIFECYCLE
# =============================================================================


class TestCreatePlan:
    """create_plan."""

    @pytest.mark.asyncio
    async def test_creates_links_and_syncs(self, catalog, stripe_client, course):
        plan = await catalog.create_plan(
            name="Pro",
            amount_cents=3900,
            recurring_interval="year",
            currency="USD",
            product_ids=[course.id, course.id],
        )

        assert plan.currency == "usd"
        assert plan.stripe_price_id == "price_new"
        assert await catalog.get_plan_product_ids(plan.id) == [course.id]
        assert stripe_client.create_price.await_args.kwargs["recurring_interval"] == "year"

    @pytest.mark.asyncio
    async def test_invalid_interval_is_rejected(self, catalog, stripe_client):
        with pytest.raises(InvalidRequest):
            await catalog.create_plan(name="Odd", amount_cents=100, recurring_interval="fortnight")
        stripe_client.create_product.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_failure_leaves_local_plan_unsynced(self, catalog, stripe_client):
        stripe_client.create_product.side_effect = StripeAPIError(message="Invalid API key", remote_status=401)

        with pytest.raises(StripeSyncFailed):
            await catalog.create_plan(name="Pro", amount_cents=3900)

        plans = await catalog.list_plans()
        assert [p.name for p in plans] == ["Pro"]
        assert plans[0].stripe_product_id is None


class TestUpdatePlan:
    """update_plan."""

    @pytest.mark.asyncio
    async def test_metadata_change_updates_remote_product(self, catalog, stripe_client, plan):
        result = await catalog.update_plan(plan.id, {"name": "All Access+"})

        assert result.name == "All Access+"
        assert result.stripe_price_id == "price_plan"
        stripe_client.update_product.assert_awaited_once_with("prod_plan", name="All Access+", description=None)
        stripe_client.create_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_price_change_replaces_remote_price(self, catalog, stripe_client, plan):
        result = await catalog.update_plan(plan.id, {"amount_cents": 2400})

        assert result.amount_cents == 2400
        assert result.stripe_price_id == "price_new"
        stripe_client.create_price.assert_awaited_once_with(
            product_id="prod_plan",
            unit_amount=2400,
            currency="usd",
            recurring_interval="month",
            recurring_interval_count=1,
        )
        stripe_client.archive_price.assert_awaited_once_with("price_plan")

    @pytest.mark.asyncio
    async def test_remote_failure_leaves_local_fields(self, catalog, session, stripe_client, plan):
        stripe_client.create_price.side_effect = StripeAPIError(message="Stripe unavailable", remote_status=503)

        with pytest.raises(StripeSyncFailed):
            await catalog.update_plan(plan.id, {"amount_cents": 2400, "name": "Renamed"})

        await session.refresh(plan)
        assert plan.amount_cents == 1900
        assert plan.name == "All Access"
        assert plan.stripe_price_id == "price_plan"

    @pytest.mark.asyncio
    async def test_local_only_fields_skip_stripe(self, catalog, stripe_client, plan):
        result = await catalog.update_plan(plan.id, {"trial_days": 7, "is_active": False})

        assert result.trial_days == 7
        assert result.is_active is False
        stripe_client.update_product.assert_not_awaited()
        stripe_client.create_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replaces_product_links(self, catalog, session, plan, course):
        other = Product(name="Ink Drawing", amount_cents=2900)
        session.add(other)
        await session.commit()

        await catalog.update_plan(plan.id, {"product_ids": [other.id]})

        assert await catalog.get_plan_product_ids(plan.id) == [other.id]


class TestArchivePlan:
    """archive_plan / unarchive_plan."""

    @pytest.mark.asyncio
    async def test_archive_retires_price_and_hides_plan(self, catalog, stripe_client, plan):
        result = await catalog.archive_plan(plan.id)

        assert result.is_archived is True
        stripe_client.archive_price.assert_awaited_once_with("price_plan")
        assert await catalog.list_plans() == []
        assert len(await catalog.list_plans(include_archived=True)) == 1

    @pytest.mark.asyncio
    async def test_archive_survives_remote_failure(self, catalog, stripe_client, plan):
        stripe_client.archive_price.side_effect = StripeAPIError(message="No such price", remote_status=404)

        result = await catalog.archive_plan(plan.id)

        assert result.is_archived is True

    @pytest.mark.asyncio
    async def test_unarchive(self, catalog, plan):
        await catalog.archive_plan(plan.id)

        result = await catalog.unarchive_plan(plan.id)

        assert result.is_archived is False


# =============================================================================
# COURSE PRODUCTS
# =============================================================================


class TestCourseProducts:
    """sync_course_product_to_stripe / update_course_price."""

    @pytest.mark.asyncio
    async def test_sync_creates_one_time_price(self, catalog, session, stripe_client):
        product = Product(name="Portrait Basics", amount_cents=5900)
        session.add(product)
        await session.commit()

        result = await catalog.sync_course_product_to_stripe(product.id)

        assert result.stripe_price_id == "price_new"
        stripe_client.create_product.assert_awaited_once_with(
            name="Portrait Basics", description=None, metadata={"product_id": str(product.id)}
        )
        stripe_client.create_price.assert_awaited_once_with(product_id="prod_new", unit_amount=5900, currency="usd")

    @pytest.mark.asyncio
    async def test_free_product_is_never_synced(self, catalog, session, stripe_client):
        product = Product(name="Welcome Lesson", amount_cents=0)
        session.add(product)
        await session.commit()

        result = await catalog.sync_course_product_to_stripe(product.id)

        assert result.stripe_product_id is None
        stripe_client.create_product.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_product(self, catalog):
        with pytest.raises(ProductNotFound):
            await catalog.sync_course_product_to_stripe(uuid4())

    @pytest.mark.asyncio
    async def test_price_update_replaces_remote_price(self, catalog, stripe_client, course):
        result = await catalog.update_course_price(course.id, 6900)

        assert result.amount_cents == 6900
        assert result.stripe_price_id == "price_new"
        stripe_client.create_price.assert_awaited_once_with(product_id="prod_course", unit_amount=6900, currency="usd")
        stripe_client.archive_price.assert_awaited_once_with("price_course")

    @pytest.mark.asyncio
    async def test_price_update_failure_keeps_old_price(self, catalog, session, stripe_client, course):
        stripe_client.archive_price.side_effect = StripeAPIError(message="Stripe unavailable", remote_status=503)

        with pytest.raises(StripeSyncFailed):
            await catalog.update_course_price(course.id, 6900)

        await session.refresh(course)
        assert course.amount_cents == 4900
        assert course.stripe_price_id == "price_course"

    @pytest.mark.asyncio
    async def test_unsynced_product_updates_locally(self, catalog, session, stripe_client):
        product = Product(name="Draft Course", amount_cents=1000)
        session.add(product)
        await session.commit()

        result = await catalog.update_course_price(product.id, 1500)

        assert result.amount_cents == 1500
        stripe_client.create_price.assert_not_awaited()
