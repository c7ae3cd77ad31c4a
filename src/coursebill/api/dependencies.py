"""FastAPI dependencies."""

from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.db import get_db_session
from coursebill.services.access_service import AccessService
from coursebill.services.catalog_service import CatalogService
from coursebill.services.checkout_service import CheckoutService
from coursebill.services.refund_service import RefundService
from coursebill.services.stripe_client import StripeClient
from coursebill.services.subscription_management_service import SubscriptionManagementService
from coursebill.services.webhook_service import WebhookService


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with get_db_session() as session:
        yield session


def get_stripe_client() -> StripeClient:
    """Stripe client built from settings. Overridden in tests."""
    return StripeClient()


def get_webhook_service(
    session: AsyncSession = Depends(get_session),
    stripe: StripeClient = Depends(get_stripe_client),
) -> WebhookService:
    return WebhookService(session, stripe)


def get_checkout_service(
    session: AsyncSession = Depends(get_session),
    stripe: StripeClient = Depends(get_stripe_client),
) -> CheckoutService:
    return CheckoutService(session, stripe)


def get_catalog_service(
    session: AsyncSession = Depends(get_session),
    stripe: StripeClient = Depends(get_stripe_client),
) -> CatalogService:
    return CatalogService(session, stripe)


def get_refund_service(
    session: AsyncSession = Depends(get_session),
    stripe: StripeClient = Depends(get_stripe_client),
) -> RefundService:
    return RefundService(session, stripe)


def get_subscription_management_service(
    session: AsyncSession = Depends(get_session),
    stripe: StripeClient = Depends(get_stripe_client),
) -> SubscriptionManagementService:
    return SubscriptionManagementService(session, stripe)


def get_access_service(session: AsyncSession = Depends(get_session)) -> AccessService:
    return AccessService(session)
