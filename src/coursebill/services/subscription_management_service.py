"""Operator-initiated subscription cancellation."""

from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from coursebill.core import (
    StripeAPIError,
    StripeNotConfigured,
    SubscriptionCancelFailed,
    SubscriptionNotCancellable,
    SubscriptionNotFound,
    get_logger,
)
from coursebill.db import atomic
from coursebill.db.repositories import SubscriptionRepository
from coursebill.models import Subscription, SubscriptionStatus
from coursebill.services.ledger_service import LedgerService
from coursebill.services.stripe_client import StripeClient
from coursebill.utils.timestamps import utcnow

logger = get_logger(__name__)

ADMIN_CANCEL_REASON = "Subscription canceled by admin"


class SubscriptionManagementService:
    """Cancels subscriptions at Stripe and mirrors the result locally."""

    def __init__(self, session: AsyncSession, stripe_client: Optional[StripeClient] = None):
        self.session = session
        self.stripe = stripe_client or StripeClient()
        self.subscription_repo = SubscriptionRepository(session)
        self.ledger = LedgerService(session)

    async def cancel_subscription(
        self,
        subscription_id: UUID,
        cancel_at_period_end: bool,
        reason: Optional[str] = None,
    ) -> Subscription:
        """
        Cancel a live subscription.

        At period end: only the flag and canceled_at change; access lasts
        until Stripe sends the deletion event. Immediately: the subscription
        is finalized inline with the same routine the deletion event uses.

        Raises:
            SubscriptionNotFound: unknown subscription
            SubscriptionNotCancellable: not active/trialing, or not linked to Stripe
            SubscriptionCancelFailed: Stripe rejected the cancellation; nothing changed locally
        """
        subscription = await self.subscription_repo.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(details={"subscription_id": str(subscription_id)})

        if subscription.status not in SubscriptionStatus.LIVE:
            raise SubscriptionNotCancellable(
                message="Subscription is not active or trialing",
                details={"subscription_id": str(subscription_id), "status": subscription.status},
            )
        if not subscription.stripe_subscription_id:
            raise SubscriptionNotCancellable(
                message="Subscription has no Stripe subscription linked",
                details={"subscription_id": str(subscription_id)},
            )

        try:
            await self.stripe.cancel_subscription(subscription.stripe_subscription_id, cancel_at_period_end)
        except (StripeAPIError, StripeNotConfigured) as e:
            logger.error(
                "Stripe subscription cancellation failed",
                subscription_id=str(subscription_id),
                error=e.message,
            )
            raise SubscriptionCancelFailed(
                message="Stripe cancellation request failed",
                details={"subscription_id": str(subscription_id), "stripe_error": e.message},
            ) from e

        async with atomic(self.session):
            if cancel_at_period_end:
                subscription = await self.subscription_repo.get_by_id(subscription_id, for_update=True)
                subscription.cancel_at_period_end = True
                subscription.canceled_at = utcnow()
            else:
                await self.ledger.finalize_cancellation(subscription_id, reason=reason or ADMIN_CANCEL_REASON)

        if cancel_at_period_end:
            logger.info("Subscription set to cancel at period end", subscription_id=str(subscription_id))
        else:
            logger.info(
                "Subscription canceled immediately",
                subscription_id=str(subscription_id),
                customer_id=str(subscription.customer_id),
            )
        return subscription
