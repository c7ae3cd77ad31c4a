"""Customer-facing checkout routes."""

from fastapi import APIRouter, Depends

from coursebill.api.dependencies import get_checkout_service
from coursebill.api.middleware.auth import Principal, get_current_principal
from coursebill.api.schemas import (
    CheckoutSessionResponse,
    CreateCheckoutRequest,
    CreateCourseCheckoutRequest,
    PlanResponse,
    PortalSessionResponse,
    SubscriptionStatusResponse,
)
from coursebill.services.checkout_service import CheckoutService

router = APIRouter(tags=["checkout"])


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(service: CheckoutService = Depends(get_checkout_service)):
    """List plans open for subscription."""
    return await service.get_active_plans()


@router.post("/checkout/session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    data: CreateCheckoutRequest,
    principal: Principal = Depends(get_current_principal),
    service: CheckoutService = Depends(get_checkout_service),
):
    return await service.create_checkout_session(
        customer_id=principal.customer_id,
        price_id=data.price_id,
        promotion_code=data.promotion_code,
        is_mobile=data.is_mobile,
    )


@router.post("/checkout/course-session", response_model=CheckoutSessionResponse)
async def create_course_checkout_session(
    data: CreateCourseCheckoutRequest,
    principal: Principal = Depends(get_current_principal),
    service: CheckoutService = Depends(get_checkout_service),
):
    return await service.create_course_checkout_session(
        customer_id=principal.customer_id,
        product_id=data.product_id,
        promotion_code=data.promotion_code,
        is_mobile=data.is_mobile,
    )


@router.post("/checkout/portal", response_model=PortalSessionResponse)
async def create_portal_session(
    principal: Principal = Depends(get_current_principal),
    service: CheckoutService = Depends(get_checkout_service),
):
    return await service.create_portal_session(principal.customer_id)


@router.get("/checkout/subscription-status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    principal: Principal = Depends(get_current_principal),
    service: CheckoutService = Depends(get_checkout_service),
):
    return await service.get_subscription_status(principal.customer_id)
