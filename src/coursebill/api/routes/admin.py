"""Operator routes: refunds, cancellations and the plan catalog."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query

from coursebill.api.dependencies import (
    get_catalog_service,
    get_refund_service,
    get_subscription_management_service,
)
from coursebill.api.middleware.auth import Principal, require_admin
from coursebill.api.schemas import (
    CancelSubscriptionRequest,
    OrderResponse,
    PlanCreateRequest,
    PlanResponse,
    PlanUpdateRequest,
    ProductPriceRequest,
    ProductResponse,
    RefundRequest,
    SubscriptionResponse,
)
from coursebill.core import get_logger
from coursebill.services.catalog_service import CatalogService
from coursebill.services.refund_service import RefundService
from coursebill.services.subscription_management_service import SubscriptionManagementService

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ============ Refunds ============


@router.post("/orders/{order_id}/refund", response_model=OrderResponse)
async def refund_order(
    order_id: UUID,
    data: RefundRequest,
    principal: Principal = Depends(require_admin),
    service: RefundService = Depends(get_refund_service),
):
    """Issue a full or partial refund."""
    logger.info("Refund requested", order_id=str(order_id), type=data.type, actor=str(principal.subject))
    if data.type == "full":
        return await service.issue_full_refund(order_id, data.order_year, reason=data.reason)
    return await service.issue_partial_refund(
        order_id, data.order_year, amount_cents=data.amount_cents, reason=data.reason
    )


# ============ Subscriptions ============


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: UUID,
    data: CancelSubscriptionRequest,
    principal: Principal = Depends(require_admin),
    service: SubscriptionManagementService = Depends(get_subscription_management_service),
):
    logger.info(
        "Subscription cancellation requested",
        subscription_id=str(subscription_id),
        at_period_end=data.cancel_at_period_end,
        actor=str(principal.subject),
    )
    return await service.cancel_subscription(
        subscription_id, cancel_at_period_end=data.cancel_at_period_end, reason=data.reason
    )


# ============ Plans ============


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(
    include_archived: bool = Query(default=False),
    principal: Principal = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.list_plans(include_archived=include_archived)


@router.post("/plans", response_model=PlanResponse, status_code=201)
async def create_plan(
    data: PlanCreateRequest,
    principal: Principal = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.create_plan(**data.model_dump())


@router.patch("/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: UUID,
    data: PlanUpdateRequest,
    principal: Principal = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.update_plan(plan_id, data.model_dump(exclude_unset=True))


@router.post("/plans/{plan_id}/archive", response_model=PlanResponse)
async def archive_plan(
    plan_id: UUID,
    principal: Principal = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.archive_plan(plan_id)


@router.post("/plans/{plan_id}/unarchive", response_model=PlanResponse)
async def unarchive_plan(
    plan_id: UUID,
    principal: Principal = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.unarchive_plan(plan_id)


@router.post("/plans/{plan_id}/sync-stripe", response_model=PlanResponse)
async def sync_plan(
    plan_id: UUID,
    principal: Principal = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.sync_plan_to_stripe(plan_id)


# ============ Products ============


@router.post("/products/{product_id}/sync-stripe", response_model=ProductResponse)
async def sync_product(
    product_id: UUID,
    principal: Principal = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.sync_course_product_to_stripe(product_id)


@router.patch("/products/{product_id}/price", response_model=ProductResponse)
async def update_product_price(
    product_id: UUID,
    data: ProductPriceRequest,
    principal: Principal = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    return await service.update_course_price(product_id, data.amount_cents)
