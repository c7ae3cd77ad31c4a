"""Entitlement check routes."""

from uuid import UUID

from fastapi import APIRouter, Depends

from coursebill.api.dependencies import get_access_service
from coursebill.api.middleware.auth import Principal, get_current_principal
from coursebill.api.schemas import AccessResponse
from coursebill.services.access_service import AccessService

router = APIRouter(prefix="/access", tags=["access"])


@router.get("", response_model=list[dict])
async def list_entitlements(
    principal: Principal = Depends(get_current_principal),
    service: AccessService = Depends(get_access_service),
):
    """Active purchases of the calling customer."""
    return await service.list_active_entitlements(principal.customer_id)


@router.get("/{product_id}", response_model=AccessResponse)
async def check_access(
    product_id: UUID,
    principal: Principal = Depends(get_current_principal),
    service: AccessService = Depends(get_access_service),
):
    has_access = await service.has_access(principal.customer_id, product_id)
    return AccessResponse(product_id=product_id, has_access=has_access)
