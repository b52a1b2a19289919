"""eSIM status reconciliation routes."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.api.dependencies import get_adapter_factory, get_session
from esim_reseller.db.models import SupplierName
from esim_reseller.models.order import (
    OrderOut,
    SupplierSyncResponse,
    SyncRequest,
    SyncResponse,
)
from esim_reseller.services.fulfillment import AdapterFactory
from esim_reseller.services.reconciliation import sync_order_status, sync_supplier_orders

router = APIRouter(prefix="/esims", tags=["esims"])


@router.post("/sync", response_model=SyncResponse)
async def sync_esim(
    request: SyncRequest,
    session: AsyncSession = Depends(get_session),
    get_adapter: AdapterFactory = Depends(get_adapter_factory),
) -> SyncResponse:
    """Refresh one eSIM's status from its supplier."""
    order, status, changed = await sync_order_status(session, request.iccid, get_adapter)
    return SyncResponse(changed=changed, order=OrderOut.model_validate(order), status=status)


@router.post("/sync/{supplier}", response_model=SupplierSyncResponse)
async def sync_supplier(
    supplier: SupplierName,
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    get_adapter: AdapterFactory = Depends(get_adapter_factory),
) -> SupplierSyncResponse:
    """Status sweep over a supplier's provisioned eSIMs."""
    return await sync_supplier_orders(session, supplier, limit=limit, get_adapter=get_adapter)
