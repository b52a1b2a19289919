"""Orders API routes."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.api.dependencies import get_adapter_factory, get_agent_id, get_session
from esim_reseller.models.order import (
    OrderOut,
    ProvisionOutcome,
    ProvisionRequest,
    PurchaseRequest,
    PurchaseResponse,
    RetrySweepResponse,
)
from esim_reseller.services import ledger
from esim_reseller.services.fulfillment import (
    AdapterFactory,
    provision_order,
    purchase_plan,
    retry_scheduled_orders,
)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=PurchaseResponse)
async def create_order(
    request: PurchaseRequest,
    agent_id: str = Depends(get_agent_id),
    session: AsyncSession = Depends(get_session),
    get_adapter: AdapterFactory = Depends(get_adapter_factory),
) -> PurchaseResponse:
    """Buy one plan from the wallet and provision it."""
    order, outcome = await purchase_plan(
        session, agent_id, request.plan_id, request.customer, get_adapter=get_adapter
    )
    balance = await ledger.get_balance(session, agent_id)
    return PurchaseResponse(outcome=outcome, order=OrderOut.model_validate(order), balance=balance)


@router.post("/provision", response_model=ProvisionOutcome)
async def provision(
    request: ProvisionRequest,
    session: AsyncSession = Depends(get_session),
    get_adapter: AdapterFactory = Depends(get_adapter_factory),
) -> ProvisionOutcome:
    """Provision an order that was already paid for."""
    return await provision_order(
        session, request.order_id, plan_id=request.plan_id, get_adapter=get_adapter
    )


@router.post("/retry", response_model=RetrySweepResponse)
async def retry_orders(
    batch_size: int | None = Query(None, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    get_adapter: AdapterFactory = Depends(get_adapter_factory),
) -> RetrySweepResponse:
    """Re-attempt orders scheduled for retry after a busy supplier."""
    processed, results = await retry_scheduled_orders(
        session, get_adapter=get_adapter, batch_size=batch_size
    )
    return RetrySweepResponse(processed=processed, results=results)
