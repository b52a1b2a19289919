from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.api.dependencies import get_adapter_factory, get_agent_id, get_session
from esim_reseller.models.order import TopupRequest, TopupResponse
from esim_reseller.services.fulfillment import AdapterFactory, purchase_topup

router = APIRouter(prefix="/topups", tags=["topups"])


@router.post("", response_model=TopupResponse)
async def create_topup(
    request: TopupRequest,
    agent_id: str = Depends(get_agent_id),
    session: AsyncSession = Depends(get_session),
    get_adapter: AdapterFactory = Depends(get_adapter_factory),
) -> TopupResponse:
    """Add a data package to an eSIM the agent already sold."""
    return await purchase_topup(
        session, agent_id, request.iccid, request.package_code, get_adapter=get_adapter
    )
