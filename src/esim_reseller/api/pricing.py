"""Agent-facing price quotes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.api.dependencies import get_agent_id, get_session
from esim_reseller.models.pricing import PlanQuoteRequest, PlanQuoteResponse
from esim_reseller.services import pricing

router = APIRouter(prefix="/pricing", tags=["pricing"])


@router.post("/quote", response_model=PlanQuoteResponse)
async def quote(
    request: PlanQuoteRequest,
    agent_id: str = Depends(get_agent_id),
    session: AsyncSession = Depends(get_session),
) -> PlanQuoteResponse:
    """Retail prices the calling agent would pay for each plan."""
    return await pricing.quote_plans(session, agent_id, request.plan_ids)
