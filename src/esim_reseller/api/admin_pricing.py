"""Admin routes for per-agent retail price overrides."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.api.dependencies import get_session
from esim_reseller.core.exceptions import AgentPricingNotFoundException
from esim_reseller.models.pricing import (
    AgentPricingIn,
    AgentPricingOut,
    BulkAgentPricingRequest,
)
from esim_reseller.services import pricing

router = APIRouter(prefix="/admin/agent-pricing", tags=["admin"])


@router.get("", response_model=list[AgentPricingOut])
async def list_overrides(
    agent_id: str | None = Query(None, description="Filter by agent"),
    session: AsyncSession = Depends(get_session),
) -> list[AgentPricingOut]:
    rows = await pricing.list_agent_pricing(session, agent_id)
    return [AgentPricingOut.model_validate(row) for row in rows]


@router.put("", response_model=AgentPricingOut)
async def upsert_override(
    request: AgentPricingIn,
    session: AsyncSession = Depends(get_session),
) -> AgentPricingOut:
    """Create or replace the override for one (agent, plan)."""
    row = await pricing.upsert_agent_pricing(session, request)
    return AgentPricingOut.model_validate(row)


@router.post("/bulk", response_model=list[AgentPricingOut])
async def bulk_replace(
    request: BulkAgentPricingRequest,
    session: AsyncSession = Depends(get_session),
) -> list[AgentPricingOut]:
    """Replace all overrides of an agent in one transaction."""
    rows = await pricing.bulk_replace_agent_pricing(session, request.agent_id, request.prices)
    return [AgentPricingOut.model_validate(row) for row in rows]


@router.delete("/{pricing_id}")
async def delete_override(
    pricing_id: str,
    session: AsyncSession = Depends(get_session),
) -> dict[str, bool]:
    if not await pricing.delete_agent_pricing(session, pricing_id):
        raise AgentPricingNotFoundException(f"Agent pricing '{pricing_id}' not found")
    return {"success": True}
