"""Pricing models."""

from decimal import Decimal

from pydantic import BaseModel, Field


class PriceQuote(BaseModel):
    """A resolved retail price and where it came from."""

    wholesale_price: Decimal
    retail_price: Decimal
    source: str  # agent_pricing | pricing_rule | agent_markup | default
    markup_type: str | None = None
    markup_value: Decimal | None = None
    rule_id: int | None = None


class AgentPricingIn(BaseModel):
    agent_id: str
    plan_id: str
    retail_price: Decimal = Field(..., gt=0)


class AgentPricingOut(BaseModel):
    id: str
    agent_id: str
    plan_id: str
    retail_price: Decimal

    model_config = {"from_attributes": True}


class BulkAgentPricingRequest(BaseModel):
    """Replace every override of one agent with the given set."""

    agent_id: str
    prices: list[AgentPricingIn] = []


class PlanQuoteRequest(BaseModel):
    plan_ids: list[str] = Field(..., min_length=1, max_length=200)


class PlanPrice(BaseModel):
    plan_id: str
    title: str
    retail_price: Decimal
    source: str


class PlanQuoteResponse(BaseModel):
    """Prices for the requested plans, in request order.

    Unknown and inactive plans are listed in ``missing`` instead.
    """

    prices: list[PlanPrice] = []
    missing: list[str] = []
