"""Retail price resolution.

Order of precedence for an (agent, plan) pair:

1. An ``AgentPricing`` override, returned verbatim.
2. The most specific active ``PricingRule``: a plan rule filtered to the
   agent, then an agent rule, then a plan rule, then a country rule, then a
   default rule. Within one level the lowest ``priority`` wins, then the
   lowest id.
3. The agent's own markup.
4. 300% percent markup.
"""

from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.config import settings
from esim_reseller.core.exceptions import (
    AgentNotFoundException,
    PlanNotFoundException,
    ValidationException,
)
from esim_reseller.core.logging import get_logger
from esim_reseller.core.utils import to_money
from esim_reseller.db.models import (
    Agent,
    AgentPricing,
    MarkupType,
    Plan,
    PricingRule,
    RuleType,
)
from esim_reseller.models.pricing import AgentPricingIn, PlanPrice, PlanQuoteResponse, PriceQuote
from esim_reseller.services import audit

logger = get_logger(__name__)

# Specificity levels, most specific first
_AGENT_PLAN = 0
_AGENT = 1
_PLAN = 2
_COUNTRY = 3
_DEFAULT = 4


def calculate_retail_price(
    wholesale: Decimal,
    markup_type: MarkupType | str,
    markup_value: Decimal,
) -> Decimal:
    """Apply a markup. Rounds half-up to cents once, at the end."""
    wholesale = Decimal(wholesale)
    value = Decimal(markup_value)
    kind = MarkupType(markup_type)

    if kind == MarkupType.PERCENT:
        retail = wholesale * (Decimal(1) + value / Decimal(100))
    elif kind == MarkupType.FIXED:
        retail = wholesale + value
    else:
        retail = value

    return to_money(retail)


def _specificity(rule: PricingRule, agent: Agent, plan: Plan) -> int | None:
    """Level at which ``rule`` applies to this purchase, or None."""
    if rule.rule_type == RuleType.AGENT:
        return _AGENT if rule.target_id == agent.id else None

    if rule.rule_type == RuleType.PLAN:
        if plan.id not in (rule.plan_id, rule.target_id):
            return None
        if rule.agent_filter is None:
            return _PLAN
        return _AGENT_PLAN if rule.agent_filter == agent.id else None

    if rule.rule_type == RuleType.COUNTRY:
        target = (rule.target_id or "").upper()
        return _COUNTRY if target and target == plan.country_code.upper() else None

    if rule.rule_type == RuleType.DEFAULT:
        return _DEFAULT

    return None


def select_rule(rules: list[PricingRule], agent: Agent, plan: Plan) -> PricingRule | None:
    """Pick the winning rule. Deterministic for any input order."""
    candidates = []
    for rule in rules:
        if not rule.is_active:
            continue
        level = _specificity(rule, agent, plan)
        if level is not None:
            candidates.append((level, rule.priority, rule.id or 0, rule))

    if not candidates:
        return None
    return min(candidates, key=lambda c: c[:3])[3]


async def resolve_retail_price(
    session: AsyncSession,
    agent: Agent,
    plan: Plan,
    wholesale: Decimal | None = None,
) -> PriceQuote:
    """Resolve the retail price an agent pays for a plan.

    ``wholesale`` overrides the catalog price, for top-ups priced from a
    live supplier quote.
    """
    wholesale = Decimal(plan.wholesale_price if wholesale is None else wholesale)

    override = await session.scalar(
        select(AgentPricing).where(
            AgentPricing.agent_id == agent.id,
            AgentPricing.plan_id == plan.id,
        )
    )
    if override is not None:
        return PriceQuote(
            wholesale_price=wholesale,
            retail_price=to_money(Decimal(override.retail_price)),
            source="agent_pricing",
        )

    result = await session.execute(select(PricingRule).where(PricingRule.is_active.is_(True)))
    rule = select_rule(list(result.scalars().all()), agent, plan)
    if rule is not None:
        return PriceQuote(
            wholesale_price=wholesale,
            retail_price=calculate_retail_price(wholesale, rule.markup_type, rule.markup_value),
            source="pricing_rule",
            markup_type=rule.markup_type.value,
            markup_value=rule.markup_value,
            rule_id=rule.id,
        )

    if agent.markup_type is not None and agent.markup_value is not None:
        return PriceQuote(
            wholesale_price=wholesale,
            retail_price=calculate_retail_price(wholesale, agent.markup_type, agent.markup_value),
            source="agent_markup",
            markup_type=agent.markup_type.value,
            markup_value=agent.markup_value,
        )

    return PriceQuote(
        wholesale_price=wholesale,
        retail_price=calculate_retail_price(
            wholesale, MarkupType.PERCENT, settings.default_markup_percent
        ),
        source="default",
        markup_type=MarkupType.PERCENT.value,
        markup_value=settings.default_markup_percent,
    )


async def quote_plans(session: AsyncSession, agent_id: str, plan_ids: list[str]) -> PlanQuoteResponse:
    """Retail prices for a batch of plans, as the agent would be charged."""
    agent = await session.get(Agent, agent_id)
    if agent is None:
        raise AgentNotFoundException(f"Agent '{agent_id}' not found")

    wanted = list(dict.fromkeys(plan_ids))
    result = await session.execute(select(Plan).where(Plan.id.in_(wanted), Plan.is_active.is_(True)))
    plans = {plan.id: plan for plan in result.scalars().all()}

    response = PlanQuoteResponse()
    for plan_id in wanted:
        plan = plans.get(plan_id)
        if plan is None:
            response.missing.append(plan_id)
            continue
        quote = await resolve_retail_price(session, agent, plan)
        response.prices.append(
            PlanPrice(
                plan_id=plan.id,
                title=plan.title,
                retail_price=quote.retail_price,
                source=quote.source,
            )
        )

    logger.info("plans_quoted", agent_id=agent_id, quoted=len(response.prices), missing=len(response.missing))
    return response


# Agent pricing administration


async def _check_refs(session: AsyncSession, agent_id: str, plan_id: str) -> None:
    if await session.get(Agent, agent_id) is None:
        raise AgentNotFoundException(f"Agent '{agent_id}' not found")
    if await session.get(Plan, plan_id) is None:
        raise PlanNotFoundException(f"Plan '{plan_id}' not found")


async def list_agent_pricing(
    session: AsyncSession,
    agent_id: str | None = None,
) -> list[AgentPricing]:
    query = select(AgentPricing).order_by(AgentPricing.agent_id, AgentPricing.plan_id)
    if agent_id:
        query = query.where(AgentPricing.agent_id == agent_id)
    result = await session.execute(query)
    return list(result.scalars().all())


async def upsert_agent_pricing(session: AsyncSession, item: AgentPricingIn) -> AgentPricing:
    """Create or update the override for one (agent, plan)."""
    await _check_refs(session, item.agent_id, item.plan_id)

    row = await session.scalar(
        select(AgentPricing).where(
            AgentPricing.agent_id == item.agent_id,
            AgentPricing.plan_id == item.plan_id,
        )
    )
    if row is None:
        row = AgentPricing(agent_id=item.agent_id, plan_id=item.plan_id)
        session.add(row)
    row.retail_price = to_money(item.retail_price)

    audit.record(
        session,
        "agent_pricing",
        "agent_pricing_upserted",
        agent_id=item.agent_id,
        plan_id=item.plan_id,
        retail_price=row.retail_price,
    )
    await session.commit()
    return row


async def delete_agent_pricing(session: AsyncSession, pricing_id: str) -> bool:
    row = await session.get(AgentPricing, pricing_id)
    if row is None:
        return False

    audit.record(
        session,
        "agent_pricing",
        "agent_pricing_deleted",
        agent_id=row.agent_id,
        plan_id=row.plan_id,
    )
    await session.delete(row)
    await session.commit()
    return True


async def bulk_replace_agent_pricing(
    session: AsyncSession,
    agent_id: str,
    items: list[AgentPricingIn],
) -> list[AgentPricing]:
    """Replace all overrides of an agent in one transaction."""
    plan_ids = [item.plan_id for item in items]
    if len(plan_ids) != len(set(plan_ids)):
        raise ValidationException("Duplicate plan_id in bulk pricing payload")

    for item in items:
        if item.agent_id != agent_id:
            raise ValidationException("Every price must belong to the agent being replaced")
        await _check_refs(session, agent_id, item.plan_id)

    await session.execute(delete(AgentPricing).where(AgentPricing.agent_id == agent_id))
    rows = [
        AgentPricing(agent_id=agent_id, plan_id=item.plan_id, retail_price=to_money(item.retail_price))
        for item in items
    ]
    session.add_all(rows)

    audit.record(
        session,
        "agent_pricing",
        "agent_pricing_replaced",
        agent_id=agent_id,
        count=len(rows),
    )
    await session.commit()
    logger.info("agent_pricing_bulk_replace", agent_id=agent_id, count=len(rows))
    return rows
