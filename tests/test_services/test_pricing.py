"""Tests for retail price resolution."""

from decimal import Decimal

import pytest

from esim_reseller.core.exceptions import AgentNotFoundException, ValidationException
from esim_reseller.db.models import Agent, MarkupType, Plan, PricingRule, RuleType
from esim_reseller.models.pricing import AgentPricingIn
from esim_reseller.services import pricing


def _rule(rule_id: int, rule_type: RuleType, value: str, **fields) -> PricingRule:
    return PricingRule(
        id=rule_id,
        rule_type=rule_type,
        markup_type=fields.pop("markup_type", MarkupType.PERCENT),
        markup_value=Decimal(value),
        priority=fields.pop("priority", 100),
        is_active=fields.pop("is_active", True),
        **fields,
    )


class TestCalculateRetailPrice:
    """Test markup arithmetic."""

    def test_percent_markup(self) -> None:
        assert pricing.calculate_retail_price(Decimal("10"), MarkupType.PERCENT, Decimal("300")) == Decimal("40.00")

    def test_fixed_markup(self) -> None:
        assert pricing.calculate_retail_price(Decimal("10"), MarkupType.FIXED, Decimal("5")) == Decimal("15.00")

    def test_fixed_price(self) -> None:
        assert pricing.calculate_retail_price(Decimal("10"), "fixed_price", Decimal("12.5")) == Decimal("12.50")

    def test_rounds_half_up_once(self) -> None:
        # 2.345 * 1.10 = 2.5795 -> 2.58; rounding wholesale first would give 2.59
        assert pricing.calculate_retail_price(Decimal("2.345"), MarkupType.PERCENT, Decimal("10")) == Decimal("2.58")

    def test_half_cent_rounds_up(self) -> None:
        assert pricing.calculate_retail_price(Decimal("1.005"), MarkupType.FIXED, Decimal("0")) == Decimal("1.01")


class TestSelectRule:
    """Rule specificity is deterministic."""

    @pytest.fixture
    def agent(self) -> Agent:
        return Agent(id="agent-1")

    @pytest.fixture
    def plan(self) -> Plan:
        return Plan(id="plan-1", country_code="US")

    def test_no_rules(self, agent: Agent, plan: Plan) -> None:
        assert pricing.select_rule([], agent, plan) is None

    def test_specificity_order(self, agent: Agent, plan: Plan) -> None:
        rules = [
            _rule(1, RuleType.DEFAULT, "50"),
            _rule(2, RuleType.COUNTRY, "40", target_id="us"),
            _rule(3, RuleType.PLAN, "30", plan_id="plan-1"),
            _rule(4, RuleType.AGENT, "20", target_id="agent-1"),
            _rule(5, RuleType.PLAN, "10", plan_id="plan-1", agent_filter="agent-1"),
        ]
        assert pricing.select_rule(rules, agent, plan).id == 5
        assert pricing.select_rule(rules[:4], agent, plan).id == 4
        assert pricing.select_rule(rules[:3], agent, plan).id == 3
        assert pricing.select_rule(rules[:2], agent, plan).id == 2
        assert pricing.select_rule(rules[:1], agent, plan).id == 1

    def test_input_order_does_not_matter(self, agent: Agent, plan: Plan) -> None:
        rules = [
            _rule(7, RuleType.COUNTRY, "40", target_id="US", priority=5),
            _rule(3, RuleType.COUNTRY, "30", target_id="US", priority=5),
            _rule(9, RuleType.COUNTRY, "20", target_id="US", priority=1),
        ]
        assert pricing.select_rule(rules, agent, plan).id == 9
        assert pricing.select_rule(list(reversed(rules)), agent, plan).id == 9
        assert pricing.select_rule(rules[:2], agent, plan).id == 3

    def test_ignores_other_agents_and_inactive(self, agent: Agent, plan: Plan) -> None:
        rules = [
            _rule(1, RuleType.AGENT, "20", target_id="agent-2"),
            _rule(2, RuleType.PLAN, "10", plan_id="plan-1", agent_filter="agent-2"),
            _rule(3, RuleType.COUNTRY, "40", target_id="GB"),
            _rule(4, RuleType.DEFAULT, "5", is_active=False),
        ]
        assert pricing.select_rule(rules, agent, plan) is None


class TestResolveRetailPrice:
    """Test full precedence against the database."""

    async def test_default_markup(self, session, agent, plan) -> None:
        quote = await pricing.resolve_retail_price(session, agent, plan)

        assert quote.retail_price == Decimal("40.00")
        assert quote.source == "default"

    async def test_agent_markup(self, session, make_agent, plan) -> None:
        agent = await make_agent(markup_type=MarkupType.FIXED, markup_value=Decimal("5"))

        quote = await pricing.resolve_retail_price(session, agent, plan)

        assert quote.retail_price == Decimal("15.00")
        assert quote.source == "agent_markup"

    async def test_rule_beats_agent_markup(self, session, make_agent, plan) -> None:
        agent = await make_agent(markup_type=MarkupType.FIXED, markup_value=Decimal("5"))
        session.add(_rule(1, RuleType.COUNTRY, "60", target_id="US"))
        await session.commit()

        quote = await pricing.resolve_retail_price(session, agent, plan)

        assert quote.retail_price == Decimal("16.00")
        assert quote.source == "pricing_rule"
        assert quote.rule_id == 1

    async def test_override_beats_everything(self, session, agent, plan) -> None:
        session.add(_rule(1, RuleType.PLAN, "10", plan_id=plan.id, agent_filter=agent.id))
        await session.commit()
        await pricing.upsert_agent_pricing(
            session, AgentPricingIn(agent_id=agent.id, plan_id=plan.id, retail_price=Decimal("12.50"))
        )

        quote = await pricing.resolve_retail_price(session, agent, plan)

        assert quote.retail_price == Decimal("12.50")
        assert quote.source == "agent_pricing"

    async def test_live_wholesale_override(self, session, agent, plan) -> None:
        quote = await pricing.resolve_retail_price(session, agent, plan, wholesale=Decimal("2.50"))

        assert quote.wholesale_price == Decimal("2.50")
        assert quote.retail_price == Decimal("10.00")


class TestQuotePlans:
    """Test batch quotes for the plan catalogue."""

    async def test_quotes_in_request_order(self, session, agent, make_plan) -> None:
        cheap = await make_plan(wholesale="5.00", title="USA 1GB")
        dear = await make_plan(wholesale="10.00")
        retired = await make_plan(is_active=False)
        await pricing.upsert_agent_pricing(
            session, AgentPricingIn(agent_id=agent.id, plan_id=dear.id, retail_price=Decimal("33.00"))
        )

        response = await pricing.quote_plans(
            session, agent.id, [dear.id, "no-such-plan", cheap.id, retired.id, dear.id]
        )

        assert [(p.plan_id, p.retail_price, p.source) for p in response.prices] == [
            (dear.id, Decimal("33.00"), "agent_pricing"),
            (cheap.id, Decimal("20.00"), "default"),
        ]
        assert response.prices[1].title == "USA 1GB"
        assert response.missing == ["no-such-plan", retired.id]

    async def test_unknown_agent(self, session, plan) -> None:
        with pytest.raises(AgentNotFoundException):
            await pricing.quote_plans(session, "missing", [plan.id])


class TestAgentPricingAdmin:
    """Test override administration."""

    async def test_upsert_updates_existing(self, session, agent, plan) -> None:
        first = await pricing.upsert_agent_pricing(
            session, AgentPricingIn(agent_id=agent.id, plan_id=plan.id, retail_price=Decimal("12.50"))
        )
        second = await pricing.upsert_agent_pricing(
            session, AgentPricingIn(agent_id=agent.id, plan_id=plan.id, retail_price=Decimal("13.00"))
        )

        assert first.id == second.id
        rows = await pricing.list_agent_pricing(session, agent.id)
        assert [Decimal(r.retail_price) for r in rows] == [Decimal("13.00")]

    async def test_bulk_replace(self, session, agent, make_plan) -> None:
        plan_1 = await make_plan()
        plan_2 = await make_plan(title="France 1GB")
        await pricing.upsert_agent_pricing(
            session, AgentPricingIn(agent_id=agent.id, plan_id=plan_1.id, retail_price=Decimal("9"))
        )

        rows = await pricing.bulk_replace_agent_pricing(
            session,
            agent.id,
            [AgentPricingIn(agent_id=agent.id, plan_id=plan_2.id, retail_price=Decimal("7"))],
        )

        assert [r.plan_id for r in rows] == [plan_2.id]
        listed = await pricing.list_agent_pricing(session, agent.id)
        assert [r.plan_id for r in listed] == [plan_2.id]

    async def test_bulk_replace_rejects_duplicates(self, session, agent, plan) -> None:
        item = AgentPricingIn(agent_id=agent.id, plan_id=plan.id, retail_price=Decimal("9"))
        with pytest.raises(ValidationException):
            await pricing.bulk_replace_agent_pricing(session, agent.id, [item, item])

    async def test_delete(self, session, agent, plan) -> None:
        row = await pricing.upsert_agent_pricing(
            session, AgentPricingIn(agent_id=agent.id, plan_id=plan.id, retail_price=Decimal("9"))
        )

        assert await pricing.delete_agent_pricing(session, row.id) is True
        assert await pricing.delete_agent_pricing(session, row.id) is False
