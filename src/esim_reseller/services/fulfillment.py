"""Order fulfillment: debit, provision, complete or refund.

Per order::

    pending --debit--> provisioning --Completed--> completed
                                    --Failed-----> failed + one refund
                                    --Pending----> pending + retry marker

Once the debit succeeded the order is never abandoned: it either completes,
is refunded, or stays pending with ``RETRY_MARKER`` for the retry sweep.
"""

import asyncio
from collections.abc import Callable
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.config import settings
from esim_reseller.core.exceptions import (
    AgentNotApprovedException,
    OrderNotFoundException,
    PlanNotFoundException,
    ResellerException,
    UpstreamAuthError,
    ValidationException,
    WalletContentionError,
)
from esim_reseller.core.logging import get_logger
from esim_reseller.core.utils import to_money
from esim_reseller.db.models import (
    Agent,
    AgentStatus,
    Order,
    OrderStatus,
    Plan,
    SupplierName,
    Topup,
    TransactionType,
)
from esim_reseller.models.order import CustomerInfo, ProvisionOutcome, TopupResponse
from esim_reseller.models.supplier import Completed, Failed, Pending, SupplierResult, TopupResult
from esim_reseller.models.wallet import CheckoutRequest, CheckoutResponse
from esim_reseller.services import audit, ledger, pricing
from esim_reseller.suppliers import registry
from esim_reseller.suppliers.base import SupplierAdapter

logger = get_logger(__name__)

RETRY_MARKER = "provider_busy_retry_scheduled"

AdapterFactory = Callable[[SupplierName], SupplierAdapter]


# ─────────────────────────────────────────────────────────────────────────────
# LOOKUPS
# ─────────────────────────────────────────────────────────────────────────────


async def _approved_agent(session: AsyncSession, agent_id: str) -> Agent:
    agent = await ledger.get_agent(session, agent_id)
    if agent.status != AgentStatus.APPROVED:
        raise AgentNotApprovedException(f"Agent '{agent_id}' is {agent.status.value}")
    return agent


async def _active_plan(session: AsyncSession, plan_id: str) -> Plan:
    plan = await session.get(Plan, plan_id)
    if plan is None or not plan.is_active:
        raise PlanNotFoundException(f"Plan '{plan_id}' not found")
    return plan


async def _latest_equivalent_plan(session: AsyncSession, plan: Plan) -> Plan:
    """Newest active Supplier B plan with the same title, validity and country.

    Supplier B catalog syncs create new plan rows; carts can still reference
    a superseded one.
    """
    latest = await session.scalar(
        select(Plan)
        .where(
            Plan.supplier_name == SupplierName.SUPPLIER_B,
            Plan.title == plan.title,
            Plan.validity_days == plan.validity_days,
            Plan.country_code == plan.country_code,
            Plan.is_active.is_(True),
        )
        .order_by(Plan.updated_at.desc(), Plan.id.desc())
        .limit(1)
    )
    return latest or plan


def _outcome(order: Order, *, error: str | None = None, refunded: bool = False) -> ProvisionOutcome:
    if order.status == OrderStatus.COMPLETED:
        status = "completed"
    elif order.status == OrderStatus.FAILED:
        status = "failed"
    else:
        status = "processing"
    return ProvisionOutcome(
        success=order.status == OrderStatus.COMPLETED,
        order_id=order.id,
        status=status,
        iccid=order.esim_iccid,
        supplier_order_no=order.supplier_order_id,
        error=error,
        refunded=refunded,
    )


# ─────────────────────────────────────────────────────────────────────────────
# RESULT HANDLING
# ─────────────────────────────────────────────────────────────────────────────


async def _complete(session: AsyncSession, order: Order, result: Completed) -> ProvisionOutcome:
    profile = result.profile
    order.status = OrderStatus.COMPLETED
    order.esim_iccid = profile.iccid
    order.activation_code = profile.activation_code
    order.manual_code = profile.manual_code
    order.smdp_address = profile.smdp_address
    order.esim_qr_code = profile.qr_code
    order.supplier_order_id = result.supplier_order_id or order.supplier_order_id
    order.real_status = profile.real_status
    if profile.expires_at and order.esim_expiry_date is None:
        order.esim_expiry_date = profile.expires_at

    audit.record(
        session,
        "orders",
        "order_completed",
        agent_id=order.agent_id,
        order_id=order.id,
        iccid=profile.iccid,
        supplier_order_id=order.supplier_order_id,
    )
    await session.commit()
    return _outcome(order)


async def _schedule_retry(
    session: AsyncSession,
    order: Order,
    reason: str,
    supplier_order_id: str | None = None,
) -> ProvisionOutcome:
    order.status = OrderStatus.PENDING
    order.real_status = RETRY_MARKER
    order.supplier_order_id = supplier_order_id or order.supplier_order_id

    audit.record(
        session,
        "orders",
        "order_retry_scheduled",
        agent_id=order.agent_id,
        order_id=order.id,
        reason=reason,
        supplier_order_id=order.supplier_order_id,
    )
    await session.commit()
    return _outcome(order, error=reason)


async def _defer_refund(session: AsyncSession, order: Order, reason: str) -> ProvisionOutcome:
    """Keep the order failed and leave the refund to the retry sweep."""
    order.refund_pending = True
    audit.record(
        session,
        "orders",
        "refund_deferred",
        agent_id=order.agent_id,
        order_id=order.id,
        reason=reason,
    )
    await session.commit()
    return ProvisionOutcome(
        success=False,
        order_id=order.id,
        status="failed",
        error=reason,
        refunded=False,
    )


async def _fail_and_refund(session: AsyncSession, order: Order, reason: str) -> ProvisionOutcome:
    """Mark the order failed and return its price, exactly once."""
    if order.status == OrderStatus.COMPLETED:
        logger.warning("refund_skipped_completed_order", order_id=order.id, reason=reason)
        return _outcome(order)

    order_id, agent_id, amount = order.id, order.agent_id, Decimal(order.retail_price)

    order.status = OrderStatus.FAILED
    order.real_status = reason
    audit.record(
        session,
        "orders",
        "order_failed",
        agent_id=agent_id,
        order_id=order_id,
        reason=reason,
        refund_amount=amount,
    )
    try:
        # commits the order update together with the refund
        await ledger.refund(session, agent_id, amount, order_id, reason)
    except WalletContentionError:
        logger.error("refund_deferred_wallet_contention", order_id=order_id)
        return await _defer_refund(session, order, reason)

    return ProvisionOutcome(
        success=False,
        order_id=order_id,
        status="failed",
        error=reason,
        refunded=True,
    )


async def _apply_result(session: AsyncSession, order: Order, result: SupplierResult) -> ProvisionOutcome:
    if isinstance(result, Completed):
        return await _complete(session, order, result)
    if isinstance(result, Pending):
        return await _schedule_retry(session, order, result.reason, result.supplier_order_id)
    if isinstance(result, Failed):
        return await _fail_and_refund(session, order, result.reason)
    raise TypeError(f"Unhandled supplier result: {result!r}")


# ─────────────────────────────────────────────────────────────────────────────
# PROVISIONING
# ─────────────────────────────────────────────────────────────────────────────


async def provision_order(
    session: AsyncSession,
    order_id: str,
    plan_id: str | None = None,
    get_adapter: AdapterFactory | None = None,
) -> ProvisionOutcome:
    """Place (or re-poll) the supplier order for an already debited order.

    Completed and failed orders are returned as they are. When a supplier
    order id is already known the existing supplier order is polled instead
    of placing a new one.
    """
    get_adapter = get_adapter or registry.get_adapter

    order = await session.get(Order, order_id)
    if order is None:
        raise OrderNotFoundException(f"Order '{order_id}' not found")
    if plan_id and plan_id != order.plan_id:
        raise ValidationException(f"Order '{order_id}' is not for plan '{plan_id}'")
    if order.status != OrderStatus.PENDING:
        return _outcome(order)

    plan = await session.get(Plan, order.plan_id)
    if plan is None:
        return await _fail_and_refund(session, order, "Plan no longer exists")

    adapter = get_adapter(plan.supplier_name)
    log = logger.bind(order_id=order.id, supplier=adapter.label)

    try:
        if order.supplier_order_id:
            log.info("provision_repoll", supplier_order_id=order.supplier_order_id)
            result = await adapter.poll_for_provisioning(order.supplier_order_id)
        else:
            log.info("provision_place_order", plan_code=plan.supplier_plan_id)
            result = await adapter.place_order(plan, order.id)
    except UpstreamAuthError as e:
        log.error("provision_auth_error", upstream=e.upstream, error=e.message)
        await _schedule_retry(session, order, "upstream_auth_error")
        raise
    except Exception as e:
        # Debit already happened: anything unexpected is terminal and refunded
        log.exception("provision_unexpected_error", error=str(e))
        result = Failed(reason=f"Unexpected error: {e}")

    log.info("provision_result", result=result.kind)
    audit.record(
        session,
        "orders",
        "supplier_result_classified",
        agent_id=order.agent_id,
        order_id=order.id,
        supplier=adapter.label,
        result=result.kind,
        reason=getattr(result, "reason", None),
    )
    return await _apply_result(session, order, result)


async def purchase_plan(
    session: AsyncSession,
    agent_id: str,
    plan_id: str,
    customer: CustomerInfo,
    get_adapter: AdapterFactory | None = None,
) -> tuple[Order, ProvisionOutcome]:
    """Buy a single plan: price, debit, create the order, provision."""
    agent = await _approved_agent(session, agent_id)
    plan = await _active_plan(session, plan_id)
    quote = await pricing.resolve_retail_price(session, agent, plan)

    order_id = str(uuid4())
    order = Order(
        id=order_id,
        agent_id=agent_id,
        plan_id=plan.id,
        customer_name=customer.name,
        customer_email=customer.email,
        customer_phone=customer.phone,
        wholesale_price=quote.wholesale_price,
        retail_price=quote.retail_price,
        status=OrderStatus.PENDING,
    )
    # the order row lands in the same commit as the debit
    await ledger.debit(
        session,
        agent_id,
        quote.retail_price,
        description=f"eSIM purchase: {plan.title}",
        reference_id=order_id,
        attach=[order],
    )

    audit.record(
        session,
        "orders",
        "order_created",
        agent_id=agent_id,
        order_id=order_id,
        plan_id=plan.id,
        retail_price=quote.retail_price,
        price_source=quote.source,
    )
    await session.commit()

    outcome = await provision_order(session, order_id, get_adapter=get_adapter)
    order = await session.get(Order, order_id)
    return order, outcome


# ─────────────────────────────────────────────────────────────────────────────
# CART CHECKOUT
# ─────────────────────────────────────────────────────────────────────────────


def _validate_cart(request: CheckoutRequest) -> Decimal:
    """Reject malformed carts before any side effect. Returns the cart total."""
    customer = request.customer_info
    if not customer.name.strip() or not customer.email.strip():
        raise ValidationException("customer_info with name and email required for cart checkout")

    total = Decimal(0)
    for item in request.cart_items:
        if not item.price.is_finite() or item.price <= 0:
            raise ValidationException("Invalid pricing detected. Please refresh and try again.")
        total += item.price * item.quantity

    amount = Decimal(request.amount)
    if not amount.is_finite() or amount <= 0:
        raise ValidationException("Invalid amount")
    if amount > settings.max_checkout_amount:
        raise ValidationException("Amount exceeds maximum limit")
    if to_money(amount) != to_money(total):
        raise ValidationException(f"Amount {amount} does not match cart total {to_money(total)}")
    return to_money(total)


async def checkout(
    session: AsyncSession,
    agent_id: str,
    request: CheckoutRequest,
    get_adapter: AdapterFactory | None = None,
) -> CheckoutResponse:
    """Debit a whole cart once, create one order per unit, provision each.

    Item prices must equal the agent's resolved retail price; failed orders
    are refunded one by one, referenced by their own order id.
    """
    total = _validate_cart(request)
    agent = await _approved_agent(session, agent_id)

    lines: list[tuple[Plan, Decimal, Decimal]] = []
    for item in request.cart_items:
        plan = await _active_plan(session, item.plan_id)
        quote = await pricing.resolve_retail_price(session, agent, plan)
        if to_money(item.price) != quote.retail_price:
            audit.record(
                session,
                "orders",
                "invalid_price_rejected",
                agent_id=agent_id,
                plan_id=plan.id,
                price=item.price,
                expected=quote.retail_price,
            )
            await session.commit()
            raise ValidationException("Invalid pricing detected. Please refresh and try again.")
        lines.extend([(plan, quote.wholesale_price, quote.retail_price)] * item.quantity)

    customer = request.customer_info
    orders = [
        Order(
            id=str(uuid4()),
            agent_id=agent_id,
            plan_id=plan.id,
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            wholesale_price=wholesale,
            retail_price=retail,
            status=OrderStatus.PENDING,
            checkout_reference=request.reference_id,
        )
        for plan, wholesale, retail in lines
    ]
    order_ids = [order.id for order in orders]

    description = request.description or "eSIM purchase: " + ", ".join(
        item.name or item.plan_id for item in request.cart_items
    )
    debit = await ledger.debit(
        session,
        agent_id,
        total,
        description=description,
        reference_id=request.reference_id,
        attach=orders,
    )
    if debit.duplicate:
        existing = await session.execute(
            select(Order.id)
            .where(Order.agent_id == agent_id, Order.checkout_reference == request.reference_id)
            .order_by(Order.created_at)
        )
        return CheckoutResponse(balance=debit.balance, order_ids=list(existing.scalars().all()))

    audit.record(
        session,
        "orders",
        "orders_created",
        agent_id=agent_id,
        order_ids=order_ids,
        reference_id=request.reference_id,
    )
    await session.commit()

    for order_id in order_ids:
        order = await session.get(Order, order_id)
        plan = await session.get(Plan, order.plan_id)
        if plan.supplier_name == SupplierName.SUPPLIER_B:
            latest = await _latest_equivalent_plan(session, plan)
            if latest.id != plan.id:
                logger.info("cart_plan_switched", order_id=order_id, old_plan=plan.id, new_plan=latest.id)
                order.plan_id = latest.id
                await session.commit()

        try:
            await provision_order(session, order_id, get_adapter=get_adapter)
        except ResellerException as e:
            # Order stays pending with the retry marker
            logger.error("cart_order_provision_error", order_id=order_id, error=e.message)

    balance = await ledger.get_balance(session, agent_id)
    return CheckoutResponse(balance=balance, order_ids=order_ids)


# ─────────────────────────────────────────────────────────────────────────────
# RETRY SWEEP
# ─────────────────────────────────────────────────────────────────────────────


async def _retry_refund(session: AsyncSession, order_id: str) -> ProvisionOutcome:
    """Write a deferred refund; the order itself is never re-provisioned."""
    order = await session.get(Order, order_id)
    reason = order.real_status or "refund_retry"
    try:
        await ledger.refund(session, order.agent_id, Decimal(order.retail_price), order.id, reason)
    except WalletContentionError:
        logger.warning("refund_retry_contention", order_id=order_id)
        return ProvisionOutcome(
            success=False, order_id=order_id, status="failed", error="refund_contention"
        )

    order.refund_pending = False
    await session.commit()
    return ProvisionOutcome(
        success=False, order_id=order_id, status="failed", error=reason, refunded=True
    )


async def retry_scheduled_orders(
    session: AsyncSession,
    get_adapter: AdapterFactory | None = None,
    batch_size: int | None = None,
    delay: float | None = None,
) -> tuple[int, list[ProvisionOutcome]]:
    """Re-attempt a bounded batch of orders carrying the retry marker.

    Failed orders whose refund was deferred get the refund retried first;
    they are not sent back to the supplier. The retry marker is cleared and
    committed before each provisioning attempt so a crash mid-retry cannot
    loop forever on the same order.
    """
    batch_size = batch_size or settings.retry_batch_size
    delay = settings.retry_delay if delay is None else delay

    refunds = await session.execute(
        select(Order.id)
        .where(Order.status == OrderStatus.FAILED, Order.refund_pending.is_(True))
        .order_by(Order.created_at)
        .limit(batch_size)
    )
    refund_ids = list(refunds.scalars().all())

    outcomes: list[ProvisionOutcome] = []
    for order_id in refund_ids:
        outcomes.append(await _retry_refund(session, order_id))

    order_ids: list[str] = []
    if len(refund_ids) < batch_size:
        result = await session.execute(
            select(Order.id)
            .where(Order.status == OrderStatus.PENDING, Order.real_status == RETRY_MARKER)
            .order_by(Order.created_at)
            .limit(batch_size - len(refund_ids))
        )
        order_ids = list(result.scalars().all())
    logger.info("retry_sweep_start", refunds=len(refund_ids), count=len(order_ids))

    for index, order_id in enumerate(order_ids):
        if index > 0 and delay:
            await asyncio.sleep(delay)

        order = await session.get(Order, order_id)
        order.real_status = None
        await session.commit()

        try:
            outcomes.append(await provision_order(session, order_id, get_adapter=get_adapter))
        except ResellerException as e:
            outcomes.append(
                ProvisionOutcome(
                    success=False,
                    order_id=order_id,
                    status="processing",
                    error=e.error_code,
                )
            )

    logger.info(
        "retry_sweep_done",
        processed=len(outcomes),
        completed=sum(1 for o in outcomes if o.status == "completed"),
    )
    return len(outcomes), outcomes


# ─────────────────────────────────────────────────────────────────────────────
# TOP-UPS
# ─────────────────────────────────────────────────────────────────────────────


async def purchase_topup(
    session: AsyncSession,
    agent_id: str,
    iccid: str,
    package_code: str,
    get_adapter: AdapterFactory | None = None,
) -> TopupResponse:
    """Top up an existing eSIM, charged at the supplier's live price."""
    get_adapter = get_adapter or registry.get_adapter
    agent = await _approved_agent(session, agent_id)

    order = await session.scalar(
        select(Order)
        .where(
            Order.agent_id == agent_id,
            Order.esim_iccid == iccid,
            Order.status == OrderStatus.COMPLETED,
        )
        .limit(1)
    )
    if order is None:
        raise OrderNotFoundException(f"No completed eSIM '{iccid}' for this agent")

    base_plan = await session.get(Plan, order.plan_id)
    if base_plan is None:
        raise PlanNotFoundException(f"Plan '{order.plan_id}' not found")
    adapter = get_adapter(base_plan.supplier_name)

    topup_plan = await session.scalar(
        select(Plan).where(
            Plan.supplier_name == base_plan.supplier_name,
            Plan.supplier_plan_id == package_code,
        )
    )
    # Prices drift between quote and purchase; charge from the live price
    wholesale = await adapter.get_package_price(package_code)
    quote = await pricing.resolve_retail_price(session, agent, topup_plan or base_plan, wholesale=wholesale)
    logger.info(
        "topup_price_resolved",
        iccid=iccid,
        package_code=package_code,
        wholesale=str(wholesale),
        retail=str(quote.retail_price),
        source=quote.source,
    )

    topup_id = str(uuid4())
    topup = Topup(
        id=topup_id,
        agent_id=agent_id,
        iccid=iccid,
        package_code=package_code,
        plan_id=topup_plan.id if topup_plan else None,
        wholesale_price=quote.wholesale_price,
        amount=quote.retail_price,
        data_amount=topup_plan.data_amount if topup_plan else "",
        validity_days=topup_plan.validity_days if topup_plan else None,
        status=OrderStatus.PENDING,
    )
    debit = await ledger.debit(
        session,
        agent_id,
        quote.retail_price,
        description=f"Top-up {package_code} for {iccid}",
        reference_id=topup_id,
        transaction_type=TransactionType.DEBIT,
        attach=[topup],
    )

    auth_error: UpstreamAuthError | None = None
    try:
        result = await adapter.top_up(iccid, package_code, topup_id)
    except UpstreamAuthError as e:
        auth_error = e
        result = TopupResult(success=False, reason="upstream_auth_error")
    except Exception as e:
        logger.exception("topup_unexpected_error", topup_id=topup_id, error=str(e))
        result = TopupResult(success=False, reason=f"Unexpected error: {e}")

    if result.success:
        topup.status = OrderStatus.COMPLETED
        topup.transaction_id = result.transaction_id
        audit.record(
            session,
            "esim_topups",
            "topup_completed",
            agent_id=agent_id,
            topup_id=topup_id,
            iccid=iccid,
            amount=quote.retail_price,
        )
        await session.commit()
        return TopupResponse(
            success=True,
            topup_id=topup_id,
            amount=quote.retail_price,
            balance=debit.balance,
            status="completed",
        )

    # Top-ups have no retry sweep: every failure is refunded
    topup.status = OrderStatus.FAILED
    topup.failure_reason = result.reason
    audit.record(
        session,
        "esim_topups",
        "topup_failed",
        agent_id=agent_id,
        topup_id=topup_id,
        iccid=iccid,
        reason=result.reason,
    )
    refund = await ledger.refund(
        session, agent_id, quote.retail_price, topup_id, result.reason or "top-up failed"
    )
    if auth_error is not None:
        raise auth_error

    return TopupResponse(
        success=False,
        topup_id=topup_id,
        amount=quote.retail_price,
        balance=refund.balance,
        status="failed",
        error=result.reason,
    )
