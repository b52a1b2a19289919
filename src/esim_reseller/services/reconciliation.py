"""eSIM status reconciliation.

Polling sweeps and supplier webhooks both end in ``apply_status``, which
writes the canonical status only when it changed and records one
``esim_status_events`` row per change.
"""

import asyncio
import json
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.config import settings
from esim_reseller.core.exceptions import OrderNotFoundException, ResellerException
from esim_reseller.core.logging import get_logger
from esim_reseller.core.status import NormalizedStatus, parse_real_status
from esim_reseller.core.utils import parse_datetime, utcnow
from esim_reseller.db.models import (
    EsimStatusEvent,
    Order,
    OrderStatus,
    Plan,
    SupplierName,
)
from esim_reseller.models.order import StatusUpdate, SupplierSyncResponse, WebhookPayload
from esim_reseller.services import audit
from esim_reseller.services.fulfillment import AdapterFactory, provision_order
from esim_reseller.suppliers import registry

logger = get_logger(__name__)

EVENT_STATUS_SYNC = "status_sync"
EVENT_WEBHOOK = "webhook"


def _canonical(supplier: SupplierName, value: str | None) -> str | None:
    """Stored form used for change detection; legacy Supplier B strings compare equal to JSON."""
    if value is None:
        return None
    if supplier == SupplierName.SUPPLIER_B:
        return parse_real_status(value).to_storage()
    return value.strip().upper()


async def apply_status(
    session: AsyncSession,
    order: Order,
    plan: Plan,
    real_status: str,
    normalized: NormalizedStatus,
    *,
    event_type: str,
    smdp_status: str | None = None,
    expires_at: datetime | None = None,
) -> bool:
    """Persist a supplier status for an order. Returns True if anything changed.

    Expiry starts only once the eSIM is genuinely in use and is never
    overwritten afterwards.
    """
    supplier = plan.supplier_name
    new_value = _canonical(supplier, real_status)
    order.last_synced_at = utcnow()
    if _canonical(supplier, order.real_status) == new_value:
        logger.debug("esim_status_unchanged", iccid=order.esim_iccid, status=new_value)
        await session.commit()
        return False

    previous = order.real_status
    order.real_status = new_value
    if normalized.is_active and order.esim_expiry_date is None:
        order.esim_expiry_date = expires_at or utcnow() + timedelta(days=plan.validity_days)

    session.add(
        EsimStatusEvent(
            iccid=order.esim_iccid,
            event_type=event_type,
            esim_status=normalized.display_status,
            smdp_status=smdp_status,
            raw_status=new_value,
        )
    )
    audit.record(
        session,
        "orders",
        "esim_status_changed",
        agent_id=order.agent_id,
        order_id=order.id,
        iccid=order.esim_iccid,
        previous=previous,
        current=new_value,
        display_status=normalized.display_status,
        source=event_type,
    )
    await session.commit()
    return True


async def _order_by_iccid(session: AsyncSession, iccid: str) -> Order:
    order = await session.scalar(
        select(Order).where(Order.esim_iccid == iccid).order_by(Order.created_at.desc()).limit(1)
    )
    if order is None:
        raise OrderNotFoundException(f"No order for eSIM '{iccid}'")
    return order


async def _sync(
    session: AsyncSession,
    order: Order,
    get_adapter: AdapterFactory,
) -> tuple[NormalizedStatus, bool]:
    plan = await session.get(Plan, order.plan_id)
    adapter = get_adapter(plan.supplier_name)

    try:
        status = await adapter.get_status(order.esim_iccid)
    except ResellerException:
        # a failed lookup still counts as a visit so the sweep moves on
        order.last_synced_at = utcnow()
        await session.commit()
        raise

    changed = await apply_status(
        session,
        order,
        plan,
        status.real_status,
        status.normalized,
        event_type=EVENT_STATUS_SYNC,
        smdp_status=status.smdp_status,
        expires_at=status.expires_at,
    )
    logger.info(
        "esim_status_synced",
        iccid=order.esim_iccid,
        supplier=adapter.label,
        display_status=status.normalized.display_status,
        changed=changed,
    )
    return status.normalized, changed


async def sync_order_status(
    session: AsyncSession,
    iccid: str,
    get_adapter: AdapterFactory | None = None,
) -> tuple[Order, NormalizedStatus, bool]:
    """Fetch the live status of one eSIM from its supplier and store it."""
    order = await _order_by_iccid(session, iccid)
    normalized, changed = await _sync(session, order, get_adapter or registry.get_adapter)
    return order, normalized, changed


async def sync_supplier_orders(
    session: AsyncSession,
    supplier: SupplierName,
    limit: int = 50,
    get_adapter: AdapterFactory | None = None,
    delay: float | None = None,
) -> SupplierSyncResponse:
    """Poll sweep over provisioned eSIMs of one supplier.

    Never-checked orders come first, then the least recently checked, so
    repeated sweeps with a small ``limit`` walk every order in turn.
    """
    get_adapter = get_adapter or registry.get_adapter
    delay = settings.sync_delay if delay is None else delay

    result = await session.execute(
        select(Order)
        .join(Plan, Plan.id == Order.plan_id)
        .where(
            Plan.supplier_name == supplier,
            Order.status == OrderStatus.COMPLETED,
            Order.esim_iccid.is_not(None),
        )
        .order_by(Order.last_synced_at.asc().nulls_first(), Order.created_at)
        .limit(limit)
    )
    orders = list(result.scalars().all())

    updates: list[StatusUpdate] = []
    for index, order in enumerate(orders):
        if index > 0 and delay:
            await asyncio.sleep(delay)
        iccid = order.esim_iccid
        try:
            normalized, changed = await _sync(session, order, get_adapter)
        except ResellerException as e:
            logger.warning("esim_status_sync_failed", iccid=iccid, error=e.message)
            updates.append(StatusUpdate(iccid=iccid, changed=False, error=e.error_code))
            continue
        updates.append(
            StatusUpdate(iccid=iccid, changed=changed, display_status=normalized.display_status)
        )

    synced = sum(1 for u in updates if u.error is None)
    logger.info("supplier_sync_done", supplier=supplier.value, synced=synced, total=len(orders))
    return SupplierSyncResponse(synced_count=synced, updates=updates)



async def handle_webhook(
    session: AsyncSession,
    payload: WebhookPayload,
    get_adapter: AdapterFactory | None = None,
) -> bool:
    """Apply a Supplier A notification. Returns True if an order changed."""
    get_adapter = get_adapter or registry.get_adapter
    content = payload.content
    iccid = content.get("iccid")
    logger.info("webhook_received", notify_type=payload.notifyType, iccid=iccid)

    if payload.notifyType == "ORDER_STATUS":
        if content.get("orderStatus") != "GOT_RESOURCE":
            return False
        order_no = content.get("orderNo")
        query = select(Order).where(Order.status == OrderStatus.PENDING)
        if order_no:
            query = query.where(Order.supplier_order_id == str(order_no))
        elif iccid:
            query = query.where(Order.esim_iccid == iccid)
        else:
            return False
        order = await session.scalar(query.limit(1))
        if order is None:
            return False
        # Profiles are allocated now; fetch them through the normal path
        outcome = await provision_order(session, order.id, get_adapter=get_adapter)
        return outcome.status != "processing"

    if payload.notifyType in ("ESIM_STATUS", "SMDP_EVENT"):
        esim_status = content.get("esimStatus")
        if not iccid or not esim_status:
            return False
        try:
            order = await _order_by_iccid(session, iccid)
        except OrderNotFoundException:
            logger.warning("webhook_unknown_iccid", iccid=iccid)
            return False

        # structured statuses (Supplier B triples) are stored as canonical JSON
        raw_status = esim_status if isinstance(esim_status, str) else json.dumps(esim_status, sort_keys=True)
        plan = await session.get(Plan, order.plan_id)
        adapter = get_adapter(plan.supplier_name)
        return await apply_status(
            session,
            order,
            plan,
            raw_status,
            adapter.normalize(raw_status),
            event_type=EVENT_WEBHOOK,
            smdp_status=content.get("smdpStatus"),
            expires_at=parse_datetime(content.get("expiredTime")),
        )

    logger.info("webhook_ignored", notify_type=payload.notifyType)
    return False
