"""Tests for status sync and supplier webhooks."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select

from esim_reseller.core.exceptions import SupplierFailedError
from esim_reseller.core.status import NormalizedStatus, StatusTriple
from esim_reseller.db.models import EsimStatusEvent, Order, OrderStatus, SupplierName
from esim_reseller.models.order import WebhookPayload
from esim_reseller.models.supplier import SupplierStatus
from esim_reseller.services.fulfillment import RETRY_MARKER
from esim_reseller.services.reconciliation import (
    handle_webhook,
    sync_order_status,
    sync_supplier_orders,
)

LEGACY_RELEASED = "state: RELEASED, service: ACTIVE, network: ENABLED"


async def _order(session, agent, plan, **fields) -> Order:
    values = {
        "status": OrderStatus.COMPLETED,
        "esim_iccid": "8910000000000000001",
        "real_status": "GOT_RESOURCE",
    }
    values.update(fields)
    order = Order(
        agent_id=agent.id,
        plan_id=plan.id,
        customer_name="Ada Traveller",
        customer_email="ada@example.com",
        wholesale_price=Decimal("10.00"),
        retail_price=Decimal("40.00"),
        **values,
    )
    session.add(order)
    await session.commit()
    return order


async def _event_count(session) -> int:
    return await session.scalar(select(func.count()).select_from(EsimStatusEvent))


def _esim_status(iccid: str, status: str | dict, **content) -> WebhookPayload:
    return WebhookPayload(notifyType="ESIM_STATUS", content={"iccid": iccid, "esimStatus": status, **content})


class TestWebhooks:
    """Supplier A notifications."""

    async def test_same_status_twice_records_one_event(self, session, agent, plan, adapters) -> None:
        order = await _order(session, agent, plan)
        payload = _esim_status(order.esim_iccid, "IN_USE")

        assert await handle_webhook(session, payload, get_adapter=adapters) is True
        assert await handle_webhook(session, payload, get_adapter=adapters) is False

        assert await _event_count(session) == 1
        assert order.real_status == "IN_USE"

    async def test_activation_sets_expiry_once(self, session, agent, plan, adapters) -> None:
        order = await _order(session, agent, plan)

        await handle_webhook(
            session,
            _esim_status(order.esim_iccid, "IN_USE", expiredTime="2025-03-01T00:00:00Z"),
            get_adapter=adapters,
        )
        expiry = order.esim_expiry_date
        assert expiry == datetime(2025, 3, 1, tzinfo=timezone.utc)

        await handle_webhook(
            session,
            _esim_status(order.esim_iccid, "USED_UP", expiredTime="2026-01-01T00:00:00Z"),
            get_adapter=adapters,
        )
        assert order.esim_expiry_date == expiry

    async def test_inactive_status_does_not_start_expiry(self, session, agent, plan, adapters) -> None:
        order = await _order(session, agent, plan)

        await handle_webhook(session, _esim_status(order.esim_iccid, "CANCEL"), get_adapter=adapters)

        assert order.esim_expiry_date is None

    async def test_unknown_iccid_ignored(self, session, adapters) -> None:
        assert await handle_webhook(session, _esim_status("000", "IN_USE"), get_adapter=adapters) is False

    async def test_unhandled_type_ignored(self, session, adapters) -> None:
        payload = WebhookPayload(notifyType="DATA_USAGE", content={"iccid": "1"})
        assert await handle_webhook(session, payload, get_adapter=adapters) is False

    async def test_got_resource_completes_pending_order(
        self, session, agent, plan, fake_a, adapters, completed_result
    ) -> None:
        order = await _order(
            session,
            agent,
            plan,
            status=OrderStatus.PENDING,
            esim_iccid=None,
            real_status=RETRY_MARKER,
            supplier_order_id="B2024001",
        )
        fake_a.results.append(completed_result())
        payload = WebhookPayload(
            notifyType="ORDER_STATUS",
            content={"orderNo": "B2024001", "orderStatus": "GOT_RESOURCE"},
        )

        assert await handle_webhook(session, payload, get_adapter=adapters) is True

        assert fake_a.polled == ["B2024001"]
        assert order.status == OrderStatus.COMPLETED


class TestStatusSync:
    """Polling reconciliation."""

    async def test_legacy_string_matches_canonical_json(
        self, session, agent, make_plan, fake_b, adapters
    ) -> None:
        plan = await make_plan(SupplierName.SUPPLIER_B)
        order = await _order(session, agent, plan, real_status=LEGACY_RELEASED)
        triple = StatusTriple(state="RELEASED", service_status="ACTIVE", network_status="ENABLED")
        fake_b.statuses[order.esim_iccid] = SupplierStatus(
            iccid=order.esim_iccid,
            real_status=triple.to_storage(),
            normalized=NormalizedStatus(display_status="NOT_ACTIVE"),
        )

        _, normalized, changed = await sync_order_status(session, order.esim_iccid, get_adapter=adapters)

        assert changed is False
        assert normalized.display_status == "NOT_ACTIVE"
        assert await _event_count(session) == 0

    async def test_status_change_recorded(self, session, agent, make_plan, fake_b, adapters) -> None:
        plan = await make_plan(SupplierName.SUPPLIER_B)
        order = await _order(session, agent, plan, real_status=LEGACY_RELEASED)
        triple = StatusTriple(state="ACTIVE", service_status="ACTIVE", network_status="ENABLED")
        fake_b.statuses[order.esim_iccid] = SupplierStatus(
            iccid=order.esim_iccid,
            real_status=triple.to_storage(),
            normalized=NormalizedStatus(display_status="ENABLED", is_connected=True, is_active=True),
            smdp_status="ENABLED",
        )

        order, normalized, changed = await sync_order_status(session, order.esim_iccid, get_adapter=adapters)

        assert changed is True
        assert order.real_status == triple.to_storage()
        assert order.esim_expiry_date is not None
        event = await session.scalar(select(EsimStatusEvent))
        assert event.event_type == "status_sync"
        assert event.esim_status == "ENABLED"

    async def test_supplier_sweep_reports_errors(self, session, agent, make_plan, fake_b, adapters) -> None:
        plan = await make_plan(SupplierName.SUPPLIER_B)
        ok = await _order(session, agent, plan, esim_iccid="8910000000000000001", real_status=LEGACY_RELEASED)
        broken = await _order(session, agent, plan, esim_iccid="8910000000000000002")
        fake_b.statuses[ok.esim_iccid] = SupplierStatus(
            iccid=ok.esim_iccid,
            real_status=StatusTriple(state="RELEASED", service_status="ACTIVE", network_status="ENABLED").to_storage(),
            normalized=NormalizedStatus(display_status="NOT_ACTIVE"),
        )
        fake_b.statuses[broken.esim_iccid] = SupplierFailedError("eSIM not found")

        response = await sync_supplier_orders(session, SupplierName.SUPPLIER_B, get_adapter=adapters, delay=0)

        assert response.synced_count == 1
        errors = {u.iccid: u.error for u in response.updates}
        assert errors == {ok.esim_iccid: None, broken.esim_iccid: "supplier_failed"}

    async def test_repeated_sweeps_reach_every_order(self, session, agent, plan, fake_a, adapters) -> None:
        iccids = ["8910000000000000001", "8910000000000000002", "8910000000000000003"]
        for iccid in iccids:
            await _order(session, agent, plan, esim_iccid=iccid)
            fake_a.statuses[iccid] = SupplierStatus(
                iccid=iccid,
                real_status="GOT_RESOURCE",
                normalized=NormalizedStatus(display_status="GOT_RESOURCE"),
            )

        first = await sync_supplier_orders(session, SupplierName.SUPPLIER_A, limit=2, get_adapter=adapters, delay=0)
        second = await sync_supplier_orders(session, SupplierName.SUPPLIER_A, limit=2, get_adapter=adapters, delay=0)

        first_polled = [u.iccid for u in first.updates]
        second_polled = [u.iccid for u in second.updates]
        assert all(u.changed is False for u in first.updates + second.updates)
        (never_checked,) = set(iccids) - set(first_polled)
        assert second_polled[0] == never_checked
        assert set(first_polled) | set(second_polled) == set(iccids)

    async def test_failed_lookup_still_counts_as_checked(self, session, agent, plan, fake_a, adapters) -> None:
        order = await _order(session, agent, plan)
        fake_a.statuses[order.esim_iccid] = SupplierFailedError("eSIM not found")

        await sync_supplier_orders(session, SupplierName.SUPPLIER_A, get_adapter=adapters, delay=0)

        assert order.last_synced_at is not None


class TestStructuredWebhookStatus:
    """Webhook statuses that arrive as objects rather than strings."""

    async def test_supplier_b_triple_is_stored_as_json(self, session, agent, make_plan, adapters) -> None:
        plan = await make_plan(SupplierName.SUPPLIER_B)
        order = await _order(session, agent, plan, real_status=LEGACY_RELEASED)
        triple = {"state": "ACTIVE", "service_status": "ACTIVE", "network_status": "ENABLED"}

        changed = await handle_webhook(session, _esim_status(order.esim_iccid, triple), get_adapter=adapters)

        assert changed is True
        assert order.real_status == StatusTriple(**triple).to_storage()
        event = await session.scalar(select(EsimStatusEvent))
        assert event.esim_status == "ENABLED"
