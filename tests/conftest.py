import os
from collections.abc import AsyncGenerator, Callable, Generator
from decimal import Decimal
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

# Disable API key authentication and make retries/polls instant for tests
os.environ["REQUIRE_API_KEY"] = "false"
os.environ["POLL_INTERVAL"] = "0"
os.environ["RETRY_DELAY"] = "0"
os.environ["SYNC_DELAY"] = "0"
os.environ["RETRY_MIN_WAIT"] = "0"
os.environ["RETRY_MAX_WAIT"] = "0"

from esim_reseller.api.dependencies import get_adapter_factory
from esim_reseller.core.http import HTTPClient
from esim_reseller.core.resilience import reset_circuit_breakers
from esim_reseller.core.status import (
    NormalizedStatus,
    normalize_supplier_a_status,
    normalize_supplier_b_status,
)
from esim_reseller.db.base import Database
from esim_reseller.db.models import Agent, AgentStatus, Plan, SupplierName, TransactionType
from esim_reseller.main import app
from esim_reseller.models.supplier import (
    Completed,
    EsimProfile,
    SupplierResult,
    SupplierStatus,
    TopupResult,
)
from esim_reseller.services import ledger
from esim_reseller.suppliers.base import SupplierAdapter
from esim_reseller.suppliers.registry import clear_adapter_cache


@pytest.fixture(autouse=True)
def reset_suppliers() -> Generator[None, None, None]:
    """Clear adapter cache and circuit breakers before each test."""
    clear_adapter_cache()
    reset_circuit_breakers()
    yield
    clear_adapter_cache()
    reset_circuit_breakers()


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File database so concurrent sessions see each other's commits."""
    return f"sqlite+aiosqlite:///{tmp_path / 'reseller.db'}"


@pytest.fixture
async def database(database_url: str) -> AsyncGenerator[Database, None]:
    db = Database(database_url)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as s:
        yield s


async def fund_wallet(session: AsyncSession, agent_id: str, amount: str) -> None:
    await ledger.credit(
        session,
        agent_id,
        Decimal(amount),
        description="Initial deposit",
        reference_id=f"seed-{agent_id}-{amount}",
        transaction_type=TransactionType.DEPOSIT,
    )


@pytest.fixture
def make_agent(session: AsyncSession) -> Callable:
    """Factory for agents; the balance is seeded through the ledger."""

    async def _make(
        balance: str = "100.00",
        status: AgentStatus = AgentStatus.APPROVED,
        **fields: object,
    ) -> Agent:
        agent = Agent(company_name="Test Travel Co", status=status, **fields)
        session.add(agent)
        await session.commit()
        if Decimal(balance) > 0:
            await fund_wallet(session, agent.id, balance)
        return agent

    return _make


@pytest.fixture
def make_plan(session: AsyncSession) -> Callable:
    async def _make(
        supplier: SupplierName = SupplierName.SUPPLIER_A,
        wholesale: str = "10.00",
        **fields: object,
    ) -> Plan:
        defaults: dict[str, object] = {
            "supplier_plan_id": "PKG-US-5GB" if supplier == SupplierName.SUPPLIER_A else "prod-us-5gb",
            "title": "USA 5GB 30 Days",
            "country_code": "US",
            "country_name": "United States",
            "data_amount": "5GB",
            "validity_days": 30,
        }
        defaults.update(fields)
        plan = Plan(supplier_name=supplier, wholesale_price=Decimal(wholesale), **defaults)
        session.add(plan)
        await session.commit()
        return plan

    return _make


@pytest.fixture
async def agent(make_agent: Callable) -> Agent:
    return await make_agent()


@pytest.fixture
async def plan(make_plan: Callable) -> Plan:
    return await make_plan()


# ─────────────────────────────────────────────────────────────────────────────
# Scripted supplier
# ─────────────────────────────────────────────────────────────────────────────


class FakeAdapter(SupplierAdapter):
    """Supplier adapter returning scripted results in order."""

    def __init__(self, name: SupplierName):
        self.name = name
        super().__init__(HTTPClient(base_url="http://supplier.invalid"))
        self.results: list[SupplierResult | Exception] = []
        self.topups: list[TopupResult | Exception] = []
        self.statuses: dict[str, SupplierStatus | Exception] = {}
        self.prices: dict[str, Decimal] = {}
        self.placed: list[str] = []
        self.polled: list[str] = []

    def _next(self) -> SupplierResult:
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def place_order(self, plan: Plan, order_id: str) -> SupplierResult:
        self.placed.append(order_id)
        return self._next()

    async def poll_for_provisioning(self, supplier_order_id: str) -> SupplierResult:
        self.polled.append(supplier_order_id)
        return self._next()

    async def get_status(self, iccid: str) -> SupplierStatus:
        status = self.statuses[iccid]
        if isinstance(status, Exception):
            raise status
        return status

    async def top_up(self, iccid: str, package_code: str, reference: str) -> TopupResult:
        result = self.topups.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def get_package_price(self, package_code: str) -> Decimal:
        return self.prices[package_code]

    def normalize(self, raw: object) -> NormalizedStatus:
        if self.name == SupplierName.SUPPLIER_B:
            return normalize_supplier_b_status(raw)
        return normalize_supplier_a_status(raw if isinstance(raw, str) else None)


def completed(iccid: str = "8910000000000000001", supplier_order_id: str = "B2024001") -> Completed:
    return Completed(
        profile=EsimProfile(
            iccid=iccid,
            activation_code="LPA:1$smdp.example.com$MATCH-1",
            manual_code="MATCH-1",
            smdp_address="smdp.example.com",
            real_status="GOT_RESOURCE",
        ),
        supplier_order_id=supplier_order_id,
    )


@pytest.fixture
def fake_a() -> FakeAdapter:
    return FakeAdapter(SupplierName.SUPPLIER_A)


@pytest.fixture
def fake_b() -> FakeAdapter:
    return FakeAdapter(SupplierName.SUPPLIER_B)


@pytest.fixture
def adapters(fake_a: FakeAdapter, fake_b: FakeAdapter) -> Callable[[SupplierName], SupplierAdapter]:
    by_name = {SupplierName.SUPPLIER_A: fake_a, SupplierName.SUPPLIER_B: fake_b}
    return lambda name: by_name[SupplierName(name)]


@pytest.fixture
def completed_result() -> Callable[..., Completed]:
    return completed


# ─────────────────────────────────────────────────────────────────────────────
# HTTP clients
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def client(database_url: str) -> Generator[TestClient, None, None]:
    """Test client on an empty throwaway database."""
    original = app.state.database
    app.state.database = Database(database_url)
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.state.database = original
        app.dependency_overrides.clear()


@pytest.fixture
async def api(
    database: Database,
    adapters: Callable[[SupplierName], SupplierAdapter],
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async client sharing the test database and the scripted suppliers."""
    original = app.state.database
    app.state.database = database
    app.dependency_overrides[get_adapter_factory] = lambda: adapters
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as async_client:
            yield async_client
    finally:
        app.state.database = original
        app.dependency_overrides.clear()
