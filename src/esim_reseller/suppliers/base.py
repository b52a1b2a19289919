"""Supplier adapter interface.

Every upstream provisioning API is wrapped in a ``SupplierAdapter``. Adapters
catch transport and HTTP errors at their boundary and classify them into the
closed ``SupplierResult`` union; only ``UpstreamAuthError`` escapes, because a
credentials problem cannot be resolved by retrying or refunding.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from esim_reseller.core.http import HTTPClient
from esim_reseller.core.status import NormalizedStatus
from esim_reseller.db.models import Plan, SupplierName
from esim_reseller.models.supplier import SupplierResult, SupplierStatus, TopupResult


class SupplierAdapter(ABC):
    """Abstract base class for supplier integrations."""

    name: SupplierName

    def __init__(self, client: HTTPClient):
        self.client = client

    @property
    def label(self) -> str:
        """Circuit breaker and log key."""
        return self.name.value

    @abstractmethod
    async def place_order(self, plan: Plan, order_id: str) -> SupplierResult:
        """Order one profile for ``plan``; ``order_id`` is our idempotency reference."""

    @abstractmethod
    async def poll_for_provisioning(self, supplier_order_id: str) -> SupplierResult:
        """Check an already placed order for an allocated profile."""

    @abstractmethod
    async def get_status(self, iccid: str) -> SupplierStatus:
        """Fetch and normalize the live status of a profile."""

    @abstractmethod
    async def top_up(self, iccid: str, package_code: str, reference: str) -> TopupResult:
        """Apply a top-up package to an existing profile."""

    @abstractmethod
    async def get_package_price(self, package_code: str) -> Decimal:
        """Current wholesale price of a package in USD."""

    @abstractmethod
    def normalize(self, raw: object) -> NormalizedStatus:
        """Map a stored ``real_status`` to the canonical status."""

    async def close(self) -> None:
        await self.client.close()
