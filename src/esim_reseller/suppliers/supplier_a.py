"""Supplier A: batch order placement with asynchronous allocation.

Endpoints (all POST, JSON):
    Order:   /api/v1/open/esim/order
    Query:   /api/v1/open/esim/query   (by orderNo or iccid)
    Top-up:  /api/v1/open/esim/topup
    Catalog: /api/v1/open/package/list (prices in 1/10000 USD)

Placing an order only returns an ``orderNo``; profiles are allocated later
and must be polled from the query endpoint.
"""

from decimal import Decimal
from typing import Any, NoReturn

from esim_reseller.config import Settings
from esim_reseller.core.exceptions import (
    SupplierFailedError,
    SupplierHTTPError,
    SupplierPendingError,
    UpstreamAuthError,
)
from esim_reseller.core.http import HTTPClient
from esim_reseller.core.logging import get_logger
from esim_reseller.core.resilience import poll_until
from esim_reseller.core.status import NormalizedStatus, normalize_supplier_a_status
from esim_reseller.core.utils import parse_datetime
from esim_reseller.db.models import Plan, SupplierName
from esim_reseller.models.supplier import (
    Completed,
    EsimProfile,
    Failed,
    Pending,
    SupplierResult,
    SupplierStatus,
    TopupResult,
)
from esim_reseller.suppliers.base import SupplierAdapter

logger = get_logger(__name__)

PRICE_DIVISOR = Decimal(10000)

# Messages the supplier sends when it is overloaded rather than refusing
BUSY_MARKERS = ("busy", "temporarily unavailable", "too many requests", "try again later")
BUSY_HTTP_STATUSES = {429, 503}


def _is_busy_message(message: str | None) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in BUSY_MARKERS)


def _split_lpa(activation_code: str | None) -> tuple[str | None, str | None]:
    """Split ``LPA:1$smdp$matching-id`` into (smdp_address, matching_id)."""
    if not activation_code or "$" not in activation_code:
        return None, None
    parts = activation_code.split("$")
    if len(parts) < 3:
        return None, None
    return parts[1] or None, parts[2] or None


class SupplierAAdapter(SupplierAdapter):
    """Batch/polling supplier."""

    name = SupplierName.SUPPLIER_A

    def __init__(
        self,
        access_code: str,
        secret_key: str,
        base_url: str,
        poll_max_attempts: int = 10,
        poll_interval: float = 3.0,
    ):
        super().__init__(
            HTTPClient(
                base_url=base_url,
                headers={
                    "RT-AccessCode": access_code,
                    "RT-SecretKey": secret_key,
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
        )
        self.poll_max_attempts = poll_max_attempts
        self.poll_interval = poll_interval

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupplierAAdapter":
        return cls(
            access_code=settings.supplier_a_access_code,
            secret_key=settings.supplier_a_secret_key,
            base_url=settings.supplier_a_base_url,
            poll_max_attempts=settings.poll_max_attempts,
            poll_interval=settings.poll_interval,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # ERROR CLASSIFICATION
    # ─────────────────────────────────────────────────────────────────────────

    def _check_auth(self, error: SupplierHTTPError) -> None:
        if error.http_status in (401, 403):
            logger.error(
                "supplier_auth_error",
                supplier=self.label,
                http_status=error.http_status,
                body=error.body,
            )
            raise UpstreamAuthError(
                f"{self.label} rejected our credentials (HTTP {error.http_status})",
                upstream=self.label,
            ) from error

    def _classify(self, error: SupplierHTTPError, supplier_order_id: str | None = None) -> SupplierResult:
        """Busy conditions are retryable; everything else is definitive."""
        self._check_auth(error)

        body_message = error.body.get("errorMsg") if isinstance(error.body, dict) else None
        if error.transient or error.http_status in BUSY_HTTP_STATUSES or _is_busy_message(body_message):
            return Pending(reason="provider_busy", supplier_order_id=supplier_order_id)
        return Failed(reason=body_message or error.message)

    def _raise_for_lookup(self, error: SupplierHTTPError) -> NoReturn:
        """Status and price lookups surface classified errors instead of results."""
        self._check_auth(error)
        if error.transient or error.http_status in BUSY_HTTP_STATUSES:
            raise SupplierPendingError(f"{self.label} is busy, try again later") from error
        raise SupplierFailedError(f"{self.label} lookup failed: {error.message}") from error

    # ─────────────────────────────────────────────────────────────────────────
    # PARSING
    # ─────────────────────────────────────────────────────────────────────────

    def _parse_profile(self, data: dict[str, Any]) -> EsimProfile:
        activation_code = data.get("ac")
        smdp_address, manual_code = _split_lpa(activation_code)
        normalized = self.normalize(data.get("esimStatus"))
        return EsimProfile(
            iccid=str(data["iccid"]),
            activation_code=activation_code,
            manual_code=manual_code,
            smdp_address=data.get("smdpAddress") or smdp_address,
            qr_code=data.get("qrCodeUrl"),
            real_status=data.get("esimStatus"),
            expires_at=parse_datetime(data.get("expiredTime")) if normalized.is_active else None,
        )

    @staticmethod
    def _esim_list(response: dict[str, Any]) -> list[dict[str, Any]]:
        if not response.get("success"):
            return []
        obj = response.get("obj") or {}
        esims = obj.get("esimList") if isinstance(obj, dict) else None
        return [e for e in esims or [] if isinstance(e, dict) and e.get("iccid")]

    # ─────────────────────────────────────────────────────────────────────────
    # ORDERS
    # ─────────────────────────────────────────────────────────────────────────

    async def place_order(self, plan: Plan, order_id: str) -> SupplierResult:
        payload = {
            "transactionId": order_id,
            "packageInfoList": [{"packageCode": plan.supplier_plan_id, "count": 1}],
        }
        try:
            response = await self.client.post(
                "/api/v1/open/esim/order", json=payload, supplier=self.label
            )
        except SupplierHTTPError as e:
            return self._classify(e)

        if not response.get("success"):
            message = str(response.get("errorMsg") or response.get("message") or "order rejected")
            if _is_busy_message(message):
                return Pending(reason="provider_busy")
            return Failed(reason=message)

        order_no = (response.get("obj") or {}).get("orderNo")
        if not order_no:
            return Failed(reason="No orderNo returned from supplier")

        logger.info("supplier_order_placed", supplier=self.label, order_id=order_id, order_no=order_no)
        return await self.poll_for_provisioning(str(order_no))

    async def _query_order(self, order_no: str) -> dict[str, Any] | None:
        """One poll attempt. None means not allocated yet."""
        try:
            response = await self.client.post(
                "/api/v1/open/esim/query",
                json={"orderNo": order_no, "pager": {"pageNum": 1, "pageSize": 50}},
                supplier=self.label,
            )
        except SupplierHTTPError as e:
            self._check_auth(e)
            logger.warning("supplier_query_failed", supplier=self.label, order_no=order_no, error=e.message)
            return None

        esims = self._esim_list(response)
        return esims[0] if esims else None

    async def poll_for_provisioning(self, supplier_order_id: str) -> SupplierResult:
        """Poll the query endpoint until a profile is allocated or attempts run out.

        Exhaustion is Pending, not Failed: the order may still be allocated
        and is picked up again by the retry sweep.
        """
        esim = await poll_until(
            lambda: self._query_order(supplier_order_id),
            max_attempts=self.poll_max_attempts,
            interval=self.poll_interval,
            name=f"{self.label}_allocation",
        )
        if esim is None:
            return Pending(reason="allocation_timeout", supplier_order_id=supplier_order_id)
        return Completed(profile=self._parse_profile(esim), supplier_order_id=supplier_order_id)

    # ─────────────────────────────────────────────────────────────────────────
    # STATUS
    # ─────────────────────────────────────────────────────────────────────────

    def normalize(self, raw: object) -> NormalizedStatus:
        return normalize_supplier_a_status(raw if isinstance(raw, str) else None)

    async def get_status(self, iccid: str) -> SupplierStatus:
        try:
            response = await self.client.post(
                "/api/v1/open/esim/query",
                json={"iccid": iccid, "pager": {"pageNum": 1, "pageSize": 1}},
                supplier=self.label,
            )
        except SupplierHTTPError as e:
            self._raise_for_lookup(e)

        esims = self._esim_list(response)
        if not esims:
            raise SupplierFailedError(f"eSIM '{iccid}' not found at {self.label}")

        data = esims[0]
        status = str(data.get("esimStatus") or "UNKNOWN").upper()
        return SupplierStatus(
            iccid=iccid,
            real_status=status,
            normalized=self.normalize(status),
            smdp_status=data.get("smdpStatus"),
            expires_at=parse_datetime(data.get("expiredTime")),
            raw=data,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # TOP-UPS & PRICES
    # ─────────────────────────────────────────────────────────────────────────

    async def top_up(self, iccid: str, package_code: str, reference: str) -> TopupResult:
        payload = {"iccid": iccid, "packageCode": package_code, "transactionId": reference}
        try:
            response = await self.client.post(
                "/api/v1/open/esim/topup", json=payload, supplier=self.label
            )
        except SupplierHTTPError as e:
            self._check_auth(e)
            return TopupResult(success=False, reason=e.message)

        if not response.get("success"):
            return TopupResult(
                success=False,
                reason=str(response.get("errorMsg") or "top-up rejected"),
            )

        obj = response.get("obj") or {}
        return TopupResult(success=True, transaction_id=str(obj.get("transactionId") or reference))

    async def get_package_price(self, package_code: str) -> Decimal:
        try:
            response = await self.client.post(
                "/api/v1/open/package/list",
                json={"packageCode": package_code, "type": "TOPUP"},
                supplier=self.label,
            )
        except SupplierHTTPError as e:
            self._raise_for_lookup(e)

        packages = (response.get("obj") or {}).get("packageList") or []
        for package in packages:
            if package.get("packageCode") == package_code and package.get("price") is not None:
                return Decimal(int(package["price"])) / PRICE_DIVISOR

        raise SupplierFailedError(f"Package '{package_code}' has no price at {self.label}")
