"""Supplier B: synchronous create.

Endpoints:
    Auth:    POST /oauth/token (client credentials, Basic auth fallback)
    Orders:  POST /connectivity/v1/account/orders (fallback /connectivity/v1/orders)
             GET  /connectivity/v1/account/orders/{id}
    eSIMs:   GET  /connectivity/v1/esim/{iccid}
    Top-ups: POST /connectivity/v1/sims/{iccid}/topups
    Prices:  GET  /connectivity/v1/account/products/{uid}

The create call returns the profile in the same round trip, so no polling
loop is needed. Status is a (state, service_status, network_status) triple.
"""

import base64
import time
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
from esim_reseller.core.status import (
    NormalizedStatus,
    StatusTriple,
    normalize_supplier_b_status,
    parse_real_status,
)
from esim_reseller.core.utils import parse_datetime, parse_money
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

ACCOUNT_ORDERS_PATH = "/connectivity/v1/account/orders"
DIRECT_ORDERS_PATH = "/connectivity/v1/orders"

UNKNOWN_PRODUCT_CODE = "310241"


class SupplierBAdapter(SupplierAdapter):
    """Synchronous-create supplier."""

    name = SupplierName.SUPPLIER_B
    TOKEN_TTL = 3000  # seconds; tokens are issued for an hour

    def __init__(self, api_key: str, api_secret: str, base_url: str):
        super().__init__(
            HTTPClient(
                base_url=base_url,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
        )
        self.api_key = api_key
        self.api_secret = api_secret
        self._access_token: str | None = None
        self._access_token_time: float = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupplierBAdapter":
        return cls(
            api_key=settings.supplier_b_api_key,
            api_secret=settings.supplier_b_api_secret,
            base_url=settings.supplier_b_base_url,
        )

    async def _auth_headers(self) -> dict[str, str]:
        """Bearer token when the OAuth exchange works, Basic auth otherwise."""
        now = time.time()
        if self._access_token and (now - self._access_token_time) < self.TOKEN_TTL:
            return {"Authorization": f"Bearer {self._access_token}"}

        try:
            response = await self.client.post(
                "/oauth/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.api_key,
                    "client_secret": self.api_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                supplier=self.label,
            )
            token = response.get("access_token")
        except SupplierHTTPError as e:
            logger.warning("supplier_oauth_failed", supplier=self.label, error=e.message)
            token = None

        if token:
            self._access_token = str(token)
            self._access_token_time = now
            return {"Authorization": f"Bearer {self._access_token}"}

        logger.info("supplier_basic_auth_fallback", supplier=self.label)
        credentials = base64.b64encode(f"{self.api_key}:{self.api_secret}".encode()).decode()
        return {"Authorization": f"Basic {credentials}"}

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

    def _classify(self, error: SupplierHTTPError) -> SupplierResult:
        self._check_auth(error)

        body = error.body if isinstance(error.body, dict) else {}
        message = str(
            body.get("developer_message") or body.get("message") or body.get("error") or error.message
        )
        if str(body.get("errorCode") or "") == UNKNOWN_PRODUCT_CODE:
            return Failed(reason=f"Unknown product: {message}")
        if error.http_status is not None and error.http_status >= 500:
            return Failed(reason=f"Supplier server error: {message}")
        if error.transient or error.http_status == 429:
            return Pending(reason="provider_busy")
        return Failed(reason=message)

    def _raise_for_lookup(self, error: SupplierHTTPError) -> NoReturn:
        self._check_auth(error)
        if error.transient or error.http_status == 429:
            raise SupplierPendingError(f"{self.label} is busy, try again later") from error
        raise SupplierFailedError(f"{self.label} lookup failed: {error.message}") from error

    # ─────────────────────────────────────────────────────────────────────────
    # PARSING
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _extract_esim(response: dict[str, Any]) -> dict[str, Any] | None:
        esim = response.get("esim")
        if not esim:
            sims = response.get("sims") or []
            esim = sims[0] if sims else None
        if isinstance(esim, dict) and esim.get("iccid"):
            return esim
        return None

    @staticmethod
    def _extract_order_id(response: dict[str, Any]) -> str | None:
        order = response.get("order") if isinstance(response.get("order"), dict) else {}
        order_id = response.get("id") or response.get("order_id") or order.get("id") or order.get("uid")
        return str(order_id) if order_id else None

    def _parse_profile(self, esim: dict[str, Any]) -> EsimProfile:
        triple = parse_real_status(esim)
        normalized = self.normalize(triple)
        return EsimProfile(
            iccid=str(esim["iccid"]),
            activation_code=esim.get("activation_code") or esim.get("activationCode"),
            manual_code=esim.get("manual_code"),
            smdp_address=esim.get("smdp_address"),
            qr_code=esim.get("qr_code") or esim.get("qrcode"),
            real_status=triple.to_storage(),
            expires_at=parse_datetime(esim.get("date_expiry")) if normalized.is_active else None,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # ORDERS
    # ─────────────────────────────────────────────────────────────────────────

    async def place_order(self, plan: Plan, order_id: str) -> SupplierResult:
        payload = {
            "items": [{"product_uid": plan.supplier_plan_id, "quantity": 1}],
            "external_reference": order_id,
            "channel": "api",
        }
        headers = await self._auth_headers()

        response: dict[str, Any] = {}
        for path in (ACCOUNT_ORDERS_PATH, DIRECT_ORDERS_PATH):
            try:
                response = await self.client.post(
                    path, json=payload, headers=headers, supplier=self.label
                )
                break
            except SupplierHTTPError as e:
                if path == ACCOUNT_ORDERS_PATH and e.http_status in (401, 403, 404):
                    logger.info(
                        "supplier_order_endpoint_fallback",
                        supplier=self.label,
                        http_status=e.http_status,
                        order_id=order_id,
                    )
                    continue
                return self._classify(e)

        supplier_order_id = self._extract_order_id(response)
        esim = self._extract_esim(response)
        if esim is None:
            logger.warning(
                "supplier_esim_not_ready",
                supplier=self.label,
                order_id=order_id,
                supplier_order_id=supplier_order_id,
            )
            return Pending(reason="esim_not_ready", supplier_order_id=supplier_order_id)

        return Completed(profile=self._parse_profile(esim), supplier_order_id=supplier_order_id)

    async def poll_for_provisioning(self, supplier_order_id: str) -> SupplierResult:
        """Single lookup of an order that was created without a profile."""
        headers = await self._auth_headers()
        try:
            response = await self.client.get(
                f"{ACCOUNT_ORDERS_PATH}/{supplier_order_id}", headers=headers, supplier=self.label
            )
        except SupplierHTTPError as e:
            return self._classify(e)

        esim = self._extract_esim(response)
        if esim is None:
            return Pending(reason="esim_not_ready", supplier_order_id=supplier_order_id)
        return Completed(profile=self._parse_profile(esim), supplier_order_id=supplier_order_id)

    # ─────────────────────────────────────────────────────────────────────────
    # STATUS
    # ─────────────────────────────────────────────────────────────────────────

    def normalize(self, raw: object) -> NormalizedStatus:
        return normalize_supplier_b_status(raw)

    async def get_status(self, iccid: str) -> SupplierStatus:
        headers = await self._auth_headers()
        try:
            response = await self.client.get(
                f"/connectivity/v1/esim/{iccid}", headers=headers, supplier=self.label
            )
        except SupplierHTTPError as e:
            self._raise_for_lookup(e)

        esim = response.get("esim")
        if not isinstance(esim, dict):
            raise SupplierFailedError(f"eSIM '{iccid}' not found at {self.label}")

        triple = StatusTriple(
            state=esim.get("state"),
            service_status=esim.get("service_status"),
            network_status=esim.get("network_status"),
        )
        return SupplierStatus(
            iccid=iccid,
            real_status=triple.to_storage(),
            normalized=self.normalize(triple),
            smdp_status=esim.get("network_status"),
            expires_at=parse_datetime(esim.get("date_expiry")),
            raw=esim,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # TOP-UPS & PRICES
    # ─────────────────────────────────────────────────────────────────────────

    async def top_up(self, iccid: str, package_code: str, reference: str) -> TopupResult:
        headers = await self._auth_headers()
        payload = {"iccid": iccid, "product_uid": package_code, "external_reference": reference}
        try:
            response = await self.client.post(
                f"/connectivity/v1/sims/{iccid}/topups",
                json=payload,
                headers=headers,
                supplier=self.label,
            )
        except SupplierHTTPError as e:
            self._check_auth(e)
            return TopupResult(success=False, reason=e.message)

        if not response.get("success", True):
            return TopupResult(success=False, reason=str(response.get("message") or "top-up rejected"))

        data = response.get("data") or {}
        return TopupResult(success=True, transaction_id=str(data.get("topup_id") or reference))

    async def get_package_price(self, package_code: str) -> Decimal:
        headers = await self._auth_headers()
        try:
            response = await self.client.get(
                f"/connectivity/v1/account/products/{package_code}",
                headers=headers,
                supplier=self.label,
            )
        except SupplierHTTPError as e:
            self._raise_for_lookup(e)

        product = response.get("product") or response
        price = parse_money(product.get("wholesale_price_usd") or product.get("price"))
        if price is None or price <= 0:
            raise SupplierFailedError(f"Product '{package_code}' has no price at {self.label}")
        return price
