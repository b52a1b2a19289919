"""Order, top-up and reconciliation models."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from esim_reseller.core.status import NormalizedStatus
from esim_reseller.db.models import OrderStatus


class CustomerInfo(BaseModel):
    """End customer for a single order."""

    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: str | None = None


class PurchaseRequest(BaseModel):
    """Buy one plan for one end customer."""

    plan_id: str
    customer: CustomerInfo


class OrderOut(BaseModel):
    """Order as shown to the agent."""

    id: str
    agent_id: str
    plan_id: str
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    wholesale_price: Decimal
    retail_price: Decimal
    status: OrderStatus
    esim_iccid: str | None = None
    activation_code: str | None = None
    manual_code: str | None = None
    smdp_address: str | None = None
    esim_qr_code: str | None = None
    supplier_order_id: str | None = None
    real_status: str | None = None
    esim_expiry_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class ProvisionOutcome(BaseModel):
    """Result of one provisioning attempt.

    ``status`` is ``completed``, ``processing`` (retry scheduled, not an
    error) or ``failed`` (refunded).
    """

    success: bool
    order_id: str
    status: str
    iccid: str | None = None
    supplier_order_no: str | None = None
    error: str | None = None
    refunded: bool = False


class PurchaseResponse(BaseModel):
    outcome: ProvisionOutcome
    order: OrderOut
    balance: Decimal


class ProvisionRequest(BaseModel):
    plan_id: str
    order_id: str


class RetrySweepResponse(BaseModel):
    processed: int
    results: list[ProvisionOutcome] = []


class TopupRequest(BaseModel):
    iccid: str = Field(..., min_length=1)
    package_code: str = Field(..., min_length=1)


class TopupResponse(BaseModel):
    success: bool
    topup_id: str
    amount: Decimal
    balance: Decimal
    status: str
    error: str | None = None


class SyncRequest(BaseModel):
    iccid: str = Field(..., min_length=1)


class SyncResponse(BaseModel):
    success: bool = True
    changed: bool
    order: OrderOut
    status: NormalizedStatus


class StatusUpdate(BaseModel):
    iccid: str
    changed: bool
    display_status: str | None = None
    error: str | None = None


class SupplierSyncResponse(BaseModel):
    synced_count: int
    updates: list[StatusUpdate] = []


class WebhookPayload(BaseModel):
    """Supplier A notification envelope."""

    notifyType: str
    content: dict[str, Any] = {}
