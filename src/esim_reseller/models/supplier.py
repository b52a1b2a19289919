"""Supplier-independent provisioning types.

Adapters translate every upstream response into one of these models so the
fulfillment code never inspects raw supplier JSON.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from esim_reseller.core.status import NormalizedStatus


class EsimProfile(BaseModel):
    """A provisioned eSIM profile."""

    iccid: str
    activation_code: str | None = None
    manual_code: str | None = None
    smdp_address: str | None = None
    qr_code: str | None = None
    real_status: str | None = Field(None, description="Canonical status string as stored on the order")
    expires_at: datetime | None = None


class Completed(BaseModel):
    """Supplier returned a usable profile."""

    kind: Literal["completed"] = "completed"
    profile: EsimProfile
    supplier_order_id: str | None = None


class Pending(BaseModel):
    """Supplier has not provisioned yet. Retryable, never refunded."""

    kind: Literal["pending"] = "pending"
    reason: str
    supplier_order_id: str | None = None


class Failed(BaseModel):
    """Supplier definitively failed. Triggers exactly one refund."""

    kind: Literal["failed"] = "failed"
    reason: str


SupplierResult = Completed | Pending | Failed


class SupplierStatus(BaseModel):
    """Live status of an eSIM as reported by its supplier."""

    iccid: str
    real_status: str
    normalized: NormalizedStatus
    smdp_status: str | None = None
    expires_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class TopupResult(BaseModel):
    """Outcome of applying a top-up package to an existing eSIM."""

    success: bool
    transaction_id: str | None = None
    reason: str | None = None
