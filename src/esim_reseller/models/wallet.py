"""Wallet, checkout and payment confirmation models."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from esim_reseller.db.models import TransactionType


class LedgerResult(BaseModel):
    """Outcome of a wallet mutation."""

    balance: Decimal
    transaction_id: int | None = None
    duplicate: bool = False  # True when the reference was already processed


class WalletTransactionOut(BaseModel):
    """A wallet ledger entry."""

    id: int
    transaction_type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str
    reference_id: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class WalletResponse(BaseModel):
    """Current balance and recent history."""

    balance: Decimal
    currency: str
    transactions: list[WalletTransactionOut] = []


class DebitRequest(BaseModel):
    """Plain wallet debit without a cart."""

    amount: Decimal = Field(..., gt=0)
    description: str = ""
    reference_id: str | None = None


class DebitResponse(BaseModel):
    balance: Decimal
    duplicate: bool = False


class CartItem(BaseModel):
    """Single plan in a checkout cart."""

    plan_id: str = Field(..., alias="planId")
    name: str | None = None
    price: Decimal
    quantity: int = Field(1, ge=1)

    model_config = {"populate_by_name": True}


class CheckoutCustomer(BaseModel):
    """End customer receiving the eSIMs."""

    name: str = ""
    email: str = ""
    phone: str | None = None


class CheckoutRequest(BaseModel):
    """Cart checkout: one debit for the total, one order per unit."""

    amount: Decimal
    description: str = ""
    reference_id: str
    cart_items: list[CartItem] = Field(..., min_length=1)
    customer_info: CheckoutCustomer


class CheckoutResponse(BaseModel):
    balance: Decimal
    order_ids: list[str]


class StripeConfirmRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class StripeConfirmResponse(BaseModel):
    """Either a fresh credit (``amount`` set) or an already-confirmed session."""

    status: str = "confirmed"  # confirmed | already_confirmed
    balance: Decimal
    amount: Decimal | None = None


class StripeReconcileResponse(BaseModel):
    reconciled: int
    balance: Decimal
    session_ids: list[str] = Field(default_factory=list)


class RazorpayVerifyRequest(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)


class RazorpayVerifyResponse(BaseModel):
    success: bool = True
    new_balance: Decimal
    amount_added: Decimal
    currency: str
    duplicate: bool = False
