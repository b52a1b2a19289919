"""Shared response envelopes."""

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Error details."""

    code: str  # Machine-readable code
    message: str  # Human-readable message
    upstream: str | None = None  # Supplier or payment provider involved


class ErrorResponse(BaseModel):
    """Error response envelope."""

    success: bool = False
    error: ErrorDetail


class InsufficientFundsResponse(BaseModel):
    """Flat 402 body the checkout UI uses to show a top-up prompt."""

    error: str = "INSUFFICIENT_FUNDS"
    balance: str
