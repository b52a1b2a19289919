"""Wallet top-up confirmation for Stripe checkout sessions and Razorpay payments.

Both flows credit the wallet through the ledger's idempotent credit, keyed on
the payment provider's id, so duplicate confirmations and webhook retries
never credit twice.
"""

import asyncio
import hashlib
import hmac
from datetime import timedelta
from decimal import Decimal
from typing import Any

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.config import Settings, settings
from esim_reseller.core.exceptions import (
    PaymentVerificationError,
    SupplierHTTPError,
    UpstreamAuthError,
    ValidationException,
)
from esim_reseller.core.http import HTTPClient
from esim_reseller.core.logging import get_logger
from esim_reseller.core.utils import minor_units_to_money, to_money, utcnow
from esim_reseller.db.models import TransactionType
from esim_reseller.models.wallet import (
    RazorpayVerifyResponse,
    StripeConfirmResponse,
    StripeReconcileResponse,
)
from esim_reseller.services import audit, ledger

logger = get_logger(__name__)

RAZORPAY_SETTLED = {"captured", "authorized"}


# ─────────────────────────────────────────────────────────────────────────────
# GATEWAYS
# ─────────────────────────────────────────────────────────────────────────────


class StripeGateway:
    """Reads checkout sessions with the ``stripe`` library."""

    def __init__(self, secret_key: str):
        self.secret_key = secret_key

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(settings.stripe_secret_key)

    @staticmethod
    def _describe(checkout: Any) -> dict[str, Any]:
        metadata = checkout.metadata or {}
        return {
            "id": checkout.id,
            "payment_status": checkout.payment_status,
            "amount_total": checkout.amount_total,
            "currency": checkout.currency,
            "created": checkout.created,
            "metadata": {"agent_id": metadata.get("agent_id")},
        }

    async def _call(self, method: Any, *args: Any, **params: Any) -> Any:
        if not self.secret_key:
            raise UpstreamAuthError("Stripe is not configured", upstream="stripe")
        try:
            # stripe's client is synchronous
            return await asyncio.to_thread(method, *args, api_key=self.secret_key, **params)
        except stripe.AuthenticationError as e:
            raise UpstreamAuthError(f"Stripe rejected our credentials: {e}", upstream="stripe") from e
        except stripe.StripeError as e:
            logger.warning("stripe_request_failed", error=str(e))
            raise PaymentVerificationError(f"Could not verify Stripe session: {e}") from e

    async def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        checkout = await self._call(stripe.checkout.Session.retrieve, session_id)
        return self._describe(checkout)

    async def list_checkout_sessions(self, created_after: int, limit: int) -> list[dict[str, Any]]:
        """Most recent checkout sessions created at or after ``created_after`` (unix time)."""
        page = await self._call(
            stripe.checkout.Session.list, limit=limit, created={"gte": created_after}
        )
        return [self._describe(checkout) for checkout in page.data]


class RazorpayGateway:
    """Razorpay REST client (HTTP basic auth with key id and secret)."""

    def __init__(self, key_id: str, key_secret: str, base_url: str):
        self.key_id = key_id
        self.key_secret = key_secret
        self.client = HTTPClient(
            base_url=base_url,
            headers={"Accept": "application/json"},
            auth=(key_id, key_secret),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RazorpayGateway":
        return cls(settings.razorpay_key_id, settings.razorpay_key_secret, settings.razorpay_base_url)

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Constant-time check of ``hex(HMAC-SHA256(secret, "order_id|payment_id"))``."""
        if not self.key_secret:
            return False
        expected = hmac.new(
            self.key_secret.encode("utf-8"),
            f"{order_id}|{payment_id}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature)

    async def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        try:
            return await self.client.get(f"/v1/payments/{payment_id}", supplier="razorpay")
        except SupplierHTTPError as e:
            if e.http_status in (401, 403):
                raise UpstreamAuthError("Razorpay rejected our credentials", upstream="razorpay") from e
            raise PaymentVerificationError(f"Could not fetch Razorpay payment: {e.message}") from e

    async def close(self) -> None:
        await self.client.close()


# ─────────────────────────────────────────────────────────────────────────────
# CONFIRMATION
# ─────────────────────────────────────────────────────────────────────────────


async def confirm_stripe_session(
    session: AsyncSession,
    agent_id: str,
    session_id: str,
    gateway: StripeGateway,
) -> StripeConfirmResponse:
    """Credit a paid Stripe checkout session. Safe to call repeatedly."""
    await ledger.get_agent(session, agent_id)

    existing = await ledger.find_transaction(session, agent_id, session_id, TransactionType.DEPOSIT)
    if existing is not None:
        logger.info("stripe_session_already_confirmed", agent_id=agent_id, session_id=session_id)
        return StripeConfirmResponse(
            status="already_confirmed",
            balance=to_money(Decimal(existing.balance_after)),
        )

    checkout = await gateway.retrieve_checkout_session(session_id)
    if checkout.get("payment_status") != "paid":
        raise PaymentVerificationError(
            f"Payment not completed (status: {checkout.get('payment_status')})"
        )

    metadata = checkout.get("metadata") or {}
    owner = metadata.get("agent_id")
    if owner and owner != agent_id:
        audit.record(
            session,
            "wallet_transactions",
            "stripe_session_agent_mismatch",
            agent_id=agent_id,
            session_id=session_id,
            owner=owner,
        )
        await session.commit()
        raise PaymentVerificationError("Checkout session belongs to another agent")

    amount_total = checkout.get("amount_total") or 0
    if int(amount_total) <= 0:
        raise PaymentVerificationError("Checkout session has no amount")
    amount = minor_units_to_money(amount_total)

    result = await ledger.credit(
        session,
        agent_id,
        amount,
        description="Wallet top-up via Stripe",
        reference_id=session_id,
        transaction_type=TransactionType.DEPOSIT,
    )
    if result.duplicate:
        return StripeConfirmResponse(status="already_confirmed", balance=result.balance)

    logger.info("stripe_topup_confirmed", agent_id=agent_id, session_id=session_id, amount=str(amount))
    return StripeConfirmResponse(status="confirmed", balance=result.balance, amount=amount)


async def reconcile_stripe_sessions(
    session: AsyncSession,
    agent_id: str,
    gateway: StripeGateway,
    max_age_days: int | None = None,
    limit: int | None = None,
) -> StripeReconcileResponse:
    """Credit recent paid checkout sessions that were never confirmed.

    Picks up top-ups whose success redirect never reached us. Only sessions
    tagged with this agent's id are credited, under the same deposit
    reference as ``confirm_stripe_session``, so the two never double count.
    """
    max_age_days = max_age_days or settings.stripe_reconcile_days
    limit = limit or settings.stripe_reconcile_limit
    await ledger.get_agent(session, agent_id)

    cutoff = int((utcnow() - timedelta(days=max_age_days)).timestamp())
    checkouts = await gateway.list_checkout_sessions(created_after=cutoff, limit=limit)

    credited: list[str] = []
    for checkout in checkouts:
        session_id = checkout.get("id")
        if not session_id or checkout.get("payment_status") != "paid":
            continue
        if (checkout.get("metadata") or {}).get("agent_id") != agent_id:
            continue
        if int(checkout.get("created") or 0) < cutoff:
            continue
        amount_total = int(checkout.get("amount_total") or 0)
        if amount_total <= 0:
            continue
        if await ledger.find_transaction(session, agent_id, session_id, TransactionType.DEPOSIT):
            continue

        result = await ledger.credit(
            session,
            agent_id,
            minor_units_to_money(amount_total),
            description="Wallet top-up via Stripe (synced)",
            reference_id=session_id,
            transaction_type=TransactionType.DEPOSIT,
        )
        if not result.duplicate:
            credited.append(session_id)

    balance = await ledger.get_balance(session, agent_id)
    logger.info(
        "stripe_sessions_reconciled",
        agent_id=agent_id,
        scanned=len(checkouts),
        reconciled=len(credited),
    )
    return StripeReconcileResponse(reconciled=len(credited), balance=balance, session_ids=credited)


async def confirm_razorpay_payment(
    session: AsyncSession,
    agent_id: str,
    order_id: str,
    payment_id: str,
    signature: str,
    gateway: RazorpayGateway,
) -> RazorpayVerifyResponse:
    """Verify and credit a Razorpay payment.

    The signature is checked before anything from the request is trusted or
    any network call is made.
    """
    if not gateway.verify_signature(order_id, payment_id, signature):
        audit.record(
            session,
            "wallet_transactions",
            "razorpay_signature_rejected",
            agent_id=agent_id,
            razorpay_order_id=order_id,
            razorpay_payment_id=payment_id,
        )
        await session.commit()
        raise PaymentVerificationError("Invalid payment signature")

    agent = await ledger.get_agent(session, agent_id)
    if agent.wallet_currency != "INR":
        raise ValidationException("Razorpay top-ups require an INR wallet")

    existing = await ledger.find_transaction(session, agent_id, payment_id, TransactionType.CREDIT)
    if existing is not None:
        return RazorpayVerifyResponse(
            new_balance=to_money(Decimal(existing.balance_after)),
            amount_added=to_money(Decimal(existing.amount)),
            currency=agent.wallet_currency,
            duplicate=True,
        )

    payment = await gateway.fetch_payment(payment_id)
    if payment.get("status") not in RAZORPAY_SETTLED:
        raise PaymentVerificationError(f"Payment not completed (status: {payment.get('status')})")
    if payment.get("order_id") and payment["order_id"] != order_id:
        raise PaymentVerificationError("Payment does not belong to this order")

    amount = minor_units_to_money(payment.get("amount") or 0)
    if amount <= 0:
        raise PaymentVerificationError("Payment has no amount")

    result = await ledger.credit(
        session,
        agent_id,
        amount,
        description="Wallet top-up via Razorpay",
        reference_id=payment_id,
        transaction_type=TransactionType.CREDIT,
    )
    logger.info("razorpay_topup_confirmed", agent_id=agent_id, payment_id=payment_id, amount=str(amount))
    return RazorpayVerifyResponse(
        new_balance=result.balance,
        amount_added=amount,
        currency=str(payment.get("currency") or agent.wallet_currency),
        duplicate=result.duplicate,
    )
