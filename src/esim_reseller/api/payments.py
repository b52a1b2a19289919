"""Wallet top-up confirmation routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.api.dependencies import (
    get_agent_id,
    get_razorpay_gateway,
    get_session,
    get_stripe_gateway,
)
from esim_reseller.models.wallet import (
    RazorpayVerifyRequest,
    RazorpayVerifyResponse,
    StripeConfirmRequest,
    StripeConfirmResponse,
    StripeReconcileResponse,
)
from esim_reseller.services.payments import (
    RazorpayGateway,
    StripeGateway,
    confirm_razorpay_payment,
    confirm_stripe_session,
    reconcile_stripe_sessions,
)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/stripe/confirm", response_model=StripeConfirmResponse, response_model_exclude_none=True)
async def confirm_stripe(
    request: StripeConfirmRequest,
    agent_id: str = Depends(get_agent_id),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> StripeConfirmResponse:
    """Credit the wallet for a paid Stripe checkout session."""
    return await confirm_stripe_session(session, agent_id, request.session_id, gateway)


@router.post("/stripe/reconcile", response_model=StripeReconcileResponse)
async def reconcile_stripe(
    agent_id: str = Depends(get_agent_id),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> StripeReconcileResponse:
    """Credit recent paid checkout sessions that were never confirmed."""
    return await reconcile_stripe_sessions(session, agent_id, gateway)


@router.post("/razorpay/verify", response_model=RazorpayVerifyResponse)
async def verify_razorpay(
    request: RazorpayVerifyRequest,
    agent_id: str = Depends(get_agent_id),
    session: AsyncSession = Depends(get_session),
    gateway: RazorpayGateway = Depends(get_razorpay_gateway),
) -> RazorpayVerifyResponse:
    """Verify a Razorpay payment signature and credit the wallet."""
    return await confirm_razorpay_payment(
        session,
        agent_id,
        request.razorpay_order_id,
        request.razorpay_payment_id,
        request.razorpay_signature,
        gateway,
    )
