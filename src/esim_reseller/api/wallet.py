"""Wallet API routes: balance, plain debits and cart checkout."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.api.dependencies import get_adapter_factory, get_agent_id, get_session
from esim_reseller.models.wallet import (
    CheckoutRequest,
    CheckoutResponse,
    DebitRequest,
    DebitResponse,
    WalletResponse,
    WalletTransactionOut,
)
from esim_reseller.services import ledger
from esim_reseller.services.fulfillment import AdapterFactory, checkout

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("", response_model=WalletResponse)
async def get_wallet(
    limit: int = Query(50, ge=1, le=200),
    agent_id: str = Depends(get_agent_id),
    session: AsyncSession = Depends(get_session),
) -> WalletResponse:
    """Current balance and most recent transactions."""
    agent = await ledger.get_agent(session, agent_id)
    transactions = await ledger.list_transactions(session, agent_id, limit=limit)
    return WalletResponse(
        balance=agent.wallet_balance,
        currency=agent.wallet_currency,
        transactions=[WalletTransactionOut.model_validate(tx) for tx in transactions],
    )


@router.post("/debit", response_model=DebitResponse)
async def debit_wallet(
    request: DebitRequest,
    agent_id: str = Depends(get_agent_id),
    session: AsyncSession = Depends(get_session),
) -> DebitResponse:
    """Debit the wallet without a cart."""
    result = await ledger.debit(
        session,
        agent_id,
        request.amount,
        description=request.description or "Wallet debit",
        reference_id=request.reference_id,
    )
    return DebitResponse(balance=result.balance, duplicate=result.duplicate)


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout_cart(
    request: CheckoutRequest,
    agent_id: str = Depends(get_agent_id),
    session: AsyncSession = Depends(get_session),
    get_adapter: AdapterFactory = Depends(get_adapter_factory),
) -> CheckoutResponse:
    """Pay for a cart from the wallet and provision one eSIM per unit."""
    return await checkout(session, agent_id, request, get_adapter=get_adapter)
