"""Wallet ledger: agent balance plus an append-only transaction log.

Every mutation is a compare-and-swap on ``agents.wallet_balance`` and an
insert into ``wallet_transactions``, committed together. A CAS miss means
another request changed the balance between our read and our write; the
read-modify-write is retried once before giving up with
``WalletContentionError``.
"""

from collections.abc import Sequence
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.core.exceptions import (
    AgentNotFoundException,
    InsufficientFundsError,
    ValidationException,
    WalletContentionError,
)
from esim_reseller.core.logging import get_logger
from esim_reseller.core.utils import to_money, utcnow
from esim_reseller.db.models import Agent, TransactionType, WalletTransaction
from esim_reseller.models.wallet import LedgerResult
from esim_reseller.services import audit

logger = get_logger(__name__)

CAS_ATTEMPTS = 2  # first try + one retry


async def get_agent(session: AsyncSession, agent_id: str) -> Agent:
    agent = await session.get(Agent, agent_id)
    if agent is None:
        raise AgentNotFoundException(f"Agent '{agent_id}' not found")
    return agent


async def get_balance(session: AsyncSession, agent_id: str) -> Decimal:
    result = await session.execute(select(Agent.wallet_balance).where(Agent.id == agent_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise AgentNotFoundException(f"Agent '{agent_id}' not found")
    return to_money(Decimal(balance))


async def _find_existing(
    session: AsyncSession,
    agent_id: str,
    reference_id: str,
    transaction_type: TransactionType,
) -> WalletTransaction | None:
    result = await session.execute(
        select(WalletTransaction).where(
            WalletTransaction.agent_id == agent_id,
            WalletTransaction.reference_id == reference_id,
            WalletTransaction.transaction_type == transaction_type,
        )
    )
    return result.scalar_one_or_none()


async def _duplicate_result(
    session: AsyncSession,
    existing: WalletTransaction,
) -> LedgerResult:
    """Record the short-circuit and hand back the original outcome."""
    audit.record(
        session,
        "wallet_transactions",
        "wallet_duplicate_reference",
        agent_id=existing.agent_id,
        reference_id=existing.reference_id,
        transaction_type=existing.transaction_type,
        transaction_id=existing.id,
        balance_after=existing.balance_after,
    )
    await session.commit()
    return LedgerResult(
        balance=to_money(Decimal(existing.balance_after)),
        transaction_id=existing.id,
        duplicate=True,
    )


async def _apply(
    session: AsyncSession,
    agent_id: str,
    amount: Decimal,
    transaction_type: TransactionType,
    description: str,
    reference_id: str | None,
    attach: Sequence[object] = (),
) -> LedgerResult:
    """Apply a signed amount to the wallet.

    ``attach`` rows are inserted in the same commit as the ledger entry and
    are never written when the mutation is refused or short-circuited.
    """
    if reference_id:
        existing = await _find_existing(session, agent_id, reference_id, transaction_type)
        if existing is not None:
            return await _duplicate_result(session, existing)

    for attempt in range(1, CAS_ATTEMPTS + 1):
        current = await get_balance(session, agent_id)
        new_balance = to_money(current + amount)
        if new_balance < 0:
            logger.info(
                "wallet_insufficient_funds",
                agent_id=agent_id,
                balance=str(current),
                required=str(-amount),
                reference_id=reference_id,
            )
            raise InsufficientFundsError(balance=current, required=-amount)

        result = await session.execute(
            update(Agent)
            .where(Agent.id == agent_id, Agent.wallet_balance == current)
            .values(wallet_balance=new_balance, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # empty write transaction; commit keeps loaded objects usable
            await session.commit()
            logger.warning(
                "wallet_cas_miss",
                agent_id=agent_id,
                attempt=attempt,
                expected=str(current),
            )
            continue

        entry = WalletTransaction(
            agent_id=agent_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_after=new_balance,
            description=description,
            reference_id=reference_id,
        )
        session.add(entry)
        session.add_all(attach)
        audit.record(
            session,
            "wallet_transactions",
            f"wallet_{transaction_type.value}",
            agent_id=agent_id,
            amount=amount,
            balance_before=current,
            balance_after=new_balance,
            reference_id=reference_id,
        )
        try:
            await session.commit()
        except IntegrityError:
            # Lost a race with an identical reference
            await session.rollback()
            if reference_id is None:
                raise
            existing = await _find_existing(session, agent_id, reference_id, transaction_type)
            if existing is None:
                raise
            return await _duplicate_result(session, existing)

        return LedgerResult(balance=new_balance, transaction_id=entry.id)

    logger.error("wallet_contention", agent_id=agent_id, reference_id=reference_id)
    raise WalletContentionError(f"Wallet of agent '{agent_id}' is busy, try again")


def _positive(amount: Decimal) -> Decimal:
    amount = Decimal(amount)
    if not amount.is_finite() or amount <= 0:
        raise ValidationException("Amount must be greater than zero")
    return to_money(amount)


async def debit(
    session: AsyncSession,
    agent_id: str,
    amount: Decimal,
    description: str,
    reference_id: str | None,
    transaction_type: TransactionType = TransactionType.PURCHASE,
    attach: Sequence[object] = (),
) -> LedgerResult:
    """Take money from the wallet. Raises InsufficientFundsError, never partial.

    Rows passed in ``attach`` (the orders being paid for) commit together
    with the debit.
    """
    value = _positive(amount)
    return await _apply(
        session, agent_id, -value, transaction_type, description, reference_id, attach=attach
    )


async def credit(
    session: AsyncSession,
    agent_id: str,
    amount: Decimal,
    description: str,
    reference_id: str | None,
    transaction_type: TransactionType = TransactionType.CREDIT,
) -> LedgerResult:
    """Add money to the wallet, idempotent per (reference_id, transaction_type)."""
    value = _positive(amount)
    return await _apply(session, agent_id, value, transaction_type, description, reference_id)


async def refund(
    session: AsyncSession,
    agent_id: str,
    amount: Decimal,
    order_id: str,
    reason: str,
) -> LedgerResult:
    """Return an order's price to the wallet. At most once per order id."""
    result = await credit(
        session,
        agent_id,
        amount,
        description=f"Refund: {reason}",
        reference_id=order_id,
        transaction_type=TransactionType.REFUND,
    )
    if not result.duplicate:
        logger.info("wallet_refund_issued", agent_id=agent_id, order_id=order_id, reason=reason)
    return result


async def replay_balance(session: AsyncSession, agent_id: str) -> Decimal:
    """Sum of every ledger entry for the agent; equals the stored balance."""
    result = await session.execute(
        select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
            WalletTransaction.agent_id == agent_id
        )
    )
    return to_money(Decimal(str(result.scalar_one())))


async def list_transactions(
    session: AsyncSession,
    agent_id: str,
    limit: int = 50,
) -> list[WalletTransaction]:
    """Most recent ledger entries first."""
    result = await session.execute(
        select(WalletTransaction)
        .where(WalletTransaction.agent_id == agent_id)
        .order_by(WalletTransaction.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def find_transaction(
    session: AsyncSession,
    agent_id: str,
    reference_id: str,
    transaction_type: TransactionType,
) -> WalletTransaction | None:
    """Ledger entry already recorded for an external reference, if any."""
    return await _find_existing(session, agent_id, reference_id, transaction_type)
