"""Relational model for the wallet ledger, pricing and fulfillment."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from esim_reseller.core.utils import utcnow
from esim_reseller.db.base import Base

Money = Numeric(12, 2)


def _uuid() -> str:
    return str(uuid4())


class MarkupType(str, enum.Enum):
    PERCENT = "percent"
    FIXED = "fixed"
    FIXED_PRICE = "fixed_price"  # pricing rules only: value is the retail price


class AgentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SUSPENDED = "suspended"
    REJECTED = "rejected"


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    PURCHASE = "purchase"
    DEBIT = "debit"
    CREDIT = "credit"
    REFUND = "refund"


class SupplierName(str, enum.Enum):
    SUPPLIER_A = "supplier_a"
    SUPPLIER_B = "supplier_b"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RuleType(str, enum.Enum):
    AGENT = "agent"
    PLAN = "plan"
    COUNTRY = "country"
    DEFAULT = "default"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class Agent(Base, TimestampMixin):
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    # mutated only by the wallet ledger
    wallet_balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    wallet_currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    markup_type: Mapped[MarkupType | None] = mapped_column(Enum(MarkupType), nullable=True)
    markup_value: Mapped[Decimal | None] = mapped_column(Money, nullable=True)

    status: Mapped[AgentStatus] = mapped_column(
        Enum(AgentStatus), default=AgentStatus.PENDING, nullable=False
    )


class WalletTransaction(Base):
    """Immutable ledger entry. Never updated or deleted."""

    __tablename__ = "wallet_transactions"

    # autoincrement id is the replay order
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(String(36), ForeignKey("agents.id"), index=True, nullable=False)

    transaction_type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)  # signed
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)

    description: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Prevent duplicate credits/refunds for the same external event
    __table_args__ = (
        UniqueConstraint("agent_id", "reference_id", "transaction_type", name="uq_wallet_tx_reference"),
    )


class Plan(Base, TimestampMixin):
    __tablename__ = "esim_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    supplier_name: Mapped[SupplierName] = mapped_column(Enum(SupplierName), index=True, nullable=False)
    supplier_plan_id: Mapped[str] = mapped_column(String(128), nullable=False)

    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    country_code: Mapped[str] = mapped_column(String(8), default="", nullable=False)
    country_name: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    data_amount: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    validity_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    wholesale_price: Mapped[Decimal] = mapped_column(Money, nullable=False)  # USD
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PricingRule(Base, TimestampMixin):
    __tablename__ = "pricing_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_type: Mapped[RuleType] = mapped_column(Enum(RuleType), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # agent id or country code
    plan_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("esim_plans.id"), nullable=True)
    agent_filter: Mapped[str | None] = mapped_column(String(36), nullable=True)

    markup_type: Mapped[MarkupType] = mapped_column(Enum(MarkupType), nullable=False)
    markup_value: Mapped[Decimal] = mapped_column(Money, nullable=False)

    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)  # lower wins
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class AgentPricing(Base, TimestampMixin):
    """Explicit retail price for one agent and plan; beats every rule."""

    __tablename__ = "agent_pricing"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(String(36), ForeignKey("agents.id"), index=True, nullable=False)
    plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("esim_plans.id"), nullable=False)
    retail_price: Mapped[Decimal] = mapped_column(Money, nullable=False)

    __table_args__ = (UniqueConstraint("agent_id", "plan_id", name="uq_agent_pricing_plan"),)


class Order(Base, TimestampMixin):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(String(36), ForeignKey("agents.id"), index=True, nullable=False)
    plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("esim_plans.id"), nullable=False)

    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # frozen at purchase time
    wholesale_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    retail_price: Mapped[Decimal] = mapped_column(Money, nullable=False)

    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus), default=OrderStatus.PENDING, index=True, nullable=False
    )

    esim_iccid: Mapped[str | None] = mapped_column(String(32), index=True, nullable=True)
    activation_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    manual_code: Mapped[str | None] = mapped_column(String(255), nullable=True)
    smdp_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    esim_qr_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    supplier_order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    checkout_reference: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)

    real_status: Mapped[str | None] = mapped_column(Text, index=True, nullable=True)
    esim_expiry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # bumped on every status check, changed or not; drives the sweep order
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True, nullable=True)
    # failed order whose refund could not be written yet
    refund_pending: Mapped[bool] = mapped_column(Boolean, default=False, index=True, nullable=False)


class Topup(Base, TimestampMixin):
    __tablename__ = "esim_topups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(String(36), ForeignKey("agents.id"), index=True, nullable=False)
    iccid: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    package_code: Mapped[str] = mapped_column(String(128), nullable=False)
    plan_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("esim_plans.id"), nullable=True)

    wholesale_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)  # retail charged
    data_amount: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    validity_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class EsimStatusEvent(Base):
    """One row per distinct status change of an eSIM."""

    __tablename__ = "esim_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    iccid: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    esim_status: Mapped[str] = mapped_column(String(64), nullable=False)
    smdp_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    new_values: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
