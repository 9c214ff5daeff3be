# ruff: noqa: E501
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from cashflow_bridge.core.money import Money
from cashflow_bridge.database import Base
from cashflow_bridge.models.types import MoneyType


def _uuid() -> str:
    return str(uuid.uuid4())


class AdvanceStatus(str, PyEnum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DISBURSED = "DISBURSED"
    ACTIVE = "ACTIVE"
    DELIVERY_IN_PROGRESS = "DELIVERY_IN_PROGRESS"
    DELIVERY_CONFIRMED = "DELIVERY_CONFIRMED"
    PARTIALLY_REPAID = "PARTIALLY_REPAID"
    COMPLETED = "COMPLETED"
    OVERDUE = "OVERDUE"
    DEFAULT_WARNING = "DEFAULT_WARNING"
    DEFAULTED = "DEFAULTED"
    IN_COLLECTIONS = "IN_COLLECTIONS"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"


class ApprovalMethod(str, PyEnum):
    MANUAL = "MANUAL"
    AUTOMATIC = "AUTOMATIC"


class PaymentMethod(str, PyEnum):
    PIX = "PIX"
    BANK_TRANSFER = "BANK_TRANSFER"
    BOLETO = "BOLETO"
    ESCROW_RELEASE = "ESCROW_RELEASE"
    OFFSET = "OFFSET"


class TransactionType(str, PyEnum):
    DISBURSEMENT = "DISBURSEMENT"
    PARTIAL_REPAYMENT = "PARTIAL_REPAYMENT"
    FINAL_REPAYMENT = "FINAL_REPAYMENT"


class PoolStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CLOSED = "CLOSED"


class Order(Base):
    """Delivery order owned by the ordering module; advances only flip ``advance_requested*``."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    producer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    total_amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    advance_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    advance_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    advance_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expected_delivery_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LiquidityPool(Base):
    """Capital pool owned by the pools module; read here for candidate selection only."""

    __tablename__ = "liquidity_pools"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[PoolStatus] = mapped_column(
        Enum(PoolStatus, native_enum=False), nullable=False, default=PoolStatus.ACTIVE, index=True
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    available_capital: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ContractNumberSequence(Base):
    __tablename__ = "contract_number_sequences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prefix: Mapped[str] = mapped_column(String(8), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (UniqueConstraint("prefix", "year", name="uq_contract_seq_prefix_year"),)


class AdvanceContract(Base):
    __tablename__ = "advance_contracts"
    __table_args__ = (
        UniqueConstraint("order_id", name="uq_advance_contracts_order_id"),
        CheckConstraint("remaining_balance >= 0", name="ck_advance_contracts_remaining_nonneg"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    contract_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=AdvanceStatus.PENDING_APPROVAL.value, index=True
    )
    approval_method: Mapped[ApprovalMethod] = mapped_column(
        Enum(ApprovalMethod, native_enum=False), nullable=False, default=ApprovalMethod.MANUAL
    )

    farmer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    # One advance per order, ever. The unique constraint is what makes creation idempotent.
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False)
    pool_id: Mapped[str | None] = mapped_column(ForeignKey("liquidity_pools.id"), nullable=True, index=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")

    order_amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    advance_percentage: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    advance_amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    farmer_fee_percentage: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    farmer_fee_amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    buyer_fee_percentage: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    buyer_fee_amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    platform_fee_total: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    net_to_farmer: Mapped[Money] = mapped_column(MoneyType, nullable=False)

    # Economics as quoted at request time.
    implicit_interest: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    cost_of_capital: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    risk_provision: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    operating_costs: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    gross_profit: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    profit_margin: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)

    amount_repaid: Mapped[Money] = mapped_column(MoneyType, nullable=False, default=Money.zero)
    amount_written_off: Mapped[Money] = mapped_column(MoneyType, nullable=False, default=Money.zero)
    remaining_balance: Mapped[Money] = mapped_column(MoneyType, nullable=False)

    credit_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_tier: Mapped[str] = mapped_column(String(1), nullable=False)
    fraud_score: Mapped[int | None] = mapped_column(Integer)

    disbursement_method: Mapped[PaymentMethod | None] = mapped_column(Enum(PaymentMethod, native_enum=False))
    disbursement_reference: Mapped[str | None] = mapped_column(String(128))
    disbursement_fee: Mapped[Money | None] = mapped_column(MoneyType)

    rejection_reason: Mapped[str | None] = mapped_column(Text)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    disbursed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    expected_delivery_date: Mapped[date] = mapped_column(Date, nullable=False)
    repaid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    defaulted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    order = relationship("Order", viewonly=True)
    pool = relationship("LiquidityPool", viewonly=True)
    status_history = relationship(
        "AdvanceStatusHistory",
        order_by="AdvanceStatusHistory.id",
        viewonly=True,
    )
    transactions = relationship(
        "AdvanceTransaction",
        order_by="AdvanceTransaction.id",
        viewonly=True,
    )

    @property
    def order_number(self) -> str | None:
        return self.order.order_number if self.order is not None else None

    @property
    def pool_name(self) -> str | None:
        return self.pool.name if self.pool is not None else None

    @validates("status")
    def _validate_status(self, _key, value: str | AdvanceStatus | None):
        if value is None:
            return AdvanceStatus.PENDING_APPROVAL.value
        if isinstance(value, AdvanceStatus):
            value = value.value
        allowed = {s.value for s in AdvanceStatus}
        if value not in allowed:
            raise ValueError(f"Invalid advance status: {value}")
        return value

    def _validate_invariants(self) -> None:
        advance = Money.of(self.advance_amount)
        repaid = Money.of(self.amount_repaid or Money.zero())
        written_off = Money.of(self.amount_written_off or Money.zero())
        remaining = Money.of(self.remaining_balance)

        if remaining < Money.zero():
            raise ValueError("AdvanceContract.remaining_balance must be >= 0")
        if remaining != advance - repaid - written_off:
            raise ValueError(
                "AdvanceContract.remaining_balance must equal advance_amount - amount_repaid - amount_written_off"
            )
        if self.risk_tier not in {"A", "B", "C"}:
            raise ValueError(f"Invalid risk tier: {self.risk_tier}")


@event.listens_for(AdvanceContract, "before_insert")
def _advance_before_insert(_mapper, _connection, target: AdvanceContract):
    target._validate_invariants()


@event.listens_for(AdvanceContract, "before_update")
def _advance_before_update(_mapper, _connection, target: AdvanceContract):
    target._validate_invariants()


class AdvanceStatusHistory(Base):
    """Append-only; the creation row has ``from_status`` NULL."""

    __tablename__ = "advance_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_id: Mapped[str] = mapped_column(ForeignKey("advance_contracts.id"), nullable=False, index=True)
    from_status: Mapped[str | None] = mapped_column(String(32))
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    contract = relationship("AdvanceContract")


class AdvanceTransaction(Base):
    __tablename__ = "advance_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    contract_id: Mapped[str] = mapped_column(ForeignKey("advance_contracts.id"), nullable=False, index=True)
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType, native_enum=False), nullable=False)
    amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    balance_before: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    balance_after: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    payment_method: Mapped[PaymentMethod | None] = mapped_column(Enum(PaymentMethod, native_enum=False))
    payment_reference: Mapped[str | None] = mapped_column(String(128))
    source: Mapped[str | None] = mapped_column(String(64))
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    contract = relationship("AdvanceContract")
