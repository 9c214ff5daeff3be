from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from cashflow_bridge.core.money import Money, to_decimal
from cashflow_bridge.models.domain import (
    AdvanceStatus,
    ApprovalMethod,
    PaymentMethod,
    TransactionType,
)


def _as_amount(value):
    if value is None:
        return None
    if isinstance(value, Money):
        return value.amount
    try:
        return to_decimal(value)
    except TypeError as exc:
        raise ValueError(str(exc)) from exc


MoneyField = Annotated[Decimal, BeforeValidator(_as_amount)]


class AdvanceCalculation(BaseModel):
    """Quote produced by the calculation engine. Never persisted on its own."""

    farmer_id: str
    order_id: str
    buyer_id: str
    currency: str
    order_amount: MoneyField

    credit_score: int
    risk_tier: str
    auto_approvable: bool

    max_advance_percentage: Decimal
    max_advance_amount: MoneyField
    requested_amount: Optional[MoneyField] = None
    actual_advance_amount: MoneyField

    farmer_fee_percentage: Decimal
    farmer_fee_amount: MoneyField
    buyer_fee_percentage: Decimal
    buyer_fee_amount: MoneyField
    platform_fee_total: MoneyField
    net_to_farmer: MoneyField

    expected_delivery_date: date
    due_date: date
    days_outstanding: int
    implicit_interest_rate: Decimal
    implicit_interest_amount: MoneyField
    cost_of_capital: MoneyField
    risk_provision: MoneyField
    operating_costs: MoneyField
    gross_profit: MoneyField
    profit_margin: Decimal

    is_eligible: bool
    eligibility_reasons: List[str] = Field(default_factory=list)
    calculated_at: datetime


class AdvanceContractDetails(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    contract_number: str
    status: AdvanceStatus
    approval_method: ApprovalMethod

    farmer_id: str
    buyer_id: str
    order_id: str
    order_number: Optional[str] = None
    pool_id: Optional[str] = None
    pool_name: Optional[str] = None
    currency: str

    order_amount: MoneyField
    advance_percentage: Decimal
    advance_amount: MoneyField
    farmer_fee_percentage: Decimal
    farmer_fee_amount: MoneyField
    buyer_fee_percentage: Decimal
    buyer_fee_amount: MoneyField
    platform_fee_total: MoneyField
    net_to_farmer: MoneyField

    implicit_interest: MoneyField
    cost_of_capital: MoneyField
    risk_provision: MoneyField
    operating_costs: MoneyField
    gross_profit: MoneyField
    profit_margin: Decimal

    amount_repaid: MoneyField
    amount_written_off: MoneyField
    remaining_balance: MoneyField

    credit_score: int
    risk_tier: str
    fraud_score: Optional[int] = None

    disbursement_method: Optional[PaymentMethod] = None
    disbursement_reference: Optional[str] = None
    disbursement_fee: Optional[MoneyField] = None
    rejection_reason: Optional[str] = None

    requested_at: datetime
    approved_at: Optional[datetime] = None
    disbursed_at: Optional[datetime] = None
    due_date: date
    expected_delivery_date: date
    repaid_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AdvanceStatusHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contract_id: str
    from_status: Optional[AdvanceStatus] = None
    to_status: AdvanceStatus
    changed_by: str
    reason: Optional[str] = None
    created_at: datetime


class AdvanceTransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_number: str
    contract_id: str
    type: TransactionType
    amount: MoneyField
    balance_before: MoneyField
    balance_after: MoneyField
    payment_method: Optional[PaymentMethod] = None
    payment_reference: Optional[str] = None
    source: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


def _clean_id(v: str) -> str:
    vv = str(v or "").strip()
    if not vv:
        raise ValueError("must not be blank")
    return vv


class AdvanceQuoteRequest(BaseModel):
    farmer_id: str = Field(..., max_length=36)
    order_id: str = Field(..., max_length=36)
    requested_amount: Optional[MoneyField] = None

    @field_validator("farmer_id", "order_id")
    @classmethod
    def clean_ids(cls, v: str) -> str:
        return _clean_id(v)


class AdvanceRequest(AdvanceQuoteRequest):
    preferred_pool_id: Optional[str] = Field(None, max_length=36)
    disbursement_method: PaymentMethod = PaymentMethod.PIX
    requested_by: Optional[str] = Field(None, max_length=64)


class StatusTransitionRequest(BaseModel):
    new_status: AdvanceStatus
    actor: str = Field(..., min_length=1, max_length=64)
    reason: Optional[str] = None


class DisbursementRequest(BaseModel):
    reference: str = Field(..., min_length=1, max_length=128)
    fee: Optional[MoneyField] = None
    method: Optional[PaymentMethod] = None


class RepaymentRequest(BaseModel):
    amount: MoneyField
    payment_method: PaymentMethod
    payment_reference: Optional[str] = Field(None, max_length=128)
    source: Optional[str] = Field(None, max_length=64)
    notes: Optional[str] = None


class RepaymentInput(RepaymentRequest):
    advance_id: str


class DefaultRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    recovered_amount: MoneyField = Decimal("0")


class StatusTransitionResult(BaseModel):
    contract_id: str
    from_status: AdvanceStatus
    to_status: AdvanceStatus
    changed_at: datetime


class DisbursementResult(BaseModel):
    contract_id: str
    disbursed_at: datetime
    reference: str
    status: AdvanceStatus
    collaborator_warnings: List[str] = Field(default_factory=list)


class RepaymentResult(BaseModel):
    contract_id: str
    amount_applied: MoneyField
    remaining_balance: MoneyField
    is_fully_repaid: bool
    fees_collected: MoneyField
    status: AdvanceStatus
    collaborator_warnings: List[str] = Field(default_factory=list)


class DefaultResult(BaseModel):
    contract_id: str
    loss_amount: MoneyField
    recovered_amount: MoneyField
    collaborator_warnings: List[str] = Field(default_factory=list)
