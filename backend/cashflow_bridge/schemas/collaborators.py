"""Payloads exchanged with the credit-scoring and liquidity-pool services."""

from __future__ import annotations

from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from cashflow_bridge.schemas.advances import MoneyField

RiskTier = Literal["A", "B", "C"]
ReleaseType = Literal["FULL_REPAYMENT", "PARTIAL_REPAYMENT", "CANCELLATION"]


class CreditScoreResult(BaseModel):
    producer_id: Optional[str] = None
    overall_score: int = Field(..., ge=0, le=100)
    risk_tier: RiskTier


class EligibilityResult(BaseModel):
    is_eligible: bool
    reason: Optional[str] = None
    conditions: List[str] = Field(default_factory=list)


class PoolAllocationRequest(BaseModel):
    contract_id: str
    farmer_id: str
    order_id: str
    amount: MoneyField
    currency: str
    risk_tier: RiskTier
    credit_score: int
    expected_repayment_date: date
    expected_delivery_date: date
    preferred_pool_id: Optional[str] = None


class PoolAllocation(BaseModel):
    pool_id: str
    allocation_id: Optional[str] = None
    amount: Optional[MoneyField] = None


class PoolAllocationResult(BaseModel):
    success: bool
    allocation: Optional[PoolAllocation] = None
    error: Optional[str] = None


class CapitalReleaseRequest(BaseModel):
    contract_id: str
    pool_id: Optional[str] = None
    amount: MoneyField
    fees_collected: MoneyField
    release_type: ReleaseType
