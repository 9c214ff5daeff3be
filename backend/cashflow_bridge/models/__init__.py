from cashflow_bridge.models.domain import (
    AdvanceContract,
    AdvanceStatus,
    AdvanceStatusHistory,
    AdvanceTransaction,
    ApprovalMethod,
    ContractNumberSequence,
    LiquidityPool,
    Order,
    PaymentMethod,
    PoolStatus,
    TransactionType,
)
from cashflow_bridge.models.types import MoneyType

__all__ = [
    "AdvanceContract",
    "AdvanceStatus",
    "AdvanceStatusHistory",
    "AdvanceTransaction",
    "ApprovalMethod",
    "ContractNumberSequence",
    "LiquidityPool",
    "MoneyType",
    "Order",
    "PaymentMethod",
    "PoolStatus",
    "TransactionType",
]
