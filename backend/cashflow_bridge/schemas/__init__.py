from cashflow_bridge.schemas.advances import (
    AdvanceCalculation,
    AdvanceContractDetails,
    AdvanceQuoteRequest,
    AdvanceRequest,
    AdvanceStatusHistoryRead,
    AdvanceTransactionRead,
    DefaultRequest,
    DefaultResult,
    DisbursementRequest,
    DisbursementResult,
    MoneyField,
    RepaymentInput,
    RepaymentRequest,
    RepaymentResult,
    StatusTransitionRequest,
    StatusTransitionResult,
)
from cashflow_bridge.schemas.collaborators import (
    CapitalReleaseRequest,
    CreditScoreResult,
    EligibilityResult,
    PoolAllocation,
    PoolAllocationRequest,
    PoolAllocationResult,
)
