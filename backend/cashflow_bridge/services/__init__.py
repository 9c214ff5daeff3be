from cashflow_bridge.services.advance_service import AdvanceContractService
from cashflow_bridge.services.results import ErrorCode, ServiceResult

__all__ = [
    "AdvanceContractService",
    "ErrorCode",
    "ServiceResult",
]
