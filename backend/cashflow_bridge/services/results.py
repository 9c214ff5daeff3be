from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_OWNERSHIP_MISMATCH = "ORDER_OWNERSHIP_MISMATCH"
    ADVANCE_ALREADY_EXISTS = "ADVANCE_ALREADY_EXISTS"
    CREDIT_UNAVAILABLE = "CREDIT_UNAVAILABLE"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    NO_CAPITAL_AVAILABLE = "NO_CAPITAL_AVAILABLE"
    CAPITAL_ALLOCATION_FAILED = "CAPITAL_ALLOCATION_FAILED"
    ADVANCE_NOT_FOUND = "ADVANCE_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    NOT_APPROVED = "NOT_APPROVED"
    NOT_REPAYABLE = "NOT_REPAYABLE"
    NOT_DEFAULTABLE = "NOT_DEFAULTABLE"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Used by the HTTP layer; kept next to the codes so a new code can't be added without a status.
HTTP_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.ADVANCE_NOT_FOUND: 404,
    ErrorCode.ORDER_OWNERSHIP_MISMATCH: 403,
    ErrorCode.ADVANCE_ALREADY_EXISTS: 409,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.NOT_APPROVED: 409,
    ErrorCode.NOT_REPAYABLE: 409,
    ErrorCode.NOT_DEFAULTABLE: 409,
    ErrorCode.CONCURRENT_MODIFICATION: 409,
    ErrorCode.NO_CAPITAL_AVAILABLE: 409,
    ErrorCode.NOT_ELIGIBLE: 422,
    ErrorCode.INVALID_AMOUNT: 422,
    ErrorCode.CREDIT_UNAVAILABLE: 502,
    ErrorCode.CAPITAL_ALLOCATION_FAILED: 502,
    ErrorCode.INTERNAL_ERROR: 500,
}

_unmapped = set(ErrorCode) - set(HTTP_STATUS_BY_CODE)
if _unmapped:
    raise RuntimeError(f"ErrorCode values without an HTTP status: {sorted(c.value for c in _unmapped)}")


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    @classmethod
    def ok(cls, data: T) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: ErrorCode, message: str) -> "ServiceResult[T]":
        return cls(success=False, error=message, error_code=code)

    @property
    def http_status(self) -> int:
        if self.success:
            return 200
        return HTTP_STATUS_BY_CODE.get(self.error_code or ErrorCode.INTERNAL_ERROR, 500)
