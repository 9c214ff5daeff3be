"""Interfaces of the services an advance depends on.

Both are injected into ``AdvanceContractService``; the HTTP implementations
live in ``collaborator_http``.
"""

from __future__ import annotations

from typing import Optional, Protocol

from cashflow_bridge.core.money import Money
from cashflow_bridge.schemas.collaborators import (
    CapitalReleaseRequest,
    CreditScoreResult,
    EligibilityResult,
    PoolAllocationRequest,
    PoolAllocationResult,
)


class CreditScoringClient(Protocol):
    def calculate_score(self, producer_id: str) -> Optional[CreditScoreResult]: ...

    def check_eligibility(self, producer_id: str, amount: Money, order_id: str) -> EligibilityResult: ...

    def recalculate_score(self, producer_id: str) -> None: ...


class LiquidityPoolClient(Protocol):
    def allocate_capital(self, request: PoolAllocationRequest) -> PoolAllocationResult: ...

    def release_capital(self, request: CapitalReleaseRequest) -> None: ...

    def handle_default(
        self,
        contract_id: str,
        pool_id: Optional[str],
        remaining_balance: Money,
        recovered_amount: Money,
    ) -> None: ...
