"""HTTP clients for the credit-scoring and liquidity-pool services.

Both speak JSON. Non-2xx answers raise ``httpx.HTTPStatusError``; callers
decide whether that is fatal (before commit) or a warning (after commit).
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from cashflow_bridge.config import settings
from cashflow_bridge.core.money import Money
from cashflow_bridge.schemas.collaborators import (
    CapitalReleaseRequest,
    CreditScoreResult,
    EligibilityResult,
    PoolAllocationRequest,
    PoolAllocationResult,
)

logger = logging.getLogger("cashflow.collaborators")


class _JsonServiceClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.collaborator_timeout_seconds,
            headers={"Content-Type": "application/json"},
        )

    def _post(self, path: str, payload: dict) -> httpx.Response:
        response = self._client.post(path, json=payload)
        response.raise_for_status()
        return response

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class HttpCreditScoringClient(_JsonServiceClient):
    def __init__(self, base_url: str | None = None, **kwargs):
        super().__init__(base_url or settings.credit_scoring_base_url, **kwargs)

    def calculate_score(self, producer_id: str) -> Optional[CreditScoreResult]:
        response = self._client.get(f"/producers/{producer_id}/score")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return CreditScoreResult.model_validate(response.json())

    def check_eligibility(self, producer_id: str, amount: Money, order_id: str) -> EligibilityResult:
        response = self._post(
            f"/producers/{producer_id}/eligibility",
            {"amount": str(Money.of(amount)), "order_id": order_id},
        )
        return EligibilityResult.model_validate(response.json())

    def recalculate_score(self, producer_id: str) -> None:
        self._post(f"/producers/{producer_id}/score/recalculate", {})
        logger.info("credit_score_recalculation_requested", extra={"producer_id": producer_id})


class HttpLiquidityPoolClient(_JsonServiceClient):
    def __init__(self, base_url: str | None = None, **kwargs):
        super().__init__(base_url or settings.liquidity_pools_base_url, **kwargs)

    def allocate_capital(self, request: PoolAllocationRequest) -> PoolAllocationResult:
        response = self._client.post("/allocations", json=request.model_dump(mode="json"))
        # A refusal (409/422) comes back as a structured result; everything else raises.
        if response.status_code in {409, 422}:
            body = response.json() if response.content else {}
            return PoolAllocationResult(
                success=False, error=str(body.get("error") or body.get("detail") or response.text)
            )
        response.raise_for_status()
        return PoolAllocationResult.model_validate(response.json())

    def release_capital(self, request: CapitalReleaseRequest) -> None:
        self._post("/releases", request.model_dump(mode="json"))

    def handle_default(
        self,
        contract_id: str,
        pool_id: Optional[str],
        remaining_balance: Money,
        recovered_amount: Money,
    ) -> None:
        self._post(
            "/defaults",
            {
                "contract_id": contract_id,
                "pool_id": pool_id,
                "remaining_balance": str(Money.of(remaining_balance)),
                "recovered_amount": str(Money.of(recovered_amount)),
            },
        )
