from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, TypeVar

from sqlalchemy.orm import Session

from cashflow_bridge import models
from cashflow_bridge.core.money import Numeric
from cashflow_bridge.models.domain import AdvanceStatus, PaymentMethod
from cashflow_bridge.schemas.advances import (
    AdvanceCalculation,
    AdvanceContractDetails,
    AdvanceRequest,
    AdvanceStatusHistoryRead,
    AdvanceTransactionRead,
    DefaultResult,
    DisbursementResult,
    RepaymentInput,
    RepaymentResult,
    StatusTransitionResult,
)
from cashflow_bridge.services import advance_repayments, advance_requests, advance_terms, advance_transitions
from cashflow_bridge.services.advance_cache import AdvanceCache
from cashflow_bridge.services.collaborators import CreditScoringClient, LiquidityPoolClient
from cashflow_bridge.services.results import ErrorCode, ServiceResult

logger = logging.getLogger("cashflow.advances")

T = TypeVar("T")


class AdvanceContractService:
    """Entry point for the advance lifecycle.

    Every operation returns a ``ServiceResult``. Business-rule failures come
    back with an ``error_code``; infrastructure exceptions are logged and
    turned into ``INTERNAL_ERROR`` here, at the operation boundary.
    """

    def __init__(
        self,
        db: Session,
        *,
        credit: CreditScoringClient,
        pools: LiquidityPoolClient,
        cache: Optional[AdvanceCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.credit = credit
        self.pools = pools
        self.cache = cache or AdvanceCache(None)
        self._clock = clock

    def _now(self) -> Optional[datetime]:
        return self._clock() if self._clock else None

    def _run(self, op: str, fn: Callable[[], ServiceResult[T]], **context) -> ServiceResult[T]:
        try:
            return fn()
        except Exception as exc:  # noqa: BLE001
            self.db.rollback()
            logger.exception(f"{op}_failed", extra=context)
            return ServiceResult.fail(ErrorCode.INTERNAL_ERROR, str(exc))

    def _invalidate(self, contract_id: str) -> None:
        contract = self.db.get(models.AdvanceContract, str(contract_id))
        if contract is not None:
            self.cache.invalidate(
                contract_id=contract.id, farmer_id=contract.farmer_id, order_id=contract.order_id
            )

    def _after_mutation(self, contract_id: str, result: ServiceResult[T]) -> ServiceResult[T]:
        if result.success:
            self._invalidate(contract_id)
        return result

    # -- quote / create -------------------------------------------------

    def calculate_advance_terms(
        self, farmer_id: str, order_id: str, requested_amount: Optional[Numeric] = None
    ) -> ServiceResult[AdvanceCalculation]:
        return self._run(
            "calculate_advance_terms",
            lambda: advance_terms.calculate_advance_terms(
                self.db,
                self.credit,
                farmer_id=farmer_id,
                order_id=order_id,
                requested_amount=requested_amount,
                now=self._now(),
            ),
            farmer_id=farmer_id,
            order_id=order_id,
        )

    def request_advance(self, request: AdvanceRequest) -> ServiceResult[AdvanceContractDetails]:
        return self._run(
            "request_advance",
            lambda: advance_requests.request_advance(
                self.db,
                credit=self.credit,
                pools=self.pools,
                cache=self.cache,
                request=request,
                now=self._now(),
            ),
            farmer_id=request.farmer_id,
            order_id=request.order_id,
        )

    # -- reads ------------------------------------------------------------

    def get_advance_details(self, contract_id: str) -> ServiceResult[AdvanceContractDetails]:
        def _load() -> ServiceResult[AdvanceContractDetails]:
            cached = self.cache.get_details(contract_id)
            if cached is not None:
                return ServiceResult.ok(cached)

            contract = self.db.get(models.AdvanceContract, str(contract_id))
            if contract is None:
                return ServiceResult.fail(ErrorCode.ADVANCE_NOT_FOUND, f"Advance {contract_id} not found")
            details = AdvanceContractDetails.model_validate(contract)
            self.cache.set_details(details)
            return ServiceResult.ok(details)

        return self._run("get_advance_details", _load, contract_id=contract_id)

    def get_order_advance(self, order_id: str) -> ServiceResult[AdvanceContractDetails]:
        def _load() -> ServiceResult[AdvanceContractDetails]:
            cached = self.cache.get_order_advance(order_id)
            if cached is not None:
                return ServiceResult.ok(cached)

            contract = (
                self.db.query(models.AdvanceContract)
                .filter(models.AdvanceContract.order_id == str(order_id))
                .first()
            )
            if contract is None:
                return ServiceResult.fail(
                    ErrorCode.ADVANCE_NOT_FOUND, f"No advance for order {order_id}"
                )
            details = AdvanceContractDetails.model_validate(contract)
            self.cache.set_details(details)
            return ServiceResult.ok(details)

        return self._run("get_order_advance", _load, order_id=order_id)

    def get_farmer_advances(
        self, farmer_id: str, statuses: Optional[Iterable[AdvanceStatus | str]] = None
    ) -> ServiceResult[List[AdvanceContractDetails]]:
        wanted = {AdvanceStatus(s) for s in statuses} if statuses else None

        def _load() -> ServiceResult[List[AdvanceContractDetails]]:
            items = self.cache.get_farmer_advances(farmer_id)
            if items is None:
                rows = (
                    self.db.query(models.AdvanceContract)
                    .filter(models.AdvanceContract.farmer_id == str(farmer_id))
                    .order_by(
                        models.AdvanceContract.requested_at.desc(),
                        models.AdvanceContract.contract_number.desc(),
                    )
                    .all()
                )
                items = [AdvanceContractDetails.model_validate(r) for r in rows]
                self.cache.set_farmer_advances(farmer_id, items)
            if wanted is not None:
                items = [i for i in items if i.status in wanted]
            return ServiceResult.ok(items)

        return self._run("get_farmer_advances", _load, farmer_id=farmer_id)

    def get_status_history(self, contract_id: str) -> ServiceResult[List[AdvanceStatusHistoryRead]]:
        def _load() -> ServiceResult[List[AdvanceStatusHistoryRead]]:
            contract = self.db.get(models.AdvanceContract, str(contract_id))
            if contract is None:
                return ServiceResult.fail(ErrorCode.ADVANCE_NOT_FOUND, f"Advance {contract_id} not found")
            rows = (
                self.db.query(models.AdvanceStatusHistory)
                .filter(models.AdvanceStatusHistory.contract_id == contract.id)
                .order_by(models.AdvanceStatusHistory.id.asc())
                .all()
            )
            return ServiceResult.ok([AdvanceStatusHistoryRead.model_validate(r) for r in rows])

        return self._run("get_status_history", _load, contract_id=contract_id)

    def get_ledger(self, contract_id: str) -> ServiceResult[List[AdvanceTransactionRead]]:
        def _load() -> ServiceResult[List[AdvanceTransactionRead]]:
            contract = self.db.get(models.AdvanceContract, str(contract_id))
            if contract is None:
                return ServiceResult.fail(ErrorCode.ADVANCE_NOT_FOUND, f"Advance {contract_id} not found")
            rows = (
                self.db.query(models.AdvanceTransaction)
                .filter(models.AdvanceTransaction.contract_id == contract.id)
                .order_by(models.AdvanceTransaction.id.asc())
                .all()
            )
            return ServiceResult.ok([AdvanceTransactionRead.model_validate(r) for r in rows])

        return self._run("get_ledger", _load, contract_id=contract_id)

    # -- lifecycle --------------------------------------------------------

    def transition_status(
        self,
        contract_id: str,
        new_status: AdvanceStatus | str,
        actor: str,
        reason: Optional[str] = None,
    ) -> ServiceResult[StatusTransitionResult]:
        return self._run(
            "transition_status",
            lambda: self._after_mutation(
                contract_id,
                advance_transitions.transition_status(
                    self.db,
                    contract_id=contract_id,
                    new_status=new_status,
                    actor=actor,
                    reason=reason,
                    now=self._now(),
                ),
            ),
            contract_id=contract_id,
            new_status=str(getattr(new_status, "value", new_status)),
        )

    def disburse_advance(
        self,
        contract_id: str,
        reference: str,
        fee: Optional[Numeric] = None,
        method: Optional[PaymentMethod] = None,
        actor: str = advance_repayments.SYSTEM_ACTOR,
    ) -> ServiceResult[DisbursementResult]:
        return self._run(
            "disburse_advance",
            lambda: self._after_mutation(
                contract_id,
                advance_repayments.disburse_advance(
                    self.db,
                    contract_id=contract_id,
                    reference=reference,
                    fee=fee,
                    method=method,
                    actor=actor,
                    now=self._now(),
                ),
            ),
            contract_id=contract_id,
        )

    def process_repayment(self, payment: RepaymentInput) -> ServiceResult[RepaymentResult]:
        return self._run(
            "process_repayment",
            lambda: self._after_mutation(
                payment.advance_id,
                advance_repayments.process_repayment(
                    self.db,
                    pools=self.pools,
                    credit=self.credit,
                    payment=payment,
                    now=self._now(),
                ),
            ),
            contract_id=payment.advance_id,
        )

    def mark_as_defaulted(
        self,
        contract_id: str,
        reason: str,
        recovered_amount: Numeric = 0,
        actor: str = advance_repayments.SYSTEM_ACTOR,
    ) -> ServiceResult[DefaultResult]:
        return self._run(
            "mark_as_defaulted",
            lambda: self._after_mutation(
                contract_id,
                advance_repayments.mark_as_defaulted(
                    self.db,
                    pools=self.pools,
                    credit=self.credit,
                    contract_id=contract_id,
                    reason=reason,
                    recovered_amount=recovered_amount,
                    actor=actor,
                    now=self._now(),
                ),
            ),
            contract_id=contract_id,
        )
