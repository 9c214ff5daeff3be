from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from cashflow_bridge import models
from cashflow_bridge.core.clock import utc_now
from cashflow_bridge.core.money import HUNDRED, Money, round_percentage
from cashflow_bridge.models.domain import AdvanceStatus, ApprovalMethod, PaymentMethod, PoolStatus
from cashflow_bridge.schemas.advances import AdvanceCalculation, AdvanceContractDetails, AdvanceRequest
from cashflow_bridge.schemas.collaborators import CapitalReleaseRequest, PoolAllocationRequest
from cashflow_bridge.services.advance_cache import AdvanceCache
from cashflow_bridge.services.advance_policy import CONTRACT_PREFIX
from cashflow_bridge.services.advance_terms import calculate_advance_terms
from cashflow_bridge.services.advance_transitions import (
    atomic_transition_advance_status,
    record_status_change,
)
from cashflow_bridge.services.collaborators import CreditScoringClient, LiquidityPoolClient
from cashflow_bridge.services.contract_numbering import next_contract_number
from cashflow_bridge.services.results import ErrorCode, ServiceResult

logger = logging.getLogger("cashflow.advances")

SYSTEM_ACTOR = "SYSTEM"
MAX_INSERT_ATTEMPTS = 5


@dataclass(frozen=True)
class Created:
    contract: models.AdvanceContract


@dataclass(frozen=True)
class AlreadyExists:
    existing_id: str


InsertOutcome = Union[Created, AlreadyExists]


def _existing_contract_id(db: Session, order_id: str) -> Optional[str]:
    return (
        db.query(models.AdvanceContract.id)
        .filter(models.AdvanceContract.order_id == str(order_id))
        .scalar()
    )


def select_candidate_pool(db: Session, *, amount: Money, currency: str) -> Optional[models.LiquidityPool]:
    """Largest ACTIVE pool that can cover ``amount``; ties broken by id for determinism."""

    return (
        db.query(models.LiquidityPool)
        .filter(
            models.LiquidityPool.status == PoolStatus.ACTIVE,
            models.LiquidityPool.currency == str(currency),
            models.LiquidityPool.available_capital >= amount,
        )
        .order_by(models.LiquidityPool.available_capital.desc(), models.LiquidityPool.id.asc())
        .first()
    )


def _new_contract(
    calc: AdvanceCalculation,
    *,
    contract_number: str,
    pool_id: Optional[str],
    disbursement_method: Optional[PaymentMethod],
    now: datetime,
) -> models.AdvanceContract:
    advance_amount = Money.of(calc.actual_advance_amount)
    order_amount = Money.of(calc.order_amount)
    auto = bool(calc.auto_approvable)

    return models.AdvanceContract(
        id=str(uuid.uuid4()),
        contract_number=contract_number,
        status=AdvanceStatus.APPROVED if auto else AdvanceStatus.PENDING_APPROVAL,
        approval_method=ApprovalMethod.AUTOMATIC if auto else ApprovalMethod.MANUAL,
        farmer_id=calc.farmer_id,
        buyer_id=calc.buyer_id,
        order_id=calc.order_id,
        pool_id=pool_id,
        currency=calc.currency,
        order_amount=order_amount,
        advance_percentage=round_percentage(advance_amount.ratio_of(order_amount) * HUNDRED),
        advance_amount=advance_amount,
        farmer_fee_percentage=calc.farmer_fee_percentage,
        farmer_fee_amount=Money.of(calc.farmer_fee_amount),
        buyer_fee_percentage=calc.buyer_fee_percentage,
        buyer_fee_amount=Money.of(calc.buyer_fee_amount),
        platform_fee_total=Money.of(calc.platform_fee_total),
        net_to_farmer=Money.of(calc.net_to_farmer),
        implicit_interest=Money.of(calc.implicit_interest_amount),
        cost_of_capital=Money.of(calc.cost_of_capital),
        risk_provision=Money.of(calc.risk_provision),
        operating_costs=Money.of(calc.operating_costs),
        gross_profit=Money.of(calc.gross_profit),
        profit_margin=calc.profit_margin,
        amount_repaid=Money.zero(),
        amount_written_off=Money.zero(),
        remaining_balance=advance_amount,
        credit_score=calc.credit_score,
        risk_tier=calc.risk_tier,
        disbursement_method=disbursement_method,
        requested_at=now,
        approved_at=now if auto else None,
        due_date=calc.due_date,
        expected_delivery_date=calc.expected_delivery_date,
    )


def insert_contract_once(
    db: Session,
    calc: AdvanceCalculation,
    *,
    pool_id: Optional[str],
    disbursement_method: Optional[PaymentMethod] = None,
    now: Optional[datetime] = None,
    max_attempts: int = MAX_INSERT_ATTEMPTS,
) -> InsertOutcome:
    """Insert the contract for ``calc.order_id`` unless one already exists.

    One transaction per attempt: re-check the order, reserve a number, insert
    the contract with its history rows and flag the order. A unique-constraint
    conflict on commit (same order or same number from a concurrent writer)
    rolls back and retries; a conflicting order then resolves to
    ``AlreadyExists``.
    """

    now = now or utc_now()
    last_error: Optional[IntegrityError] = None

    for attempt in range(1, max_attempts + 1):
        existing_id = _existing_contract_id(db, calc.order_id)
        if existing_id is not None:
            db.rollback()
            return AlreadyExists(existing_id=existing_id)

        try:
            number = next_contract_number(db, prefix=CONTRACT_PREFIX, now=now)
            contract = _new_contract(
                calc,
                contract_number=number.formatted,
                pool_id=pool_id,
                disbursement_method=disbursement_method,
                now=now,
            )
            db.add(contract)

            record_status_change(
                db,
                contract_id=contract.id,
                from_status=None,
                to_status=AdvanceStatus.PENDING_APPROVAL,
                changed_by=SYSTEM_ACTOR,
                reason="Advance request created",
                now=now,
            )
            if contract.status == AdvanceStatus.APPROVED.value:
                record_status_change(
                    db,
                    contract_id=contract.id,
                    from_status=AdvanceStatus.PENDING_APPROVAL,
                    to_status=AdvanceStatus.APPROVED,
                    changed_by=SYSTEM_ACTOR,
                    reason="Auto-approved based on credit score",
                    now=now,
                )

            order = db.get(models.Order, calc.order_id)
            if order is not None:
                order.advance_requested = True
                order.advance_requested_at = now

            db.commit()
        except IntegrityError as exc:
            db.rollback()
            last_error = exc
            logger.warning(
                "advance_insert_conflict",
                extra={"order_id": calc.order_id, "attempt": attempt, "error": str(exc.orig)},
            )
            continue

        db.refresh(contract)
        return Created(contract=contract)

    existing_id = _existing_contract_id(db, calc.order_id)
    if existing_id is not None:
        db.rollback()
        return AlreadyExists(existing_id=existing_id)
    if last_error is None:
        raise RuntimeError(f"Contract insert for order {calc.order_id} made no attempts")
    raise last_error


def _details(db: Session, contract_id: str) -> AdvanceContractDetails:
    contract = db.get(models.AdvanceContract, str(contract_id))
    return AdvanceContractDetails.model_validate(contract)


def _idempotent_hit(db: Session, *, order_id: str, existing_id: str) -> ServiceResult[AdvanceContractDetails]:
    logger.info(
        "advance_request_idempotent_hit",
        extra={"order_id": order_id, "contract_id": existing_id},
    )
    return ServiceResult.ok(_details(db, existing_id))


def return_allocated_capital(
    pools: LiquidityPoolClient, *, contract_id: str, pool_id: str, amount: Money
) -> None:
    """Hand a confirmed allocation back to its pool when the contract cannot keep it."""

    try:
        pools.release_capital(
            CapitalReleaseRequest(
                contract_id=contract_id,
                pool_id=pool_id,
                amount=amount,
                fees_collected=Money.zero(),
                release_type="CANCELLATION",
            )
        )
    except Exception:  # noqa: BLE001
        logger.exception(
            "capital_return_failed",
            extra={"contract_id": contract_id, "pool_id": pool_id, "amount": str(amount)},
        )


def cancel_after_failed_allocation(
    db: Session,
    cache: AdvanceCache,
    *,
    contract: models.AdvanceContract,
    error: str,
    now: Optional[datetime] = None,
) -> None:
    """Compensation step: an unfunded contract must end CANCELLED, never stay usable."""

    now = now or utc_now()
    contract_id, farmer_id, order_id = contract.id, contract.farmer_id, contract.order_id
    current = AdvanceStatus(contract.status)
    reason = f"Capital allocation failed: {error}"

    try:
        result = atomic_transition_advance_status(
            db=db,
            contract_id=contract_id,
            to_status=AdvanceStatus.CANCELLED,
            allowed_from=[AdvanceStatus.PENDING_APPROVAL, AdvanceStatus.APPROVED],
            updates={"rejection_reason": reason},
        )
        if result.updated:
            record_status_change(
                db,
                contract_id=contract_id,
                from_status=current,
                to_status=AdvanceStatus.CANCELLED,
                changed_by=SYSTEM_ACTOR,
                reason=reason,
                now=now,
            )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("advance_compensation_failed", extra={"contract_id": contract_id})
        raise
    finally:
        cache.invalidate(contract_id=contract_id, farmer_id=farmer_id, order_id=order_id)

    logger.warning(
        "advance_compensated",
        extra={"contract_id": contract_id, "order_id": order_id, "error": error},
    )


def request_advance(
    db: Session,
    *,
    credit: CreditScoringClient,
    pools: LiquidityPoolClient,
    cache: AdvanceCache,
    request: AdvanceRequest,
    now: Optional[datetime] = None,
) -> ServiceResult[AdvanceContractDetails]:
    now = now or utc_now()

    calc_result = calculate_advance_terms(
        db,
        credit,
        farmer_id=request.farmer_id,
        order_id=request.order_id,
        requested_amount=request.requested_amount,
        now=now,
    )
    if not calc_result.success:
        if calc_result.error_code == ErrorCode.ADVANCE_ALREADY_EXISTS:
            existing_id = _existing_contract_id(db, request.order_id)
            if existing_id is not None:
                return _idempotent_hit(db, order_id=request.order_id, existing_id=existing_id)
        return ServiceResult.fail(calc_result.error_code, calc_result.error)

    calc = calc_result.data
    if not calc.is_eligible:
        return ServiceResult.fail(
            ErrorCode.NOT_ELIGIBLE, f"Not eligible: {', '.join(calc.eligibility_reasons)}"
        )

    amount = Money.of(calc.actual_advance_amount)
    pool = select_candidate_pool(db, amount=amount, currency=calc.currency)
    if pool is None:
        return ServiceResult.fail(
            ErrorCode.NO_CAPITAL_AVAILABLE, "No liquidity pool available with sufficient capital"
        )
    candidate_pool_id = request.preferred_pool_id or pool.id

    outcome = insert_contract_once(
        db,
        calc,
        pool_id=pool.id,
        disbursement_method=request.disbursement_method,
        now=now,
    )
    if isinstance(outcome, AlreadyExists):
        return _idempotent_hit(db, order_id=request.order_id, existing_id=outcome.existing_id)

    contract = outcome.contract
    cache.invalidate(contract_id=contract.id, farmer_id=contract.farmer_id, order_id=contract.order_id)
    logger.info(
        "advance_requested",
        extra={
            "contract_id": contract.id,
            "contract_number": contract.contract_number,
            "order_id": contract.order_id,
            "amount": str(amount),
            "status": contract.status,
        },
    )

    allocation_request = PoolAllocationRequest(
        contract_id=contract.id,
        farmer_id=contract.farmer_id,
        order_id=contract.order_id,
        amount=amount,
        currency=contract.currency,
        risk_tier=calc.risk_tier,
        credit_score=calc.credit_score,
        expected_repayment_date=calc.due_date,
        expected_delivery_date=calc.expected_delivery_date,
        preferred_pool_id=candidate_pool_id,
    )

    try:
        allocation = pools.allocate_capital(allocation_request)
        error = None if allocation.success and allocation.allocation else (allocation.error or "allocation refused")
    except Exception as exc:  # noqa: BLE001
        logger.exception("capital_allocation_error", extra={"contract_id": contract.id})
        allocation, error = None, str(exc)

    if error is not None:
        logger.warning("capital_allocation_failed", extra={"contract_id": contract.id, "error": error})
        cancel_after_failed_allocation(db, cache, contract=contract, error=error, now=now)
        return ServiceResult.fail(ErrorCode.CAPITAL_ALLOCATION_FAILED, f"Capital allocation failed: {error}")

    allocated_pool_id = allocation.allocation.pool_id
    if allocated_pool_id != contract.pool_id:
        try:
            db.query(models.AdvanceContract).filter(models.AdvanceContract.id == contract.id).update(
                {"pool_id": allocated_pool_id}, synchronize_session=False
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("advance_pool_update_failed", extra={"contract_id": contract.id})
            return_allocated_capital(
                pools, contract_id=contract.id, pool_id=allocated_pool_id, amount=amount
            )
            cancel_after_failed_allocation(db, cache, contract=contract, error=str(exc), now=now)
            raise
        cache.invalidate(contract_id=contract.id, farmer_id=contract.farmer_id, order_id=contract.order_id)

    db.expire_all()
    return ServiceResult.ok(_details(db, contract.id))
