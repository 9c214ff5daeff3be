from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cashflow_bridge import models
from cashflow_bridge.core.clock import utc_now
from cashflow_bridge.core.money import CENT, Money, Numeric, round_amount, to_decimal
from cashflow_bridge.database import supports_row_locks
from cashflow_bridge.models.domain import AdvanceStatus, PaymentMethod, TransactionType
from cashflow_bridge.schemas.advances import (
    DefaultResult,
    DisbursementResult,
    RepaymentInput,
    RepaymentResult,
)
from cashflow_bridge.schemas.collaborators import CapitalReleaseRequest
from cashflow_bridge.services.advance_transitions import (
    atomic_transition_advance_status,
    record_status_change,
    transition_status,
)
from cashflow_bridge.services.collaborators import CreditScoringClient, LiquidityPoolClient
from cashflow_bridge.services.contract_numbering import new_transaction_number
from cashflow_bridge.services.results import ErrorCode, ServiceResult

logger = logging.getLogger("cashflow.advances")

SYSTEM_ACTOR = "SYSTEM"

REPAYABLE_STATUSES = frozenset(
    {
        AdvanceStatus.ACTIVE,
        AdvanceStatus.DELIVERY_IN_PROGRESS,
        AdvanceStatus.DELIVERY_CONFIRMED,
        AdvanceStatus.PARTIALLY_REPAID,
        AdvanceStatus.OVERDUE,
        AdvanceStatus.DEFAULT_WARNING,
    }
)
DEFAULTABLE_STATUSES = REPAYABLE_STATUSES | {AdvanceStatus.DISPUTED}


def _load_for_update(db: Session, contract_id: str) -> Optional[models.AdvanceContract]:
    q = db.query(models.AdvanceContract).filter(models.AdvanceContract.id == str(contract_id))
    if supports_row_locks(db):
        q = q.with_for_update()
    return q.first()


def _parse_amount(value: Optional[Numeric]) -> Money:
    if value is None:
        raise ValueError("Amount is required")
    decimal = to_decimal(value)
    if decimal != decimal.quantize(CENT):
        raise ValueError(f"Amount {value} has more precision than one cent")
    return Money.of(decimal)


def _best_effort(warnings: list[str], op: str, fn: Callable[..., Any], *args, **extra) -> None:
    """Run a post-commit collaborator call; failures become warnings, never errors."""

    try:
        fn(*args)
    except Exception as exc:  # noqa: BLE001
        logger.exception("collaborator_call_failed", extra={"op": op, "error": str(exc), **extra})
        warnings.append(f"{op} failed: {exc}")


def _ledger_entry(
    db: Session,
    *,
    contract_id: str,
    type: TransactionType,
    amount: Money,
    balance_before: Money,
    balance_after: Money,
    payment_method: Optional[PaymentMethod],
    payment_reference: Optional[str],
    source: Optional[str],
    description: Optional[str],
    now: datetime,
) -> models.AdvanceTransaction:
    row = models.AdvanceTransaction(
        transaction_number=new_transaction_number(now),
        contract_id=str(contract_id),
        type=type,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        payment_method=payment_method,
        payment_reference=payment_reference,
        source=source,
        description=description,
        created_at=now,
    )
    db.add(row)
    return row


def _concurrent(contract_id: str) -> ServiceResult:
    return ServiceResult.fail(
        ErrorCode.CONCURRENT_MODIFICATION,
        f"Advance {contract_id} was modified concurrently; reload and retry",
    )


def process_repayment(
    db: Session,
    *,
    pools: LiquidityPoolClient,
    credit: CreditScoringClient,
    payment: RepaymentInput,
    now: Optional[datetime] = None,
) -> ServiceResult[RepaymentResult]:
    """Apply a payment against the outstanding balance.

    Overpayment is capped at the remaining balance. The status is set directly
    to COMPLETED or PARTIALLY_REPAID from any repayable status.
    """

    now = now or utc_now()

    try:
        amount = _parse_amount(payment.amount)
    except (TypeError, ValueError) as exc:
        return ServiceResult.fail(ErrorCode.INVALID_AMOUNT, str(exc))
    if amount <= Money.zero():
        return ServiceResult.fail(ErrorCode.INVALID_AMOUNT, "Repayment amount must be positive")

    try:
        contract = _load_for_update(db, payment.advance_id)
        if contract is None:
            db.rollback()
            return ServiceResult.fail(
                ErrorCode.ADVANCE_NOT_FOUND, f"Advance {payment.advance_id} not found"
            )

        status = AdvanceStatus(contract.status)
        if status not in REPAYABLE_STATUSES:
            db.rollback()
            return ServiceResult.fail(
                ErrorCode.NOT_REPAYABLE, f"Advance in status {status.value} cannot receive repayments"
            )

        contract_id, farmer_id, pool_id = contract.id, contract.farmer_id, contract.pool_id
        remaining = contract.remaining_balance
        applied = min(amount, remaining)
        new_balance = remaining - applied
        fully_repaid = new_balance <= Money.zero()
        fees_collected = round_amount(
            applied.ratio_of(contract.advance_amount) * contract.buyer_fee_amount.amount
        )
        new_status = AdvanceStatus.COMPLETED if fully_repaid else AdvanceStatus.PARTIALLY_REPAID

        updates: dict[str, Any] = {
            "amount_repaid": contract.amount_repaid + applied,
            "remaining_balance": new_balance,
        }
        if fully_repaid:
            updates["repaid_at"] = now

        result = atomic_transition_advance_status(
            db=db,
            contract_id=contract_id,
            to_status=new_status,
            allowed_from=[status],
            guards={"remaining_balance": remaining},
            updates=updates,
        )
        if not result.updated:
            db.rollback()
            return _concurrent(contract_id)

        _ledger_entry(
            db,
            contract_id=contract_id,
            type=TransactionType.FINAL_REPAYMENT if fully_repaid else TransactionType.PARTIAL_REPAYMENT,
            amount=applied,
            balance_before=remaining,
            balance_after=new_balance,
            payment_method=payment.payment_method,
            payment_reference=payment.payment_reference,
            source=payment.source,
            description=payment.notes,
            now=now,
        )
        record_status_change(
            db,
            contract_id=contract_id,
            from_status=status,
            to_status=new_status,
            changed_by=payment.source or SYSTEM_ACTOR,
            reason=f"Repayment of {applied} received",
            now=now,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(
        "advance_repayment_applied",
        extra={
            "contract_id": contract_id,
            "amount": str(amount),
            "applied": str(applied),
            "remaining": str(new_balance),
            "fully_repaid": fully_repaid,
        },
    )

    warnings: list[str] = []
    _best_effort(
        warnings,
        "release_capital",
        pools.release_capital,
        CapitalReleaseRequest(
            contract_id=contract_id,
            pool_id=pool_id,
            amount=applied,
            fees_collected=fees_collected,
            release_type="FULL_REPAYMENT" if fully_repaid else "PARTIAL_REPAYMENT",
        ),
        contract_id=contract_id,
    )
    if fully_repaid:
        _best_effort(
            warnings, "recalculate_score", credit.recalculate_score, farmer_id, contract_id=contract_id
        )

    return ServiceResult.ok(
        RepaymentResult(
            contract_id=contract_id,
            amount_applied=applied,
            remaining_balance=new_balance,
            is_fully_repaid=fully_repaid,
            fees_collected=fees_collected,
            status=new_status,
            collaborator_warnings=warnings,
        )
    )


def mark_as_defaulted(
    db: Session,
    *,
    pools: LiquidityPoolClient,
    credit: CreditScoringClient,
    contract_id: str,
    reason: str,
    recovered_amount: Numeric = 0,
    actor: str = SYSTEM_ACTOR,
    now: Optional[datetime] = None,
) -> ServiceResult[DefaultResult]:
    """Close an advance as a loss.

    ``recovered_amount`` counts as repaid, the rest is written off, and the
    remaining balance goes to zero.
    """

    now = now or utc_now()

    try:
        recovered = _parse_amount(recovered_amount)
    except (TypeError, ValueError) as exc:
        return ServiceResult.fail(ErrorCode.INVALID_AMOUNT, str(exc))

    try:
        contract = _load_for_update(db, contract_id)
        if contract is None:
            db.rollback()
            return ServiceResult.fail(ErrorCode.ADVANCE_NOT_FOUND, f"Advance {contract_id} not found")

        status = AdvanceStatus(contract.status)
        if status not in DEFAULTABLE_STATUSES:
            db.rollback()
            return ServiceResult.fail(
                ErrorCode.NOT_DEFAULTABLE, f"Advance in status {status.value} cannot be defaulted"
            )

        remaining = contract.remaining_balance
        if recovered < Money.zero() or recovered > remaining:
            db.rollback()
            return ServiceResult.fail(
                ErrorCode.INVALID_AMOUNT,
                f"Recovered amount must be between 0 and the remaining balance {remaining}",
            )

        farmer_id, pool_id = contract.farmer_id, contract.pool_id
        loss = remaining - recovered

        result = atomic_transition_advance_status(
            db=db,
            contract_id=contract.id,
            to_status=AdvanceStatus.DEFAULTED,
            allowed_from=[status],
            guards={"remaining_balance": remaining},
            updates={
                "amount_repaid": contract.amount_repaid + recovered,
                "amount_written_off": contract.amount_written_off + loss,
                "remaining_balance": Money.zero(),
                "defaulted_at": now,
            },
        )
        if not result.updated:
            db.rollback()
            return _concurrent(contract_id)

        record_status_change(
            db,
            contract_id=contract_id,
            from_status=status,
            to_status=AdvanceStatus.DEFAULTED,
            changed_by=actor,
            reason=f"{reason} (recovered {recovered}, loss {loss})",
            now=now,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.warning(
        "advance_defaulted",
        extra={"contract_id": contract_id, "recovered": str(recovered), "loss": str(loss)},
    )

    warnings: list[str] = []
    _best_effort(
        warnings,
        "handle_default",
        pools.handle_default,
        contract_id,
        pool_id,
        remaining,
        recovered,
        contract_id=contract_id,
    )
    _best_effort(
        warnings, "recalculate_score", credit.recalculate_score, farmer_id, contract_id=contract_id
    )

    return ServiceResult.ok(
        DefaultResult(
            contract_id=contract_id,
            loss_amount=loss,
            recovered_amount=recovered,
            collaborator_warnings=warnings,
        )
    )


def disburse_advance(
    db: Session,
    *,
    contract_id: str,
    reference: str,
    fee: Optional[Numeric] = None,
    method: Optional[PaymentMethod] = None,
    actor: str = SYSTEM_ACTOR,
    now: Optional[datetime] = None,
) -> ServiceResult[DisbursementResult]:
    now = now or utc_now()

    disbursement_fee: Optional[Money] = None
    if fee is not None:
        try:
            disbursement_fee = Money.of(fee)
        except (TypeError, ValueError) as exc:
            return ServiceResult.fail(ErrorCode.INVALID_AMOUNT, str(exc))
        if disbursement_fee < Money.zero():
            return ServiceResult.fail(ErrorCode.INVALID_AMOUNT, "Disbursement fee must not be negative")

    try:
        contract = _load_for_update(db, contract_id)
        if contract is None:
            db.rollback()
            return ServiceResult.fail(ErrorCode.ADVANCE_NOT_FOUND, f"Advance {contract_id} not found")

        status = AdvanceStatus(contract.status)
        if status != AdvanceStatus.APPROVED:
            db.rollback()
            return ServiceResult.fail(
                ErrorCode.NOT_APPROVED, f"Advance must be APPROVED to disburse (is {status.value})"
            )

        remaining = contract.remaining_balance
        payment_method = method or contract.disbursement_method
        updates: dict[str, Any] = {
            "disbursed_at": now,
            "disbursement_reference": reference,
            "disbursement_fee": disbursement_fee,
        }
        if method is not None:
            updates["disbursement_method"] = method

        result = atomic_transition_advance_status(
            db=db,
            contract_id=contract.id,
            to_status=AdvanceStatus.DISBURSED,
            allowed_from=[AdvanceStatus.APPROVED],
            updates=updates,
        )
        if not result.updated:
            db.rollback()
            return _concurrent(contract_id)

        _ledger_entry(
            db,
            contract_id=contract_id,
            type=TransactionType.DISBURSEMENT,
            amount=contract.advance_amount,
            balance_before=remaining,
            balance_after=remaining,
            payment_method=payment_method,
            payment_reference=reference,
            source=actor,
            description="Advance disbursed to farmer",
            now=now,
        )
        record_status_change(
            db,
            contract_id=contract_id,
            from_status=AdvanceStatus.APPROVED,
            to_status=AdvanceStatus.DISBURSED,
            changed_by=actor,
            reason="Funds disbursed successfully",
            now=now,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info("advance_disbursed", extra={"contract_id": contract_id, "reference": reference})

    warnings: list[str] = []
    activation = transition_status(
        db,
        contract_id=contract_id,
        new_status=AdvanceStatus.ACTIVE,
        actor=SYSTEM_ACTOR,
        reason="Post-disbursement",
        now=now,
    )
    if not activation.success:
        logger.warning(
            "advance_activation_failed",
            extra={"contract_id": contract_id, "error": activation.error},
        )
        warnings.append(f"activation failed: {activation.error}")

    return ServiceResult.ok(
        DisbursementResult(
            contract_id=contract_id,
            disbursed_at=now,
            reference=reference,
            status=AdvanceStatus.ACTIVE if activation.success else AdvanceStatus.DISBURSED,
            collaborator_warnings=warnings,
        )
    )
