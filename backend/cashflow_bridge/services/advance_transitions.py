from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cashflow_bridge import models
from cashflow_bridge.core.clock import utc_now
from cashflow_bridge.models.domain import AdvanceStatus
from cashflow_bridge.schemas.advances import StatusTransitionResult
from cashflow_bridge.services.results import ErrorCode, ServiceResult

S = AdvanceStatus

VALID_TRANSITIONS: dict[AdvanceStatus, frozenset[AdvanceStatus]] = {
    S.PENDING_APPROVAL: frozenset({S.UNDER_REVIEW, S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.UNDER_REVIEW: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.DISBURSED, S.CANCELLED}),
    S.REJECTED: frozenset(),
    S.DISBURSED: frozenset({S.ACTIVE, S.CANCELLED, S.REFUNDED}),
    S.ACTIVE: frozenset(
        {S.DELIVERY_IN_PROGRESS, S.PARTIALLY_REPAID, S.COMPLETED, S.OVERDUE, S.DISPUTED}
    ),
    S.DELIVERY_IN_PROGRESS: frozenset({S.DELIVERY_CONFIRMED, S.OVERDUE, S.DISPUTED}),
    S.DELIVERY_CONFIRMED: frozenset({S.PARTIALLY_REPAID, S.COMPLETED, S.OVERDUE}),
    S.PARTIALLY_REPAID: frozenset({S.COMPLETED, S.OVERDUE}),
    S.COMPLETED: frozenset(),
    S.OVERDUE: frozenset({S.PARTIALLY_REPAID, S.COMPLETED, S.DEFAULT_WARNING, S.DISPUTED}),
    S.DEFAULT_WARNING: frozenset({S.PARTIALLY_REPAID, S.COMPLETED, S.DEFAULTED}),
    S.DEFAULTED: frozenset({S.IN_COLLECTIONS, S.COMPLETED}),
    S.IN_COLLECTIONS: frozenset({S.COMPLETED}),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
    S.DISPUTED: frozenset({S.ACTIVE, S.COMPLETED, S.DEFAULTED}),
}

_missing = set(AdvanceStatus) - set(VALID_TRANSITIONS)
if _missing:
    raise RuntimeError(f"VALID_TRANSITIONS has no entry for: {sorted(s.value for s in _missing)}")

TERMINAL_STATUSES = frozenset(s for s, nxt in VALID_TRANSITIONS.items() if not nxt)

# Timestamp stamped (once) when a contract enters the status.
_STAMPS: dict[AdvanceStatus, str] = {
    S.APPROVED: "approved_at",
    S.DISBURSED: "disbursed_at",
    S.COMPLETED: "repaid_at",
    S.DEFAULTED: "defaulted_at",
}


def can_transition(from_status: AdvanceStatus | str, to_status: AdvanceStatus | str) -> bool:
    return AdvanceStatus(to_status) in VALID_TRANSITIONS[AdvanceStatus(from_status)]


@dataclass(frozen=True)
class TransitionResult:
    updated: bool
    rowcount: int


def atomic_transition_advance_status(
    *,
    db: Session,
    contract_id: str,
    to_status: AdvanceStatus,
    allowed_from: Iterable[AdvanceStatus],
    guards: dict[str, Any] | None = None,
    updates: dict[str, Any] | None = None,
) -> TransitionResult:
    """Apply a status change with a single conditional UPDATE:

        UPDATE advance_contracts
        SET status = :to_status, ...
        WHERE id = :id AND status IN (:allowed_from) [AND <column> = :seen ...]

    ``guards`` pins further columns to the values the caller read, so a
    concurrent writer makes this match 0 rows instead of being overwritten.
    Callers control commit/rollback.
    """

    update_values: dict[str, Any] = {"status": AdvanceStatus(to_status).value}
    if updates:
        update_values.update(updates)

    q = (
        db.query(models.AdvanceContract)
        .filter(models.AdvanceContract.id == str(contract_id))
        .filter(models.AdvanceContract.status.in_({AdvanceStatus(s).value for s in allowed_from}))
    )
    for column, seen in (guards or {}).items():
        q = q.filter(getattr(models.AdvanceContract, column) == seen)

    rowcount = q.update(update_values, synchronize_session=False)
    return TransitionResult(updated=rowcount > 0, rowcount=int(rowcount or 0))


def record_status_change(
    db: Session,
    *,
    contract_id: str,
    from_status: Optional[AdvanceStatus],
    to_status: AdvanceStatus,
    changed_by: str,
    reason: Optional[str],
    now: datetime,
) -> models.AdvanceStatusHistory:
    row = models.AdvanceStatusHistory(
        contract_id=str(contract_id),
        from_status=AdvanceStatus(from_status).value if from_status is not None else None,
        to_status=AdvanceStatus(to_status).value,
        changed_by=str(changed_by),
        reason=reason,
        created_at=now,
    )
    db.add(row)
    return row


def transition_status(
    db: Session,
    *,
    contract_id: str,
    new_status: AdvanceStatus | str,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ServiceResult[StatusTransitionResult]:
    now = now or utc_now()
    target = AdvanceStatus(new_status)

    contract = db.get(models.AdvanceContract, str(contract_id))
    if contract is None:
        return ServiceResult.fail(ErrorCode.ADVANCE_NOT_FOUND, f"Advance {contract_id} not found")

    current = AdvanceStatus(contract.status)
    if not can_transition(current, target):
        return ServiceResult.fail(
            ErrorCode.INVALID_TRANSITION,
            f"Cannot transition from {current.value} to {target.value}",
        )

    updates: dict[str, Any] = {}
    stamp = _STAMPS.get(target)
    if stamp:
        updates[stamp] = now

    try:
        result = atomic_transition_advance_status(
            db=db,
            contract_id=contract.id,
            to_status=target,
            allowed_from=[current],
            updates=updates,
        )
        if not result.updated:
            db.rollback()
            return ServiceResult.fail(
                ErrorCode.CONCURRENT_MODIFICATION,
                f"Advance {contract_id} changed while transitioning to {target.value}",
            )

        record_status_change(
            db,
            contract_id=contract.id,
            from_status=current,
            to_status=target,
            changed_by=actor,
            reason=reason or f"Status changed to {target.value}",
            now=now,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    return ServiceResult.ok(
        StatusTransitionResult(
            contract_id=contract.id, from_status=current, to_status=target, changed_at=now
        )
    )
