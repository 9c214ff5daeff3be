from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cashflow_bridge import models
from cashflow_bridge.core.clock import utc_now
from cashflow_bridge.database import supports_row_locks


@dataclass(frozen=True)
class YearlyNumber:
    prefix: str
    year: int
    seq: int
    formatted: str


def format_contract_number(*, prefix: str, seq: int, year: int) -> str:
    """Format: ACF-2026-00042 (sequence resets each year, 1-based)."""

    return f"{prefix}-{year:04d}-{seq:05d}"


def next_contract_number(
    db: Session,
    *,
    prefix: str,
    now: datetime | None = None,
    max_retries: int = 5,
) -> YearlyNumber:
    """Reserve the next number for ``prefix`` in ``now``'s year.

    The sequence row is read ``FOR UPDATE`` where the dialect supports it, so
    the reservation is held until the caller's transaction ends. Must be the
    first write of the caller's transaction: losing the race to create the
    year's row rolls the session back.
    """

    now = now or utc_now()
    year = int(now.year)

    for _ in range(max_retries):
        q = db.query(models.ContractNumberSequence).filter(
            models.ContractNumberSequence.prefix == str(prefix),
            models.ContractNumberSequence.year == year,
        )
        if supports_row_locks(db):
            q = q.with_for_update()

        row = q.first()

        if row is None:
            row = models.ContractNumberSequence(prefix=str(prefix), year=year, last_seq=0)
            db.add(row)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                continue

        row.last_seq = int(row.last_seq or 0) + 1
        db.add(row)
        db.flush()

        seq = int(row.last_seq)
        return YearlyNumber(
            prefix=str(prefix),
            year=year,
            seq=seq,
            formatted=format_contract_number(prefix=str(prefix), seq=seq, year=year),
        )

    raise RuntimeError(f"Could not allocate contract number for prefix={prefix} year={year}")


def new_transaction_number(now: datetime | None = None) -> str:
    """Format: TXN-2026-<12 hex>; unique by randomness, not by sequence."""

    now = now or utc_now()
    return f"TXN-{now.year:04d}-{uuid.uuid4().hex[:12].upper()}"
