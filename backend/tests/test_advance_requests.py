from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import redis
from sqlalchemy.exc import OperationalError

from cashflow_bridge import models
from cashflow_bridge.core.money import Money
from cashflow_bridge.models.domain import AdvanceStatus, ApprovalMethod, PaymentMethod, PoolStatus
from cashflow_bridge.schemas.advances import AdvanceRequest
from cashflow_bridge.services.advance_cache import AdvanceCache
from cashflow_bridge.services import advance_requests
from cashflow_bridge.services.advance_requests import (
    AlreadyExists,
    Created,
    insert_contract_once,
    select_candidate_pool,
)
from cashflow_bridge.services.advance_service import AdvanceContractService
from cashflow_bridge.services.advance_terms import calculate_advance_terms
from cashflow_bridge.services.results import ErrorCode
from conftest import FARMER_ID, FIXED_NOW, seed_contract, seed_order, seed_pool


def _request(order_id, **kwargs):
    return AdvanceRequest(farmer_id=FARMER_ID, order_id=order_id, **kwargs)


def _history(db, contract_id):
    return (
        db.query(models.AdvanceStatusHistory)
        .filter(models.AdvanceStatusHistory.contract_id == contract_id)
        .order_by(models.AdvanceStatusHistory.id.asc())
        .all()
    )


def test_request_creates_pending_contract_and_allocates_capital(db, service, pools):
    order = seed_order(db, total="10000.00")
    pool = seed_pool(db)

    result = service.request_advance(_request(order.id))

    assert result.success, result.error
    details = result.data
    assert details.status == AdvanceStatus.PENDING_APPROVAL
    assert details.approval_method == ApprovalMethod.MANUAL
    assert details.contract_number == "ACF-2026-00001"
    assert details.advance_amount == Decimal("8000.00")
    assert details.remaining_balance == Decimal("8000.00")
    assert details.advance_percentage == Decimal("80.0000")
    assert details.pool_id == pool.id
    assert details.pool_name == "Harvest Pool"
    assert details.order_number == order.order_number
    assert details.disbursement_method == PaymentMethod.PIX
    assert details.approved_at is None

    db.refresh(order)
    assert order.advance_requested is True
    assert order.advance_requested_at == FIXED_NOW

    rows = _history(db, details.id)
    assert [(r.from_status, r.to_status, r.changed_by, r.reason) for r in rows] == [
        (None, "PENDING_APPROVAL", "SYSTEM", "Advance request created")
    ]

    [allocation] = pools.allocations
    assert allocation.contract_id == details.id
    assert allocation.amount == Decimal("8000.00")
    assert allocation.risk_tier == "B"
    assert allocation.preferred_pool_id == pool.id
    assert allocation.expected_repayment_date == date(2026, 11, 25)


def test_high_score_is_auto_approved(db, service, credit):
    credit.score, credit.tier = 90, "A"
    order = seed_order(db, total="10000.00")
    seed_pool(db)

    details = service.request_advance(_request(order.id)).data

    assert details.status == AdvanceStatus.APPROVED
    assert details.approval_method == ApprovalMethod.AUTOMATIC
    assert details.approved_at == FIXED_NOW
    assert details.advance_amount == Decimal("9000.00")
    rows = _history(db, details.id)
    assert [(r.from_status, r.to_status, r.reason) for r in rows] == [
        (None, "PENDING_APPROVAL", "Advance request created"),
        ("PENDING_APPROVAL", "APPROVED", "Auto-approved based on credit score"),
    ]


def test_repeating_a_request_returns_the_same_contract(db, service, pools):
    order = seed_order(db)
    seed_pool(db)

    first = service.request_advance(_request(order.id))
    second = service.request_advance(_request(order.id))

    assert first.success and second.success
    assert first.data.id == second.data.id
    assert db.query(models.AdvanceContract).count() == 1
    assert len(pools.allocations) == 1


def test_insert_resolves_to_existing_contract(db, credit):
    contract = seed_contract(db)
    order = seed_order(db)
    calc = calculate_advance_terms(
        db, credit, farmer_id=FARMER_ID, order_id=order.id, now=FIXED_NOW
    ).data
    calc = calc.model_copy(update={"order_id": contract.order_id})

    outcome = insert_contract_once(db, calc, pool_id=None, now=FIXED_NOW)

    assert outcome == AlreadyExists(existing_id=contract.id)
    assert db.query(models.AdvanceContract).count() == 1


def test_insert_reserves_consecutive_numbers(db, credit):
    first_order, second_order = seed_order(db), seed_order(db)

    outcomes = [
        insert_contract_once(
            db,
            calculate_advance_terms(
                db, credit, farmer_id=FARMER_ID, order_id=o.id, now=FIXED_NOW
            ).data,
            pool_id=None,
            now=FIXED_NOW,
        )
        for o in (first_order, second_order)
    ]

    assert all(isinstance(o, Created) for o in outcomes)
    assert [o.contract.contract_number for o in outcomes] == ["ACF-2026-00001", "ACF-2026-00002"]


def test_no_pool_with_capital_creates_nothing(db, service, pools):
    order = seed_order(db)
    seed_pool(db, available="7999.99")
    seed_pool(db, name="Paused", status=PoolStatus.PAUSED)

    result = service.request_advance(_request(order.id))

    assert result.error_code == ErrorCode.NO_CAPITAL_AVAILABLE
    assert db.query(models.AdvanceContract).count() == 0
    assert pools.allocations == []


def test_candidate_pool_is_the_largest_active_one(db):
    seed_pool(db, available="20000.00", name="Small")
    large = seed_pool(db, available="90000.00", name="Large")
    seed_pool(db, available="500000.00", name="Closed", status=PoolStatus.CLOSED)

    picked = select_candidate_pool(db, amount=Money.of("8000.00"), currency="BRL")

    assert picked.id == large.id
    assert select_candidate_pool(db, amount=Money.of("8000.00"), currency="USD") is None


def test_ineligible_request_creates_nothing(db, service):
    order = seed_order(db, eligible=False)
    seed_pool(db)

    result = service.request_advance(_request(order.id))

    assert result.error_code == ErrorCode.NOT_ELIGIBLE
    assert "Order is not eligible for advance" in result.error
    assert db.query(models.AdvanceContract).count() == 0


def test_refused_allocation_cancels_the_contract(db, service, pools):
    pools.refuse_with = "pool exhausted"
    order = seed_order(db)
    seed_pool(db)

    result = service.request_advance(_request(order.id))

    assert result.error_code == ErrorCode.CAPITAL_ALLOCATION_FAILED
    assert "pool exhausted" in result.error

    contract = db.query(models.AdvanceContract).one()
    assert contract.status == AdvanceStatus.CANCELLED.value
    assert contract.rejection_reason == "Capital allocation failed: pool exhausted"
    last = _history(db, contract.id)[-1]
    assert (last.from_status, last.to_status, last.changed_by) == (
        "PENDING_APPROVAL",
        "CANCELLED",
        "SYSTEM",
    )


def test_allocation_exception_cancels_the_contract(db, service, pools, credit):
    credit.score, credit.tier = 95, "A"
    pools.raise_on_allocate = RuntimeError("connection reset")
    order = seed_order(db)
    seed_pool(db)

    result = service.request_advance(_request(order.id))

    assert result.error_code == ErrorCode.CAPITAL_ALLOCATION_FAILED
    contract = db.query(models.AdvanceContract).one()
    assert contract.status == AdvanceStatus.CANCELLED.value
    assert _history(db, contract.id)[-1].from_status == "APPROVED"


def test_allocator_may_fund_from_another_pool(db, service, pools):
    order = seed_order(db)
    seed_pool(db, name="Candidate")
    other = seed_pool(db, available="10.00", name="Chosen by allocator")
    pools.allocation_pool_id = other.id

    details = service.request_advance(_request(order.id)).data

    assert details.pool_id == other.id
    assert details.pool_name == "Chosen by allocator"


def test_preferred_pool_is_forwarded(db, service, pools):
    order = seed_order(db)
    seed_pool(db)
    preferred = seed_pool(db, available="10.00", name="Preferred")

    service.request_advance(_request(order.id, preferred_pool_id=preferred.id))

    assert pools.allocations[0].preferred_pool_id == preferred.id


def test_request_invalidates_cached_entries(db, credit, pools):
    client = MagicMock(spec=redis.Redis)
    client.get.return_value = None
    service = AdvanceContractService(
        db, credit=credit, pools=pools, cache=AdvanceCache(client), clock=lambda: FIXED_NOW
    )
    order = seed_order(db)
    seed_pool(db)

    details = service.request_advance(_request(order.id)).data

    client.delete.assert_any_call(
        f"cfb:advance:{details.id}",
        f"cfb:farmer:{FARMER_ID}:advances",
        f"cfb:order:{order.id}:advance",
    )


@pytest.mark.parametrize("max_attempts", [1, 5])
def test_concurrent_insert_for_the_same_order_resolves_to_one_contract(
    db, session_factory, credit, monkeypatch, max_attempts
):
    order = seed_order(db)
    calc = calculate_advance_terms(
        db, credit, farmer_id=FARMER_ID, order_id=order.id, now=FIXED_NOW
    ).data
    real_lookup = advance_requests._existing_contract_id
    winner = {}

    def _stale_lookup(session, order_id):
        if winner:
            return real_lookup(session, order_id)
        winner["outcome"] = None
        other = session_factory()
        try:
            winner["outcome"] = insert_contract_once(other, calc, pool_id=None, now=FIXED_NOW)
        finally:
            other.close()
        return None

    monkeypatch.setattr(advance_requests, "_existing_contract_id", _stale_lookup)

    outcome = insert_contract_once(db, calc, pool_id=None, now=FIXED_NOW, max_attempts=max_attempts)

    assert isinstance(winner["outcome"], Created)
    assert outcome == AlreadyExists(existing_id=winner["outcome"].contract.id)
    assert db.query(models.AdvanceContract).count() == 1


def test_failed_pool_update_returns_the_allocation(db, service, pools, monkeypatch):
    order = seed_order(db)
    seed_pool(db, name="Candidate")
    other = seed_pool(db, available="10.00", name="Chosen by allocator")
    pools.allocation_pool_id = other.id
    real_allocate, real_commit = pools.allocate_capital, db.commit
    allocated = []

    def _allocate(request):
        allocated.append(request.contract_id)
        return real_allocate(request)

    def _commit():
        if allocated:
            allocated.clear()
            raise OperationalError("UPDATE advance_contracts", {}, Exception("connection lost"))
        real_commit()

    monkeypatch.setattr(pools, "allocate_capital", _allocate)
    monkeypatch.setattr(db, "commit", _commit)

    result = service.request_advance(_request(order.id))

    assert result.error_code == ErrorCode.INTERNAL_ERROR
    contract = db.query(models.AdvanceContract).one()
    assert contract.status == AdvanceStatus.CANCELLED.value
    [release] = pools.releases
    assert release.contract_id == contract.id
    assert release.pool_id == other.id
    assert release.amount == Decimal("8000.00")
    assert release.fees_collected == Decimal("0.00")
    assert release.release_type == "CANCELLATION"


def test_failed_capital_return_still_cancels(db, service, pools, monkeypatch):
    order = seed_order(db)
    seed_pool(db, name="Candidate")
    other = seed_pool(db, available="10.00", name="Chosen by allocator")
    pools.allocation_pool_id = other.id
    pools.fail_release = True
    real_commit = db.commit
    calls = []

    def _commit():
        calls.append(1)
        # second commit of the request is the pool reassignment
        if len(calls) == 2:
            raise OperationalError("UPDATE advance_contracts", {}, Exception("connection lost"))
        real_commit()

    monkeypatch.setattr(db, "commit", _commit)

    result = service.request_advance(_request(order.id))

    assert result.error_code == ErrorCode.INTERNAL_ERROR
    assert len(pools.releases) == 1
    assert db.query(models.AdvanceContract).one().status == AdvanceStatus.CANCELLED.value


def test_insert_without_attempts_is_an_error(db, credit):
    order = seed_order(db)
    calc = calculate_advance_terms(
        db, credit, farmer_id=FARMER_ID, order_id=order.id, now=FIXED_NOW
    ).data

    with pytest.raises(RuntimeError):
        insert_contract_once(db, calc, pool_id=None, now=FIXED_NOW, max_attempts=0)
