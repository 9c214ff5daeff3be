from datetime import date, datetime
from decimal import Decimal

import pytest

from cashflow_bridge import models
from cashflow_bridge.core.money import Money
from cashflow_bridge.services.advance_policy import TIER_POLICIES
from cashflow_bridge.services.advance_terms import (
    calculate_advance_terms,
    cap_advance_amount,
    days_outstanding,
    implicit_interest_rate,
)
from cashflow_bridge.services.results import ErrorCode
from conftest import FARMER_ID, FIXED_NOW, seed_contract, seed_order


def _quote(db, credit, order_id, requested=None, farmer_id=FARMER_ID):
    return calculate_advance_terms(
        db,
        credit,
        farmer_id=farmer_id,
        order_id=order_id,
        requested_amount=requested,
        now=FIXED_NOW,
    )


def test_tier_b_quote_on_ten_thousand_order(db, credit):
    order = seed_order(db, total="10000.00")

    result = _quote(db, credit, order.id)

    assert result.success, result.error
    calc = result.data
    assert calc.risk_tier == "B"
    assert calc.credit_score == 80
    assert calc.auto_approvable is False
    assert calc.max_advance_amount == Decimal("8000.00")
    assert calc.actual_advance_amount == Decimal("8000.00")
    assert calc.farmer_fee_amount == Decimal("200.00")
    assert calc.buyer_fee_amount == Decimal("80.00")
    assert calc.platform_fee_total == Decimal("280.00")
    assert calc.net_to_farmer == Decimal("7800.00")
    assert calc.is_eligible is True
    assert calc.eligibility_reasons == ["All checks passed"]


def test_quote_economics_follow_the_due_date(db, credit):
    order = seed_order(db, total="10000.00")

    calc = _quote(db, credit, order.id).data

    assert calc.due_date == date(2026, 11, 25)
    assert calc.days_outstanding == 37
    assert calc.implicit_interest_rate == Decimal("0.8110")
    assert calc.implicit_interest_amount == Decimal("64.88")
    assert calc.cost_of_capital == Decimal("64.88")
    assert calc.risk_provision == Decimal("400.00")
    assert calc.operating_costs == Decimal("100.00")
    assert calc.gross_profit == Decimal("-284.88")
    assert calc.profit_margin == Decimal("-101.7429")
    assert calc.calculated_at == FIXED_NOW


def test_quote_writes_nothing(db, credit):
    order = seed_order(db)

    _quote(db, credit, order.id)

    assert db.query(models.AdvanceContract).count() == 0
    db.refresh(order)
    assert order.advance_requested is False


def test_tier_a_high_score_is_auto_approvable(db, credit):
    credit.score, credit.tier = 92, "A"
    order = seed_order(db, total="10000.00")

    calc = _quote(db, credit, order.id).data

    assert calc.auto_approvable is True
    assert calc.actual_advance_amount == Decimal("9000.00")
    assert calc.farmer_fee_amount == Decimal("180.00")
    assert calc.buyer_fee_amount == Decimal("67.50")
    assert calc.net_to_farmer == Decimal("8820.00")


def test_requested_amount_is_capped_at_the_tier_maximum(db, credit):
    order = seed_order(db, total="10000.00")

    over = _quote(db, credit, order.id, requested="12000").data
    under = _quote(db, credit, order.id, requested="6000.004").data

    assert over.actual_advance_amount == Decimal("8000.00")
    assert over.requested_amount == Decimal("12000.00")
    assert under.actual_advance_amount == Decimal("6000.00")


def test_eligibility_is_checked_against_the_actual_amount(db, credit):
    order = seed_order(db, total="10000.00")

    _quote(db, credit, order.id, requested="7000")

    assert credit.called("check_eligibility") == [
        ("check_eligibility", FARMER_ID, Money.of("7000.00"), order.id)
    ]


@pytest.mark.parametrize("tier", sorted(TIER_POLICIES))
@pytest.mark.parametrize("total", ["6500.00", "10000.00", "12345.67", "99999.99", "333333.33"])
@pytest.mark.parametrize("requested", [None, "1", "5000.01", "7777.777", "1000000"])
def test_amounts_stay_within_bounds_and_round_in_the_right_direction(
    db, credit, tier, total, requested
):
    credit.tier = tier
    order = seed_order(db, total=total)
    policy = TIER_POLICIES[tier]

    calc = _quote(db, credit, order.id, requested=requested).data

    actual = calc.actual_advance_amount
    assert Decimal("0") <= actual <= calc.max_advance_amount <= Decimal(total)
    assert calc.farmer_fee_amount >= actual * policy.farmer_fee_percentage / 100
    assert calc.buyer_fee_amount >= actual * policy.buyer_fee_percentage / 100
    assert calc.net_to_farmer <= actual - calc.farmer_fee_amount
    assert calc.platform_fee_total == calc.farmer_fee_amount + calc.buyer_fee_amount


def test_small_order_is_ineligible_below_minimum(db, credit):
    order = seed_order(db, total="5000.00")

    calc = _quote(db, credit, order.id).data

    assert calc.is_eligible is False
    assert calc.actual_advance_amount == Decimal("4000.00")
    assert "Advance amount below minimum of 5000.00" in calc.eligibility_reasons


def test_huge_order_is_ineligible_above_maximum(db, credit):
    order = seed_order(db, total="700000.00")

    calc = _quote(db, credit, order.id).data

    assert calc.is_eligible is False
    assert "Advance amount exceeds maximum of 500000.00" in calc.eligibility_reasons


def test_all_ineligibility_reasons_are_collected(db, credit):
    credit.eligible = False
    credit.reason = "Debt ratio too high"
    credit.conditions = ["Provide collateral"]
    order = seed_order(db, total="5000.00", eligible=False)

    calc = _quote(db, credit, order.id).data

    assert calc.is_eligible is False
    assert calc.eligibility_reasons == [
        "Order is not eligible for advance",
        "Advance amount below minimum of 5000.00",
        "Debt ratio too high",
        "Provide collateral",
    ]


def test_missing_order(db, credit):
    result = _quote(db, credit, "nope")

    assert not result.success
    assert result.error_code == ErrorCode.ORDER_NOT_FOUND


def test_foreign_order(db, credit):
    order = seed_order(db, producer_id="someone-else")

    result = _quote(db, credit, order.id)

    assert result.error_code == ErrorCode.ORDER_OWNERSHIP_MISMATCH
    assert credit.calls == []


def test_order_with_existing_advance(db, credit):
    contract = seed_contract(db)

    result = _quote(db, credit, contract.order_id)

    assert result.error_code == ErrorCode.ADVANCE_ALREADY_EXISTS
    assert contract.id in result.error


def test_negative_requested_amount(db, credit):
    order = seed_order(db)

    result = _quote(db, credit, order.id, requested="-1")

    assert result.error_code == ErrorCode.INVALID_AMOUNT


def test_credit_service_failure_is_reported(db, credit):
    credit.fail_score = True
    order = seed_order(db)

    result = _quote(db, credit, order.id)

    assert result.error_code == ErrorCode.CREDIT_UNAVAILABLE


def test_missing_credit_score_is_reported(db, credit):
    credit.score = None
    order = seed_order(db)

    result = _quote(db, credit, order.id)

    assert result.error_code == ErrorCode.CREDIT_UNAVAILABLE


def test_days_outstanding_rounds_up_and_never_drops_below_one():
    due = date(2026, 11, 25)
    assert days_outstanding(due, datetime(2026, 11, 24, 0, 0)) == 1
    assert days_outstanding(due, datetime(2026, 11, 23, 23, 59)) == 2
    assert days_outstanding(due, datetime(2026, 12, 31)) == 1


def test_interest_rate_scales_with_days():
    assert implicit_interest_rate(365) == Decimal("8.0000")
    assert implicit_interest_rate(30) == Decimal("0.6575")


def test_cap_advance_amount():
    ceiling = Money.of("8000.00")
    assert cap_advance_amount(ceiling, None) == ceiling
    assert cap_advance_amount(ceiling, Money.of("100.00")) == Money.of("100.00")
    assert cap_advance_amount(ceiling, Money.of("9000.00")) == ceiling
