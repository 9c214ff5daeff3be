from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from cashflow_bridge import models
from cashflow_bridge.core.clock import utc_now
from cashflow_bridge.core.money import (
    HUNDRED,
    Money,
    Numeric,
    Rounding,
    round_amount,
    round_net,
    round_percentage,
)
from cashflow_bridge.schemas.advances import AdvanceCalculation
from cashflow_bridge.services.advance_policy import (
    ANNUAL_CAPITAL_COST_RATE,
    AUTO_APPROVE_THRESHOLD,
    MAX_ADVANCE_AMOUNT,
    MIN_ADVANCE_AMOUNT,
    OPERATING_COST_PER_ADVANCE,
    PAYMENT_GRACE_DAYS,
    policy_for_tier,
)
from cashflow_bridge.services.collaborators import CreditScoringClient
from cashflow_bridge.services.results import ErrorCode, ServiceResult

logger = logging.getLogger("cashflow.advances")

DAYS_PER_YEAR = Decimal("365")


def days_outstanding(due_date: date, now: datetime) -> int:
    """Whole days from ``now`` until the start of ``due_date``, rounded up, at least 1."""

    due_at = datetime.combine(due_date, time.min)
    # Floor division of the negated delta gives the ceiling.
    days = -((now - due_at) // timedelta(days=1))
    return max(1, int(days))


def implicit_interest_rate(days: int) -> Decimal:
    return round_percentage(ANNUAL_CAPITAL_COST_RATE / DAYS_PER_YEAR * Decimal(days) * HUNDRED)


def cap_advance_amount(max_amount: Money, requested: Optional[Money]) -> Money:
    if requested is None:
        return max_amount
    return round_amount(min(requested, max_amount).amount)


def calculate_advance_terms(
    db: Session,
    credit: CreditScoringClient,
    *,
    farmer_id: str,
    order_id: str,
    requested_amount: Optional[Numeric] = None,
    now: Optional[datetime] = None,
) -> ServiceResult[AdvanceCalculation]:
    """Quote an advance against ``order_id``. Nothing is written.

    Ineligibility is a successful result with ``is_eligible=False``; only
    missing/foreign orders, an existing advance, an unusable credit answer and
    a negative requested amount are failures.
    """

    now = now or utc_now()

    order = db.get(models.Order, str(order_id))
    if order is None:
        return ServiceResult.fail(ErrorCode.ORDER_NOT_FOUND, f"Order {order_id} not found")
    if str(order.producer_id) != str(farmer_id):
        return ServiceResult.fail(
            ErrorCode.ORDER_OWNERSHIP_MISMATCH,
            f"Order {order_id} does not belong to farmer {farmer_id}",
        )

    existing_id = (
        db.query(models.AdvanceContract.id)
        .filter(models.AdvanceContract.order_id == order.id)
        .scalar()
    )
    if existing_id is not None:
        return ServiceResult.fail(
            ErrorCode.ADVANCE_ALREADY_EXISTS,
            f"Order {order_id} already has advance {existing_id}",
        )

    requested: Optional[Money] = None
    if requested_amount is not None:
        try:
            requested = Money.of(requested_amount)
        except (TypeError, ValueError) as exc:
            return ServiceResult.fail(ErrorCode.INVALID_AMOUNT, str(exc))
        if requested < Money.zero():
            return ServiceResult.fail(
                ErrorCode.INVALID_AMOUNT, "Requested amount must not be negative"
            )

    try:
        score = credit.calculate_score(farmer_id)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "credit_score_unavailable", extra={"farmer_id": farmer_id, "error": str(exc)}
        )
        return ServiceResult.fail(
            ErrorCode.CREDIT_UNAVAILABLE, f"Credit score unavailable: {exc}"
        )
    if score is None:
        return ServiceResult.fail(
            ErrorCode.CREDIT_UNAVAILABLE, f"No credit score for farmer {farmer_id}"
        )

    policy = policy_for_tier(score.risk_tier)
    order_amount = Money.of(order.total_amount)

    max_amount = order_amount.percent(policy.max_advance_percentage, Rounding.AMOUNT)
    actual = cap_advance_amount(max_amount, requested)

    reasons: list[str] = []
    if not order.advance_eligible:
        reasons.append("Order is not eligible for advance")
    if actual < MIN_ADVANCE_AMOUNT:
        reasons.append(f"Advance amount below minimum of {MIN_ADVANCE_AMOUNT}")
    if actual > MAX_ADVANCE_AMOUNT:
        reasons.append(f"Advance amount exceeds maximum of {MAX_ADVANCE_AMOUNT}")

    try:
        eligibility = credit.check_eligibility(farmer_id, actual, order.id)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "credit_eligibility_unavailable",
            extra={"farmer_id": farmer_id, "order_id": order.id, "error": str(exc)},
        )
        return ServiceResult.fail(
            ErrorCode.CREDIT_UNAVAILABLE, f"Credit eligibility check unavailable: {exc}"
        )
    if not eligibility.is_eligible:
        reasons.append(eligibility.reason or "Credit eligibility check failed")
        reasons.extend(eligibility.conditions or [])

    is_eligible = not reasons
    if is_eligible:
        reasons = ["All checks passed"]

    farmer_fee = actual.percent(policy.farmer_fee_percentage, Rounding.FEE)
    buyer_fee = actual.percent(policy.buyer_fee_percentage, Rounding.FEE)
    platform_fee_total = round_amount((farmer_fee + buyer_fee).amount)
    net_to_farmer = round_net((actual - farmer_fee).amount)

    due_date = order.expected_delivery_date + timedelta(days=PAYMENT_GRACE_DAYS)
    days = days_outstanding(due_date, now)
    interest_rate = implicit_interest_rate(days)
    interest_amount = actual.percent(interest_rate, Rounding.AMOUNT)
    cost_of_capital = interest_amount
    risk_provision = actual.times(policy.risk_provision_rate, Rounding.AMOUNT)
    gross_profit = platform_fee_total - (cost_of_capital + risk_provision + OPERATING_COST_PER_ADVANCE)

    if platform_fee_total.is_zero():
        profit_margin = round_percentage(0)
    else:
        profit_margin = round_percentage(gross_profit.ratio_of(platform_fee_total) * HUNDRED)

    return ServiceResult.ok(
        AdvanceCalculation(
            farmer_id=str(farmer_id),
            order_id=order.id,
            buyer_id=order.buyer_id,
            currency=order.currency,
            order_amount=order_amount,
            credit_score=int(score.overall_score),
            risk_tier=policy.tier,
            auto_approvable=int(score.overall_score) >= AUTO_APPROVE_THRESHOLD,
            max_advance_percentage=policy.max_advance_percentage,
            max_advance_amount=max_amount,
            requested_amount=requested,
            actual_advance_amount=actual,
            farmer_fee_percentage=policy.farmer_fee_percentage,
            farmer_fee_amount=farmer_fee,
            buyer_fee_percentage=policy.buyer_fee_percentage,
            buyer_fee_amount=buyer_fee,
            platform_fee_total=platform_fee_total,
            net_to_farmer=net_to_farmer,
            expected_delivery_date=order.expected_delivery_date,
            due_date=due_date,
            days_outstanding=days,
            implicit_interest_rate=interest_rate,
            implicit_interest_amount=interest_amount,
            cost_of_capital=cost_of_capital,
            risk_provision=risk_provision,
            operating_costs=OPERATING_COST_PER_ADVANCE,
            gross_profit=gross_profit,
            profit_margin=profit_margin,
            is_eligible=is_eligible,
            eligibility_reasons=reasons,
            calculated_at=now,
        )
    )
