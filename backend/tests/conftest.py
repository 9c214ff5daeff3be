# ruff: noqa: E402

import os
import uuid
from datetime import date, datetime
from decimal import Decimal

# Must be set before cashflow_bridge.config is imported.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["API_V1_STR"] = "/api"
os.environ.pop("REDIS_URL", None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cashflow_bridge import models
from cashflow_bridge.core.money import Money
from cashflow_bridge.database import Base
from cashflow_bridge.schemas.collaborators import (
    CreditScoreResult,
    EligibilityResult,
    PoolAllocation,
    PoolAllocationResult,
)
from cashflow_bridge.services.advance_cache import AdvanceCache
from cashflow_bridge.services.advance_service import AdvanceContractService

FIXED_NOW = datetime(2026, 10, 19, 12, 0, 0)
DELIVERY_DATE = date(2026, 11, 18)
FARMER_ID = "farmer-1"
BUYER_ID = "buyer-1"


class FakeCreditScoring:
    def __init__(self, score: int | None = 80, tier: str = "B"):
        self.score = score
        self.tier = tier
        self.eligible = True
        self.reason: str | None = None
        self.conditions: list[str] = []
        self.fail_score = False
        self.fail_recalculate = False
        self.calls: list[tuple] = []

    def calculate_score(self, producer_id):
        self.calls.append(("calculate_score", producer_id))
        if self.fail_score:
            raise RuntimeError("credit service unreachable")
        if self.score is None:
            return None
        return CreditScoreResult(producer_id=producer_id, overall_score=self.score, risk_tier=self.tier)

    def check_eligibility(self, producer_id, amount, order_id):
        self.calls.append(("check_eligibility", producer_id, Money.of(amount), order_id))
        return EligibilityResult(is_eligible=self.eligible, reason=self.reason, conditions=self.conditions)

    def recalculate_score(self, producer_id):
        self.calls.append(("recalculate_score", producer_id))
        if self.fail_recalculate:
            raise RuntimeError("rescoring queue full")

    def called(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


class FakeLiquidityPools:
    def __init__(self):
        self.allocation_pool_id: str | None = None
        self.refuse_with: str | None = None
        self.raise_on_allocate: Exception | None = None
        self.fail_release = False
        self.allocations: list = []
        self.releases: list = []
        self.defaults: list = []

    def allocate_capital(self, request):
        self.allocations.append(request)
        if self.raise_on_allocate is not None:
            raise self.raise_on_allocate
        if self.refuse_with is not None:
            return PoolAllocationResult(success=False, error=self.refuse_with)
        pool_id = self.allocation_pool_id or request.preferred_pool_id
        return PoolAllocationResult(
            success=True,
            allocation=PoolAllocation(pool_id=pool_id, allocation_id=f"alloc-{len(self.allocations)}"),
        )

    def release_capital(self, request):
        self.releases.append(request)
        if self.fail_release:
            raise RuntimeError("pool ledger unavailable")

    def handle_default(self, contract_id, pool_id, remaining_balance, recovered_amount):
        self.defaults.append((contract_id, pool_id, Money.of(remaining_balance), Money.of(recovered_amount)))


@pytest.fixture
def engine():
    """
    Fresh in-memory database per test.
    StaticPool keeps the single SQLite connection alive across sessions.
    """
    eng = create_engine(
        os.environ["DATABASE_URL"],
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def credit():
    return FakeCreditScoring()


@pytest.fixture
def pools():
    return FakeLiquidityPools()


@pytest.fixture
def service(db, credit, pools):
    return AdvanceContractService(
        db, credit=credit, pools=pools, cache=AdvanceCache(None), clock=lambda: FIXED_NOW
    )


def seed_order(
    db,
    *,
    total: str = "10000.00",
    producer_id: str = FARMER_ID,
    eligible: bool = True,
    delivery: date = DELIVERY_DATE,
    currency: str = "BRL",
) -> models.Order:
    order = models.Order(
        id=str(uuid.uuid4()),
        order_number=f"ORD-{uuid.uuid4().hex[:8]}",
        producer_id=producer_id,
        buyer_id=BUYER_ID,
        total_amount=Money.of(total),
        currency=currency,
        advance_eligible=eligible,
        advance_requested=False,
        expected_delivery_date=delivery,
    )
    db.add(order)
    db.commit()
    return order


def seed_pool(
    db, *, available: str = "1000000.00", name: str = "Harvest Pool", status=models.PoolStatus.ACTIVE
) -> models.LiquidityPool:
    pool = models.LiquidityPool(
        id=str(uuid.uuid4()),
        name=name,
        status=status,
        currency="BRL",
        available_capital=Money.of(available),
    )
    db.add(pool)
    db.commit()
    return pool


def seed_contract(
    db,
    *,
    status: models.AdvanceStatus = models.AdvanceStatus.ACTIVE,
    advance: str = "8000.00",
    repaid: str = "0.00",
    buyer_fee: str = "80.00",
    farmer_id: str = FARMER_ID,
) -> models.AdvanceContract:
    order = seed_order(db, producer_id=farmer_id)
    pool = seed_pool(db)
    advance_amount = Money.of(advance)
    amount_repaid = Money.of(repaid)
    contract = models.AdvanceContract(
        id=str(uuid.uuid4()),
        contract_number=f"ACF-2026-{uuid.uuid4().int % 100000:05d}",
        status=status,
        approval_method=models.ApprovalMethod.MANUAL,
        farmer_id=farmer_id,
        buyer_id=BUYER_ID,
        order_id=order.id,
        pool_id=pool.id,
        currency="BRL",
        order_amount=Money.of("10000.00"),
        advance_percentage=Decimal("80"),
        advance_amount=advance_amount,
        farmer_fee_percentage=Decimal("2.5"),
        farmer_fee_amount=Money.of("200.00"),
        buyer_fee_percentage=Decimal("1.0"),
        buyer_fee_amount=Money.of(buyer_fee),
        platform_fee_total=Money.of("280.00"),
        net_to_farmer=Money.of("7800.00"),
        implicit_interest=Money.of("64.88"),
        cost_of_capital=Money.of("64.88"),
        risk_provision=Money.of("400.00"),
        operating_costs=Money.of("100.00"),
        gross_profit=Money.of("-284.88"),
        profit_margin=Decimal("-101.7429"),
        amount_repaid=amount_repaid,
        amount_written_off=Money.zero(),
        remaining_balance=advance_amount - amount_repaid,
        credit_score=80,
        risk_tier="B",
        requested_at=FIXED_NOW,
        due_date=date(2026, 11, 25),
        expected_delivery_date=DELIVERY_DATE,
    )
    db.add(contract)
    db.commit()
    return contract
