import json
from datetime import date

import httpx
import pytest

from cashflow_bridge.core.money import Money
from cashflow_bridge.schemas.collaborators import CapitalReleaseRequest, PoolAllocationRequest
from cashflow_bridge.services.collaborator_http import HttpCreditScoringClient, HttpLiquidityPoolClient


def _client(base_url, handler, seen):
    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return httpx.Client(base_url=base_url, transport=httpx.MockTransport(_record))


def _allocation_request():
    return PoolAllocationRequest(
        contract_id="c1",
        farmer_id="f1",
        order_id="o1",
        amount=Money.of("8000.00"),
        currency="BRL",
        risk_tier="B",
        credit_score=80,
        expected_repayment_date=date(2026, 11, 25),
        expected_delivery_date=date(2026, 11, 18),
        preferred_pool_id="p1",
    )


def test_credit_score_is_parsed():
    seen = []
    http = _client(
        "http://credit",
        lambda r: httpx.Response(200, json={"producer_id": "f1", "overall_score": 88, "risk_tier": "A"}),
        seen,
    )

    with HttpCreditScoringClient("http://credit", client=http) as client:
        score = client.calculate_score("f1")

    assert score.overall_score == 88
    assert score.risk_tier == "A"
    assert seen[0].method == "GET"
    assert seen[0].url.path == "/producers/f1/score"


def test_unknown_producer_has_no_score():
    http = _client("http://credit", lambda r: httpx.Response(404, json={"detail": "not found"}), [])

    assert HttpCreditScoringClient("http://credit", client=http).calculate_score("f1") is None


def test_credit_server_error_raises():
    http = _client("http://credit", lambda r: httpx.Response(503), [])

    with pytest.raises(httpx.HTTPStatusError):
        HttpCreditScoringClient("http://credit", client=http).calculate_score("f1")


def test_eligibility_sends_amount_as_string():
    seen = []
    http = _client(
        "http://credit",
        lambda r: httpx.Response(200, json={"is_eligible": False, "reason": "Too many open advances"}),
        seen,
    )

    result = HttpCreditScoringClient("http://credit", client=http).check_eligibility(
        "f1", Money.of("8000"), "o1"
    )

    assert result.is_eligible is False
    assert result.reason == "Too many open advances"
    assert json.loads(seen[0].content) == {"amount": "8000.00", "order_id": "o1"}


def test_successful_allocation():
    seen = []
    http = _client(
        "http://pools",
        lambda r: httpx.Response(
            201, json={"success": True, "allocation": {"pool_id": "p1", "allocation_id": "a1"}}
        ),
        seen,
    )

    result = HttpLiquidityPoolClient("http://pools", client=http).allocate_capital(_allocation_request())

    assert result.success is True
    assert result.allocation.pool_id == "p1"
    body = json.loads(seen[0].content)
    assert body["amount"] == "8000.00"
    assert body["expected_repayment_date"] == "2026-11-25"
    assert body["preferred_pool_id"] == "p1"


@pytest.mark.parametrize("status_code", [409, 422])
def test_refused_allocation_is_a_result_not_an_error(status_code):
    http = _client(
        "http://pools", lambda r: httpx.Response(status_code, json={"error": "insufficient capital"}), []
    )

    result = HttpLiquidityPoolClient("http://pools", client=http).allocate_capital(_allocation_request())

    assert result.success is False
    assert result.error == "insufficient capital"


def test_release_and_default_payloads():
    seen = []
    http = _client("http://pools", lambda r: httpx.Response(204), seen)
    client = HttpLiquidityPoolClient("http://pools", client=http)

    client.release_capital(
        CapitalReleaseRequest(
            contract_id="c1",
            pool_id="p1",
            amount=Money.of("3000.00"),
            fees_collected=Money.of("30.00"),
            release_type="PARTIAL_REPAYMENT",
        )
    )
    client.handle_default("c1", "p1", Money.of("5000.00"), Money.of("2000.00"))

    assert [r.url.path for r in seen] == ["/releases", "/defaults"]
    assert json.loads(seen[0].content)["fees_collected"] == "30.00"
    assert json.loads(seen[1].content) == {
        "contract_id": "c1",
        "pool_id": "p1",
        "remaining_balance": "5000.00",
        "recovered_amount": "2000.00",
    }


def test_pool_server_error_raises():
    http = _client("http://pools", lambda r: httpx.Response(500), [])

    with pytest.raises(httpx.HTTPStatusError):
        HttpLiquidityPoolClient("http://pools", client=http).release_capital(
            CapitalReleaseRequest(
                contract_id="c1",
                amount=Money.of("1.00"),
                fees_collected=Money.zero(),
                release_type="FULL_REPAYMENT",
            )
        )
