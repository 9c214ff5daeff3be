from cashflow_bridge.core.observability import _critical_label_for, _percentile


def test_money_moving_endpoints_are_labelled():
    assert _critical_label_for("POST", "/api/advances") == "advances.request"
    assert _critical_label_for("POST", "/api/advances/abc/repayments") == "advances.repayment"
    assert _critical_label_for("POST", "/api/advances/abc/disburse") == "advances.disburse"
    assert _critical_label_for("POST", "/api/advances/abc/default") == "advances.default"
    assert _critical_label_for("GET", "/api/advances/abc") is None
    assert _critical_label_for("POST", "/api/advances/quote") is None


def test_percentile():
    values = [float(v) for v in range(1, 101)]
    assert _percentile([], 95) == 0.0
    assert _percentile(values, 50) == 51.0
    assert _percentile(values, 99) == 99.0
