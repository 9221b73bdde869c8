"""Tests for error formatting and grouping."""

from shipdesk.errors import ShipDeskError, format_error, format_error_summary, group_errors


def _err(order: str, code: str = "E-3001", message: str = "UPS API is not responding.") -> ShipDeskError:
    return ShipDeskError(code=code, message=message, remediation="Retry later.", orders=[order])


def test_from_code_fills_template():
    error = ShipDeskError.from_code("E-2001", service="FedEx Ground", carrier="UPS", orders=["1001"])
    assert error.code == "E-2001"
    assert error.message == "Service 'FedEx Ground' is not offered by UPS."
    assert error.orders == ["1001"]


def test_from_code_unknown_code():
    error = ShipDeskError.from_code("E-9999")
    assert error.message == "Unknown error: E-9999"


def test_from_code_keeps_template_when_context_missing():
    error = ShipDeskError.from_code("E-2001")
    assert "{service}" in error.message


def test_group_errors_combines_orders():
    grouped = group_errors([_err("3"), _err("1"), _err("2", code="E-3003", message="Bad address")])
    assert len(grouped) == 2
    first = next(g for g in grouped if g.code == "E-3001")
    assert first.orders == ["1", "3"]


def test_format_error_lists_orders_and_action():
    text = format_error(ShipDeskError(
        code="E-3001", message="Down", remediation="Retry.", orders=["A", "B"],
    ))
    assert text.splitlines() == ["E-3001: Down", "  Affected orders: A, B", "  Action: Retry."]


def test_format_error_truncates_long_order_lists():
    orders = [str(i) for i in range(15)]
    text = format_error(ShipDeskError(code="E-3001", message="Down", remediation="", orders=orders))
    assert "(and 5 more)" in text


def test_format_error_summary():
    assert format_error_summary([]) == "No errors."
    single = format_error_summary([_err("1"), _err("2")])
    assert single.startswith("E-3001:")
    multi = format_error_summary([_err("1"), _err("2", code="E-3003", message="Bad")])
    assert multi.startswith("2 error type(s) found:")
