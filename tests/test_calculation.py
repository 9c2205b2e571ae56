from __future__ import annotations

from decimal import Decimal

import pytest

from factories import make_order, order_payload
from orderdesk.app.calculation import aggregate, apply_discount, compute_template_summary, format_amount
from orderdesk.app.entries import process_order


def test_percent_discount() -> None:
    result = apply_discount("200", "PERCENT", "10")
    assert result.discount_amount == Decimal("20")
    assert result.final_payable_amount == Decimal("180")


def test_amount_discount() -> None:
    result = apply_discount("200", "AMOUNT", "50")
    assert result.discount_amount == Decimal("50")
    assert result.final_payable_amount == Decimal("150")


def test_payable_never_goes_negative() -> None:
    assert apply_discount("40", "AMOUNT", "50").final_payable_amount == Decimal("0")
    assert apply_discount("40", "PERCENT", "150").final_payable_amount == Decimal("0")


def test_template_summary_keeps_stored_precision() -> None:
    summary = compute_template_summary("200", "PERCENT", "12.5", notes="check")
    assert summary.total == "200.0000"
    assert summary.discount_amount == "25.0000"
    assert summary.final_payable_amount == "175.0000"
    assert summary.to_wire()["discountType"] == "PERCENT"
    assert summary.notes == "check"


@pytest.mark.parametrize(
    "value, expected",
    [(None, "0.00"), ("", "0.00"), ("abc", "0.00"), ("12.345", "12.35"), ("180.0000", "180.00"), (7, "7.00")],
)
def test_format_amount(value, expected) -> None:
    assert format_amount(value) == expected


def test_aggregate_rows_and_order_figures() -> None:
    state = process_order(make_order())
    data = aggregate(state.order, state.grouped())

    rows = {row.label: row for row in data.template_rows}
    assert list(rows) == ["Cabinets", "Hardware", "Install"]

    assert rows["Cabinets"].order_template_id == "ot1"
    assert rows["Cabinets"].total == "180.00"
    assert rows["Cabinets"].child_total == "0.00"
    assert rows["Cabinets"].notes == "rush"

    assert rows["Hardware"].total == "50.00"
    assert rows["Hardware"].child_total is None

    # never saved: falls back to the template id
    assert rows["Install"].order_template_id == "t3"
    assert rows["Install"].total == "0.00"

    assert data.has_any_children is True
    assert data.total == "230.00"
    assert data.discount == "10.00"
    assert data.discount_amount == "10.00"
    assert data.margin_total == "11.00"
    assert data.final_payable_amount == "209.00"


def test_children_do_not_count_towards_order_total() -> None:
    payload = order_payload()
    payload["templates"][0]["children"][0]["summary"]["finalPayableAmount"] = "75.0000"
    state = process_order(make_order(payload))
    data = aggregate(state.order, state.grouped())
    assert data.template_rows[0].child_total == "75.00"
    assert data.total == "230.00"


def test_aggregate_without_children_or_discounts() -> None:
    payload = order_payload()
    payload["templates"][0]["children"] = []
    for key in ("discount", "discountType", "marginDiscount", "marginType"):
        payload.pop(key)
    state = process_order(make_order(payload))
    data = aggregate(state.order, state.grouped())
    assert data.has_any_children is False
    assert all(row.child_total is None for row in data.template_rows)
    assert data.final_payable_amount == data.total == "230.00"
    assert data.to_dict()["hasAnyChildren"] is False


def test_child_row_id_used_without_parent() -> None:
    payload = order_payload()
    # a template with only a child instance is reported under the child id
    payload["templates"] = [
        {"id": "ot9", "templateId": "t3", "values": [], "summary": {"finalPayableAmount": "12"}},
    ]
    state = process_order(make_order(payload))
    for entry in state.entries:
        if entry.order_template_id == "ot9":
            entry.is_child = True
            entry.parent_order_template_id = "ot0"
    data = aggregate(state.order, state.grouped())
    install = next(row for row in data.template_rows if row.label == "Install")
    assert install.order_template_id == "ot9"
    assert install.child_total == "12.00"
