from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, List, Mapping, Optional

from .entries import OrderEntry
from .formula import parse_number
from .schemas import DiscountType, OrderTemplateSummary, OrderWithDetails

ZERO = Decimal("0")
_CENTS = Decimal("0.01")
_STORED = Decimal("0.0001")


def to_decimal(value: object) -> Decimal:
    """Decimal from an API amount; blanks and junk count as zero."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        number = Decimal(repr(parse_number(value)))
    return number if number.is_finite() else ZERO


def format_amount(value: object) -> str:
    """Two-decimal display string, ``"0.00"`` for anything unusable."""
    return str(to_decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP))


@dataclass
class DiscountResult:
    discount_amount: Decimal
    final_payable_amount: Decimal


def apply_discount(total: object, discount_type: Optional[str], value: object) -> DiscountResult:
    """Percent-vs-amount reduction of ``total``, payable floored at zero."""
    base = to_decimal(total)
    amount = to_decimal(value)
    if discount_type == DiscountType.PERCENT:
        amount = base * amount / 100
    payable = base - amount
    if payable < ZERO:
        payable = ZERO
    return DiscountResult(discount_amount=amount, final_payable_amount=payable)


def compute_template_summary(
    total: object,
    discount_type: Optional[str],
    discount: object,
    notes: Optional[str] = None,
) -> OrderTemplateSummary:
    result = apply_discount(total, discount_type, discount)
    return OrderTemplateSummary(
        total=str(to_decimal(total).quantize(_STORED, rounding=ROUND_HALF_UP)),
        discount=str(to_decimal(discount)),
        discount_type=DiscountType(discount_type) if discount_type else None,
        discount_amount=str(result.discount_amount.quantize(_STORED, rounding=ROUND_HALF_UP)),
        final_payable_amount=str(result.final_payable_amount.quantize(_STORED, rounding=ROUND_HALF_UP)),
        notes=notes,
    )


@dataclass
class FinalCalcRow:
    label: str
    order_template_id: str
    total: str
    child_total: Optional[str]
    notes: Optional[str]

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "label": self.label,
            "orderTemplateId": self.order_template_id,
            "total": self.total,
            "childTotal": self.child_total,
            "notes": self.notes,
        }


@dataclass
class FinalCalcData:
    template_rows: List[FinalCalcRow] = field(default_factory=list)
    total: str = "0.00"
    discount: str = "0.00"
    discount_type: Optional[str] = None
    discount_amount: str = "0.00"
    margin_discount: str = "0.00"
    margin_type: Optional[str] = None
    margin_total: str = "0.00"
    final_payable_amount: str = "0.00"
    has_any_children: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "templateRows": [row.to_dict() for row in self.template_rows],
            "total": data["total"],
            "discount": data["discount"],
            "discountType": data["discount_type"],
            "discountAmount": data["discount_amount"],
            "marginDiscount": data["margin_discount"],
            "marginType": data["margin_type"],
            "marginTotal": data["margin_total"],
            "finalPayableAmount": data["final_payable_amount"],
            "hasAnyChildren": data["has_any_children"],
        }


def _payable(entry: Optional[OrderEntry]) -> Decimal:
    if entry is None or entry.summary is None:
        return ZERO
    return to_decimal(entry.summary.final_payable_amount)


def aggregate(order: OrderWithDetails, grouped: Mapping[str, List[OrderEntry]]) -> FinalCalcData:
    """Order-level rollup over template groups.

    Each group contributes its parent's payable amount to the order total;
    children are reported separately in ``childTotal``. The order discount is
    taken off the total first and the margin is then taken off what remains.
    """
    rows: List[FinalCalcRow] = []
    total = ZERO
    has_children = False

    for template_id, entries in grouped.items():
        parent = next((e for e in entries if not e.is_child), None)
        children = [e for e in entries if e.is_child]
        has_children = has_children or bool(children)

        if parent is not None:
            label = parent.name
        elif children:
            label = children[0].name
        else:
            label = template_id

        if parent is not None and not parent.is_new:
            order_template_id = parent.order_template_id
        elif children:
            order_template_id = children[0].order_template_id
        else:
            order_template_id = template_id

        parent_total = _payable(parent)
        total += parent_total
        child_total = None
        if children:
            child_total = format_amount(sum((_payable(child) for child in children), ZERO))

        rows.append(
            FinalCalcRow(
                label=label,
                order_template_id=order_template_id,
                total=format_amount(parent_total),
                child_total=child_total,
                notes=parent.summary.notes if parent is not None and parent.summary else None,
            )
        )

    discount_type = order.discount_type.value if order.discount_type else None
    margin_type = order.margin_type.value if order.margin_type else None
    discounted = apply_discount(total, discount_type, order.discount)
    margined = apply_discount(discounted.final_payable_amount, margin_type, order.margin_discount)

    return FinalCalcData(
        template_rows=rows,
        total=format_amount(total),
        discount=format_amount(order.discount),
        discount_type=discount_type,
        discount_amount=format_amount(discounted.discount_amount),
        margin_discount=format_amount(order.margin_discount),
        margin_type=margin_type,
        margin_total=format_amount(margined.discount_amount),
        final_payable_amount=format_amount(margined.final_payable_amount),
        has_any_children=has_children,
    )
