from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .formula import evaluate_row, parse_number
from .schemas import (
    ColumnDataType,
    DiscountType,
    ExtraValueType,
    FinalCalculationPayload,
    NotePayload,
    OrderTemplateData,
    OrderTemplateSummary,
    OrderWithDetails,
    TemplateSummaryPayload,
    TemplateWithDetails,
)

logger = logging.getLogger(__name__)

MAX_INSTANCES_PER_TEMPLATE = 2
NEW_ENTRY_PREFIX = "new_"

ValueMap = Dict[str, Dict[str, str]]


class DuplicateLimitError(Exception):
    """A template already has its parent and child instance."""

    def __init__(self, template_id: str):
        super().__init__("Maximum 2 templates allowed. Cannot duplicate further.")
        self.template_id = template_id


class ValidationErrors(Exception):
    """Per-cell and per-extra-field problems that block a save."""

    def __init__(
        self,
        cell_errors: Dict[str, Dict[str, str]],
        extra_errors: Dict[str, Dict[str, str]],
    ):
        super().__init__("Please fix the validation errors before saving.")
        self.cell_errors = cell_errors
        self.extra_errors = extra_errors

    def to_dict(self) -> Dict[str, Dict[str, Dict[str, str]]]:
        return {"cells": self.cell_errors, "extras": self.extra_errors}


@dataclass
class ExtraValue:
    value: str = ""
    order_extra_value_id: Optional[str] = None
    order_index: int = 0


ExtraValueMap = Dict[str, ExtraValue]


@dataclass
class OrderEntry:
    order_template_id: str
    template_id: str
    template: TemplateWithDetails
    parent_order_template_id: Optional[str] = None
    is_child: bool = False
    summary: Optional[OrderTemplateSummary] = None
    is_new: bool = False

    @property
    def name(self) -> str:
        return self.template.name or self.template_id

    def to_dict(self) -> Dict[str, object]:
        return {
            "orderTemplateId": self.order_template_id,
            "templateId": self.template_id,
            "name": self.name,
            "parentOrderTemplateId": self.parent_order_template_id,
            "isChild": self.is_child,
            "isNew": self.is_new,
            "summary": self.summary.to_wire() if self.summary else None,
        }


@dataclass
class Discount:
    discount_type: DiscountType = DiscountType.PERCENT
    discount_value: str = "0"


@dataclass
class OrderState:
    """Entries and editable value maps rebuilt from one order snapshot."""

    order: OrderWithDetails
    entries: List[OrderEntry] = field(default_factory=list)
    values: Dict[str, ValueMap] = field(default_factory=dict)
    extra_values: Dict[str, ExtraValueMap] = field(default_factory=dict)
    # persisted ids as loaded, used to detect cleared cells
    value_ids: Dict[str, Dict[Tuple[str, str], str]] = field(default_factory=dict)
    extra_value_ids: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def entry(self, order_template_id: str) -> OrderEntry:
        for entry in self.entries:
            if entry.order_template_id == order_template_id:
                return entry
        raise KeyError(order_template_id)

    def grouped(self) -> Dict[str, List[OrderEntry]]:
        return group_by_template(self.entries)

    def children_of(self, entry: OrderEntry) -> List[OrderEntry]:
        return [e for e in self.entries if e.parent_order_template_id == entry.order_template_id]

    def set_value(self, order_template_id: str, row_id: str, column_id: str, value: str) -> None:
        entry = self.entry(order_template_id)
        column = next((c for c in entry.template.columns if c.id == column_id), None)
        if column is None:
            raise KeyError(column_id)
        if column.data_type is ColumnDataType.FORMULA:
            raise ValueError(f"Column {column.key!r} is calculated and cannot be edited")
        self.values.setdefault(order_template_id, {}).setdefault(row_id, {})[column_id] = value

    def set_extra_value(self, order_template_id: str, field_id: str, value: str) -> None:
        self.entry(order_template_id)
        extras = self.extra_values.setdefault(order_template_id, {})
        current = extras.get(field_id)
        if current is None:
            extras[field_id] = ExtraValue(value=value)
        else:
            current.value = value

    def calculated_values(self, order_template_id: str) -> ValueMap:
        """Formula cells for every row of an entry, keyed rowId -> columnId."""
        entry = self.entry(order_template_id)
        values = self.values.get(order_template_id, {})
        columns = entry.template.columns
        return {row.id: evaluate_row(columns, values.get(row.id, {})) for row in entry.template.rows}


def _summary_or_none(summary: Optional[OrderTemplateSummary]) -> Optional[OrderTemplateSummary]:
    if summary is None:
        return None
    return summary.model_copy()


def process_order(order: OrderWithDetails) -> OrderState:
    """Flatten an order snapshot into entries plus value maps."""
    product_templates = order.product.templates if order.product else []
    state = OrderState(order=order)
    if not product_templates:
        return state

    templates = {template.id: template for template in product_templates}
    seen_template_ids = set()

    def visit(data: OrderTemplateData, parent_id: Optional[str], is_child: bool) -> None:
        template = templates.get(data.template_id)
        if template is None:
            logger.warning("Order %s references unknown template %s", order.id, data.template_id)
            return
        seen_template_ids.add(data.template_id)
        state.entries.append(
            OrderEntry(
                order_template_id=data.id,
                template_id=data.template_id,
                template=template,
                parent_order_template_id=parent_id,
                is_child=is_child,
                summary=_summary_or_none(data.summary),
            )
        )

        formula_ids = {c.id for c in template.columns if c.data_type is ColumnDataType.FORMULA}
        values: ValueMap = {}
        ids: Dict[Tuple[str, str], str] = {}
        for item in data.values:
            if item.column_id in formula_ids:
                continue
            if item.value is not None:
                text = item.value
            elif item.calculated_value is not None:
                text = item.calculated_value
            else:
                text = ""
            values.setdefault(item.row_id, {})[item.column_id] = text
            if item.id:
                ids[(item.row_id, item.column_id)] = item.id
        state.values[data.id] = values
        state.value_ids[data.id] = ids

        extras: ExtraValueMap = {}
        extra_ids: Dict[str, str] = {}
        for item in data.extra_values:
            extras[item.template_extra_field_id] = ExtraValue(
                value=item.value,
                order_extra_value_id=item.id,
                order_index=item.order_index,
            )
            if item.id:
                extra_ids[item.template_extra_field_id] = item.id
        state.extra_values[data.id] = extras
        state.extra_value_ids[data.id] = extra_ids

        for child in data.children:
            visit(child, data.id, True)

    for data in order.templates:
        visit(data, None, False)

    for template in product_templates:
        if template.id in seen_template_ids:
            continue
        key = f"{NEW_ENTRY_PREFIX}{template.id}"
        state.entries.append(
            OrderEntry(order_template_id=key, template_id=template.id, template=template, is_new=True)
        )
        state.values[key] = {}
        state.extra_values[key] = {}
    return state


def group_by_template(entries: Iterable[OrderEntry]) -> Dict[str, List[OrderEntry]]:
    grouped: Dict[str, List[OrderEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.template_id, []).append(entry)
    return grouped


def can_duplicate(entries: Iterable[OrderEntry], template_id: str) -> bool:
    count = sum(1 for entry in entries if entry.template_id == template_id)
    return count < MAX_INSTANCES_PER_TEMPLATE


def ensure_can_duplicate(entries: Iterable[OrderEntry], template_id: str) -> None:
    if not can_duplicate(entries, template_id):
        raise DuplicateLimitError(template_id)


def _copy_values(entry: OrderEntry, source: ValueMap) -> List[dict]:
    columns = [c for c in entry.template.columns if c.data_type is not ColumnDataType.FORMULA]
    values = []
    for row in entry.template.rows:
        for column in columns:
            value = source.get(row.id, {}).get(column.id)
            if value:
                values.append({"value": value, "rowId": row.id, "columnId": column.id})
    return values


def _copy_extra_values(source: ExtraValueMap) -> List[dict]:
    copied = []
    for field_id, extra in source.items():
        item = {"templateExtraFieldId": field_id, "value": extra.value, "orderIndex": extra.order_index or 0}
        if extra.order_extra_value_id:
            item["orderExtraValueId"] = extra.order_extra_value_id
        copied.append(item)
    return copied


def build_duplicate_payload(state: OrderState, entry: OrderEntry) -> dict:
    """Payload for ``update-values`` that adds a child instance of ``entry``.

    Raises :class:`DuplicateLimitError` when the template already has two
    instances, before anything is sent anywhere.
    """
    ensure_can_duplicate(state.entries, entry.template_id)

    values = _copy_values(entry, state.values.get(entry.order_template_id, {}))
    extra_values = _copy_extra_values(state.extra_values.get(entry.order_template_id, {}))

    def instance(**extra: object) -> dict:
        item = {"templateId": entry.template_id, **extra, "values": [dict(v) for v in values]}
        if extra_values:
            item["extravalues"] = [dict(v) for v in extra_values]
        return item

    if entry.is_new:
        # nothing persisted yet: create the parent and its child together
        parent = instance()
        parent["children"] = [instance()]
        return {"templates": [parent]}

    parent_entry = next(
        (e for e in state.entries if e.template_id == entry.template_id and not e.is_child),
        None,
    )
    if parent_entry is None:
        raise KeyError(entry.template_id)
    return {"templates": [instance(parentOrderTemplateId=parent_entry.order_template_id)]}


def _is_number(text: str) -> bool:
    try:
        number = float(text)
    except ValueError:
        return False
    return not math.isnan(number)


def validate_values(state: OrderState) -> None:
    """Raise :class:`ValidationErrors` when any cell or extra field is invalid."""
    cell_errors: Dict[str, Dict[str, str]] = {}
    extra_errors: Dict[str, Dict[str, str]] = {}
    failed = False

    for entry in state.entries:
        values = state.values.get(entry.order_template_id, {})
        errors: Dict[str, str] = {}
        for row in entry.template.rows:
            for column in entry.template.columns:
                if column.data_type is ColumnDataType.FORMULA:
                    continue
                value = (values.get(row.id, {}).get(column.id) or "").strip()
                cell_key = f"{row.id}-{column.id}"
                if column.is_required and not value:
                    errors[cell_key] = "Required"
                elif column.data_type is ColumnDataType.NUMBER and value and not _is_number(value):
                    errors[cell_key] = "Must be a number"
        cell_errors[entry.order_template_id] = errors
        failed = failed or bool(errors)

        extras = state.extra_values.get(entry.order_template_id, {})
        errors = {}
        for extra in entry.template.extra:
            current = extras.get(extra.id)
            value = (current.value if current else "").strip()
            if extra.is_required and not value:
                errors[extra.id] = "Required"
            elif extra.value_type is ExtraValueType.NUMBER and value and not _is_number(value):
                errors[extra.id] = "Must be a number"
        extra_errors[entry.order_template_id] = errors
        failed = failed or bool(errors)

    if failed:
        raise ValidationErrors(cell_errors, extra_errors)


def _extra_value_items(state: OrderState, entry: OrderEntry) -> Tuple[List[dict], List[str]]:
    """Extra values to send plus the persisted ids that were cleared."""
    otid = entry.order_template_id
    extras = state.extra_values.get(otid, {})
    persisted_ids = state.extra_value_ids.get(otid, {})
    items = []
    used_ids = set()
    for extra in entry.template.extra:
        current = extras.get(extra.id)
        value = (current.value if current else "").strip()
        existing = (current.order_extra_value_id if current else None) or persisted_ids.get(extra.id)
        # a cleared persisted value is reported through its id instead
        if not value:
            continue
        item = {
            "templateExtraFieldId": extra.id,
            "value": value,
            "meta": None,
            "orderIndex": current.order_index if current else 0,
        }
        if existing:
            item = {"orderExtraValueId": existing, **item}
            used_ids.add(existing)
        items.append(item)
    if entry.is_new:
        return items, []
    return items, [vid for vid in persisted_ids.values() if vid not in used_ids]


def build_extra_values_payload(state: OrderState, order_template_id: str) -> dict:
    """``update-extra-values`` body for one persisted entry."""
    entry = state.entry(order_template_id)
    if entry.is_new:
        raise ValueError("Save the template before editing its extra fields separately")
    items, deleted = _extra_value_items(state, entry)
    template = {
        "templateId": entry.template_id,
        "orderTemplateId": entry.order_template_id,
        "parentOrderTemplateId": entry.parent_order_template_id,
        "values": items,
    }
    if deleted:
        template["deleteOrderExtraValueIds"] = deleted
    return {"templates": [template]}


def _template_payload(state: OrderState, entry: OrderEntry, discounts: Mapping[str, Discount]) -> dict:
    otid = entry.order_template_id
    values = state.values.get(otid, {})
    persisted_ids = state.value_ids.get(otid, {})

    value_items = []
    used_ids = set()
    for row in entry.template.rows:
        for column in entry.template.columns:
            if column.data_type is ColumnDataType.FORMULA:
                continue
            value = (values.get(row.id, {}).get(column.id) or "").strip()
            existing = persisted_ids.get((row.id, column.id))
            if not value:
                continue
            item = {"value": value, "rowId": row.id, "columnId": column.id}
            if existing:
                item = {"orderValueId": existing, **item}
                used_ids.add(existing)
            value_items.append(item)

    extra_items, deleted_extra_ids = _extra_value_items(state, entry)

    discount = discounts.get(otid) or Discount()
    summary = TemplateSummaryPayload(
        discount_type=discount.discount_type,
        discount_value=discount.discount_value or "0",
    )

    payload: dict = {"templateId": entry.template_id}
    if not entry.is_new:
        payload["orderTemplateId"] = otid
    payload["parentOrderTemplateId"] = entry.parent_order_template_id
    payload["values"] = value_items
    payload["summary"] = summary.to_wire()

    if not entry.is_new:
        deleted = [vid for vid in persisted_ids.values() if vid not in used_ids]
        if deleted:
            payload["deleteOrderValueIds"] = deleted
        if deleted_extra_ids:
            payload["deleteOrderExtraValueIds"] = deleted_extra_ids
    if extra_items:
        payload["extravalues"] = extra_items

    children = [_template_payload(state, child, discounts) for child in state.children_of(entry)]
    if children:
        payload["children"] = children
    return payload


def build_update_payload(
    state: OrderState,
    discounts: Optional[Mapping[str, Discount]] = None,
    comment: Optional[str] = None,
) -> dict:
    """Single ``update-values`` body covering every top-level entry and its children."""
    discounts = discounts or {}
    payload: dict = {
        "templates": [
            _template_payload(state, entry, discounts)
            for entry in state.entries
            if entry.parent_order_template_id is None
        ]
    }
    if comment and comment.strip():
        payload["comment"] = comment.strip()
    return payload


def build_final_calculation_payload(
    order_template_ids: Iterable[str],
    notes: Mapping[str, str],
    discount: object = 0,
    discount_type: Optional[str] = None,
    margin_discount: object = 0,
    margin_type: Optional[str] = None,
) -> FinalCalculationPayload:
    note_items = [
        NotePayload(order_template_id=otid, notes=notes.get(otid) or "")
        for otid in order_template_ids
    ]
    return FinalCalculationPayload(
        notes=[note for note in note_items if note.notes.strip()],
        discount=parse_number(discount),
        discount_type=DiscountType(discount_type or DiscountType.AMOUNT),
        margin_discount=parse_number(margin_discount),
        margin_type=DiscountType(margin_type or DiscountType.AMOUNT),
    )
