from __future__ import annotations

import itertools
import logging
import threading
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from .calculation import FinalCalcData, aggregate
from .client import OrderApiClient
from .entries import (
    Discount,
    OrderState,
    build_duplicate_payload,
    build_extra_values_payload,
    build_final_calculation_payload,
    build_update_payload,
    process_order,
    validate_values,
)
from .models import UsageLog

logger = logging.getLogger(__name__)

_order_locks: Dict[Tuple[str, str], threading.Lock] = {}
_order_locks_guard = threading.Lock()


def order_lock(company_id: str, order_id: str) -> threading.Lock:
    """One lock per order, shared by every service instance in the process."""
    key = (company_id, order_id)
    with _order_locks_guard:
        lock = _order_locks.get(key)
        if lock is None:
            lock = _order_locks[key] = threading.Lock()
        return lock


class OrderService:
    def __init__(
        self,
        client: OrderApiClient,
        company_id: str,
        order_id: str,
        session: Optional[Session] = None,
    ):
        self.client = client
        self.company_id = company_id
        self.order_id = order_id
        self.session = session
        self.state: Optional[OrderState] = None
        self._stamps = itertools.count(1)
        self._committed_stamp = 0
        self._state_guard = threading.Lock()

    @property
    def lock(self) -> threading.Lock:
        return order_lock(self.company_id, self.order_id)

    def load(self) -> OrderState:
        """Fetch the snapshot and rebuild state unless a newer load already landed."""
        with self._state_guard:
            stamp = next(self._stamps)
        order = self.client.get_order(self.company_id, self.order_id)
        state = process_order(order)
        with self._state_guard:
            if stamp < self._committed_stamp:
                logger.debug("Discarding stale snapshot %s for order %s", stamp, self.order_id)
                return self.state
            self._committed_stamp = stamp
            self.state = state
        return state

    def refresh(self) -> OrderState:
        return self.load()

    def current(self) -> OrderState:
        if self.state is None:
            return self.load()
        return self.state

    def final_calculation(self) -> FinalCalcData:
        state = self.current()
        return aggregate(state.order, state.grouped())

    def request_duplicate(self, order_template_id: str) -> OrderState:
        with self.lock:
            # the instance cap is checked against a snapshot taken under the lock
            state = self.load()
            entry = state.entry(order_template_id)
            payload = build_duplicate_payload(state, entry)
            self.client.update_order_values(self.company_id, self.order_id, payload)
            self.append_usage("duplicate", {"templateId": entry.template_id})
            return self.refresh()

    def save(
        self,
        discounts: Optional[Mapping[str, Discount]] = None,
        comment: Optional[str] = None,
        values: Optional[Mapping[str, Mapping[str, Mapping[str, str]]]] = None,
        extra_values: Optional[Mapping[str, Mapping[str, str]]] = None,
    ) -> OrderState:
        """Apply cell and extra edits to a fresh snapshot, validate and send one update.

        ``values`` is keyed by order template id, row id and column id;
        ``extra_values`` by order template id and extra field id.
        """
        with self.lock:
            state = self.load()
            for otid, rows in (values or {}).items():
                for row_id, cells in rows.items():
                    for column_id, value in cells.items():
                        state.set_value(otid, row_id, column_id, value)
            for otid, fields in (extra_values or {}).items():
                for field_id, value in fields.items():
                    state.set_extra_value(otid, field_id, value)
            validate_values(state)
            payload = build_update_payload(state, discounts, comment)
            self.client.update_order_values(self.company_id, self.order_id, payload)
            self.append_usage("update_values", {"templates": len(payload["templates"])})
            return self.refresh()

    def update_extra_values(self, order_template_id: str, values: Mapping[str, str]) -> OrderState:
        with self.lock:
            state = self.load()
            for field_id, value in values.items():
                state.set_extra_value(order_template_id, field_id, value)
            payload = build_extra_values_payload(state, order_template_id)
            self.client.update_order_extra_values(self.company_id, self.order_id, payload)
            self.append_usage("update_extra_values", {"orderTemplateId": order_template_id})
            return self.refresh()

    def recalculate(self) -> OrderState:
        with self.lock:
            self.client.recalculate_order(self.company_id, self.order_id)
            self.append_usage("recalculate", {})
            return self.refresh()

    def update_final_calculation(
        self,
        notes: Optional[Mapping[str, str]] = None,
        discount: Any = 0,
        discount_type: Optional[str] = None,
        margin_discount: Any = 0,
        margin_type: Optional[str] = None,
    ) -> FinalCalcData:
        with self.lock:
            state = self.load()
            rows = aggregate(state.order, state.grouped()).template_rows
            payload = build_final_calculation_payload(
                [row.order_template_id for row in rows],
                notes or {},
                discount=discount,
                discount_type=discount_type,
                margin_discount=margin_discount,
                margin_type=margin_type,
            )
            self.client.update_final_calculation(self.company_id, self.order_id, payload)
            self.append_usage("final_calculation", payload.to_wire())
            self.refresh()
        return self.final_calculation()

    def append_usage(self, event: str, payload: Dict[str, Any]) -> None:
        if self.session is None:
            return
        self.session.add(
            UsageLog(company_id=self.company_id, order_id=self.order_id, event=event, payload=payload)
        )
        self.session.flush()
