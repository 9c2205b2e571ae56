from __future__ import annotations

import json
import logging
from typing import Any, Dict

from flask import Blueprint, Flask, current_app, jsonify, request
from pydantic import ValidationError

from .calculation import compute_template_summary
from .client import ApiError, OrderApiClient
from .database import session_scope
from .entries import Discount, DuplicateLimitError, ValidationErrors
from .formula import evaluate, formula_preview, parse_formula, stringify_formula, validate_formula
from .schemas import DiscountType, TemplateColumn
from .services import OrderService

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")

CLIENT_EXTENSION = "orderdesk.client"


def _client() -> OrderApiClient:
    return current_app.extensions[CLIENT_EXTENSION]


def _formula_from(payload: Dict[str, Any]):
    raw = payload.get("formula")
    if isinstance(raw, dict):
        raw = json.dumps(raw)
    return parse_formula(raw)


def _columns_from(payload: Dict[str, Any]):
    return [TemplateColumn.model_validate(column) for column in payload.get("columns") or []]


def _state_payload(service: OrderService) -> Dict[str, Any]:
    state = service.current()
    return {
        "entries": [entry.to_dict() for entry in state.entries],
        "finalCalculation": service.final_calculation().to_dict(),
    }


@api.errorhandler(ApiError)
def handle_api_error(exc: ApiError):
    logger.warning("Remote API call failed (%s): %s", exc.status, exc.message)
    return jsonify({"error": exc.message}), 502


@api.errorhandler(DuplicateLimitError)
def handle_duplicate_limit(exc: DuplicateLimitError):
    return jsonify({"error": str(exc), "templateId": exc.template_id}), 409


@api.errorhandler(ValidationErrors)
def handle_validation_errors(exc: ValidationErrors):
    return jsonify({"error": str(exc), **exc.to_dict()}), 400


@api.errorhandler(ValidationError)
def handle_bad_payload(exc: ValidationError):
    details = exc.errors(include_url=False, include_context=False)
    return jsonify({"error": "invalid payload", "details": details}), 400


@api.post("/formula/evaluate")
def formula_evaluate():
    payload = request.json or {}
    columns = _columns_from(payload)
    parsed = _formula_from(payload)
    values = {str(k): "" if v is None else str(v) for k, v in (payload.get("values") or {}).items()}
    return jsonify({"value": evaluate(parsed, columns, values)})


@api.post("/formula/parse")
def formula_parse():
    payload = request.json or {}
    parsed = _formula_from(payload)
    if parsed is None:
        return jsonify({"error": "invalid formula"}), 400
    data: Dict[str, Any] = {"formula": parsed.to_dict(), "text": stringify_formula(parsed)}
    if payload.get("columns"):
        data["preview"] = formula_preview(parsed, _columns_from(payload))
    return jsonify(data)


@api.post("/formula/validate")
def formula_validate():
    payload = request.json or {}
    parsed = _formula_from(payload)
    if parsed is None:
        return jsonify({"valid": False, "error": "Please add at least one column to the formula"})
    error = validate_formula(parsed, _columns_from(payload))
    return jsonify({"valid": error is None, "error": error})


@api.post("/summary/discount")
def summary_discount():
    payload = request.json or {}
    try:
        summary = compute_template_summary(
            payload.get("total"),
            payload.get("discountType") or DiscountType.PERCENT.value,
            payload.get("discount"),
        )
    except ValueError:
        return jsonify({"error": "invalid discount type"}), 400
    return jsonify(summary.to_wire())


@api.get("/orders/<company_id>/<order_id>/final-calculation")
def final_calculation(company_id: str, order_id: str):
    service = OrderService(_client(), company_id, order_id)
    return jsonify(service.final_calculation().to_dict())


@api.put("/orders/<company_id>/<order_id>/final-calculation")
def update_final_calculation(company_id: str, order_id: str):
    payload = request.json or {}
    try:
        discount_type = DiscountType(payload.get("discountType") or DiscountType.AMOUNT)
        margin_type = DiscountType(payload.get("marginType") or DiscountType.AMOUNT)
    except ValueError:
        return jsonify({"error": "invalid discount type"}), 400
    with session_scope() as session:
        service = OrderService(_client(), company_id, order_id, session)
        result = service.update_final_calculation(
            notes=payload.get("notes") or {},
            discount=payload.get("discount", 0),
            discount_type=discount_type.value,
            margin_discount=payload.get("marginDiscount", 0),
            margin_type=margin_type.value,
        )
        return jsonify(result.to_dict())


@api.post("/orders/<company_id>/<order_id>/duplicate/<order_template_id>")
def duplicate_template(company_id: str, order_id: str, order_template_id: str):
    with session_scope() as session:
        service = OrderService(_client(), company_id, order_id, session)
        try:
            service.request_duplicate(order_template_id)
        except KeyError:
            return jsonify({"error": "order template not found"}), 404
        return jsonify(_state_payload(service)), 201


@api.post("/orders/<company_id>/<order_id>/recalculate")
def recalculate(company_id: str, order_id: str):
    with session_scope() as session:
        service = OrderService(_client(), company_id, order_id, session)
        service.recalculate()
        return jsonify(_state_payload(service))


@api.put("/orders/<company_id>/<order_id>/values")
def save_values(company_id: str, order_id: str):
    payload = request.json or {}
    values = {
        otid: {
            row_id: {column_id: "" if value is None else str(value) for column_id, value in cells.items()}
            for row_id, cells in rows.items()
        }
        for otid, rows in (payload.get("values") or {}).items()
    }
    extra_values = {
        otid: {field_id: "" if value is None else str(value) for field_id, value in fields.items()}
        for otid, fields in (payload.get("extraValues") or {}).items()
    }
    try:
        discounts = {
            otid: Discount(
                discount_type=DiscountType(item.get("discountType") or DiscountType.PERCENT),
                discount_value=str(item.get("discountValue") or "0"),
            )
            for otid, item in (payload.get("discounts") or {}).items()
        }
    except ValueError:
        return jsonify({"error": "invalid discount type"}), 400
    with session_scope() as session:
        service = OrderService(_client(), company_id, order_id, session)
        try:
            service.save(discounts, payload.get("comment"), values=values, extra_values=extra_values)
        except KeyError as exc:
            return jsonify({"error": f"unknown id {exc.args[0]}"}), 404
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify(_state_payload(service))


def register_api(app: Flask) -> None:
    app.register_blueprint(api)
