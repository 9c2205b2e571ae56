from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from ..services.layout_store import get_layout_store

router = APIRouter(prefix="/api/layout", tags=["layout"])
logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 200


class LayoutValueBody(BaseModel):
    value: Any = Field(default=None)


def _check_key(key: str) -> str:
    key = key.strip()
    if not key or len(key) > MAX_KEY_LENGTH:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid layout key.")
    return key


@router.get("/{company_id}/{order_id}")
def get_layout(company_id: str, order_id: str) -> Dict[str, Any]:
    """Every stored layout key for an order; empty when nothing was saved."""
    try:
        values = get_layout_store().get_all(company_id, order_id)
    except SQLAlchemyError as exc:
        logger.exception("Failed to read layout for %s/%s: %s", company_id, order_id, exc)
        raise HTTPException(status_code=500, detail="Failed to read layout state.")
    return {"companyId": company_id, "orderId": order_id, "values": values}


@router.put("/{company_id}/{order_id}/{key}")
def put_layout_value(company_id: str, order_id: str, key: str, body: LayoutValueBody) -> Dict[str, Any]:
    key = _check_key(key)
    try:
        get_layout_store().set(company_id, order_id, key, body.value)
    except SQLAlchemyError as exc:
        logger.exception("Failed to store layout key %s for %s/%s: %s", key, company_id, order_id, exc)
        raise HTTPException(status_code=500, detail="Failed to store layout state.")
    return {"ok": True, "key": key}


@router.delete("/{company_id}/{order_id}")
def delete_layout(company_id: str, order_id: str) -> Dict[str, Any]:
    try:
        removed = get_layout_store().clear(company_id, order_id)
    except SQLAlchemyError as exc:
        logger.exception("Failed to clear layout for %s/%s: %s", company_id, order_id, exc)
        raise HTTPException(status_code=500, detail="Failed to clear layout state.")
    return {"ok": True, "removed": removed}
