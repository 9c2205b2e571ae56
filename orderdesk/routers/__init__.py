from __future__ import annotations

from fastapi import APIRouter

from . import layout

router = APIRouter()
router.include_router(layout.router)
