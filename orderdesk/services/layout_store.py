from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session, sessionmaker

from ..app.config import load_config
from ..app.database import ensure_sqlite_dir
from ..app.models import Base, LayoutState, utcnow


class LayoutStore:
    """Opaque per-order layout state kept in the local database."""

    def __init__(self, database_url: str) -> None:
        ensure_sqlite_dir(database_url)
        self.engine = create_engine(database_url, future=True)
        Base.metadata.create_all(bind=self.engine)
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, future=True)

    def _session(self) -> Session:
        return self._sessions()

    def get_all(self, company_id: str, order_id: str) -> Dict[str, Any]:
        with self._session() as session:
            rows = session.scalars(
                select(LayoutState)
                .where(LayoutState.company_id == company_id, LayoutState.order_id == order_id)
                .order_by(LayoutState.key)
            )
            return {row.key: row.value for row in rows}

    def set(self, company_id: str, order_id: str, key: str, value: Any) -> None:
        with self._session() as session, session.begin():
            row = session.scalars(
                select(LayoutState).where(
                    LayoutState.company_id == company_id,
                    LayoutState.order_id == order_id,
                    LayoutState.key == key,
                )
            ).one_or_none()
            if row is None:
                session.add(LayoutState(company_id=company_id, order_id=order_id, key=key, value=value))
            else:
                row.value = value
                row.updated_at = utcnow()

    def clear(self, company_id: str, order_id: str) -> int:
        with self._session() as session, session.begin():
            result = session.execute(
                delete(LayoutState).where(
                    LayoutState.company_id == company_id, LayoutState.order_id == order_id
                )
            )
            return result.rowcount or 0


_store: Optional[LayoutStore] = None
_store_lock = threading.Lock()


def get_layout_store() -> LayoutStore:
    global _store
    with _store_lock:
        if _store is None:
            _store = LayoutStore(load_config()["DATABASE_URL"])
        return _store


def set_layout_store(store: Optional[LayoutStore]) -> None:
    global _store
    with _store_lock:
        _store = store
