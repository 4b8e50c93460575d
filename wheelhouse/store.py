"""Table-store adapter: create/get/update/delete/scan by table name.

Every helper takes and returns plain dict documents so the domain layer never
holds ORM objects across calls.  Helpers only ``flush``; the caller commits.
Concurrent writers are resolved by last write wins.
"""
from __future__ import annotations

import random
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from wheelhouse.models import (
    DPIA, Asset, Assessment, AssessmentProgress, AssessmentSubmission,
    Base, Framework, Report, Risk, Setting, User, utcnow,
)

TABLES: dict[str, type[Base]] = {
    model.__tablename__: model
    for model in (
        User, Assessment, AssessmentProgress, AssessmentSubmission,
        Risk, Asset, Framework, DPIA, Report, Setting,
    )
}

_IMMUTABLE = frozenset({"id", "created_at"})


def _model(table: str) -> type[Base]:
    try:
        return TABLES[table]
    except KeyError:
        raise KeyError(f"Unknown table: {table!r}") from None


def _columns(model: type[Base]) -> set[str]:
    return {c.key for c in model.__table__.columns}


def generate_custom_id() -> str:
    """Five-digit display id shown next to records in listings."""
    return str(random.randint(10000, 99999))


def create_item(session: Session, table: str, item: dict[str, Any]) -> dict[str, Any]:
    model = _model(table)
    cols = _columns(model)
    values = {k: v for k, v in item.items() if k in cols and v is not None}
    now = utcnow()
    values.setdefault("created_at", now)
    values["updated_at"] = now
    obj = model(**values)
    session.add(obj)
    session.flush()
    return obj.to_dict()


def get_item(session: Session, table: str, item_id: str) -> dict[str, Any] | None:
    obj = session.get(_model(table), item_id)
    return obj.to_dict() if obj is not None else None


def update_item(session: Session, table: str, item_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
    model = _model(table)
    obj = session.get(model, item_id)
    if obj is None:
        return None
    cols = _columns(model) - _IMMUTABLE
    for key, val in updates.items():
        if key in cols:
            setattr(obj, key, val)
    obj.updated_at = utcnow()
    session.flush()
    return obj.to_dict()


def delete_item(session: Session, table: str, item_id: str) -> bool:
    obj = session.get(_model(table), item_id)
    if obj is None:
        return False
    session.delete(obj)
    session.flush()
    return True


def scan_items(session: Session, table: str, *criteria, **equals: Any) -> list[dict[str, Any]]:
    """Return documents matching SQL *criteria* and column equality filters.

    Filters should target indexed columns (``user_id``, ``email``, ``status`` ...).
    With no filters this is a full scan, reserved for admin listings.
    """
    model = _model(table)
    query = select(model)
    for key, val in equals.items():
        query = query.where(getattr(model, key) == val)
    if criteria:
        query = query.where(*criteria)
    return [obj.to_dict() for obj in session.execute(query).scalars().all()]


def find_item(session: Session, table: str, **equals: Any) -> dict[str, Any] | None:
    model = _model(table)
    query = select(model)
    for key, val in equals.items():
        query = query.where(getattr(model, key) == val)
    obj = session.execute(query.limit(1)).scalars().first()
    return obj.to_dict() if obj is not None else None


def count_items(session: Session, table: str) -> int:
    model = _model(table)
    return session.execute(select(func.count()).select_from(model)).scalar_one()
