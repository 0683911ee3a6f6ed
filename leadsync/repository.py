"""
repository.py — Persistence port over a SQLAlchemy Session

The sync orchestrator and reconciliation engine never touch the Session
directly; they receive a Repository. Tests hand them one bound to the
in-memory SQLite session, production hands them one bound to SessionLocal.

Filter predicates (the `where` dict):
    {"user_id": 3}                       equality
    {"name": {"contains": "acme"}}       case-insensitive substring
    {"email": {"iequals": "A@x.com"}}    case-insensitive equality
    {"crm_person_id": {"not_null": True}}
    {"last_contacted": {"is_null": True}}
    {"warmness_score": {"gte": 3, "lte": 6}}
    {"id": {"in": [1, 2, 3]}}
    {"sync_status": {"ne": "SYNCING"}}
    {"or": [{"name": {"contains": "a"}}, {"email": {"contains": "a"}}]}

Ordering (the `order_by` list): ("field", "asc"|"desc") or
("field", "asc"|"desc", "first"|"last") for explicit null placement.

Writes flush only; call commit() at the transaction boundary.

Called by: services/*
Depends on: sqlalchemy
"""

from typing import Any, Iterable

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from .errors import NotFoundError, ValidationError

_OPERATORS = {"contains", "not_null", "is_null", "gte", "lte", "gt", "lt", "in", "ne", "eq", "iequals"}


class Repository:
    def __init__(self, db: Session):
        self.db = db

    # ── Reads ───────────────────────────────────────────────────────

    def find_many(
        self,
        model,
        where: dict | None = None,
        order_by: Iterable[tuple] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list:
        q = self._query(model, where)
        for clause in self._order_clauses(model, order_by):
            q = q.order_by(clause)
        if offset:
            q = q.offset(offset)
        if limit is not None:
            q = q.limit(limit)
        return q.all()

    def find_first(self, model, where: dict | None = None, order_by: Iterable[tuple] | None = None):
        rows = self.find_many(model, where=where, order_by=order_by, limit=1)
        return rows[0] if rows else None

    def find_unique(self, model, record_id: Any):
        return self.db.get(model, record_id)

    def get_or_raise(self, model, record_id: Any):
        obj = self.find_unique(model, record_id)
        if obj is None:
            raise NotFoundError(f"{model.__name__} {record_id} not found")
        return obj

    def count(self, model, where: dict | None = None) -> int:
        q = self.db.query(func.count(model.id))
        q = q.filter(*self._conditions(model, where))
        return int(q.scalar() or 0)

    # ── Writes ──────────────────────────────────────────────────────

    def create(self, model, **values):
        obj = model(**values)
        self.db.add(obj)
        self.db.flush()
        return obj

    def update(self, obj, **values):
        for key, value in values.items():
            if not hasattr(obj.__class__, key):
                raise ValidationError(f"{obj.__class__.__name__} has no field '{key}'")
            setattr(obj, key, value)
        self.db.flush()
        return obj

    def update_where(self, model, where: dict, values: dict) -> int:
        """Conditional UPDATE … WHERE. Returns the affected row count."""
        rowcount = (
            self.db.query(model)
            .filter(*self._conditions(model, where))
            .update(values, synchronize_session=False)
        )
        self.db.flush()
        return rowcount

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def refresh(self, obj) -> None:
        self.db.refresh(obj)

    # ── Helpers ─────────────────────────────────────────────────────

    def _query(self, model, where):
        return self.db.query(model).filter(*self._conditions(model, where))

    def _column(self, model, name: str):
        col = getattr(model, name, None)
        if col is None:
            raise ValidationError(f"{model.__name__} has no field '{name}'")
        return col

    def _conditions(self, model, where: dict | None) -> list:
        conds = []
        for name, spec in (where or {}).items():
            if name == "or":
                conds.append(or_(*(and_(*self._conditions(model, sub)) for sub in spec)))
                continue
            col = self._column(model, name)
            if isinstance(spec, dict) and spec and set(spec) <= _OPERATORS:
                for op, value in spec.items():
                    conds.append(self._predicate(col, op, value))
            elif spec is None:
                conds.append(col.is_(None))
            else:
                conds.append(col == spec)
        return conds

    @staticmethod
    def _predicate(col, op: str, value):
        if op == "contains":
            return func.lower(col).contains(str(value).lower())
        if op == "iequals":
            return func.lower(col) == str(value).lower()
        if op == "not_null":
            return col.isnot(None) if value else col.is_(None)
        if op == "is_null":
            return col.is_(None) if value else col.isnot(None)
        if op == "gte":
            return col >= value
        if op == "lte":
            return col <= value
        if op == "gt":
            return col > value
        if op == "lt":
            return col < value
        if op == "in":
            return col.in_(list(value))
        if op == "ne":
            return col.is_not(None) if value is None else ((col != value) | col.is_(None))
        return col == value

    def _order_clauses(self, model, order_by) -> list:
        clauses = []
        for spec in order_by or ():
            name, direction, *rest = spec
            col = self._column(model, name)
            clause = col.desc() if direction == "desc" else col.asc()
            nulls = rest[0] if rest else None
            if nulls == "first":
                clause = clause.nulls_first()
            elif nulls == "last":
                clause = clause.nulls_last()
            clauses.append(clause)
        return clauses
