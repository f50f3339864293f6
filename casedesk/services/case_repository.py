"""
Case Repository — the storage seam for DTR and RMA records.

Services speak to storage only through ``CaseRepository``: plain dict
records in, plain dict records out, simple filters. ``SQLCaseRepository``
is the production adapter over Flask-SQLAlchemy; tests can substitute any
other implementation (or wrap this one with mocks to inject failures).

Filter syntax (dict, AND-ed):
    {"status": "Open"}                    equality
    {"rma_case_number": None}             IS NULL
    {"status__in": [...]}                 IN
    {"status__ne": "Closed"}              !=
    {"complaint_date__gte": dt}           >=
    {"complaint_date__lte": dt}           <=
    {"site_name__contains": "pvr"}        case-insensitive substring
    {"case_id__startswith": "DTR-2024-"}   prefix

Every store failure surfaces as ``PersistenceError``; a unique-key clash
on insert surfaces as ``ConflictError``.
"""

import logging
from abc import ABC, abstractmethod

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from casedesk.core.exceptions import ConflictError, PersistenceError, ValidationError
from casedesk.models import db
from casedesk.models.dtr import DTR
from casedesk.models.rma import RMA
from casedesk.services.date_normalizer import utcnow

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    "dtr": DTR,
    "rma": RMA,
}

_OPERATORS = ("in", "ne", "gte", "lte", "contains", "startswith")


class CaseRepository(ABC):
    """Abstract CRUD + query interface over case records."""

    @abstractmethod
    def find_one(self, entity_type: str, filters: dict) -> dict | None:
        """Return the first matching record or None."""

    @abstractmethod
    def find(
        self,
        entity_type: str,
        filters: dict,
        *,
        sort: list[tuple[str, str]] | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict]:
        """Return matching records, optionally sorted and paginated."""

    @abstractmethod
    def count(self, entity_type: str, filters: dict) -> int:
        """Return the number of matching records."""

    @abstractmethod
    def insert(self, entity_type: str, record: dict) -> dict:
        """Persist a new record and return it as stored."""

    @abstractmethod
    def update_by_id(
        self,
        entity_type: str,
        record_id: int,
        patch: dict,
        *,
        conditional_on: dict | None = None,
    ) -> dict | None:
        """Apply *patch* to one record.

        With *conditional_on*, the write lands only if the record still
        matches those filters at write time; otherwise nothing changes and
        None is returned. Also returns None when the id does not exist.
        """

    @abstractmethod
    def delete_many(self, entity_type: str, ids: list[int]) -> dict:
        """Delete records by id; return ``{"deleted_count": n}``."""


class SQLCaseRepository(CaseRepository):
    """Flask-SQLAlchemy implementation. Each write is its own transaction."""

    def __init__(self, session=None) -> None:
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _model(entity_type: str):
        try:
            return ENTITY_MODELS[entity_type]
        except KeyError:
            raise ValidationError(f"Unknown entity type: {entity_type}") from None

    @staticmethod
    def _column(model, name: str):
        if name not in model.column_names():
            raise ValidationError(f"Unknown field for {model.__tablename__}: {name}")
        return getattr(model, name)

    def _conditions(self, model, filters: dict | None) -> list:
        conditions = []
        for key, value in (filters or {}).items():
            name, _, op = key.partition("__")
            if op and op not in _OPERATORS:
                raise ValidationError(f"Unsupported filter operator: {op}")
            column = self._column(model, name)
            if not op:
                conditions.append(column.is_(None) if value is None else column == value)
            elif op == "in":
                conditions.append(column.in_(list(value)))
            elif op == "ne":
                conditions.append(column.is_not(None) if value is None else column != value)
            elif op == "gte":
                conditions.append(column >= value)
            elif op == "lte":
                conditions.append(column <= value)
            elif op == "contains":
                conditions.append(column.ilike(f"%{value}%"))
            elif op == "startswith":
                conditions.append(column.like(f"{value}%"))
        return conditions

    def _check_fields(self, model, record: dict) -> None:
        unknown = set(record) - model.column_names()
        if unknown:
            raise ValidationError(
                f"Unknown field(s) for {model.__tablename__}: {', '.join(sorted(unknown))}"
            )

    def _fail(self, operation: str, entity_type: str, exc: Exception):
        self.session.rollback()
        logger.error("Repository %s on %s failed: %s", operation, entity_type, exc)
        raise PersistenceError(f"Could not {operation} {entity_type}", operation=operation) from exc

    # ── Reads ────────────────────────────────────────────────────────────

    def find_one(self, entity_type, filters):
        model = self._model(entity_type)
        stmt = (
            sa.select(model)
            .where(*self._conditions(model, filters))
            .limit(1)
            .execution_options(populate_existing=True)
        )
        try:
            obj = self.session.execute(stmt).scalars().first()
        except SQLAlchemyError as exc:
            self._fail("find_one", entity_type, exc)
        return obj.to_dict() if obj is not None else None

    def find(self, entity_type, filters, *, sort=None, skip=0, limit=None):
        model = self._model(entity_type)
        stmt = (
            sa.select(model)
            .where(*self._conditions(model, filters))
            .execution_options(populate_existing=True)
        )
        for field_name, direction in sort or [("id", "asc")]:
            column = self._column(model, field_name)
            stmt = stmt.order_by(column.desc() if direction == "desc" else column.asc())
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            rows = self.session.execute(stmt).scalars().all()
        except SQLAlchemyError as exc:
            self._fail("find", entity_type, exc)
        return [row.to_dict() for row in rows]

    def count(self, entity_type, filters):
        model = self._model(entity_type)
        stmt = sa.select(sa.func.count()).select_from(model).where(*self._conditions(model, filters))
        try:
            return self.session.execute(stmt).scalar_one()
        except SQLAlchemyError as exc:
            self._fail("count", entity_type, exc)

    # ── Writes ───────────────────────────────────────────────────────────

    def insert(self, entity_type, record):
        model = self._model(entity_type)
        self._check_fields(model, record)
        obj = model(**record)
        try:
            self.session.add(obj)
            self.session.commit()
        except IntegrityError as exc:
            if "unique" not in str(exc.orig).lower():
                self._fail("insert", entity_type, exc)
            self.session.rollback()
            logger.warning("Insert into %s rejected by unique constraint: %s", entity_type, exc.orig)
            key_field = "case_id" if entity_type == "dtr" else "rma_number"
            raise ConflictError(model.__name__, key_field, record.get(key_field)) from exc
        except SQLAlchemyError as exc:
            self._fail("insert", entity_type, exc)
        return obj.to_dict()

    def update_by_id(self, entity_type, record_id, patch, *, conditional_on=None):
        model = self._model(entity_type)
        self._check_fields(model, patch)
        values = dict(patch)
        values.setdefault("updated_at", utcnow())
        stmt = (
            sa.update(model)
            .where(model.id == record_id, *self._conditions(model, conditional_on))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
            if result.rowcount == 0:
                return None
            obj = self.session.get(model, record_id, populate_existing=True)
        except SQLAlchemyError as exc:
            self._fail("update_by_id", entity_type, exc)
        return obj.to_dict() if obj is not None else None

    def delete_many(self, entity_type, ids):
        model = self._model(entity_type)
        if not ids:
            return {"deleted_count": 0}
        stmt = (
            sa.delete(model)
            .where(model.id.in_(list(ids)))
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as exc:
            self._fail("delete_many", entity_type, exc)
        return {"deleted_count": result.rowcount}


def get_repository() -> CaseRepository:
    """Default repository bound to the Flask-SQLAlchemy session."""
    return SQLCaseRepository()
