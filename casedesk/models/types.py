"""
Custom column types and the abstract document base.

LenientDateTime stores UTC timestamps as ISO-8601 text and runs every value
loaded from the database through the read-back date repair, so historical
rows written with broken serial dates come back as real datetimes.
"""

import copy
import logging

from sqlalchemy.types import String, TypeDecorator

from casedesk.models import db
from casedesk.services.date_normalizer import (
    format_iso,
    parse_date_value,
    repair_stored_date,
    utcnow,
)

logger = logging.getLogger(__name__)


class LenientDateTime(TypeDecorator):
    """Timestamp column tolerant of legacy string values on read."""

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        parsed = repair_stored_date(value) if isinstance(value, str) else parse_date_value(value)
        if parsed is None:
            raise ValueError(f"Cannot store unparseable date value: {value!r}")
        return format_iso(parsed)

    def process_result_value(self, value, dialect):
        if value is None or value == "":
            return None
        repaired = repair_stored_date(value)
        if repaired is None:
            logger.warning("Stored date %r could not be repaired; returning None", value)
        return repaired


class DocumentModel(db.Model):
    """Abstract base for document-shaped case records.

    Adds timestamps and a generic ``to_dict`` that renders dates as ISO
    strings and deep-copies nested JSON so callers never alias ORM state.
    """

    __abstract__ = True

    created_at = db.Column(LenientDateTime(), default=utcnow, nullable=False)
    updated_at = db.Column(LenientDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    @classmethod
    def column_names(cls) -> set[str]:
        return {c.name for c in cls.__table__.columns}

    def to_dict(self) -> dict:
        out = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(column.type, LenientDateTime):
                value = format_iso(value)
            elif isinstance(value, (dict, list)):
                value = copy.deepcopy(value)
            out[column.name] = value
        return out
