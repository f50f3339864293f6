"""
Unit / Site resolver — read-only lookups into the installed base.

``resolve_unit`` follows serial number → Projector → Site → Auditorium and
returns plain dicts; a missing link yields ``None`` for that part, a
missing projector yields ``None`` overall.
"""

import logging

import sqlalchemy as sa

from casedesk.core.exceptions import NotFoundError
from casedesk.models import db
from casedesk.models.asset import Projector, Site

logger = logging.getLogger(__name__)


def resolve_unit(serial_number: str | None) -> dict | None:
    """
    Look up a unit by serial number.

    Returns:
        ``{"unit": {...}, "site": {...} | None, "auditorium": {...} | None}``
        or None when no projector carries *serial_number*.
    """
    serial = (serial_number or "").strip()
    if not serial:
        return None
    projector = db.session.execute(
        sa.select(Projector).where(Projector.serial_number == serial)
    ).scalars().first()
    if projector is None:
        logger.debug("No projector for serial %s", serial)
        return None
    return {
        "unit": projector.to_dict(),
        "site": projector.site.to_dict() if projector.site else None,
        "auditorium": projector.auditorium.to_dict() if projector.auditorium else None,
    }


def resolve_site(name: str | None = None, code: str | None = None) -> dict | None:
    """Find a site by code (exact) or name (case-insensitive)."""
    if code:
        site = Site.query.filter_by(code=code.strip()).first()
        if site:
            return site.to_dict()
    if name:
        site = Site.query.filter(sa.func.lower(Site.name) == name.strip().lower()).first()
        if site:
            return site.to_dict()
    return None


def lookup_unit(serial_number: str) -> dict:
    """Snapshot a DTR form would be pre-filled with; raises NotFoundError."""
    resolved = resolve_unit(serial_number)
    if resolved is None:
        raise NotFoundError("Projector", serial_number)
    unit, site, audi = resolved["unit"], resolved["site"], resolved["auditorium"]
    return {
        "serial_number": unit["serial_number"],
        "unit_model": unit["model"],
        "brand": unit["brand"],
        "part_number": unit["part_number"],
        "warranty_end": unit["warranty_end"],
        "site_name": site["name"] if site else None,
        "site_code": site["code"] if site else None,
        "region": site["region"] if site else None,
        "auditorium": _auditorium_label(audi),
    }


def _auditorium_label(audi: dict | None) -> str | None:
    if not audi:
        return None
    return audi.get("name") or f"Audi {audi['audi_number']}"
