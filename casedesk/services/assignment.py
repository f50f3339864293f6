"""
Assignment adapter.

Older clients send ``assigned_to`` as a bare name string; newer ones send
an object. Everything past the API boundary sees the object form only.
"""

from casedesk.core.exceptions import ValidationError
from casedesk.services.date_normalizer import format_iso, utcnow

_USER_ID_KEYS = ("user_id", "userId", "id")


def normalize_assignment(value, *, default_role: str = "technician") -> dict | None:
    """
    Return the canonical ``{user_id, name, email, role, assigned_date}`` dict.

    A string is the legacy form and is taken as the assignee's name; it has
    no user id, so assignee-scoped actions stay closed to everyone until a
    proper assignment is made. ``None`` and ``""`` clear the assignment.
    """
    if value is None or value == "":
        return None

    if isinstance(value, str):
        return {
            "user_id": None,
            "name": value.strip(),
            "email": "",
            "role": default_role,
            "assigned_date": format_iso(utcnow()),
        }

    if isinstance(value, dict):
        user_id = next((value[k] for k in _USER_ID_KEYS if value.get(k) not in (None, "")), None)
        name = (value.get("name") or "").strip()
        if user_id is None and not name:
            raise ValidationError(
                "assigned_to needs a user id or a name",
                details={"assigned_to": "user_id or name required"},
            )
        return {
            "user_id": str(user_id) if user_id is not None else None,
            "name": name,
            "email": value.get("email") or "",
            "role": value.get("role") or default_role,
            "assigned_date": value.get("assigned_date") or value.get("assignedDate") or format_iso(utcnow()),
        }

    raise ValidationError(
        f"assigned_to must be an object or a name, got {type(value).__name__}",
        details={"assigned_to": "invalid type"},
    )
