"""
Role-based authorization for DTR operations.

Decisions come from PERMISSION_MATRIX (action → role → rule) instead of
conditionals spread through the lifecycle code, so the whole policy can be
read and tested in one place.

Rules:
    ALLOW     role may perform the action on any case
    ASSIGNEE  role may act only on cases whose ``assigned_to.user_id``
              equals the actor's ``user_id``

An action listed in ``Actor.permissions`` is granted outright, on top of
the role's row in the matrix.

Usage:
    from casedesk.services.permission import Actor, check_permission

    actor = Actor(user_id="u-7", name="T1", role="technician")
    check_permission(actor, "dtr_add_troubleshooting", dtr)   # raises PermissionDenied
    if is_allowed(actor, "dtr_convert_to_rma", dtr):
        ...
"""

import logging
from dataclasses import dataclass, field

from casedesk.core.exceptions import PermissionDenied

logger = logging.getLogger(__name__)

# ── Roles ────────────────────────────────────────────────────────────────────

ROLE_ADMIN = "admin"
ROLE_RMA_MANAGER = "rma_manager"
ROLE_RMA_HANDLER = "rma_handler"
ROLE_TECHNICAL_HEAD = "technical_head"
ROLE_TECHNICIAN = "technician"
ROLE_ENGINEER = "engineer"

ROLES = (
    ROLE_ADMIN,
    ROLE_RMA_MANAGER,
    ROLE_RMA_HANDLER,
    ROLE_TECHNICAL_HEAD,
    ROLE_TECHNICIAN,
    ROLE_ENGINEER,
)

# ── Rules ────────────────────────────────────────────────────────────────────

ALLOW = "allow"
ASSIGNEE = "assignee"

_FIELD_ROLES_SCOPED = {ROLE_TECHNICIAN: ASSIGNEE, ROLE_ENGINEER: ASSIGNEE}

PERMISSION_MATRIX: dict[str, dict[str, str]] = {
    "dtr_view": {role: ALLOW for role in ROLES},
    "dtr_create": {
        ROLE_ADMIN: ALLOW,
        ROLE_RMA_MANAGER: ALLOW,
    },
    "dtr_update": {
        ROLE_ADMIN: ALLOW,
        ROLE_RMA_MANAGER: ALLOW,
        ROLE_RMA_HANDLER: ALLOW,
        ROLE_TECHNICAL_HEAD: ALLOW,
        **_FIELD_ROLES_SCOPED,
    },
    "dtr_assign_technician": {
        ROLE_ADMIN: ALLOW,
        ROLE_RMA_MANAGER: ALLOW,
    },
    "dtr_add_troubleshooting": {
        ROLE_ADMIN: ALLOW,
        **_FIELD_ROLES_SCOPED,
    },
    "dtr_mark_for_conversion": {
        ROLE_ADMIN: ALLOW,
        ROLE_RMA_MANAGER: ALLOW,
        **_FIELD_ROLES_SCOPED,
    },
    "dtr_convert_to_rma": {
        ROLE_ADMIN: ALLOW,
        ROLE_RMA_MANAGER: ALLOW,
        **_FIELD_ROLES_SCOPED,
    },
    "dtr_assign_technical_head": {
        ROLE_ADMIN: ALLOW,
        ROLE_RMA_HANDLER: ALLOW,
    },
    "dtr_finalize": {
        ROLE_ADMIN: ALLOW,
        ROLE_TECHNICAL_HEAD: ALLOW,
    },
    "dtr_upload_files": {
        ROLE_ADMIN: ALLOW,
        ROLE_RMA_HANDLER: ALLOW,
        ROLE_TECHNICAL_HEAD: ALLOW,
    },
    "dtr_bulk_import": {
        ROLE_ADMIN: ALLOW,
        ROLE_RMA_MANAGER: ALLOW,
    },
    "dtr_bulk_delete": {
        ROLE_ADMIN: ALLOW,
    },
}

ACTIONS = tuple(PERMISSION_MATRIX)


@dataclass(frozen=True)
class Actor:
    """An already-authenticated caller."""

    user_id: str | None
    name: str
    role: str
    designation: str = ""
    email: str = ""
    permissions: frozenset = field(default_factory=frozenset)

    @classmethod
    def system(cls) -> "Actor":
        """The actor used for CLI imports and other unattended jobs."""
        return cls(user_id="system", name="Bulk Import", role=ROLE_ADMIN, designation="System",
                   email="system@import.com")

    def performed_by(self) -> dict:
        """Shape stored in workflow history entries."""
        return {"name": self.name, "role": self.role, "user_id": self.user_id}


def _is_assignee(actor: Actor, dtr: dict | None) -> bool:
    if not dtr or actor.user_id is None:
        return False
    assigned = dtr.get("assigned_to") or {}
    return bool(assigned.get("user_id")) and str(assigned["user_id"]) == str(actor.user_id)


def is_allowed(actor: Actor, action: str, dtr: dict | None = None) -> bool:
    """
    Check whether *actor* may perform *action* (optionally on *dtr*).

    Args:
        actor: The caller.
        action: Matrix key, e.g. ``dtr_convert_to_rma``.
        dtr: The case being acted on; required for ASSIGNEE rules.

    Returns:
        True if an explicit grant or the role's rule permits the action.
    """
    if action not in PERMISSION_MATRIX:
        return False
    if action in actor.permissions:
        return True

    rule = PERMISSION_MATRIX[action].get(actor.role)
    if rule == ALLOW:
        return True
    if rule == ASSIGNEE:
        return _is_assignee(actor, dtr)
    return False


def check_permission(actor: Actor, action: str, dtr: dict | None = None) -> None:
    """
    Assert *actor* may perform *action*; raise PermissionDenied if not.

    Raises:
        PermissionDenied: role not in the matrix row, or ASSIGNEE rule
            with a different (or no) assignee.
    """
    if is_allowed(actor, action, dtr):
        return

    case_id = dtr.get("case_id") if dtr else None
    rule = PERMISSION_MATRIX.get(action, {}).get(actor.role)
    if action not in PERMISSION_MATRIX:
        reason = "unknown action"
    elif rule == ASSIGNEE:
        reason = "only the assigned technician/engineer may perform this action"
    else:
        reason = f"role '{actor.role}' is not permitted"
    logger.warning(
        "Permission denied: case=%s actor=%s role=%s action=%s reason=%s",
        case_id, actor.user_id, actor.role, action, reason,
        extra={"case_id": case_id, "actor": actor.user_id, "role": actor.role, "action": action},
    )
    raise PermissionDenied(actor.user_id, action, reason)


def allowed_actions(actor: Actor, dtr: dict | None = None) -> list[str]:
    """Every matrix action *actor* may perform (on *dtr* when given)."""
    return [action for action in ACTIONS if is_allowed(actor, action, dtr)]
