"""
Actor context: turns a Bearer JWT into ``g.actor``.

Authentication happens upstream; this layer only verifies the signature
and maps the claims onto an ``Actor``:

{
    "sub": "<user_id>",
    "name": "...",
    "role": "technician",
    "designation": "...",
    "email": "...",
    "permissions": ["dtr_bulk_import", ...],
    "exp": <expires_at>
}
"""

import logging
from functools import wraps

import jwt
from flask import current_app, g, request

from casedesk.services.permission import ROLES, Actor
from casedesk.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def _get_secret():
    """Get the JWT secret key from app config."""
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def decode_actor_token(token: str) -> Actor:
    """
    Verify *token* and build the Actor it describes.

    Raises:
        jwt.InvalidTokenError: bad signature, expired, or missing/unknown claims.
    """
    payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM],
                         options={"require": ["sub", "role"]})
    role = payload["role"]
    if role not in ROLES:
        raise jwt.InvalidTokenError(f"Unknown role '{role}'")
    return Actor(
        user_id=str(payload["sub"]),
        name=payload.get("name") or str(payload["sub"]),
        role=role,
        designation=payload.get("designation", ""),
        email=payload.get("email", ""),
        permissions=frozenset(payload.get("permissions") or ()),
    )


def init_actor_context(app):
    """Register a before_request hook that resolves ``g.actor``."""

    @app.before_request
    def _load_actor():
        g.actor = None
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return
        try:
            g.actor = decode_actor_token(auth_header[7:])
        except jwt.ExpiredSignatureError:
            logger.info("Expired token on %s %s", request.method, request.path)
        except jwt.InvalidTokenError as exc:
            logger.warning("Rejected token on %s %s: %s", request.method, request.path, exc)


def require_actor(fn):
    """View decorator: 401 unless the request carries a valid actor token."""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "actor", None) is None:
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        return fn(*args, **kwargs)

    return wrapper
