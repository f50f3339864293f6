"""
Shared pytest fixtures for the CaseDesk test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - site / projector: installed-base rows for serial EP2024001
    - actors for every role, plus ``auth_headers`` to call the API as one
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from casedesk import create_app
from casedesk.models import db as _db
from casedesk.models.asset import Auditorium, Projector, Site
from casedesk.services.permission import (
    ROLE_ADMIN,
    ROLE_ENGINEER,
    ROLE_RMA_HANDLER,
    ROLE_RMA_MANAGER,
    ROLE_TECHNICAL_HEAD,
    ROLE_TECHNICIAN,
    Actor,
)

SERIAL = "EP2024001"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Installed base ───────────────────────────────────────────────────────


@pytest.fixture()
def site():
    s = Site(name="PVR Phoenix", code="PVR-PHX", region="West", address="Lower Parel, Mumbai")
    _db.session.add(s)
    _db.session.commit()
    return s


@pytest.fixture()
def projector(site):
    audi = Auditorium(site_id=site.id, audi_number="3", name="Audi 3")
    _db.session.add(audi)
    _db.session.flush()
    p = Projector(
        serial_number=SERIAL,
        model="CP2220",
        brand="Christie",
        part_number="PN-CP2220",
        site_id=site.id,
        auditorium_id=audi.id,
        install_date=datetime(2022, 3, 1, tzinfo=timezone.utc),
        warranty_end=datetime.now(timezone.utc) + timedelta(days=365),
    )
    _db.session.add(p)
    _db.session.commit()
    return p


# ── Actors ───────────────────────────────────────────────────────────────


@pytest.fixture()
def admin():
    return Actor(user_id="u-admin", name="Asha Admin", role=ROLE_ADMIN, email="admin@example.com")


@pytest.fixture()
def manager():
    return Actor(user_id="u-mgr", name="Ravi Manager", role=ROLE_RMA_MANAGER, email="mgr@example.com")


@pytest.fixture()
def technician():
    return Actor(user_id="u-tech1", name="T1", role=ROLE_TECHNICIAN, email="t1@example.com")


@pytest.fixture()
def other_technician():
    return Actor(user_id="u-tech2", name="T2", role=ROLE_TECHNICIAN, email="t2@example.com")


@pytest.fixture()
def engineer():
    return Actor(user_id="u-eng1", name="E1", role=ROLE_ENGINEER, email="e1@example.com")


@pytest.fixture()
def technical_head():
    return Actor(user_id="u-head", name="Head", role=ROLE_TECHNICAL_HEAD, email="head@example.com")


@pytest.fixture()
def handler():
    return Actor(user_id="u-handler", name="Handler", role=ROLE_RMA_HANDLER, email="handler@example.com")


def make_token(app, actor: Actor, **overrides) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": actor.user_id,
        "name": actor.name,
        "role": actor.role,
        "designation": actor.designation,
        "email": actor.email,
        "permissions": sorted(actor.permissions),
        "iat": now,
        "exp": now + timedelta(minutes=15),
        **overrides,
    }
    secret = app.config.get("JWT_SECRET_KEY") or app.config["SECRET_KEY"]
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture()
def auth_headers(app):
    """``auth_headers(actor)`` → Authorization header dict for the test client."""

    def _headers(actor: Actor, **overrides) -> dict:
        return {"Authorization": f"Bearer {make_token(app, actor, **overrides)}"}

    return _headers


@pytest.fixture()
def new_dtr(projector, manager):
    """``new_dtr(**payload)`` creates an Open DTR on the seeded projector."""
    from casedesk.services.dtr_lifecycle import create_dtr

    def _create(**payload):
        body = {
            "serial_number": SERIAL,
            "complaint_description": "No display",
            "opened_by": {"name": "A. Kumar", "designation": "Site Manager", "contact": "9800000000"},
            **payload,
        }
        return create_dtr(manager, body)

    return _create
