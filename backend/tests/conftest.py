# backend/tests/conftest.py
import os
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

# -----------------------------
# Test DB: a dedicated SQLite file, configured before the app is imported
# -----------------------------
TEST_DB_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "test_dealdesk.db"))
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["DB_STATEMENT_TIMEOUT_SECONDS"] = "30"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient

from dealdesk.core.config import engine, SessionLocal
from dealdesk.api import deps as app_deps
from dealdesk.api import closing
from dealdesk.main import app
from dealdesk.models import (
    Base,
    Organization,
    User,
    Pipeline,
    Team,
    TeamMember,
    TeamPipeline,
    Property,
    Lead,
)

TODAY = date(2026, 3, 10)
# logins happen outside this service; users only need a non-null hash
PASSWORD_HASH = "not-a-login-hash"


# -----------------------------
# Schema / session fixtures
# -----------------------------
@pytest.fixture(scope="session", autouse=True)
def _test_db_file():
    yield
    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
def _fresh_schema():
    """Every test starts from empty tables."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# -----------------------------
# Seed: two organizations, a team-led pipeline and a few leads
# -----------------------------
def _user(org_id: int, name: str, email: str, role_name: str = "member", is_active: bool = True) -> User:
    return User(
        organization_id=org_id,
        name=name,
        email=email,
        password_hash=PASSWORD_HASH,
        role_name=role_name,
        is_active=is_active,
    )


@pytest.fixture
def seed(db):
    org = Organization(slug="acme", name="Acme Imóveis")
    other = Organization(slug="globex", name="Globex")
    db.add_all([org, other])
    db.flush()

    admin = _user(org.id, "Ana Admin", "ana@acme.test", role_name="admin")
    rep = _user(org.id, "Rui Rep", "rui@acme.test")
    leader = _user(org.id, "Lia Leader", "lia@acme.test")
    broker1 = _user(org.id, "Bia Broker", "bia@acme.test")
    broker2 = _user(org.id, "Beto Broker", "beto@acme.test")
    inactive = _user(org.id, "Ivo Inactive", "ivo@acme.test", is_active=False)
    outsider = _user(other.id, "Otto Outsider", "otto@globex.test", role_name="admin")
    db.add_all([admin, rep, leader, broker1, broker2, inactive, outsider])
    db.flush()

    pipeline = Pipeline(organization_id=org.id, name="Vendas")
    team = Team(organization_id=org.id, name="Time Centro")
    prop = Property(organization_id=org.id, title="Apto 101", price=Decimal("300000"))
    db.add_all([pipeline, team, prop])
    db.flush()

    db.add_all(
        [
            TeamMember(team_id=team.id, user_id=leader.id, is_leader=True),
            TeamMember(team_id=team.id, user_id=rep.id, is_leader=False),
            TeamPipeline(team_id=team.id, pipeline_id=pipeline.id),
        ]
    )

    lead = Lead(
        organization_id=org.id,
        assigned_user_id=rep.id,
        pipeline_id=pipeline.id,
        property_id=prop.id,
        name="Maria Souza",
        source="website",
    )
    orphan_lead = Lead(organization_id=org.id, name="Lead Sem Corretor")
    foreign_lead = Lead(organization_id=other.id, name="Lead Globex")
    db.add_all([lead, orphan_lead, foreign_lead])
    db.commit()

    return SimpleNamespace(
        org_id=org.id,
        other_org_id=other.id,
        admin_id=admin.id,
        rep_id=rep.id,
        leader_id=leader.id,
        broker1_id=broker1.id,
        broker2_id=broker2.id,
        inactive_id=inactive.id,
        outsider_id=outsider.id,
        pipeline_id=pipeline.id,
        team_id=team.id,
        property_id=prop.id,
        lead_id=lead.id,
        orphan_lead_id=orphan_lead.id,
        foreign_lead_id=foreign_lead.id,
    )


@pytest.fixture
def current(seed):
    return app_deps.CurrentUser(
        id=seed.admin_id,
        organization_id=seed.org_id,
        email="ana@acme.test",
        role_name="admin",
    )


# -----------------------------
# HTTP client with dependency overrides
# -----------------------------
@pytest.fixture
def notified():
    """Payloads handed to the stakeholder notifier by the HTTP route."""
    return []


@pytest.fixture
def client(current, notified):
    def override_get_db():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    def override_get_current_user():
        return current

    def override_get_notifier():
        return lambda **payload: notified.append(payload)

    app.dependency_overrides[app_deps.get_db] = override_get_db
    app.dependency_overrides[app_deps.get_current_user] = override_get_current_user
    app.dependency_overrides[closing.get_notifier] = override_get_notifier
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
