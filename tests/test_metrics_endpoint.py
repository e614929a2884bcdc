from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from doula_crm.core.auth import AuthUser, get_current_user as auth_get_current_user
from doula_crm.core.config import get_settings
from doula_crm.core.database import Base, get_db
from doula_crm.crm.api import get_current_user as crm_get_current_user
from doula_crm.crm.service import ActorUser
from doula_crm.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    organization_id = uuid.uuid4()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            organization_id=organization_id,
            permissions={"crm.leads.create", "crm.leads.convert", "crm.accounts.read"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_conversion_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    lead = client.post("/api/crm/leads", json={"first_name": "Metric", "last_name": "Lead"})
    assert lead.status_code == 201

    convert = client.post(
        f"/api/crm/leads/{lead.json()['id']}/convert",
        json={
            "account_option": "create",
            "account_data": {"name": "The Lead Family"},
            "contact_data": {"first_name": "Metric", "last_name": "Lead"},
        },
    )
    assert convert.status_code == 200
    repeat = client.post(
        f"/api/crm/leads/{lead.json()['id']}/convert",
        json={
            "account_option": "create",
            "account_data": {"name": "The Lead Family"},
            "contact_data": {"first_name": "Metric", "last_name": "Lead"},
        },
    )
    assert repeat.status_code == 409

    search = client.get("/api/crm/accounts/search", params={"q": "lead"})
    assert search.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_lead_conversions_total" in body
    assert "crm_lead_conversion_duration_seconds" in body
    assert "crm_account_searches_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/leads/{id}/convert"' in body
    assert 'outcome="converted"' in body
    assert 'outcome="already_converted"' in body


@pytest.mark.parametrize("roles", [["user"]])
def test_metrics_endpoint_requires_permission(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    response = client.get("/metrics")
    assert response.status_code == 404
