"""
Pytest configuration and shared fixtures.

This module provides:
- Test database setup (SQLite in-memory, one connection shared by all sessions)
- FastAPI TestClient configuration with the external services faked
- User / patient / clinic factories and bearer-token headers
"""

import os
import tempfile
from typing import Any, AsyncIterator, Generator

# =============================================================================
# TEST SETTINGS BEFORE ANY APP IMPORTS
# =============================================================================
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("FILE_STORAGE_ROOT", tempfile.mkdtemp(prefix="clinical-portal-tests-"))
os.environ.setdefault("GUEST_PORTAL_BASE_URL", "https://portal.test")
os.environ.setdefault("BULK_UPLOAD_ROW_DELAY_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import get_db, get_session_factory
from app.core.security import create_access_token, get_password_hash
from app.models import all_models  # noqa: F401
from app.models.base import Base
from app.models.clinic import Clinic, ClinicPatient, ClinicProfessional
from app.models.patient_profile import PatientProfile
from app.models.user import RoleName, User, UserRole
from app.schemas.registry import RegistryIdentity, RethusResult
from app.services.ai_gateway import AIGatewayError, get_ai_gateway
from app.services.registry_clients import (
    RegistryLookupError,
    get_hismart_client,
    get_rethus_client,
    get_topus_client,
)
from app.utils.sse import format_delta_event, format_done_event


# =============================================================================
# FAKE EXTERNAL SERVICES
# =============================================================================

class FakeAIGateway:
    """Stands in for AIGateway: canned stream chunks and completions."""

    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.stream_error: AIGatewayError | None = None
        self.completions: list[str] = []
        self.complete_error: AIGatewayError | None = None
        self.stream_calls: list[list[dict[str, Any]]] = []
        self.complete_calls: list[list[dict[str, Any]]] = []
        self.json_mode_calls: list[bool] = []

    def reply_with(self, *fragments: str) -> None:
        self.chunks = [format_delta_event(f) for f in fragments] + [format_done_event()]

    async def open_chat_stream(self, messages, model=None) -> AsyncIterator[bytes]:
        self.stream_calls.append(messages)
        if self.stream_error is not None:
            raise self.stream_error

        chunks = list(self.chunks)

        async def _gen():
            for chunk in chunks:
                yield chunk

        return _gen()

    async def complete(self, messages, model=None, json_mode=False) -> str:
        self.complete_calls.append(messages)
        self.json_mode_calls.append(json_mode)
        if self.complete_error is not None:
            raise self.complete_error
        if self.completions:
            return self.completions.pop(0)
        return ""


class FakeTopus:
    """Stands in for TopusClient.lookup_identity."""

    def __init__(self) -> None:
        self.people: dict[tuple[str, str], dict[str, Any]] = {}
        self.fail_with: Exception | None = None
        self.calls: list[tuple[str, str]] = []

    def add_person(self, document_type: str, identification: str, **fields: Any) -> dict[str, Any]:
        payload = {"result": fields}
        self.people[(document_type, identification)] = payload
        return payload

    def lookup_identity(self, document_type: str, identification: str):
        self.calls.append((document_type, identification))
        if self.fail_with is not None:
            raise self.fail_with
        payload = self.people.get((document_type, identification))
        if payload is None:
            raise RegistryLookupError("Topus returned no identity for this document")
        return RegistryIdentity.from_payload(payload), payload


class FakeHismart:
    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self.data = data
        self.calls = 0

    def fetch_clinical_data(self, document_type: str, identification: str) -> dict[str, Any]:
        self.calls += 1
        if self.data is None:
            raise RegistryLookupError("HiSmart registry is not configured")
        return self.data


class FakeRethus:
    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        self.payload = payload if payload is not None else {"datos_academicos": []}

    def check_professional(self, document_type: str, document_number: str):
        return RethusResult.model_validate(self.payload), self.payload


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine using SQLite in-memory."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=True)


@pytest.fixture(scope="function")
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# =============================================================================
# APPLICATION FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def fake_gateway() -> FakeAIGateway:
    return FakeAIGateway()


@pytest.fixture(scope="function")
def fake_topus() -> FakeTopus:
    return FakeTopus()


@pytest.fixture(scope="function")
def fake_hismart() -> FakeHismart:
    return FakeHismart()


@pytest.fixture(scope="function")
def fake_rethus() -> FakeRethus:
    return FakeRethus()


@pytest.fixture(scope="function")
def app(session_factory, fake_gateway, fake_topus, fake_hismart, fake_rethus):
    from app.main import app as fastapi_app

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    fastapi_app.dependency_overrides[get_session_factory] = lambda: session_factory
    fastapi_app.dependency_overrides[get_ai_gateway] = lambda: fake_gateway
    fastapi_app.dependency_overrides[get_topus_client] = lambda: fake_topus
    fastapi_app.dependency_overrides[get_hismart_client] = lambda: fake_hismart
    fastapi_app.dependency_overrides[get_rethus_client] = lambda: fake_rethus
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client


# =============================================================================
# DATA FACTORIES
# =============================================================================

def make_user(db: Session, email: str, *roles: RoleName, full_name: str | None = None) -> User:
    user = User(
        email=email,
        hashed_password=get_password_hash("Password123!"),
        full_name=full_name,
        is_active=True,
    )
    db.add(user)
    db.flush()
    for role in roles:
        db.add(UserRole(user_id=user.id, role=role))
    db.commit()
    db.refresh(user)
    return user


def make_patient(
    db: Session,
    email: str,
    identification: str,
    *,
    document_type: str = "CC",
    full_name: str = "Ana Maria Perez",
) -> User:
    user = make_user(db, email, RoleName.PATIENT, full_name=full_name)
    db.add(
        PatientProfile(
            user_id=user.id,
            document_type=document_type,
            identification=identification,
            full_name=full_name,
            age=34,
            eps="SURA",
        )
    )
    db.commit()
    return user


def make_clinic(db: Session, name: str, *, professionals=(), patients=()) -> Clinic:
    clinic = Clinic(name=name)
    db.add(clinic)
    db.flush()
    for professional in professionals:
        db.add(ClinicProfessional(clinic_id=clinic.id, professional_user_id=professional.id))
    for patient in patients:
        db.add(ClinicPatient(clinic_id=clinic.id, patient_user_id=patient.id))
    db.commit()
    db.refresh(clinic)
    return clinic


def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token(str(user.id), user.role_names)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def patient_user(db) -> User:
    return make_patient(db, "patient@example.com", "1020304050")


@pytest.fixture(scope="function")
def professional_user(db) -> User:
    return make_user(db, "doctor@example.com", RoleName.PROFESSIONAL, full_name="Dr. Carlos Ruiz")
