"""
PyTest configuration and shared fixtures for the PanelAuth test suite.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_TO_FILE", "false")

from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from panelauth.core.config import Settings
from panelauth.database.models import Base, User
from panelauth.security.authentication import AuthenticationService
from panelauth.security.rbac import seed_default_data
from panelauth.security.tokens import TokenService

STRONG_PASSWORD = "Str0ng!Passw0rd"


class FakeClock:
    """Manually advanced clock injected in place of utcnow"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def test_settings() -> Settings:
    """Fast hashing and a fixed signing key."""
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL="sqlite:///:memory:",
        JWT_SECRET="test-jwt-secret-for-testing-only",
        BCRYPT_ROUNDS=4,
        LOG_TO_FILE=False,
    )


@pytest.fixture
def test_db():
    """Create a test database engine."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_db) -> Generator[Session, None, None]:
    """Create a database session for testing."""
    TestingSessionLocal = sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=test_db
    )
    session = TestingSessionLocal()
    seed_default_data(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def token_service(test_settings) -> TokenService:
    return TokenService(test_settings)


@pytest.fixture
def auth_service(db_session, test_settings, clock) -> AuthenticationService:
    return AuthenticationService(db_session, test_settings, clock=clock)


@pytest.fixture
def make_user(auth_service):
    """Register users through the service so they carry real hashes."""
    def _make_user(
        username: str = "alice",
        password: str = STRONG_PASSWORD,
        role: str = "user",
        email: str = None,
    ) -> User:
        return auth_service.register(
            username, email or f"{username}@example.com", password, role=role
        )
    return _make_user


@pytest.fixture
def alice(make_user) -> User:
    return make_user("alice")
