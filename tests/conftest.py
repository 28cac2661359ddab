"""
ScanMaster - Test Configuration

Pytest fixtures for identity, session and authorization testing.
Provides an in-memory database, an in-memory Session Store, the services
wired together, and an HTTP client over the full application.
"""

from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from scanmaster.app import create_app
from scanmaster.auth.database import get_engine, init_db
from scanmaster.auth.identity import IdentityService
from scanmaster.auth.password import PasswordHasher
from scanmaster.auth.rbac import AuthorizationService
from scanmaster.auth.repository import PrincipalStore
from scanmaster.auth.roles import PermissionService, RoleService
from scanmaster.auth.schemas import RegisterRequest
from scanmaster.auth.service import SessionService
from scanmaster.auth.sessions import MemorySessionStore
from scanmaster.auth.tokens import CredentialManager
from scanmaster.config import settings


# In-memory SQLite shared by every thread through StaticPool
TEST_DATABASE_URL = "sqlite:///:memory:"
TEST_SECRET_KEY = "scanmaster-test-signing-key-0123456789"

# Cheapest bcrypt work factor keeps the suite fast
TEST_BCRYPT_ROUNDS = 4

PASSWORD = "P@ssw0rd1"
ADMIN_PASSWORD = settings.BOOTSTRAP_ADMIN_PASSWORD or settings.DEFAULT_RESET_PASSWORD


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="function")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=TEST_BCRYPT_ROUNDS)


@pytest.fixture(scope="function")
def engine(hasher):
    """Create a fresh, seeded database for each test."""
    engine = get_engine(TEST_DATABASE_URL)
    init_db(engine, hasher=hasher)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def store(engine) -> PrincipalStore:
    return PrincipalStore(engine)


@pytest.fixture(scope="function")
def session_store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture(scope="function")
def credentials() -> CredentialManager:
    return CredentialManager(secret_key=TEST_SECRET_KEY)


@pytest.fixture(scope="function")
def authz(store, session_store) -> AuthorizationService:
    return AuthorizationService(store, session_store)


@pytest.fixture(scope="function")
def identity(store, session_store, hasher, authz) -> IdentityService:
    return IdentityService(store, session_store, hasher, authz=authz)


@pytest.fixture(scope="function")
def role_service(store, authz) -> RoleService:
    return RoleService(store, authz=authz)


@pytest.fixture(scope="function")
def permission_service(store, authz) -> PermissionService:
    return PermissionService(store, authz=authz)


@pytest.fixture(scope="function")
def session_service(store, session_store, credentials, hasher, authz) -> SessionService:
    return SessionService(store, session_store, credentials, hasher, authz=authz)


@pytest.fixture(scope="function")
def client(engine, session_store, hasher, credentials) -> Generator[TestClient, None, None]:
    """Create a test client over the full application and the test stores."""
    app = create_app(
        engine=engine,
        session_store=session_store,
        hasher=hasher,
        credentials=credentials,
        configure_logs=False,
    )
    with TestClient(app) as c:
        yield c


async def register_principal(
    identity: IdentityService,
    username: str = "alice",
    email: str = "alice@example.com",
    password: str = PASSWORD,
    client_ip: str = "10.0.0.7",
):
    """Helper to register a principal through the identity service."""
    return await identity.register(
        RegisterRequest(username=username, email=email, password=password),
        client_ip=client_ip,
    )


def register_user(client: TestClient, username: str = "alice", email: str = "alice@example.com",
                  password: str = PASSWORD):
    """Helper to register over HTTP and return the response."""
    return client.post(
        "/api/v1/auth/register",
        json={"username": username, "email": email, "password": password},
        headers={"X-Forwarded-For": "10.0.0.7"},
    )


def login_user(client: TestClient, username: str, password: str) -> dict:
    """Helper function to login and return the token payload."""
    response = client.post(
        "/api/v1/auth/login",
        json={"username": username, "password": password},
        headers={"X-Forwarded-For": "10.0.0.7"},
    )
    return response.json()["data"] if response.status_code == 200 else None


def auth_headers(access_token: str) -> dict:
    """Create authorization headers for authenticated requests."""
    return {"Authorization": f"Bearer {access_token}"}
