# tests/conftest.py — Shared test fixtures
import os
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Use SQLite for tests; settings are read once at import time
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["BCRYPT_ROUNDS"] = "4"

from models import User, UserRole, enum_value
from auth import AuthService
from database import Database, get_database
from notifier import Mailer, get_mailer
from policy import Actor
from main import app


class RecordingMailer(Mailer):
    """Keeps outgoing mail in memory"""

    def __init__(self):
        self.welcome = []
        self.resets = []

    async def send_welcome(self, email: str, display_name: str) -> None:
        self.welcome.append((email, display_name))

    async def send_password_reset(self, email: str, token: str) -> None:
        self.resets.append((email, token))


@pytest_asyncio.fixture(scope="function")
async def database():
    db = Database(TEST_DB_URL, echo=False)
    await db.create_all()
    yield db
    await db.drop_all()
    await db.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(database):
    async with database.session_maker() as session:
        yield session


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest_asyncio.fixture(scope="function")
async def client(database, mailer):
    """HTTP test client bound to the test database"""
    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_mailer] = lambda: mailer
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _make_user(db_session, email, display_name, password, role=UserRole.USER, is_active=True):
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=display_name,
        password_hash=AuthService.hash_password(password),
        role=role,
        is_active=is_active,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    """Create a regular user"""
    return await _make_user(db_session, "testuser@example.com", "Test User", "TestPassword123!")


@pytest_asyncio.fixture
async def other_user(db_session):
    """A second regular user with no relation to test_user's tasks"""
    return await _make_user(db_session, "other@example.com", "Other User", "OtherPassword123!")


@pytest_asyncio.fixture
async def admin_user(db_session):
    """Create an admin user"""
    return await _make_user(
        db_session, "admin@example.com", "Admin User", "AdminPassword123!", role=UserRole.ADMIN,
    )


def actor_for(user: User) -> Actor:
    return Actor(id=user.id, email=user.email, display_name=user.display_name, role=enum_value(user.role))


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "role": enum_value(user.role),
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
