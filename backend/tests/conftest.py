"""
Test fixtures for the MindSpace access engine.

Every test gets a fresh in-memory SQLite database (aiosqlite) seeded with two
companies worth of users plus a few journals and mood entries.  The HTTP
tests drive the real FastAPI app through httpx's ASGI transport.
"""
import httpx
import pytest
import pytest_asyncio

from mindspace_access.config import Settings
from mindspace_access.database import build_engine, build_session_factory, create_tables
from mindspace_access.main import create_app
from mindspace_access.middleware.auth import create_access_token
from mindspace_access.middleware.guard import PermissionGuard
from mindspace_access.models import Journal, MoodEntry, User
from mindspace_access.rbac import Role
from mindspace_access.schemas import UserRecord
from mindspace_access.services.audit_service import PermissionAuditor
from mindspace_access.services.permission_service import PermissionService
from mindspace_access.services.store import SqlAlchemyPermissionStore

# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------
C1 = "company-1"
C2 = "company-2"

SEED_USERS = [
    # (id, role, company_id, is_active)
    ("super", Role.SUPER_ADMIN, None, True),
    ("admin_c1", Role.COMPANY_ADMIN, C1, True),
    ("admin2_c1", Role.COMPANY_ADMIN, C1, True),
    ("manager_c1", Role.COMPANY_MANAGER, C1, True),
    ("user_c1", Role.COMPANY_USER, C1, True),
    ("user2_c1", Role.COMPANY_USER, C1, True),
    ("inactive_c1", Role.COMPANY_USER, C1, False),
    ("admin_c2", Role.COMPANY_ADMIN, C2, True),
    ("user_c2", Role.COMPANY_USER, C2, True),
    ("individual", Role.INDIVIDUAL_USER, None, True),
]

SEED_JOURNALS = [
    ("journal_user_c1", "user_c1"),
    ("journal_user_c2", "user_c2"),
    ("journal_individual", "individual"),
]

SEED_MOODS = [
    ("mood_user_c1", "user_c1"),
    ("mood_individual", "individual"),
]

TEST_SETTINGS = Settings(
    DATABASE_URL="sqlite+aiosqlite:///:memory:",
    JWT_SECRET="test-secret",
    AUDIT_PERMISSION_CHECKS=True,
    AUDIT_MIRROR_PATH="",
)


def auth_headers(token: str) -> dict:
    """Return auth header dict for a given token."""
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database with all tables."""
    eng = build_engine(TEST_SETTINGS.DATABASE_URL)
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    """Session factory bound to the seeded database."""
    factory = build_session_factory(engine)
    async with factory() as session:
        for user_id, role, company_id, is_active in SEED_USERS:
            session.add(User(
                id=user_id,
                email=f"{user_id}@example.com",
                name=user_id.replace("_", " ").title(),
                role=role.value,
                company_id=company_id,
                permissions=[],
                is_active=is_active,
                email_verified=user_id != "individual",
            ))
        await session.flush()
        for journal_id, owner in SEED_JOURNALS:
            session.add(Journal(id=journal_id, user_id=owner, title=f"Journal of {owner}"))
        for mood_id, owner in SEED_MOODS:
            session.add(MoodEntry(id=mood_id, user_id=owner, mood=7))
        await session.commit()
    return factory


@pytest.fixture
def store(session_factory):
    return SqlAlchemyPermissionStore(session_factory)


@pytest.fixture
def service(store):
    return PermissionService(store, PermissionAuditor(store))


@pytest.fixture
def guard(service):
    return PermissionGuard(service)


@pytest_asyncio.fixture
async def users(store):
    """All seeded users as records, keyed by id."""
    return {user_id: await store.get_user_by_id(user_id) for user_id, *_ in SEED_USERS}


@pytest.fixture
def make_user():
    """Factory for in-memory users (pure decision tests)."""
    def _make(user_id="u", role=Role.COMPANY_USER, company_id=C1, **kwargs):
        return UserRecord(id=user_id, role=role, company_id=company_id, **kwargs)
    return _make


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def app(session_factory):
    return create_app(settings=TEST_SETTINGS, session_factory=session_factory)


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client talking to the app in-process."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
def headers_for():
    """Return auth headers carrying a token for the given user id."""
    def _headers(user_id: str) -> dict:
        return auth_headers(create_access_token(TEST_SETTINGS, user_id))
    return _headers
