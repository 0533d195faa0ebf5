# tests/conftest.py — Shared test fixtures
import os
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

import auth as auth_module
from access import AccessScope
from auth import AuthService
from database import enable_sqlite_foreign_keys, get_db_session
from main import app
from models import Base, User, UserRole
from revisions import TaskDefinition, create_task


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_login_attempts():
    auth_module._login_attempts.clear()
    yield
    auth_module._login_attempts.clear()


async def _make_user(db_session, email: str, password: str, role: UserRole) -> User:
    user = User(
        email=email,
        display_name=email.split("@")[0],
        password_hash=AuthService.hash_password(password),
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    return await _make_user(db_session, "owner@taskfuss.dev", "TestPassword123!", UserRole.USER)


@pytest_asyncio.fixture
async def other_user(db_session):
    return await _make_user(db_session, "other@taskfuss.dev", "OtherPassword123!", UserRole.USER)


@pytest_asyncio.fixture
async def admin_user(db_session):
    return await _make_user(db_session, "admin@taskfuss.dev", "AdminPassword123!", UserRole.ADMIN)


@pytest_asyncio.fixture
async def guest_user(db_session):
    return await _make_user(db_session, "guest@taskfuss.dev", "GuestPassword123!", UserRole.GUEST)


@pytest.fixture
def auth_headers():
    """Build bearer headers for a user"""
    def _headers(user: User) -> dict:
        token = AuthService.create_access_token(AuthService.token_claims(user))
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_definition():
    """Task "Workout": R = AND(A: int >= target, B: bool == true)"""
    def _definition(a_target: str = "10", ids: dict = None, effective_from=None) -> dict:
        ids = ids or {}
        payload = {
            "title": "Workout",
            "description": "Push-ups and stretching",
            "requirement": {
                "id": ids.get("R"),
                "title": "R",
                "type": "condition",
                "operator": "AND",
                "operands": [
                    {
                        "id": ids.get("A"), "title": "A", "type": "atom",
                        "data_type": "int", "operator": ">=", "target_value": a_target, "sort_order": 0,
                    },
                    {
                        "id": ids.get("B"), "title": "B", "type": "atom",
                        "data_type": "bool", "operator": "==", "target_value": "true", "sort_order": 1,
                    },
                ],
            },
        }
        if effective_from is not None:
            payload["effective_from"] = effective_from.isoformat()
        return payload
    return _definition


def ids_by_title(tree) -> dict:
    return {snap.title: snap.skeleton_id for snap in tree.nodes.values()}


@pytest_asyncio.fixture
async def workout(db_session, test_user, make_definition):
    """The Workout task owned by test_user, created through the service layer"""
    definition = TaskDefinition.model_validate(make_definition())
    task, snapshot, tree = await create_task(db_session, AccessScope.for_user(test_user), definition)
    # plain ids survive a rollback expiring the ORM instances
    return SimpleNamespace(
        task=task, snapshot=snapshot, tree=tree, ids=ids_by_title(tree),
        task_id=task.id, revision_uuid=snapshot.revision_uuid,
    )
