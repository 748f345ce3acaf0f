# tests/conftest.py — Shared test fixtures
import os
import uuid
import tempfile

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests; each test gets its own database file
_TMP_ROOT = tempfile.mkdtemp(prefix="exprsn-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_ROOT}/app.db"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["REPORT_SCHEDULER_ENABLED"] = "false"
os.environ["GIT_WORKSPACE_ROOT"] = os.path.join(_TMP_ROOT, "repos")
os.environ["REPORT_EXPORT_ROOT"] = os.path.join(_TMP_ROOT, "exports")

from models import Base, User, UserRole
from auth import AuthService
from database import get_db_session
from git_workspace import GitWorkspace, get_workspace
from service_notifier import ServiceNotifier, get_notifier
from report_delivery import ReportDelivery
from report_exports import ReportExporter
from report_scheduler import ReportScheduler, get_scheduler
import documents_collab
import report_service
from main import app


class OutboundRecorder:
    """httpx MockTransport handler that records every outbound request"""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"success": True, "id": "ext-1"})

    def urls(self):
        return [str(r.url) for r in self.requests]


@pytest.fixture(autouse=True)
def _reset_module_state():
    report_service.clear_result_cache()
    documents_collab._active_editors.clear()
    yield
    report_service.clear_result_cache()
    documents_collab._active_editors.clear()


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def workspace(tmp_path):
    return GitWorkspace(str(tmp_path / "repos"))


@pytest.fixture
def outbound():
    return OutboundRecorder()


@pytest.fixture
def notifier(outbound):
    return ServiceNotifier(transport=httpx.MockTransport(outbound))


@pytest.fixture
def exporter(tmp_path):
    return ReportExporter(root=str(tmp_path / "exports"), base_url="/api/v1/reports/exports")


@pytest_asyncio.fixture
async def report_scheduler(session_factory, exporter, outbound):
    transport = httpx.MockTransport(outbound)
    scheduler = ReportScheduler(
        session_factory=session_factory,
        exporter=exporter,
        delivery=ReportDelivery(ServiceNotifier(transport), transport=transport),
    )
    yield scheduler
    scheduler.shutdown()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, workspace, notifier, report_scheduler):
    """HTTP test client with overridden DB, workspace, notifier and scheduler dependencies"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_workspace] = lambda: workspace
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_scheduler] = lambda: report_scheduler
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _create_user(db_session, email: str, display_name: str, role: UserRole) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=display_name,
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    """Create a test user"""
    return await _create_user(db_session, "testuser@exprsn.dev", "Test User", UserRole.USER)


@pytest_asyncio.fixture
async def other_user(db_session):
    return await _create_user(db_session, "other@exprsn.dev", "Other User", UserRole.USER)


@pytest_asyncio.fixture
async def auditor_user(db_session):
    return await _create_user(db_session, "auditor@exprsn.dev", "Auditor", UserRole.AUDITOR)


@pytest_asyncio.fixture
async def admin_user(db_session):
    """Create an admin user"""
    return await _create_user(db_session, "admin@exprsn.dev", "Admin User", UserRole.ORG_ADMIN)


@pytest_asyncio.fixture
async def super_admin(db_session):
    """Create a super admin user"""
    return await _create_user(db_session, "superadmin@exprsn.dev", "Super Admin", UserRole.SUPER_ADMIN)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
