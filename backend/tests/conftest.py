"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- In-memory async SQLite database (one StaticPool connection per test)
- AsyncSession and session factory
- Engine collaborators (log email transport, delay scheduler)
- FastAPI test client (httpx.AsyncClient) wired to the test database
- Directory seeding helpers and auth headers (JWT tokens)
"""

import os
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production-0123456789")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("EMAIL_TRANSPORT", "log")
os.environ.setdefault("DELAY_RECOVERY_ON_STARTUP", "false")

from db.base import Base  # noqa: E402
from db.database import create_session_factory  # noqa: E402
from core.constants import UserRole  # noqa: E402
from core.security import create_access_token  # noqa: E402
from notifications.email import LogEmailTransport  # noqa: E402
from workflow.delay_scheduler import DelayScheduler  # noqa: E402


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test; every session shares one connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for arranging and asserting. Seed data must be committed."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Engine collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def email_transport() -> LogEmailTransport:
    return LogEmailTransport()


@pytest_asyncio.fixture
async def delay_scheduler() -> AsyncGenerator[DelayScheduler, None]:
    scheduler = DelayScheduler()
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
def workflow_engine(db_session, email_transport, delay_scheduler):
    from workflow.engine import WorkflowEngine

    return WorkflowEngine(db_session, email_transport=email_transport, delay_scheduler=delay_scheduler)


# ---------------------------------------------------------------------------
# Directory fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def org_id() -> str:
    return f"org-{uuid4().hex[:8]}"


@pytest.fixture
def make_user(db_session, org_id):
    """Factory: create and commit a directory user."""
    from db.models.user import User

    async def _make_user(
        name: str = "user",
        department_id: str = "dept-1",
        role: str = UserRole.USER.value,
        skills: list = None,
        organization_id: str = None,
        **kwargs,
    ) -> User:
        user = User(
            organization_id=organization_id or org_id,
            department_id=department_id,
            email=f"{name}-{uuid4().hex[:6]}@example.com",
            name=name,
            role=role,
            skills=skills or [],
            **kwargs,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_task(db_session, org_id):
    """Factory: create and commit a directory task."""
    from db.models.task import Task

    async def _make_task(assignee_id: str = None, status: str = "TODO", **kwargs) -> Task:
        task = Task(
            organization_id=kwargs.pop("organization_id", org_id),
            title=kwargs.pop("title", "Task"),
            assignee_id=assignee_id,
            status=status,
            **kwargs,
        )
        db_session.add(task)
        await db_session.commit()
        return task

    return _make_task


@pytest.fixture
def make_template(db_session, org_id):
    """Factory: create a template through TemplateService."""
    from services.template_service import TemplateService

    async def _make_template(steps: list, name: str = "Template", **kwargs):
        return await TemplateService(db_session).create_template(
            organization_id=kwargs.pop("organization_id", org_id),
            data={"name": name, "steps": steps, **kwargs},
            created_by="author",
        )

    return _make_template


def step_by_key(template, key: str):
    return next(step for step in template.steps if step.key == key)


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(session_factory):
    """FastAPI app whose get_db dependency uses the test database."""
    from app.dependencies import get_db
    from app.main import create_app

    test_app = create_app()

    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_app.dependency_overrides[get_db] = _get_test_db
    yield test_app
    test_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac


def auth_headers_for(user_id: str, org_id: str) -> dict:
    token = create_access_token(user_id=user_id, email=f"{user_id}@example.com", org_id=org_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(org_id) -> dict:
    """Authorization headers for the caller ``caller-1`` in the test tenant."""
    return auth_headers_for("caller-1", org_id)
