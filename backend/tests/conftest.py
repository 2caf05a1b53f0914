"""
Ops Desk - Test Fixtures
========================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator
from typing import Any, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from passlib.hash import bcrypt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from opsdesk.api.deps import create_access_token
from opsdesk.api.main import app
from opsdesk.core.database import Base, get_db
from opsdesk.core.events import DomainEvent, EventBus, EventType
from opsdesk.core.models import (
    Approval,
    ApprovalStatus,
    Project,
    ProjectStage,
    ProjectStatus,
    ProjectTier,
    User,
    UserRole,
)
from opsdesk.core.policy.catalog import (
    AGENT_DISPLAY_NAMES,
    checkpoint_for_agent,
    suggest_stage_for_agent,
)


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

TEST_PASSWORD = "TestPass123!"


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ==========================================================================
# Event Fixtures
# ==========================================================================

class RecordingSubscriber:
    """Subscriber that keeps every delivered event in memory."""

    def __init__(self):
        self.events: list[DomainEvent] = []

    def deliver(self, event: DomainEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[EventType]:
        return [e.type for e in self.events]

    def of_type(self, event_type: EventType) -> list[DomainEvent]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> RecordingSubscriber:
    """A subscriber already attached to ``bus``."""
    return bus.subscribe(RecordingSubscriber())


# ==========================================================================
# HTTP Client
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, bus: EventBus) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database and event bus overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.event_bus = bus

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ==========================================================================
# User Fixtures
# ==========================================================================

async def make_user(
    db: AsyncSession,
    role: UserRole,
    username: Optional[str] = None,
    is_active: bool = True,
) -> User:
    """Create a user. Password: TestPass123!"""
    user = User(
        id=uuid4(),
        username=username or f"user_{uuid4().hex[:8]}",
        display_name=f"{role.value.replace('_', ' ').title()} User",
        role=role,
        password_hash=bcrypt.hash(TEST_PASSWORD),
        is_active=is_active,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


def headers_for(user: User) -> dict[str, str]:
    """Authorization headers for a user."""
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest_asyncio.fixture
async def founder(db_session: AsyncSession) -> User:
    return await make_user(db_session, UserRole.FOUNDER, username="founder")


@pytest_asyncio.fixture
async def sales_lead(db_session: AsyncSession) -> User:
    return await make_user(db_session, UserRole.SALES_LEAD, username="sales")


@pytest_asyncio.fixture
async def creative(db_session: AsyncSession) -> User:
    return await make_user(db_session, UserRole.CREATIVE_SPECIALIST, username="creative")


@pytest_asyncio.fixture
async def operator(db_session: AsyncSession) -> User:
    return await make_user(db_session, UserRole.AI_OPERATOR, username="operator")


# ==========================================================================
# Auth Fixtures
# ==========================================================================

@pytest.fixture
def founder_headers(founder: User) -> dict[str, str]:
    return headers_for(founder)


@pytest.fixture
def lead_headers(sales_lead: User) -> dict[str, str]:
    return headers_for(sales_lead)


@pytest.fixture
def creative_headers(creative: User) -> dict[str, str]:
    return headers_for(creative)


@pytest.fixture
def operator_headers(operator: User) -> dict[str, str]:
    return headers_for(operator)


# ==========================================================================
# Record Factories
# ==========================================================================

async def make_project(
    db: AsyncSession,
    client_email: Optional[str] = None,
    stage: ProjectStage = ProjectStage.LEAD,
    status: ProjectStatus = ProjectStatus.ACTIVE,
    tier: ProjectTier = ProjectTier.TIER_1,
    **fields: Any,
) -> Project:
    project = Project(
        client_email=client_email or unique_email(),
        stage=stage,
        status=status,
        tier=tier,
        **fields,
    )
    db.add(project)
    await db.commit()
    await db.refresh(project)
    return project


async def make_approval(
    db: AsyncSession,
    client_email: Optional[str] = None,
    agent_key: str = "proposal",
    response: Any = None,
    status: ApprovalStatus = ApprovalStatus.PENDING,
    payload: Optional[dict[str, Any]] = None,
) -> Approval:
    approval = Approval(
        client_email=client_email or unique_email(),
        agent_key=agent_key,
        stage_name=AGENT_DISPLAY_NAMES[agent_key],
        checkpoint_type=checkpoint_for_agent(agent_key),
        agent_payload=payload or {},
        agent_response=response if response is not None else {"summary": "Draft output"},
        status=status,
        recommended_stage=suggest_stage_for_agent(agent_key),
    )
    db.add(approval)
    await db.commit()
    await db.refresh(approval)
    return approval


# ==========================================================================
# Helper Functions
# ==========================================================================

def unique_email() -> str:
    """Generate a unique email for tests."""
    return f"test_{uuid4().hex[:8]}@example.com"
