import os

# Must be set before any application module reads settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["REDIS_URL"] = ""

import uuid
from datetime import datetime
from typing import AsyncGenerator, Optional

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from agent_api.dependencies import get_idempotency_cache
from agent_api.idempotency import InMemoryIdempotencyCache
from agent_api.main import app
from common.database import get_async_session
from common.enums import LeadStatus
from common.models import AuditLog, Base, Lead, utcnow


ORG_ID = uuid.UUID("11111111-1111-4111-8111-111111111111")
OTHER_ORG_ID = uuid.UUID("22222222-2222-4222-8222-222222222222")

ORG_HEADERS = {"X-Organization-Id": str(ORG_ID), "X-Agent-Name": "tester"}


@pytest.fixture(scope="function")
async def engine():
    """In-memory SQLite shared by every session of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
def idempotency_cache() -> InMemoryIdempotencyCache:
    return InMemoryIdempotencyCache()


@pytest.fixture(scope="function")
async def http_client(session_factory, idempotency_cache) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the app in-process, with org headers preset."""

    async def override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_session] = override_session
    app.dependency_overrides[get_idempotency_cache] = lambda: idempotency_cache

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://test",
        headers=ORG_HEADERS,
        timeout=10.0,
    ) as client:
        yield client

    app.dependency_overrides.clear()


async def create_lead(
    session_factory: async_sessionmaker,
    status: LeadStatus = LeadStatus.NEW,
    organization_id: uuid.UUID = ORG_ID,
    next_action_due_utc: Optional[datetime] = None,
    **fields,
) -> Lead:
    """Inserts a lead directly, bypassing the API."""
    data = {
        "company": "Acme Roofing",
        "key_decision_maker": "Jordan Lee",
        "emails": ["jordan@acme.example.com"],
        "mobile_valid": True,
    }
    data.update(fields)
    async with session_factory() as session:
        async with session.begin():
            lead = Lead(
                organization_id=organization_id,
                status=status,
                next_action_due_utc=next_action_due_utc or utcnow(),
                **data,
            )
            session.add(lead)
    return lead


async def get_lead(session_factory: async_sessionmaker, lead_id: uuid.UUID) -> Lead:
    async with session_factory() as session:
        return await session.get(Lead, lead_id)


async def audit_entries(session_factory: async_sessionmaker, lead_id: uuid.UUID) -> list:
    async with session_factory() as session:
        result = await session.execute(
            select(AuditLog).where(AuditLog.lead_id == lead_id).order_by(AuditLog.created_at)
        )
        return list(result.scalars().all())


async def count_audit_entries(session_factory: async_sessionmaker, lead_id: uuid.UUID) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count()).select_from(AuditLog).where(AuditLog.lead_id == lead_id)
        )
