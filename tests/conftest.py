"""
pytest configuration and fixtures for the automation engine tests.
"""
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import crm_automation.models  # noqa: F401  (register tables on Base.metadata)
from crm_automation.crud import automation_rules as rule_crud
from crm_automation.db.base_class import Base
from crm_automation.schemas.automation import RuleCreateRequest

TENANT = "T1"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 3, 15, 0, 0))


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_rule(session_factory):
    """Create a rule from keyword arguments; returns the stored row."""

    async def _make_rule(trigger, actions=None, conditions=None, tenant_id=TENANT, **kwargs):
        request = RuleCreateRequest(
            tenant_id=tenant_id,
            trigger=trigger,
            actions=actions if actions is not None else [{"type": "send-sms", "config": {}}],
            conditions=conditions or [],
            **kwargs,
        )
        async with session_factory() as session:
            return await rule_crud.create_rule(session, request)

    return _make_rule
