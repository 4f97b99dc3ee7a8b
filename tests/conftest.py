"""Pytest fixtures. Each test gets its own SQLite file; the HTTP client and service-level tests share it."""
import asyncio
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from starlette.testclient import TestClient

from database import get_session
from devices import register_device
from main import app
from models import Base
from parameters import Parameter
from rate_limiter import reset_rate_limiter
from schemas import DeviceConfig, DeviceCreate, Location

# Fixed clock for service-level scenarios; ticks and scans take `now` explicitly.
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory(tmp_path):
    """Session factory over a fresh file database.

    NullPool keeps connections from outliving the event loop that opened them,
    since setup, the TestClient and asyncio.run() scenarios each use their own loop.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)

    async def init():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init())
    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    try:
        yield factory
    finally:
        asyncio.run(engine.dispose())


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def add_device(session_factory, now):
    """Async helper: register a device and force any model fields given as overrides."""

    async def add(device_id: str = "buoy-a1", latitude: float = 31.2304, longitude: float = 121.4737, **fields):
        data = DeviceCreate(
            device_id=device_id,
            name=fields.pop("name", f"Station {device_id}"),
            type="buoy",
            location=Location(latitude=latitude, longitude=longitude, description="East China Sea"),
            config=DeviceConfig(parameters=fields.pop("parameters", list(Parameter))),
        )
        async with session_factory() as session:
            device = await register_device(session, data, now)
            for name, value in fields.items():
                setattr(device, name, value)
            await session.commit()
            return device

    return add


def _override_get_session(session_factory):
    """Return an async generator that yields a session from the given factory."""

    async def override() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    return override


@pytest.fixture
def client(session_factory):
    """HTTP client bound to the per-test database, with a fresh rate limiter."""
    reset_rate_limiter()
    app.dependency_overrides[get_session] = _override_get_session(session_factory)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        reset_rate_limiter()
