"""Shared fixtures: an in-memory SQLite database per test and an HTTP client.

Services only flush; nothing is committed except through the HTTP client,
whose session dependency commits per request like production does.
"""

import uuid

import numpy as np
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import EngineConfig
from app.core.database import get_db
from app.core.dependencies import get_engine_config
from app.main import app
from app.models import Assignment, Base, Channel, Outcome
from app.services.registry import ExperimentRegistry

TENANT_ID = uuid.UUID("00000000-0000-0000-0000-00000000a11c")


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(monte_carlo_samples=20_000, seed=42)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's implicit transactions break SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_experiment(db, config):
    """Create (and by default start) an email experiment with the given variants."""

    async def _make(variants=("control", "treatment"), method=None, start=True, **fields):
        registry = ExperimentRegistry(db, config)
        experiment = await registry.create(
            tenant_id=TENANT_ID,
            name=fields.pop("name", "Subject line test"),
            channel=fields.pop("channel", Channel.email),
            variants=[{"variant_name": name, "body": f"Hello from {name}"} for name in variants],
            method=method,
            **fields,
        )
        if start:
            experiment = await registry.start(experiment.id)
        return experiment

    return _make


@pytest.fixture
def seed_results(db):
    """Insert assignments and outcomes directly: ``{variant_name: (n, conversions)}``."""

    async def _seed(experiment, counts):
        by_name = {v.variant_name: v for v in experiment.variants}
        for name, (n, conversions) in counts.items():
            variant = by_name[name]
            for i in range(n):
                recipient = f"{name}-{uuid.uuid4().hex}"
                db.add(Assignment(experiment_id=experiment.id, variant_id=variant.id, recipient_id=recipient))
                db.add(
                    Outcome(
                        experiment_id=experiment.id,
                        variant_id=variant.id,
                        recipient_id=recipient,
                        success=i < conversions,
                    )
                )
        await db.flush()

    return _seed


@pytest.fixture
async def client(session_factory, config):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine_config] = lambda: config
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
