import uuid
from functools import lru_cache

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import EngineConfig, settings
from app.core.errors import ExperimentNotFoundError
from app.models.experiment import Experiment


@lru_cache
def get_engine_config() -> EngineConfig:
    """FastAPI dependency returning the engine tuning built from settings."""
    return EngineConfig.from_settings(settings)


async def get_experiment(experiment_id: uuid.UUID, db: AsyncSession) -> Experiment:
    """Load an experiment with its variants.

    Raises ExperimentNotFoundError (mapped to HTTP 404) if it does not exist.
    """
    result = await db.execute(select(Experiment).where(Experiment.id == experiment_id))
    experiment = result.scalar_one_or_none()
    if experiment is None:
        raise ExperimentNotFoundError(experiment_id)
    return experiment


def advisory_lock_key(experiment_id: uuid.UUID) -> int:
    """Signed 64-bit key for ``pg_advisory_xact_lock`` derived from the experiment id."""
    return int.from_bytes(experiment_id.bytes[:8], "big", signed=True)


async def lock_experiment(db: AsyncSession, experiment_id: uuid.UUID) -> None:
    """Serialize writers on one experiment until the transaction ends.

    Uses a transaction-scoped Postgres advisory lock.  Other dialects have
    no equivalent, so the call is a no-op there and the unique constraints
    remain the only guard.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    await db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": advisory_lock_key(experiment_id)})
