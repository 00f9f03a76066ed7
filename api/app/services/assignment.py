"""Recipient-to-variant assignment.

A recipient is assigned at most once per experiment; the unique
(experiment_id, recipient_id) constraint is the source of truth, and a
request that loses the insert race re-reads the winner's row.

Static experiments map a draw in [0, 100) through the traffic allocation.
The draw comes from an injected generator when one is given, and
otherwise from a deterministic FNV-1a hash of the recipient and experiment
ids, so replays of the same exposure land in the same bucket.  Bandit
experiments ask the bandit allocator instead.
"""

from __future__ import annotations

import logging
import uuid

import numpy as np
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import EngineConfig
from app.core.dependencies import get_experiment
from app.core.errors import (
    AssignmentNotFoundError,
    DuplicateAssignmentRace,
    ExperimentNotRunningError,
    InvalidAllocationError,
)
from app.models.assignment import Assignment
from app.models.experiment import Experiment, ExperimentStatus, StatisticalMethod, Variant
from app.services.bandit import BanditAllocator
from app.stats.allocation import TrafficAllocation

logger = logging.getLogger(__name__)

# FNV-1a constants (32-bit)
FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
MASK_32 = 0xFFFFFFFF

# Hash buckets per percentage point
BUCKET_RESOLUTION = 100


def fnv1a(data: str) -> int:
    """Compute 32-bit FNV-1a hash of a string."""
    h = FNV_OFFSET_BASIS
    for byte in data.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & MASK_32
    return h


def hash_draw(recipient_id: str, experiment_id: uuid.UUID) -> float:
    """Deterministic draw in [0, 100) from fnv1a(f"{recipient_id}:{experiment_id}")."""
    bucket = fnv1a(f"{recipient_id}:{experiment_id}") % (100 * BUCKET_RESOLUTION)
    return bucket / BUCKET_RESOLUTION


class AssignmentEngine:
    """Idempotent assignment of recipients to variants.

    Parameters
    ----------
    db : AsyncSession
        Session the caller commits.
    config : EngineConfig
        Allocation tolerance, plus the bandit settings for bandit experiments.
    rng : numpy.random.Generator | None
        Generator for allocation draws and bandit selection.  Without one,
        static draws are hashed and bandits draw from a fresh generator.
        ``config.seed`` is not applied to draws.
    """

    def __init__(
        self,
        db: AsyncSession,
        config: EngineConfig | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.db = db
        self.config = config or EngineConfig()
        self.rng = rng

    async def assign(
        self,
        experiment_id: uuid.UUID,
        recipient_id: str,
        recipient_name: str | None = None,
        message_id: uuid.UUID | None = None,
    ) -> Assignment:
        """Return the recipient's assignment, creating it on first exposure.

        Raises
        ------
        ExperimentNotRunningError
            If no assignment exists yet and the experiment is not running.
        InvalidAllocationError
            If the experiment has no variants or an invalid allocation.
        """
        existing = await self.find(experiment_id, recipient_id)
        if existing is not None:
            return existing

        experiment = await get_experiment(experiment_id, self.db)
        if experiment.status != ExperimentStatus.running:
            raise ExperimentNotRunningError(
                f"Experiment {experiment_id} is {experiment.status.value}; new assignments need running"
            )

        variant = await self._choose(experiment, recipient_id)
        assignment = Assignment(
            experiment_id=experiment_id,
            variant_id=variant.id,
            recipient_id=recipient_id,
            recipient_name=recipient_name,
            message_id=message_id,
        )
        try:
            await self._insert(assignment)
        except DuplicateAssignmentRace:
            logger.warning("Assignment race for recipient %s in %s; re-reading", recipient_id, experiment_id)
            winner = await self.find(experiment_id, recipient_id)
            if winner is None:
                raise
            return winner

        logger.debug("Assigned %s to %s in %s", recipient_id, variant.variant_name, experiment_id)
        return assignment

    async def find(self, experiment_id: uuid.UUID, recipient_id: str) -> Assignment | None:
        result = await self.db.execute(
            select(Assignment).where(
                Assignment.experiment_id == experiment_id,
                Assignment.recipient_id == recipient_id,
            )
        )
        return result.scalar_one_or_none()

    async def get(self, experiment_id: uuid.UUID, recipient_id: str) -> Assignment:
        assignment = await self.find(experiment_id, recipient_id)
        if assignment is None:
            raise AssignmentNotFoundError(experiment_id, recipient_id)
        return assignment

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _choose(self, experiment: Experiment, recipient_id: str) -> Variant:
        if not experiment.variants:
            raise InvalidAllocationError(f"Experiment {experiment.id} has no variants")

        if experiment.statistical_method == StatisticalMethod.bandit:
            rng = self.rng if self.rng is not None else np.random.default_rng()
            return await BanditAllocator(self.db, self.config, rng=rng).select_variant(experiment.id)

        by_name = {v.variant_name: v for v in experiment.variants}
        allocation = TrafficAllocation.validate(
            experiment.traffic_allocation, by_name, tolerance=self.config.allocation_tolerance
        )
        if self.rng is not None:
            draw = float(self.rng.uniform(0.0, 100.0))
        else:
            draw = hash_draw(recipient_id, experiment.id)
        return by_name[allocation.pick(draw)]

    async def _insert(self, assignment: Assignment) -> None:
        """Insert inside a savepoint; a unique violation becomes DuplicateAssignmentRace."""
        try:
            async with self.db.begin_nested():
                self.db.add(assignment)
        except IntegrityError as exc:
            raise DuplicateAssignmentRace(str(exc.orig)) from exc
