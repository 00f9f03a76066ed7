"""Experiment registry: creation, lifecycle transitions, and variant edits.

Lifecycle::

    draft --start--> running <--pause/resume--> paused
                        \\                        /
                         +------complete---------+--> completed

Leaving ``draft`` requires a traffic allocation that sums to 100 and names
exactly the experiment's variants.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import EngineConfig
from app.core.dependencies import get_experiment
from app.core.errors import (
    ExperimentCompletedError,
    InvalidAllocationError,
    InvalidTransitionError,
    VariantLockedError,
    VariantNotFoundError,
)
from app.core.method_config import (
    BanditConfig,
    BayesianConfig,
    FrequentistConfig,
    MethodConfig,
    SequentialConfig,
)
from app.models.assignment import Assignment
from app.models.base import utcnow
from app.models.experiment import Channel, Experiment, ExperimentStatus, StatisticalMethod, Variant
from app.services.bandit import BanditAllocator
from app.services.bayesian import BayesianAnalyzer
from app.stats.allocation import TrafficAllocation

logger = logging.getLogger(__name__)

# target -> statuses it may be entered from
TRANSITIONS: dict[ExperimentStatus, frozenset[ExperimentStatus]] = {
    ExperimentStatus.running: frozenset({ExperimentStatus.draft, ExperimentStatus.paused}),
    ExperimentStatus.paused: frozenset({ExperimentStatus.running}),
    ExperimentStatus.completed: frozenset({ExperimentStatus.running, ExperimentStatus.paused}),
}

UPDATABLE_FIELDS = frozenset(
    {"name", "description", "form_id", "success_metric", "minimum_sample_size", "confidence_level", "traffic_allocation"}
)
VARIANT_CONTENT_FIELDS = frozenset({"subject", "body", "media_attachments", "variant_metadata", "distribution_id"})
# NOT NULL columns: may be changed but never cleared
REQUIRED_FIELDS = frozenset({"name", "success_metric", "minimum_sample_size", "confidence_level", "traffic_allocation"})
REQUIRED_VARIANT_FIELDS = frozenset({"body", "media_attachments", "variant_metadata"})


class ExperimentRegistry:
    """CRUD and lifecycle for experiments.

    Parameters
    ----------
    db : AsyncSession
        Session the caller commits.
    config : EngineConfig
        Engine tuning; only ``allocation_tolerance`` is used here, the rest
        is handed to the analyzers initialized on start.
    """

    def __init__(self, db: AsyncSession, config: EngineConfig | None = None) -> None:
        self.db = db
        self.config = config or EngineConfig()

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        tenant_id: uuid.UUID,
        name: str,
        channel: Channel,
        variants: list[Mapping[str, Any]],
        traffic_allocation: Mapping[str, float] | None = None,
        method: MethodConfig | None = None,
        **fields: Any,
    ) -> Experiment:
        """Create a draft experiment with its variants.

        ``traffic_allocation`` defaults to an even split.  Remaining keyword
        arguments are plain ``Experiment`` columns such as ``description``
        or ``confidence_level``.
        """
        names = [v["variant_name"] for v in variants]
        if len(names) < 2:
            raise InvalidAllocationError("An experiment needs at least two variants")
        if len(set(names)) != len(names):
            raise InvalidAllocationError("Variant names must be unique within an experiment")

        if traffic_allocation is None:
            allocation = TrafficAllocation.even_split(names)
        else:
            allocation = TrafficAllocation.validate(
                traffic_allocation, names, tolerance=self.config.allocation_tolerance
            )

        experiment = Experiment(
            tenant_id=tenant_id,
            name=name,
            channel=channel,
            traffic_allocation=allocation.to_dict(),
            status=ExperimentStatus.draft,
            **fields,
        )
        experiment.variants = [
            Variant(
                variant_name=v["variant_name"],
                subject=v.get("subject"),
                body=v.get("body", ""),
                media_attachments=list(v.get("media_attachments") or []),
                variant_metadata=dict(v.get("metadata") or v.get("variant_metadata") or {}),
                distribution_id=v.get("distribution_id"),
            )
            for v in variants
        ]
        self._apply_method(experiment, method or FrequentistConfig())
        self.db.add(experiment)
        await self.db.flush()

        if isinstance(method, BayesianConfig) and method.priors:
            priors = {k: p.model_dump() for k, p in method.priors.items()}
            await BayesianAnalyzer(self.db, self.config).initialize(experiment, priors=priors)

        logger.info(
            "Created experiment %s (%s, %d variants, method=%s)",
            experiment.id, name, len(names), experiment.statistical_method.value,
        )
        return experiment

    async def get(self, experiment_id: uuid.UUID) -> Experiment:
        return await get_experiment(experiment_id, self.db)

    async def list_experiments(
        self,
        tenant_id: uuid.UUID | None = None,
        status: ExperimentStatus | None = None,
        channel: Channel | None = None,
    ) -> list[tuple[Experiment, int]]:
        """Experiments matching the filters, newest first, with assignment counts."""
        counts = (
            select(Assignment.experiment_id, func.count().label("n"))
            .group_by(Assignment.experiment_id)
            .subquery()
        )
        stmt = (
            select(Experiment, func.coalesce(counts.c.n, 0))
            .outerjoin(counts, counts.c.experiment_id == Experiment.id)
            .order_by(Experiment.created_at.desc())
        )
        if tenant_id is not None:
            stmt = stmt.where(Experiment.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(Experiment.status == status)
        if channel is not None:
            stmt = stmt.where(Experiment.channel == channel)
        result = await self.db.execute(stmt)
        return [(row[0], int(row[1])) for row in result.all()]

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    async def update(self, experiment_id: uuid.UUID, **changes: Any) -> Experiment:
        """Update editable experiment fields; completed experiments are read-only."""
        experiment = await self.get(experiment_id)
        if experiment.status == ExperimentStatus.completed:
            raise ExperimentCompletedError(f"Experiment {experiment_id} is completed")

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        cleared = sorted(f for f in REQUIRED_FIELDS & set(changes) if changes[f] is None)
        if cleared:
            raise ValueError(f"Fields cannot be null: {cleared}")

        if "traffic_allocation" in changes:
            allocation = TrafficAllocation.validate(
                changes["traffic_allocation"],
                [v.variant_name for v in experiment.variants],
                tolerance=self.config.allocation_tolerance,
            )
            changes["traffic_allocation"] = allocation.to_dict()

        for field, value in changes.items():
            setattr(experiment, field, value)
        await self.db.flush()
        return experiment

    async def update_variant(self, experiment_id: uuid.UUID, variant_id: uuid.UUID, **changes: Any) -> Variant:
        """Edit variant content; refused once any recipient has been assigned."""
        experiment = await self.get(experiment_id)
        variant = next((v for v in experiment.variants if v.id == variant_id), None)
        if variant is None:
            raise VariantNotFoundError(variant_id)

        unknown = set(changes) - VARIANT_CONTENT_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        cleared = sorted(f for f in REQUIRED_VARIANT_FIELDS & set(changes) if changes[f] is None)
        if cleared:
            raise ValueError(f"Fields cannot be null: {cleared}")

        assigned = await self.db.execute(
            select(func.count()).select_from(Assignment).where(Assignment.variant_id == variant_id)
        )
        if (assigned.scalar() or 0) > 0:
            raise VariantLockedError(f"Variant {variant.variant_name!r} already has assignments")

        for field, value in changes.items():
            setattr(variant, field, value)
        await self.db.flush()
        return variant

    async def delete(self, experiment_id: uuid.UUID) -> None:
        experiment = await self.get(experiment_id)
        await self.db.delete(experiment)
        await self.db.flush()
        logger.info("Deleted experiment %s", experiment_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, experiment_id: uuid.UUID) -> Experiment:
        """draft -> running.  Validates the allocation and prepares analyzer state."""
        experiment = await self.get(experiment_id)
        if experiment.status != ExperimentStatus.draft:
            raise InvalidTransitionError(experiment.status.value, "start")

        TrafficAllocation.validate(
            experiment.traffic_allocation,
            [v.variant_name for v in experiment.variants],
            tolerance=self.config.allocation_tolerance,
        )

        if experiment.statistical_method == StatisticalMethod.bayesian:
            await BayesianAnalyzer(self.db, self.config).initialize(experiment)
        elif experiment.statistical_method == StatisticalMethod.bandit:
            await BanditAllocator(self.db, self.config).initialize(experiment)

        experiment.status = ExperimentStatus.running
        if experiment.started_at is None:
            experiment.started_at = utcnow()
        await self.db.flush()
        logger.info("Started experiment %s", experiment.id)
        return experiment

    async def pause(self, experiment_id: uuid.UUID) -> Experiment:
        experiment = await self.get(experiment_id)
        self._check_transition(experiment, ExperimentStatus.paused)
        experiment.status = ExperimentStatus.paused
        await self.db.flush()
        logger.info("Paused experiment %s", experiment.id)
        return experiment

    async def resume(self, experiment_id: uuid.UUID) -> Experiment:
        experiment = await self.get(experiment_id)
        if experiment.status != ExperimentStatus.paused:
            raise InvalidTransitionError(experiment.status.value, "resume")
        experiment.status = ExperimentStatus.running
        await self.db.flush()
        logger.info("Resumed experiment %s", experiment.id)
        return experiment

    async def complete(self, experiment_id: uuid.UUID, winning_variant_id: uuid.UUID | None = None) -> Experiment:
        """running/paused -> completed, optionally recording the winner."""
        experiment = await self.get(experiment_id)
        self._check_transition(experiment, ExperimentStatus.completed)
        if winning_variant_id is not None and winning_variant_id not in {v.id for v in experiment.variants}:
            raise VariantNotFoundError(winning_variant_id)

        experiment.status = ExperimentStatus.completed
        experiment.ended_at = utcnow()
        experiment.winning_variant_id = winning_variant_id
        await self.db.flush()
        logger.info("Completed experiment %s (winner=%s)", experiment.id, winning_variant_id)
        return experiment

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_transition(experiment: Experiment, target: ExperimentStatus) -> None:
        if experiment.status not in TRANSITIONS[target]:
            raise InvalidTransitionError(experiment.status.value, target.value)

    @staticmethod
    def _apply_method(experiment: Experiment, method: MethodConfig) -> None:
        experiment.statistical_method = StatisticalMethod(method.method)
        if isinstance(method, FrequentistConfig):
            experiment.early_stopping_enabled = method.early_stopping_enabled
        elif isinstance(method, BayesianConfig):
            experiment.expected_conversion_rate = method.expected_conversion_rate
            experiment.prior_confidence = method.prior_confidence
            experiment.early_stopping_enabled = method.early_stopping_enabled
        elif isinstance(method, SequentialConfig):
            experiment.planned_sample_size = method.planned_sample_size
            experiment.total_checks = method.total_checks
            experiment.early_stopping_enabled = method.early_stopping_enabled
        elif isinstance(method, BanditConfig):
            experiment.bandit_algorithm = method.algorithm
