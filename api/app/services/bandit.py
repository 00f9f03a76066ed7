"""Bandit allocator: per-arm reward state, selection, and regret tracking.

Selection never writes; a pull is counted when its reward is recorded.
``record_reward`` runs under the per-experiment lock so that the regret
snapshot it appends is computed against a consistent view of every arm.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import numpy as np
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import EngineConfig
from app.core.dependencies import get_experiment, lock_experiment
from app.core.errors import InsufficientDataError, VariantNotFoundError
from app.models.bandit import BanditRegret, BanditState
from app.models.experiment import BanditAlgorithm, Experiment, Variant
from app.stats.bandits import ArmStats, BanditPolicy, make_policy, regret_increment

logger = logging.getLogger(__name__)


class BanditAllocator:
    """Multi-armed bandit traffic allocation backed by ``ab_bandit_state``.

    Parameters
    ----------
    db : AsyncSession
        Session the caller commits.
    config : EngineConfig
        Epsilon, Monte Carlo sample count and default seed.
    rng : numpy.random.Generator | None
        Generator used by Thompson and epsilon-greedy draws.
    """

    def __init__(
        self,
        db: AsyncSession,
        config: EngineConfig | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.db = db
        self.config = config or EngineConfig()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def initialize(self, experiment: Experiment, algorithm: BanditAlgorithm | None = None) -> list[BanditState]:
        """Create one state row per variant, seeded from the static allocation."""
        algorithm = algorithm or experiment.bandit_algorithm or BanditAlgorithm.thompson
        experiment.bandit_algorithm = algorithm

        existing = {state.variant_id for state, _ in await self._states(experiment.id)}
        for variant in sorted(experiment.variants, key=lambda v: v.variant_name):
            if variant.id in existing:
                continue
            share = float(experiment.traffic_allocation.get(variant.variant_name, 0.0))
            self.db.add(
                BanditState(
                    experiment_id=experiment.id,
                    variant_id=variant.id,
                    algorithm=algorithm,
                    initial_allocation=share,
                    current_allocation=share,
                )
            )
        await self.db.flush()
        logger.info("Initialized %s bandit for experiment %s", algorithm.value, experiment.id)
        return [state for state, _ in await self._states(experiment.id)]

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_variant(self, experiment_id: uuid.UUID) -> Variant:
        """Pick the variant to serve next according to the experiment's algorithm."""
        experiment = await get_experiment(experiment_id, self.db)
        rows = await self._states(experiment_id)
        if not rows:
            rows = await self._initialized(experiment)
        policy = self._policy(experiment, rows)
        index = policy.select()
        variant = rows[index][1]
        logger.debug("Bandit %s selected %s", policy.algorithm.value, variant.variant_name)
        return variant

    # ------------------------------------------------------------------
    # Rewards
    # ------------------------------------------------------------------

    async def record_reward(self, experiment_id: uuid.UUID, variant_id: uuid.UUID, reward: int) -> BanditState:
        """Apply a 0/1 reward to one arm, refresh allocations, and append regret.

        Raises
        ------
        ValueError
            If ``reward`` is not 0 or 1.
        VariantNotFoundError
            If the variant has no bandit state in this experiment.
        """
        if reward not in (0, 1):
            raise ValueError("reward must be 0 or 1")

        experiment = await get_experiment(experiment_id, self.db)
        await lock_experiment(self.db, experiment_id)

        before = await self._states(experiment_id)
        if not before:
            before = await self._initialized(experiment)
        index = next((i for i, (s, _) in enumerate(before) if s.variant_id == variant_id), None)
        if index is None:
            raise VariantNotFoundError(variant_id)

        # Regret is measured against the best known arm before this pull
        arms_before = [self._arm(s, v) for s, v in before]
        increment = regret_increment(arms_before, index)
        optimal = before[int(np.argmax([a.mean_reward for a in arms_before]))][0].variant_id

        stmt = (
            update(BanditState)
            .where(BanditState.experiment_id == experiment_id, BanditState.variant_id == variant_id)
            .values(
                {
                    BanditState.success_count: BanditState.success_count + reward,
                    BanditState.failure_count: BanditState.failure_count + (1 - reward),
                    BanditState.pulls: BanditState.pulls + 1,
                    BanditState.cumulative_reward: BanditState.cumulative_reward + reward,
                    BanditState.mean_reward: (BanditState.cumulative_reward + reward) / (BanditState.pulls + 1),
                }
            )
            .returning(BanditState)
            .execution_options(populate_existing=True)
        )
        updated = (await self.db.execute(stmt)).scalar_one()

        after = await self._states(experiment_id)
        policy = self._policy(experiment, after)
        for i, ((state, _), share) in enumerate(zip(after, policy.allocation())):
            state.current_allocation = round(share * 100.0, 4)
            state.upper_confidence_bound = policy.score(i)

        previous = await self._latest_regret(experiment_id)
        cumulative = (previous.cumulative_regret if previous else 0.0) + increment
        self.db.add(
            BanditRegret(
                experiment_id=experiment_id,
                total_pulls=policy.total_pulls,
                cumulative_regret=cumulative,
                optimal_variant_id=optimal,
            )
        )
        await self.db.flush()
        logger.debug(
            "Reward %d on %s (pulls=%d, mean=%.4f, cumulative_regret=%.4f)",
            reward, variant_id, updated.pulls, updated.mean_reward, cumulative,
        )
        return updated

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def regret_history(self, experiment_id: uuid.UUID) -> list[BanditRegret]:
        result = await self.db.execute(
            select(BanditRegret)
            .where(BanditRegret.experiment_id == experiment_id)
            .order_by(BanditRegret.total_pulls)
        )
        return list(result.scalars().all())

    async def results(self, experiment_id: uuid.UUID) -> dict[str, Any]:
        """Arm states, regret curve, and a summary of how allocation has shifted."""
        experiment = await get_experiment(experiment_id, self.db)
        rows = await self._states(experiment_id)
        if not rows:
            raise InsufficientDataError(f"Experiment {experiment_id} has no bandit state")

        history = await self.regret_history(experiment_id)
        arms = [
            {
                "variant_id": variant.id,
                "variant": variant.variant_name,
                "pulls": state.pulls,
                "success_count": state.success_count,
                "failure_count": state.failure_count,
                "mean_reward": round(state.mean_reward, 6),
                "upper_confidence_bound": (
                    round(state.upper_confidence_bound, 6) if state.upper_confidence_bound is not None else None
                ),
                "initial_allocation": state.initial_allocation,
                "current_allocation": state.current_allocation,
                "allocation_shift": round(state.current_allocation - state.initial_allocation, 4),
            }
            for state, variant in rows
        ]
        total_pulls = sum(a["pulls"] for a in arms)
        cumulative_regret = history[-1].cumulative_regret if history else 0.0
        best = max(arms, key=lambda a: a["mean_reward"]) if total_pulls else None

        return {
            "algorithm": experiment.bandit_algorithm.value if experiment.bandit_algorithm else None,
            "arms": arms,
            "regret_history": [
                {"total_pulls": r.total_pulls, "cumulative_regret": round(r.cumulative_regret, 6)}
                for r in history
            ],
            "summary": {
                "total_pulls": total_pulls,
                "cumulative_regret": round(cumulative_regret, 6),
                "regret_per_pull": round(cumulative_regret / total_pulls, 6) if total_pulls else 0.0,
                "best_variant": best["variant"] if best else None,
            },
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _arm(state: BanditState, variant: Variant) -> ArmStats:
        return ArmStats(name=variant.variant_name, successes=state.success_count, failures=state.failure_count)

    def _policy(self, experiment: Experiment, rows: list[tuple[BanditState, Variant]]) -> BanditPolicy:
        algorithm = experiment.bandit_algorithm or rows[0][0].algorithm
        return make_policy(
            algorithm,
            [self._arm(s, v) for s, v in rows],
            rng=self.rng,
            epsilon=self.config.epsilon,
            n_samples=self.config.monte_carlo_samples,
        )

    async def _initialized(self, experiment: Experiment) -> list[tuple[BanditState, Variant]]:
        await self.initialize(experiment)
        return await self._states(experiment.id)

    async def _states(self, experiment_id: uuid.UUID) -> list[tuple[BanditState, Variant]]:
        result = await self.db.execute(
            select(BanditState, Variant)
            .join(Variant, Variant.id == BanditState.variant_id)
            .where(BanditState.experiment_id == experiment_id)
            .order_by(Variant.variant_name)
            .execution_options(populate_existing=True)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def _latest_regret(self, experiment_id: uuid.UUID) -> BanditRegret | None:
        result = await self.db.execute(
            select(BanditRegret)
            .where(BanditRegret.experiment_id == experiment_id)
            .order_by(BanditRegret.total_pulls.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
