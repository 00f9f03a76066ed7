"""Power analysis service: sample-size planning, persisted immutably."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_experiment
from app.core.errors import InsufficientDataError, PowerAnalysisNotFoundError
from app.models.assignment import Assignment, Outcome
from app.models.power_analysis import PowerAnalysis
from app.stats import power as pw

logger = logging.getLogger(__name__)

DEFAULT_BASELINE_RATE = 0.10


class PowerAnalysisService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Pure calculations
    # ------------------------------------------------------------------

    @staticmethod
    def calculate(
        baseline_rate: float,
        mde: float,
        power: float = 0.80,
        alpha: float = 0.05,
        variant_count: int = 2,
        daily_volume: int | None = None,
    ) -> dict[str, Any]:
        """Required sample size, achieved power, duration and recommendations."""
        n = pw.required_sample_size(baseline_rate, mde, power, alpha)
        achieved = pw.achieved_power(n, baseline_rate, mde, alpha)
        relative_lift = mde / baseline_rate * 100
        duration = pw.estimate_duration(n, variant_count, daily_volume) if daily_volume else None
        advice = pw.recommendations(
            n, achieved, relative_lift_pct=relative_lift, estimated_duration_days=duration, daily_volume=daily_volume
        )
        return {
            "baseline_rate": baseline_rate,
            "minimum_detectable_effect": mde,
            "relative_lift_pct": round(relative_lift, 2),
            "desired_power": power,
            "achieved_power": round(achieved, 4),
            "significance_level": alpha,
            "variant_count": variant_count,
            "sample_size_per_variant": n,
            "total_sample_size": n * variant_count,
            "daily_volume": daily_volume,
            "estimated_duration_days": duration,
            **advice,
        }

    @staticmethod
    def power_curve(baseline_rate: float, mde: float, alpha: float = 0.05) -> list[dict]:
        return pw.power_curve(baseline_rate, mde, alpha)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def create(
        self,
        tenant_id: uuid.UUID,
        baseline_rate: float,
        mde: float,
        power: float = 0.80,
        alpha: float = 0.05,
        variant_count: int = 2,
        daily_volume: int | None = None,
        experiment_id: uuid.UUID | None = None,
    ) -> PowerAnalysis:
        """Persist a new calculation; linking an experiment points it at this row."""
        calc = self.calculate(baseline_rate, mde, power, alpha, variant_count, daily_volume)
        analysis = PowerAnalysis(
            tenant_id=tenant_id,
            experiment_id=experiment_id,
            baseline_rate=baseline_rate,
            minimum_detectable_effect=mde,
            desired_power=power,
            significance_level=alpha,
            variant_count=variant_count,
            required_sample_size=calc["sample_size_per_variant"],
            total_sample_size=calc["total_sample_size"],
            daily_volume=daily_volume,
            estimated_duration_days=calc["estimated_duration_days"],
        )
        self.db.add(analysis)
        await self.db.flush()

        if experiment_id is not None:
            experiment = await get_experiment(experiment_id, self.db)
            experiment.power_analysis_id = analysis.id
            await self.db.flush()

        logger.info(
            "Created power analysis %s: %d per variant (baseline=%.4f, mde=%.4f)",
            analysis.id, analysis.required_sample_size, baseline_rate, mde,
        )
        return analysis

    async def get(self, analysis_id: uuid.UUID) -> PowerAnalysis:
        result = await self.db.execute(select(PowerAnalysis).where(PowerAnalysis.id == analysis_id))
        analysis = result.scalar_one_or_none()
        if analysis is None:
            raise PowerAnalysisNotFoundError(analysis_id)
        return analysis

    # ------------------------------------------------------------------
    # Experiment-level helpers
    # ------------------------------------------------------------------

    async def mde_for_experiment(
        self,
        experiment_id: uuid.UUID,
        planned_sample_size: int,
        power: float = 0.80,
        alpha: float = 0.05,
    ) -> dict[str, Any]:
        """Smallest detectable effect for a planned per-variant sample size.

        The baseline comes from the experiment's linked power analysis,
        else the observed conversion rate, else 10%.
        """
        experiment = await get_experiment(experiment_id, self.db)
        baseline, source = None, "default"
        if experiment.power_analysis_id is not None:
            baseline = (await self.get(experiment.power_analysis_id)).baseline_rate
            source = "power_analysis"
        else:
            observed = await self._observed_rate(experiment_id)
            if observed is not None and 0 < observed < 1:
                baseline, source = observed, "observed"
        if baseline is None:
            baseline = DEFAULT_BASELINE_RATE

        mde = pw.minimum_detectable_effect(planned_sample_size, baseline, power, alpha)
        return {
            "experiment_id": experiment_id,
            "baseline_rate": round(baseline, 6),
            "baseline_source": source,
            "planned_sample_size": planned_sample_size,
            "minimum_detectable_effect": round(mde, 6),
            "relative_lift_pct": round(mde / baseline * 100, 2),
            "power": power,
            "significance_level": alpha,
        }

    async def estimate_duration_for_experiment(self, experiment_id: uuid.UUID, daily_volume: int) -> dict[str, Any]:
        """Days to reach the linked analysis' required sample at ``daily_volume``."""
        experiment = await get_experiment(experiment_id, self.db)
        if experiment.power_analysis_id is None:
            raise InsufficientDataError(f"Experiment {experiment_id} has no power analysis")
        analysis = await self.get(experiment.power_analysis_id)
        variant_count = len(experiment.variants)
        days = pw.estimate_duration(analysis.required_sample_size, variant_count, daily_volume)
        return {
            "sample_size_per_variant": analysis.required_sample_size,
            "variant_count": variant_count,
            "total_required": analysis.required_sample_size * variant_count,
            "daily_volume": daily_volume,
            "estimated_days": days,
            "estimated_weeks": round(days / 7, 1),
        }

    async def _observed_rate(self, experiment_id: uuid.UUID) -> float | None:
        total = (
            await self.db.execute(
                select(func.count()).select_from(Assignment).where(Assignment.experiment_id == experiment_id)
            )
        ).scalar() or 0
        if total == 0:
            return None
        conversions = (
            await self.db.execute(
                select(func.count())
                .select_from(Outcome)
                .where(Outcome.experiment_id == experiment_id, Outcome.success.is_(True))
            )
        ).scalar() or 0
        return conversions / total
