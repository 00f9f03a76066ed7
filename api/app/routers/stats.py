"""Stats router: exposes experiment analysis results via the API.

Returns the frequentist comparison for every experiment plus the report of
its configured method, and lets clients drive the sequential plan.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import EngineConfig
from app.core.database import get_db
from app.core.dependencies import get_engine_config
from app.models.experiment import StatisticalMethod
from app.services.sequential import SequentialAnalyzer
from app.stats.engine import StatsEngine

router = APIRouter(tags=["stats"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class VariantRate(BaseModel):
    variant: str
    n: int
    conversions: int
    rate: float


class FrequentistResults(BaseModel):
    status: str
    confidence_level: float
    per_variant: list[VariantRate]
    comparisons: list[dict[str, Any]]
    message: str | None = None
    winner: dict[str, Any] | None = None


class ExperimentResults(BaseModel):
    experiment_id: UUID
    name: str
    status: str
    statistical_method: StatisticalMethod
    total_assignments: int
    winning_variant_id: UUID | None = None
    frequentist: FrequentistResults
    bayesian: dict[str, Any] | None = None
    sequential: dict[str, Any] | None = None
    bandit: dict[str, Any] | None = None


class WinnerCheck(BaseModel):
    should_stop: bool
    stopped: bool
    winning_variant: str | None = None
    winning_variant_id: UUID | None = None
    reason: str


class SequentialPlanRequest(BaseModel):
    planned_sample_size: int = Field(..., gt=0, description="Planned assignments per variant")
    total_checks: int | None = Field(None, gt=0, le=50)


class SequentialPlan(BaseModel):
    planned_sample_size: int
    planned_total: int
    total_checks: int
    check_points: list[int]
    boundaries: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/experiments/{experiment_id}/results", response_model=ExperimentResults)
async def get_experiment_results(
    experiment_id: UUID,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> ExperimentResults:
    """Get full statistical results for an experiment.

    Always includes per-variant rates and pairwise z-tests; adds the
    Bayesian, sequential or bandit report for experiments using that method.
    """
    analysis = await StatsEngine(db, config).analyze_experiment(experiment_id)
    return ExperimentResults(**analysis)


@router.get("/experiments/{experiment_id}/results/frequentist", response_model=FrequentistResults)
async def get_frequentist_results(
    experiment_id: UUID,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> FrequentistResults:
    result = await StatsEngine(db, config).method_results(experiment_id, StatisticalMethod.frequentist)
    return FrequentistResults(**result)


@router.get("/experiments/{experiment_id}/results/{method}")
async def get_method_results(
    experiment_id: UUID,
    method: StatisticalMethod,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> dict[str, Any]:
    """Bayesian, sequential or bandit report, whatever the experiment's own method."""
    return await StatsEngine(db, config).method_results(experiment_id, method)


@router.post("/experiments/{experiment_id}/sequential/plan", response_model=SequentialPlan)
async def plan_sequential_test(
    experiment_id: UUID,
    body: SequentialPlanRequest,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> SequentialPlan:
    """Switch the experiment to sequential testing and return its check schedule."""
    plan = await SequentialAnalyzer(db, config).initialize(
        experiment_id, body.planned_sample_size, total_checks=body.total_checks
    )
    return SequentialPlan(**plan)


@router.post("/experiments/{experiment_id}/sequential/check")
async def run_interim_check(
    experiment_id: UUID,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> dict[str, Any]:
    """Run the next interim check now, regardless of the check point schedule."""
    return await SequentialAnalyzer(db, config).perform_interim_check(experiment_id)


@router.post("/experiments/{experiment_id}/check-winner", response_model=WinnerCheck)
async def check_winner(
    experiment_id: UUID,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> WinnerCheck:
    """Look for a winner; completes the experiment if it has early stopping enabled."""
    decision = await StatsEngine(db, config).check_and_stop(experiment_id)
    return WinnerCheck(**decision)
