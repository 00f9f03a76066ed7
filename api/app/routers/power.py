from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.services.power import PowerAnalysisService

router = APIRouter(tags=["power-analysis"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class PowerAnalysisRequest(BaseModel):
    tenant_id: UUID
    experiment_id: UUID | None = None
    baseline_rate: float = Field(..., gt=0, lt=1)
    minimum_detectable_effect: float = Field(..., gt=0, lt=1, description="Absolute lift, e.g. 0.02 for +2 points")
    power: float = Field(0.80, gt=0, lt=1)
    significance_level: float = Field(0.05, gt=0, lt=1)
    variant_count: int = Field(2, ge=2)
    daily_volume: int | None = Field(None, gt=0)


class Recommendation(BaseModel):
    type: str
    message: str


class PowerAnalysisOut(BaseModel):
    id: UUID
    tenant_id: UUID
    experiment_id: UUID | None = None
    baseline_rate: float
    minimum_detectable_effect: float
    desired_power: float
    significance_level: float
    variant_count: int
    required_sample_size: int
    total_sample_size: int
    daily_volume: int | None = None
    estimated_duration_days: int | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class PowerAnalysisResult(PowerAnalysisOut):
    achieved_power: float
    relative_lift_pct: float
    recommendations: list[Recommendation]
    summary: str


class PowerCurvePoint(BaseModel):
    sample_size: int
    power: float


class DurationEstimate(BaseModel):
    sample_size_per_variant: int
    variant_count: int
    total_required: int
    daily_volume: int
    estimated_days: int
    estimated_weeks: float


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/power-analysis", response_model=PowerAnalysisResult, status_code=status.HTTP_201_CREATED)
async def create_power_analysis(
    body: PowerAnalysisRequest,
    db: AsyncSession = Depends(get_db),
) -> PowerAnalysisResult:
    """Calculate and store the sample size needed to detect the given effect.

    Linking an ``experiment_id`` makes this the experiment's current plan.
    """
    service = PowerAnalysisService(db)
    analysis = await service.create(
        tenant_id=body.tenant_id,
        baseline_rate=body.baseline_rate,
        mde=body.minimum_detectable_effect,
        power=body.power,
        alpha=body.significance_level,
        variant_count=body.variant_count,
        daily_volume=body.daily_volume,
        experiment_id=body.experiment_id,
    )
    calc = service.calculate(
        body.baseline_rate,
        body.minimum_detectable_effect,
        body.power,
        body.significance_level,
        body.variant_count,
        body.daily_volume,
    )
    return PowerAnalysisResult(
        **PowerAnalysisOut.model_validate(analysis).model_dump(),
        achieved_power=calc["achieved_power"],
        relative_lift_pct=calc["relative_lift_pct"],
        recommendations=calc["recommendations"],
        summary=calc["summary"],
    )


@router.get("/power-analysis/curve", response_model=list[PowerCurvePoint])
async def get_power_curve(
    baseline_rate: float = Query(..., gt=0, lt=1),
    mde: float = Query(..., gt=0, lt=1),
    alpha: float = Query(0.05, gt=0, lt=1),
) -> list[PowerCurvePoint]:
    """Achieved power across a standard grid of per-variant sample sizes."""
    return PowerAnalysisService.power_curve(baseline_rate, mde, alpha)


@router.get("/power-analysis/mde")
async def get_minimum_detectable_effect(
    experiment_id: UUID,
    planned_sample_size: int = Query(..., gt=1),
    power: float = Query(0.80, gt=0, lt=1),
    alpha: float = Query(0.05, gt=0, lt=1),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Smallest absolute effect an experiment can detect at its planned sample size."""
    return await PowerAnalysisService(db).mde_for_experiment(experiment_id, planned_sample_size, power, alpha)


@router.get("/power-analysis/{analysis_id}", response_model=PowerAnalysisOut)
async def get_power_analysis(
    analysis_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> PowerAnalysisOut:
    return await PowerAnalysisService(db).get(analysis_id)


@router.get("/experiments/{experiment_id}/duration", response_model=DurationEstimate)
async def estimate_experiment_duration(
    experiment_id: UUID,
    daily_volume: int = Query(..., gt=0),
    db: AsyncSession = Depends(get_db),
) -> DurationEstimate:
    """Days until the experiment reaches the sample size of its linked power analysis."""
    return await PowerAnalysisService(db).estimate_duration_for_experiment(experiment_id, daily_volume)
