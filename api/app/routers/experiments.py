import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import EngineConfig
from app.core.database import get_db
from app.core.dependencies import get_engine_config
from app.core.method_config import MethodConfig
from app.models.experiment import (
    BanditAlgorithm,
    Channel,
    ExperimentStatus,
    StatisticalMethod,
    SuccessMetric,
)
from app.services.registry import ExperimentRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["experiments"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class VariantCreate(BaseModel):
    variant_name: str = Field(..., min_length=1, max_length=100)
    subject: str | None = None
    body: str = ""
    media_attachments: list[Any] = []
    metadata: dict[str, Any] = {}
    distribution_id: UUID | None = None


class VariantUpdate(BaseModel):
    subject: str | None = None
    body: str | None = None
    media_attachments: list[Any] | None = None
    metadata: dict[str, Any] | None = None
    distribution_id: UUID | None = None


class VariantOut(BaseModel):
    id: UUID
    variant_name: str
    subject: str | None = None
    body: str
    media_attachments: list[Any]
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="variant_metadata")
    distribution_id: UUID | None = None

    model_config = {"from_attributes": True}


class ExperimentCreate(BaseModel):
    tenant_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    form_id: UUID | None = None
    channel: Channel
    variants: list[VariantCreate] = Field(..., min_length=2)
    traffic_allocation: dict[str, float] | None = None
    success_metric: SuccessMetric = SuccessMetric.response_rate
    minimum_sample_size: int = Field(100, gt=0)
    confidence_level: float = Field(95.0, gt=50, lt=100)
    method: MethodConfig | None = None


class ExperimentUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    form_id: UUID | None = None
    success_metric: SuccessMetric | None = None
    minimum_sample_size: int | None = Field(None, gt=0)
    confidence_level: float | None = Field(None, gt=50, lt=100)
    traffic_allocation: dict[str, float] | None = None


class CompleteRequest(BaseModel):
    winning_variant_id: UUID | None = None


class ExperimentOut(BaseModel):
    id: UUID
    tenant_id: UUID
    name: str
    description: str | None = None
    form_id: UUID | None = None
    channel: Channel
    status: ExperimentStatus
    traffic_allocation: dict[str, float]
    success_metric: SuccessMetric
    minimum_sample_size: int
    confidence_level: float
    statistical_method: StatisticalMethod
    early_stopping_enabled: bool
    bandit_algorithm: BanditAlgorithm | None = None
    planned_sample_size: int | None = None
    total_checks: int | None = None
    expected_conversion_rate: float | None = None
    prior_confidence: float | None = None
    power_analysis_id: UUID | None = None
    winning_variant_id: UUID | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    variants: list[VariantOut]

    model_config = {"from_attributes": True}


class ExperimentListItem(BaseModel):
    id: UUID
    name: str
    channel: Channel
    status: ExperimentStatus
    statistical_method: StatisticalMethod
    created_at: datetime
    assignment_count: int


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/experiments", response_model=list[ExperimentListItem])
async def list_experiments(
    tenant_id: UUID | None = None,
    status_filter: ExperimentStatus | None = Query(None, alias="status"),
    channel: Channel | None = None,
    db: AsyncSession = Depends(get_db),
) -> list[ExperimentListItem]:
    """List experiments, newest first, with their assignment counts."""
    rows = await ExperimentRegistry(db).list_experiments(tenant_id=tenant_id, status=status_filter, channel=channel)
    return [
        ExperimentListItem(
            id=exp.id,
            name=exp.name,
            channel=exp.channel,
            status=exp.status,
            statistical_method=exp.statistical_method,
            created_at=exp.created_at,
            assignment_count=count,
        )
        for exp, count in rows
    ]


@router.post("/experiments", response_model=ExperimentOut, status_code=status.HTTP_201_CREATED)
async def create_experiment(
    body: ExperimentCreate,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> ExperimentOut:
    """Create a draft experiment with its variants."""
    fields = body.model_dump(exclude={"tenant_id", "name", "channel", "variants", "traffic_allocation", "method"})
    return await ExperimentRegistry(db, config).create(
        tenant_id=body.tenant_id,
        name=body.name,
        channel=body.channel,
        variants=[v.model_dump() for v in body.variants],
        traffic_allocation=body.traffic_allocation,
        method=body.method,
        **fields,
    )


@router.get("/experiments/{experiment_id}", response_model=ExperimentOut)
async def get_experiment(
    experiment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> ExperimentOut:
    """Get a single experiment by ID."""
    return await ExperimentRegistry(db).get(experiment_id)


@router.patch("/experiments/{experiment_id}", response_model=ExperimentOut)
async def update_experiment(
    experiment_id: UUID,
    body: ExperimentUpdate,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> ExperimentOut:
    """Update editable fields of a draft, running or paused experiment."""
    return await ExperimentRegistry(db, config).update(experiment_id, **body.model_dump(exclude_unset=True))


@router.delete("/experiments/{experiment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_experiment(
    experiment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> None:
    """Delete an experiment together with its variants, assignments and stats."""
    await ExperimentRegistry(db).delete(experiment_id)


@router.patch("/experiments/{experiment_id}/variants/{variant_id}", response_model=VariantOut)
async def update_variant(
    experiment_id: UUID,
    variant_id: UUID,
    body: VariantUpdate,
    db: AsyncSession = Depends(get_db),
) -> VariantOut:
    """Edit variant content; refused once the variant has assignments."""
    changes = body.model_dump(exclude_unset=True)
    if "metadata" in changes:
        changes["variant_metadata"] = changes.pop("metadata")
    return await ExperimentRegistry(db).update_variant(experiment_id, variant_id, **changes)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@router.post("/experiments/{experiment_id}/start", response_model=ExperimentOut)
async def start_experiment(
    experiment_id: UUID,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> ExperimentOut:
    return await ExperimentRegistry(db, config).start(experiment_id)


@router.post("/experiments/{experiment_id}/pause", response_model=ExperimentOut)
async def pause_experiment(
    experiment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> ExperimentOut:
    return await ExperimentRegistry(db).pause(experiment_id)


@router.post("/experiments/{experiment_id}/resume", response_model=ExperimentOut)
async def resume_experiment(
    experiment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> ExperimentOut:
    return await ExperimentRegistry(db).resume(experiment_id)


@router.post("/experiments/{experiment_id}/complete", response_model=ExperimentOut)
async def complete_experiment(
    experiment_id: UUID,
    body: CompleteRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> ExperimentOut:
    """Complete the experiment, optionally declaring a winning variant."""
    winner = body.winning_variant_id if body else None
    return await ExperimentRegistry(db).complete(experiment_id, winning_variant_id=winner)
