from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import EngineConfig
from app.core.database import get_db
from app.core.dependencies import get_engine_config, get_experiment
from app.models.assignment import Assignment
from app.services.assignment import AssignmentEngine
from app.stats.engine import StatsEngine

router = APIRouter(tags=["events"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class ExposureRequest(BaseModel):
    recipient_id: str = Field(..., min_length=1, max_length=255)
    recipient_name: str | None = None
    message_id: UUID | None = None


class OutcomeRequest(BaseModel):
    recipient_id: str = Field(..., min_length=1, max_length=255)
    success: bool


class AssignmentOut(BaseModel):
    id: UUID
    experiment_id: UUID
    variant_id: UUID
    variant_name: str
    recipient_id: str
    recipient_name: str | None = None
    message_id: UUID | None = None
    assigned_at: datetime


class OutcomeResponse(BaseModel):
    recorded: bool
    variant_id: UUID
    sequential_check: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _assignment_out(assignment: Assignment, db: AsyncSession) -> AssignmentOut:
    experiment = await get_experiment(assignment.experiment_id, db)
    names = {v.id: v.variant_name for v in experiment.variants}
    return AssignmentOut(
        id=assignment.id,
        experiment_id=assignment.experiment_id,
        variant_id=assignment.variant_id,
        variant_name=names[assignment.variant_id],
        recipient_id=assignment.recipient_id,
        recipient_name=assignment.recipient_name,
        message_id=assignment.message_id,
        assigned_at=assignment.assigned_at,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/experiments/{experiment_id}/exposures", response_model=AssignmentOut)
async def record_exposure(
    experiment_id: UUID,
    body: ExposureRequest,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> AssignmentOut:
    """Assign a recipient to a variant on first exposure.

    Repeat exposures for the same recipient return the original assignment.
    """
    assignment = await StatsEngine(db, config).record_exposure(
        experiment_id, body.recipient_id, recipient_name=body.recipient_name, message_id=body.message_id
    )
    return await _assignment_out(assignment, db)


@router.get("/experiments/{experiment_id}/assignments/{recipient_id}", response_model=AssignmentOut)
async def get_assignment(
    experiment_id: UUID,
    recipient_id: str,
    db: AsyncSession = Depends(get_db),
) -> AssignmentOut:
    """Look up a recipient's existing assignment."""
    assignment = await AssignmentEngine(db).get(experiment_id, recipient_id)
    return await _assignment_out(assignment, db)


@router.post("/experiments/{experiment_id}/outcomes", response_model=OutcomeResponse)
async def record_outcome(
    experiment_id: UUID,
    body: OutcomeRequest,
    db: AsyncSession = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> OutcomeResponse:
    """Record the conversion outcome of an assigned recipient.

    Updates Bayesian posteriors or bandit rewards for running experiments,
    and runs a sequential interim check when the next check point is due.
    """
    result = await StatsEngine(db, config).record_outcome(experiment_id, body.recipient_id, body.success)
    return OutcomeResponse(**result)
