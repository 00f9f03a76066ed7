"""Per-variant exposure and conversion counts, shared by the analyzers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.assignment import Assignment, Outcome
from app.models.experiment import Experiment


@dataclass(frozen=True)
class VariantCounts:
    variant_id: uuid.UUID
    name: str
    n: int
    conversions: int

    @property
    def rate(self) -> float:
        return self.conversions / self.n if self.n else 0.0


async def variant_counts(db: AsyncSession, experiment: Experiment) -> list[VariantCounts]:
    """Assignments and successful outcomes per variant, alphabetical by name.

    Variants without any assignment are included with zero counts.
    """
    assigned = await db.execute(
        select(Assignment.variant_id, func.count())
        .where(Assignment.experiment_id == experiment.id)
        .group_by(Assignment.variant_id)
    )
    n_by_variant = {row[0]: row[1] for row in assigned.all()}

    converted = await db.execute(
        select(Outcome.variant_id, func.count())
        .where(Outcome.experiment_id == experiment.id, Outcome.success.is_(True))
        .group_by(Outcome.variant_id)
    )
    conv_by_variant = {row[0]: row[1] for row in converted.all()}

    return [
        VariantCounts(
            variant_id=v.id,
            name=v.variant_name,
            n=n_by_variant.get(v.id, 0),
            conversions=conv_by_variant.get(v.id, 0),
        )
        for v in sorted(experiment.variants, key=lambda v: v.variant_name)
    ]


async def total_assignments(db: AsyncSession, experiment_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count()).select_from(Assignment).where(Assignment.experiment_id == experiment_id)
    )
    return result.scalar() or 0
