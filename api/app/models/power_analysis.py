import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, utcnow


class PowerAnalysis(Base):
    """Immutable record of one sample-size calculation."""

    __tablename__ = "ab_power_analysis"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    experiment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    baseline_rate: Mapped[float] = mapped_column(Float, nullable=False)
    minimum_detectable_effect: Mapped[float] = mapped_column(Float, nullable=False)
    desired_power: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    significance_level: Mapped[float] = mapped_column(Float, nullable=False, default=0.05)
    variant_count: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    required_sample_size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_sample_size: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_volume: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estimated_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
