import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Integer, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, utcnow
from app.models.experiment import BanditAlgorithm


class BanditState(Base):
    __tablename__ = "ab_bandit_state"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ab_experiments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ab_variants.id", ondelete="CASCADE"), nullable=False
    )
    algorithm: Mapped[BanditAlgorithm] = mapped_column(Enum(BanditAlgorithm, name="ab_bandit_algorithm"), nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mean_reward: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    upper_confidence_bound: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_allocation: Mapped[float] = mapped_column(Float, nullable=False)
    initial_allocation: Mapped[float] = mapped_column(Float, nullable=False)
    pulls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cumulative_reward: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("experiment_id", "variant_id", name="uq_ab_bandit_state_variant"),
    )


class BanditRegret(Base):
    """Append-only pseudo-regret snapshot, one per recorded reward."""

    __tablename__ = "ab_bandit_regret"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ab_experiments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    total_pulls: Mapped[int] = mapped_column(Integer, nullable=False)
    cumulative_regret: Mapped[float] = mapped_column(Float, nullable=False)
    optimal_variant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
