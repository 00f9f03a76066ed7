import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Integer, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, utcnow


class SequentialDecision(str, enum.Enum):
    continue_ = "continue"
    stop_winner = "stop_winner"
    stop_futile = "stop_futile"


class SequentialAnalysis(Base):
    """One immutable row per interim check."""

    __tablename__ = "ab_sequential_analysis"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ab_experiments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    check_number: Mapped[int] = mapped_column(Integer, nullable=False)
    total_checks: Mapped[int] = mapped_column(Integer, nullable=False)
    total_assignments: Mapped[int] = mapped_column(Integer, nullable=False)
    information_fraction: Mapped[float] = mapped_column(Float, nullable=False)
    alpha_spent: Mapped[float] = mapped_column(Float, nullable=False)
    z_statistic: Mapped[float | None] = mapped_column(Float, nullable=True)
    boundary_upper: Mapped[float] = mapped_column(Float, nullable=False)
    boundary_lower: Mapped[float] = mapped_column(Float, nullable=False)
    decision: Mapped[SequentialDecision] = mapped_column(
        Enum(SequentialDecision, name="ab_sequential_decision", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    decision_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("experiment_id", "check_number", name="uq_ab_sequential_check_number"),
    )
