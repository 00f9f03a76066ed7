import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, utcnow


class BayesianStats(Base):
    __tablename__ = "ab_bayesian_stats"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ab_experiments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ab_variants.id", ondelete="CASCADE"), nullable=False
    )
    alpha_prior: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    beta_prior: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    alpha_posterior: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    beta_posterior: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    probability_best: Mapped[float | None] = mapped_column(Float, nullable=True)
    credible_interval_lower: Mapped[float | None] = mapped_column(Float, nullable=True)
    credible_interval_upper: Mapped[float | None] = mapped_column(Float, nullable=True)
    expected_loss: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("experiment_id", "variant_id", name="uq_ab_bayesian_stats_variant"),
    )

    @property
    def successes(self) -> float:
        return self.alpha_posterior - self.alpha_prior

    @property
    def failures(self) -> float:
        return self.beta_posterior - self.beta_prior
