import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, JSONType, TimestampMixin


class ExperimentStatus(str, enum.Enum):
    draft = "draft"
    running = "running"
    paused = "paused"
    completed = "completed"


class Channel(str, enum.Enum):
    email = "email"
    sms = "sms"
    whatsapp = "whatsapp"


class SuccessMetric(str, enum.Enum):
    delivery_rate = "delivery_rate"
    open_rate = "open_rate"
    click_rate = "click_rate"
    response_rate = "response_rate"


class StatisticalMethod(str, enum.Enum):
    frequentist = "frequentist"
    bayesian = "bayesian"
    sequential = "sequential"
    bandit = "bandit"


class BanditAlgorithm(str, enum.Enum):
    thompson = "thompson"
    ucb = "ucb"
    epsilon_greedy = "epsilon_greedy"


class Experiment(TimestampMixin, Base):
    __tablename__ = "ab_experiments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    form_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    channel: Mapped[Channel] = mapped_column(Enum(Channel, name="ab_channel"), nullable=False)
    status: Mapped[ExperimentStatus] = mapped_column(
        Enum(ExperimentStatus, name="ab_experiment_status"), nullable=False, default=ExperimentStatus.draft, index=True
    )
    traffic_allocation: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    success_metric: Mapped[SuccessMetric] = mapped_column(
        Enum(SuccessMetric, name="ab_success_metric"), nullable=False, default=SuccessMetric.response_rate
    )
    minimum_sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    confidence_level: Mapped[float] = mapped_column(Float, nullable=False, default=95.0)
    statistical_method: Mapped[StatisticalMethod] = mapped_column(
        Enum(StatisticalMethod, name="ab_statistical_method"), nullable=False, default=StatisticalMethod.frequentist
    )
    early_stopping_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    bandit_algorithm: Mapped[BanditAlgorithm | None] = mapped_column(
        Enum(BanditAlgorithm, name="ab_bandit_algorithm"), nullable=True
    )
    # Sequential plan: planned assignments per variant and number of interim looks
    planned_sample_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_checks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Bayesian prior elicitation
    expected_conversion_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    prior_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    power_analysis_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("ab_power_analysis.id", ondelete="SET NULL"), nullable=True
    )
    winning_variant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    variants: Mapped[list["Variant"]] = relationship(
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="Variant.variant_name",
        lazy="selectin",
    )

    @property
    def alpha(self) -> float:
        """Two-sided significance level implied by ``confidence_level``."""
        return 1.0 - self.confidence_level / 100.0


class Variant(TimestampMixin, Base):
    __tablename__ = "ab_variants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ab_experiments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant_name: Mapped[str] = mapped_column(String(100), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(500), nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    media_attachments: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    variant_metadata: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    distribution_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    __table_args__ = (
        UniqueConstraint("experiment_id", "variant_name", name="uq_ab_variant_experiment_name"),
    )

    experiment: Mapped[Experiment] = relationship(back_populates="variants")
