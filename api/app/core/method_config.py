"""Per-method experiment configuration, validated at the API boundary.

``MethodConfig`` is a tagged union on ``method``; the registry copies the
validated fields onto typed ``Experiment`` columns so no analyzer ever
branches on an unchecked string.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, model_validator

from app.models.experiment import BanditAlgorithm


class BetaPrior(BaseModel):
    alpha: float = Field(1.0, gt=0)
    beta: float = Field(1.0, gt=0)


class FrequentistConfig(BaseModel):
    method: Literal["frequentist"] = "frequentist"
    # Complete the experiment once check_and_stop finds a significant winner
    early_stopping_enabled: bool = False


class BayesianConfig(BaseModel):
    method: Literal["bayesian"] = "bayesian"
    # Explicit prior per variant name; missing variants get Beta(1, 1)
    priors: dict[str, BetaPrior] | None = None
    expected_conversion_rate: float | None = Field(None, gt=0, lt=1)
    prior_confidence: float | None = Field(None, gt=0)
    early_stopping_enabled: bool = False

    @model_validator(mode="after")
    def _elicitation_pair(self) -> "BayesianConfig":
        if (self.expected_conversion_rate is None) != (self.prior_confidence is None):
            raise ValueError("expected_conversion_rate and prior_confidence must be given together")
        return self


class SequentialConfig(BaseModel):
    method: Literal["sequential"] = "sequential"
    planned_sample_size: int = Field(..., gt=0, description="Planned assignments per variant")
    total_checks: int | None = Field(None, gt=0, le=50)
    early_stopping_enabled: bool = True


class BanditConfig(BaseModel):
    method: Literal["bandit"] = "bandit"
    algorithm: BanditAlgorithm = BanditAlgorithm.thompson


MethodConfig = Annotated[
    Union[FrequentistConfig, BayesianConfig, SequentialConfig, BanditConfig],
    Field(discriminator="method"),
]
