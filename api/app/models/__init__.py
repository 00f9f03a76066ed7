from app.models.assignment import Assignment, Outcome
from app.models.bandit import BanditRegret, BanditState
from app.models.base import Base, TimestampMixin
from app.models.bayesian_stats import BayesianStats
from app.models.experiment import (
    BanditAlgorithm,
    Channel,
    Experiment,
    ExperimentStatus,
    StatisticalMethod,
    SuccessMetric,
    Variant,
)
from app.models.power_analysis import PowerAnalysis
from app.models.sequential import SequentialAnalysis, SequentialDecision

__all__ = [
    "Base",
    "TimestampMixin",
    "Assignment",
    "BanditAlgorithm",
    "BanditRegret",
    "BanditState",
    "BayesianStats",
    "Channel",
    "Experiment",
    "ExperimentStatus",
    "Outcome",
    "PowerAnalysis",
    "SequentialAnalysis",
    "SequentialDecision",
    "StatisticalMethod",
    "SuccessMetric",
    "Variant",
]
