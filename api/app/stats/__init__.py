"""Experiment statistics: pure numpy/scipy building blocks.

Public API:
- TrafficAllocation: validated variant -> percentage split
- BetaBinomial: conjugate Beta-Binomial model for conversion rates
- ThompsonSampler, UCB1, EpsilonGreedy: bandit allocation policies
- two_proportion_z_test, determine_winner: frequentist comparison and readout
- obrien_fleming_boundary, alpha_spent: group-sequential stopping
- required_sample_size, minimum_detectable_effect: power analysis
- probability_and_loss, generate_recommendation: Bayesian decision helpers

The database-backed orchestrator lives in ``app.stats.engine``.
"""

from app.stats.allocation import TrafficAllocation
from app.stats.bandits import EpsilonGreedy, ThompsonSampler, UCB1
from app.stats.bayesian import BetaBinomial
from app.stats.decisions import generate_recommendation, probability_and_loss
from app.stats.frequentist import determine_winner, two_proportion_z_test
from app.stats.power import minimum_detectable_effect, required_sample_size
from app.stats.priors import resolve_priors, user_elicited_prior
from app.stats.sequential import alpha_spent, obrien_fleming_boundary

__all__ = [
    "TrafficAllocation",
    "BetaBinomial",
    "ThompsonSampler",
    "UCB1",
    "EpsilonGreedy",
    "two_proportion_z_test",
    "determine_winner",
    "obrien_fleming_boundary",
    "alpha_spent",
    "required_sample_size",
    "minimum_detectable_effect",
    "probability_and_loss",
    "generate_recommendation",
    "resolve_priors",
    "user_elicited_prior",
]
