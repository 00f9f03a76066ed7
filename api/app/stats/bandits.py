"""Multi-armed bandit policies for dynamic traffic allocation.

Three policies share one interface: ``select()`` returns the index of the
arm to serve next and ``allocation()`` returns the share of traffic each
arm currently receives under the policy (fractions summing to 1).

- ``ThompsonSampler``: one draw from each arm's Beta(s + 1, f + 1)
  posterior, highest draw wins.
- ``UCB1``: highest ``mean + sqrt(2 ln N / n_i)``; unpulled arms have an
  infinite bound so every arm is tried once before exploiting.
- ``EpsilonGreedy``: uniform random arm with probability epsilon, else the
  arm with the highest empirical mean.

Arms are passed in alphabetical order and ties go to the earliest arm.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from app.models.experiment import BanditAlgorithm
from app.stats.bayesian import BetaBinomial, RandomSource, as_generator, draw_sample_matrix


@dataclass(frozen=True)
class ArmStats:
    """Observed rewards for one arm."""

    name: str
    successes: int = 0
    failures: int = 0

    @property
    def pulls(self) -> int:
        return self.successes + self.failures

    @property
    def mean_reward(self) -> float:
        return self.successes / self.pulls if self.pulls else 0.0

    def posterior(self) -> BetaBinomial:
        return BetaBinomial(self.successes + 1, self.failures + 1)


class BanditPolicy:
    """Base class for the allocation policies.

    Parameters
    ----------
    arms : list[ArmStats]
        One entry per variant, in alphabetical order.
    rng : int | numpy.random.Generator | None
        Seed or generator used by stochastic policies.
    """

    algorithm: BanditAlgorithm

    def __init__(self, arms: list[ArmStats], rng: RandomSource = None) -> None:
        if not arms:
            raise ValueError("Must provide at least one arm")
        self.arms = arms
        self.rng = as_generator(rng)

    @property
    def total_pulls(self) -> int:
        return sum(a.pulls for a in self.arms)

    def best_known_index(self) -> int:
        """Arm with the highest empirical mean (first on ties)."""
        return int(np.argmax([a.mean_reward for a in self.arms]))

    def select(self) -> int:
        raise NotImplementedError

    def allocation(self) -> list[float]:
        raise NotImplementedError

    def score(self, index: int) -> float | None:
        """Per-arm value stored alongside the state; only UCB1 has one."""
        return None


# ======================================================================
# Thompson Sampling
# ======================================================================

class ThompsonSampler(BanditPolicy):
    """Thompson Sampling over Beta(successes + 1, failures + 1) posteriors."""

    algorithm = BanditAlgorithm.thompson

    def __init__(self, arms: list[ArmStats], rng: RandomSource = None, n_samples: int = 10_000) -> None:
        super().__init__(arms, rng)
        self.n_samples = n_samples
        self.models = [a.posterior() for a in arms]

    def select(self) -> int:
        """Draw one sample from each arm's posterior; return index of the highest."""
        draws = [float(self.rng.beta(m.alpha, m.beta)) for m in self.models]
        return int(np.argmax(draws))

    def allocation(self) -> list[float]:
        """Probability each arm wins a Thompson draw, estimated by Monte Carlo.

        This is exactly the long-run share of traffic Thompson Sampling
        would send to each arm given the current posteriors.
        """
        samples = draw_sample_matrix(self.models, self.n_samples, self.rng)
        winners = np.argmax(samples, axis=1)
        counts = np.bincount(winners, minlength=len(self.models))
        return (counts / self.n_samples).tolist()


# ======================================================================
# UCB1
# ======================================================================

class UCB1(BanditPolicy):
    """Upper Confidence Bound policy (Auer et al., 2002)."""

    algorithm = BanditAlgorithm.ucb

    def __init__(self, arms: list[ArmStats], rng: RandomSource = None, exploration: float = 2.0) -> None:
        super().__init__(arms, rng)
        self.exploration = exploration

    def upper_bounds(self) -> list[float]:
        """``mean + sqrt(c ln N / n_i)`` per arm, ``inf`` for unpulled arms."""
        total = self.total_pulls
        bounds = []
        for arm in self.arms:
            if arm.pulls == 0:
                bounds.append(math.inf)
            else:
                bonus = math.sqrt(self.exploration * math.log(total) / arm.pulls)
                bounds.append(arm.mean_reward + bonus)
        return bounds

    def select(self) -> int:
        return int(np.argmax(self.upper_bounds()))

    def allocation(self) -> list[float]:
        """Empirical pull share; equal split before any pulls."""
        total = self.total_pulls
        if total == 0:
            return [1.0 / len(self.arms)] * len(self.arms)
        return [a.pulls / total for a in self.arms]

    def score(self, index: int) -> float | None:
        bound = self.upper_bounds()[index]
        return None if math.isinf(bound) else bound


# ======================================================================
# Epsilon-greedy
# ======================================================================

class EpsilonGreedy(BanditPolicy):
    """Explore uniformly with probability ``epsilon``, otherwise exploit."""

    algorithm = BanditAlgorithm.epsilon_greedy

    def __init__(self, arms: list[ArmStats], rng: RandomSource = None, epsilon: float = 0.1) -> None:
        super().__init__(arms, rng)
        if not 0 <= epsilon <= 1:
            raise ValueError("epsilon must be in [0, 1]")
        self.epsilon = epsilon

    def select(self) -> int:
        if self.rng.random() < self.epsilon:
            return int(self.rng.integers(len(self.arms)))
        return self.best_known_index()

    def allocation(self) -> list[float]:
        """Exact selection probability: ``1 - eps + eps/k`` for the best arm, ``eps/k`` otherwise."""
        k = len(self.arms)
        best = self.best_known_index()
        explore = self.epsilon / k
        return [(1 - self.epsilon) + explore if i == best else explore for i in range(k)]


# ======================================================================
# Helpers
# ======================================================================

def make_policy(
    algorithm: BanditAlgorithm,
    arms: list[ArmStats],
    rng: RandomSource = None,
    epsilon: float = 0.1,
    n_samples: int = 10_000,
) -> BanditPolicy:
    """Build the policy for ``algorithm``."""
    if algorithm == BanditAlgorithm.thompson:
        return ThompsonSampler(arms, rng=rng, n_samples=n_samples)
    if algorithm == BanditAlgorithm.ucb:
        return UCB1(arms, rng=rng)
    if algorithm == BanditAlgorithm.epsilon_greedy:
        return EpsilonGreedy(arms, rng=rng, epsilon=epsilon)
    raise ValueError(f"Unknown bandit algorithm: {algorithm!r}")


def regret_increment(arms: list[ArmStats], chosen_index: int) -> float:
    """Pseudo-regret of serving ``chosen_index``: best known mean minus its mean.

    Measured on the arm statistics *before* the new reward is applied, so
    the cumulative sum never decreases.
    """
    best = max(a.mean_reward for a in arms)
    return max(best - arms[chosen_index].mean_reward, 0.0)
