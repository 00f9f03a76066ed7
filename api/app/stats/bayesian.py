"""Conjugate Beta-Binomial model for conversion rate estimation.

The default prior is the uniform Beta(1, 1).  The model is immutable:
``update()`` returns a *new* ``BetaBinomial``, so the posterior after a set
of outcomes depends only on the success and failure totals, never on the
order they arrived in.

Every stochastic helper takes either a seed or a ``numpy.random.Generator``
so callers (and tests) can make Monte Carlo results reproducible.
"""

from __future__ import annotations

import math

import numpy as np
from scipy import special as sp_special
from scipy import stats as sp_stats

RandomSource = int | np.random.Generator | None


def as_generator(source: RandomSource) -> np.random.Generator:
    """Return ``source`` if it is already a Generator, else seed a new one."""
    if isinstance(source, np.random.Generator):
        return source
    return np.random.default_rng(source)


class BetaBinomial:
    """Immutable Beta-Binomial conjugate model.

    Parameters
    ----------
    prior_alpha : float
        Alpha parameter of the Beta prior (pseudo-successes).  Default 1.
    prior_beta : float
        Beta parameter of the Beta prior (pseudo-failures).  Default 1.
    """

    __slots__ = ("alpha", "beta")

    def __init__(self, prior_alpha: float = 1.0, prior_beta: float = 1.0) -> None:
        if prior_alpha <= 0 or prior_beta <= 0:
            raise ValueError("Alpha and beta must be positive")
        self.alpha = float(prior_alpha)
        self.beta = float(prior_beta)

    # ------------------------------------------------------------------
    # Posterior update (returns new instance, immutable)
    # ------------------------------------------------------------------

    def update(self, successes: int, failures: int) -> BetaBinomial:
        """Return a **new** BetaBinomial after observing outcomes.

        Parameters
        ----------
        successes : int
            Number of conversions observed.
        failures : int
            Number of non-conversions observed.

        Returns
        -------
        BetaBinomial
            Model with ``alpha + successes`` and ``beta + failures``.
        """
        if successes < 0 or failures < 0:
            raise ValueError("successes and failures must be non-negative")
        return BetaBinomial(
            prior_alpha=self.alpha + successes,
            prior_beta=self.beta + failures,
        )

    # ------------------------------------------------------------------
    # Posterior summaries
    # ------------------------------------------------------------------

    def posterior_mean(self) -> float:
        """Expected value of the posterior Beta distribution: alpha / (alpha + beta)."""
        return self.alpha / (self.alpha + self.beta)

    def posterior_variance(self) -> float:
        """Variance of the posterior Beta distribution.

        Var = alpha * beta / ((alpha + beta)^2 * (alpha + beta + 1))
        """
        ab = self.alpha + self.beta
        return (self.alpha * self.beta) / (ab * ab * (ab + 1))

    def credible_interval(self, width: float = 0.95) -> tuple[float, float]:
        """Equal-tailed credible interval for the conversion rate.

        Quantiles of the posterior at (1 - width) / 2 and 1 - (1 - width) / 2.

        Parameters
        ----------
        width : float
            Width of the credible interval, e.g. 0.95 for 95%.

        Returns
        -------
        tuple[float, float]
            (lower_bound, upper_bound)
        """
        if not 0 < width < 1:
            raise ValueError("width must be between 0 and 1 exclusive")
        lower_tail = (1 - width) / 2
        dist = sp_stats.beta(self.alpha, self.beta)
        return (float(dist.ppf(lower_tail)), float(dist.ppf(1 - lower_tail)))

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    @staticmethod
    def probability_b_beats_a_exact(model_a: BetaBinomial, model_b: BetaBinomial) -> float:
        """Closed-form P(theta_B > theta_A) for an integer ``model_b.alpha``.

        Sums ``B(aA + i, bA + bB) / ((bB + i) B(1 + i, bB) B(aA, bA))`` for
        i in [0, aB), evaluated in log space.

        Raises
        ------
        ValueError
            If ``model_b.alpha`` is not a whole number.
        """
        if not float(model_b.alpha).is_integer():
            raise ValueError("exact comparison needs an integer alpha for model_b")
        a_a, b_a, a_b, b_b = model_a.alpha, model_a.beta, int(model_b.alpha), model_b.beta
        i = np.arange(a_b, dtype=float)
        log_terms = (
            sp_special.betaln(a_a + i, b_a + b_b)
            - np.log(b_b + i)
            - sp_special.betaln(1 + i, b_b)
            - sp_special.betaln(a_a, b_a)
        )
        total = float(np.exp(sp_special.logsumexp(log_terms)))
        return min(max(total, 0.0), 1.0)

    # ------------------------------------------------------------------
    # Repr / equality
    # ------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BetaBinomial):
            return NotImplemented
        return math.isclose(self.alpha, other.alpha) and math.isclose(self.beta, other.beta)

    def __hash__(self) -> int:
        return hash((round(self.alpha, 9), round(self.beta, 9)))

    def __repr__(self) -> str:
        return f"BetaBinomial(alpha={self.alpha:.3f}, beta={self.beta:.3f})"


# ======================================================================
# Shared utility
# ======================================================================

def draw_sample_matrix(
    models: list[BetaBinomial],
    n_samples: int,
    rng: RandomSource = None,
) -> np.ndarray:
    """Draw a (n_samples, n_variants) matrix from a list of BetaBinomial posteriors.

    Shared by ``probability_and_loss`` and ``ThompsonSampler`` to avoid
    duplicating the sampling pattern.
    """
    gen = as_generator(rng)
    return np.column_stack(
        [gen.beta(m.alpha, m.beta, size=n_samples) for m in models]
    )
