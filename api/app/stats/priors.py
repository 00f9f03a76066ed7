"""Prior selection for the Bayesian analyzer.

Three sources of prior information, in priority order:
1. Explicit: per-variant ``{alpha, beta}`` supplied when the analyzer is initialized
2. User-elicited: expected rate + confidence stored on the experiment
3. Default: the uniform Beta(1, 1)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Optional

from app.stats.bayesian import BetaBinomial

logger = logging.getLogger(__name__)

DEFAULT_PRIOR = BetaBinomial(prior_alpha=1.0, prior_beta=1.0)


# ======================================================================
# User-elicited prior
# ======================================================================

def user_elicited_prior(expected_rate: float, confidence: float) -> BetaBinomial:
    """Build a BetaBinomial prior from a user-specified expected rate and confidence.

    Parameters
    ----------
    expected_rate : float
        Expected conversion rate (0 < rate < 1).
    confidence : float
        Prior strength in pseudo-observations.
        Higher = more confident, tighter prior.

    Returns
    -------
    BetaBinomial
        Prior with alpha = rate * confidence, beta = (1-rate) * confidence.
    """
    if not (0 < expected_rate < 1):
        raise ValueError("expected_rate must be between 0 and 1 exclusive")
    if confidence <= 0:
        raise ValueError("confidence must be positive")

    alpha = expected_rate * confidence
    beta = (1 - expected_rate) * confidence
    return BetaBinomial(prior_alpha=max(alpha, 0.01), prior_beta=max(beta, 0.01))


# ======================================================================
# Resolver (fallback chain)
# ======================================================================

def resolve_priors(
    variant_names: list[str],
    explicit: Optional[Mapping[str, Mapping[str, float]]] = None,
    expected_rate: Optional[float] = None,
    confidence: Optional[float] = None,
) -> tuple[dict[str, BetaBinomial], str]:
    """Resolve a prior for every variant via the fallback chain.

    Returns
    -------
    tuple[dict[str, BetaBinomial], str]
        (priors by variant name, source) where source is
        "explicit" | "user_specified" | "default"
    """
    # 1. Explicit per-variant priors
    if explicit:
        unknown = set(explicit) - set(variant_names)
        if unknown:
            raise ValueError(f"Priors given for unknown variants: {sorted(unknown)}")
        priors = {}
        for name in variant_names:
            given = explicit.get(name)
            if given is None:
                priors[name] = DEFAULT_PRIOR
            else:
                priors[name] = BetaBinomial(prior_alpha=given["alpha"], prior_beta=given["beta"])
        return priors, "explicit"

    # 2. User-elicited
    if expected_rate is not None and confidence is not None:
        try:
            prior = user_elicited_prior(expected_rate, confidence)
            return {name: prior for name in variant_names}, "user_specified"
        except ValueError:
            logger.warning(
                "Ignoring invalid elicited prior (rate=%s, confidence=%s)", expected_rate, confidence
            )

    # 3. Uniform default
    return {name: DEFAULT_PRIOR for name in variant_names}, "default"
