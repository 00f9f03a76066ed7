"""Two-proportion z-test for conversion rates.

The test statistic uses the pooled variance under the null hypothesis of
equal rates; the confidence interval for the difference uses the unpooled
standard error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from scipy import stats as sp_stats

from app.core.errors import InsufficientDataError, StatisticalComputationError


@dataclass(frozen=True)
class ProportionComparison:
    """Result of comparing variant ``b`` against variant ``a``."""

    a: str
    b: str
    rate_a: float
    rate_b: float
    difference: float
    z_stat: float
    p_value: float
    ci_low: float
    ci_high: float
    significant: bool

    def to_dict(self) -> dict:
        return {
            "a": self.a,
            "b": self.b,
            "rate_a": round(self.rate_a, 6),
            "rate_b": round(self.rate_b, 6),
            "difference": round(self.difference, 6),
            "z_stat": round(self.z_stat, 6),
            "p_value": round(self.p_value, 6),
            "ci_low": round(self.ci_low, 6),
            "ci_high": round(self.ci_high, 6),
            "significant": self.significant,
        }


def z_critical(confidence: float) -> float:
    """Two-sided critical value, e.g. 1.96 for ``confidence=0.95``."""
    if not 0 < confidence < 1:
        raise ValueError("confidence must be between 0 and 1 exclusive")
    return float(sp_stats.norm.ppf(1 - (1 - confidence) / 2))


def pooled_z_statistic(conv_a: int, n_a: int, conv_b: int, n_b: int) -> float:
    """z statistic of (rate_b - rate_a) under the pooled null variance.

    Raises
    ------
    InsufficientDataError
        If either group has no observations.
    StatisticalComputationError
        If the pooled variance is zero (all successes or all failures).
    """
    if n_a <= 0 or n_b <= 0:
        raise InsufficientDataError("Both groups need at least one observation")
    p_a = conv_a / n_a
    p_b = conv_b / n_b
    p_pool = (conv_a + conv_b) / (n_a + n_b)
    se = math.sqrt(p_pool * (1 - p_pool) * (1 / n_a + 1 / n_b))
    if se == 0 or not math.isfinite(se):
        raise StatisticalComputationError(
            f"Pooled variance is zero (pooled rate {p_pool:g}); z statistic is undefined"
        )
    return (p_b - p_a) / se


def two_proportion_z_test(
    a: str,
    conv_a: int,
    n_a: int,
    b: str,
    conv_b: int,
    n_b: int,
    confidence: float = 0.95,
) -> ProportionComparison:
    """Compare conversion rates of ``b`` against ``a``.

    Parameters
    ----------
    a, b : str
        Variant names.
    conv_a, conv_b : int
        Conversions per variant.
    n_a, n_b : int
        Observations per variant.
    confidence : float
        Confidence level of the interval, e.g. 0.95.

    Returns
    -------
    ProportionComparison
        Two-sided p-value and CI for ``rate_b - rate_a``.
    """
    z = pooled_z_statistic(conv_a, n_a, conv_b, n_b)
    p_value = float(2 * sp_stats.norm.sf(abs(z)))
    if math.isnan(p_value):
        raise StatisticalComputationError("p-value is NaN")

    p_a = conv_a / n_a
    p_b = conv_b / n_b
    diff = p_b - p_a
    se_unpooled = math.sqrt(p_a * (1 - p_a) / n_a + p_b * (1 - p_b) / n_b)
    margin = z_critical(confidence) * se_unpooled

    return ProportionComparison(
        a=a,
        b=b,
        rate_a=p_a,
        rate_b=p_b,
        difference=diff,
        z_stat=float(z),
        p_value=p_value,
        ci_low=diff - margin,
        ci_high=diff + margin,
        significant=p_value < (1 - confidence),
    )


# ======================================================================
# Winner determination
# ======================================================================

def determine_winner(
    variants: list[tuple[str, int, int]],
    minimum_sample_size: int,
    confidence: float = 0.95,
) -> dict:
    """Test the best variant by observed rate against the runner-up.

    Ties in rate keep the input order, so callers passing variants
    alphabetically get a deterministic leader.

    Parameters
    ----------
    variants : list[tuple[str, int, int]]
        ``(name, conversions, n)`` per variant.
    minimum_sample_size : int
        Both the leader and the runner-up need at least this many observations.
    confidence : float
        Confidence level of the z-test, e.g. 0.95.

    Returns
    -------
    dict
        winner (name or None), runner_up, significant, lift_pct, p_value, reason
    """
    summary = {"winner": None, "runner_up": None, "significant": False, "lift_pct": None, "p_value": None}
    if len(variants) < 2:
        return {**summary, "reason": "Need at least 2 variants to determine a winner"}

    ranked = sorted(variants, key=lambda v: v[1] / v[2] if v[2] else 0.0, reverse=True)
    (best, best_conv, best_n), (second, second_conv, second_n) = ranked[0], ranked[1]
    summary["runner_up"] = second
    if min(best_n, second_n) < minimum_sample_size:
        return {
            **summary,
            "reason": f"Insufficient sample size: need at least {minimum_sample_size} per variant "
            f"({best}: {best_n}, {second}: {second_n})",
        }

    try:
        comparison = two_proportion_z_test(second, second_conv, second_n, best, best_conv, best_n, confidence)
    except StatisticalComputationError as exc:
        return {**summary, "reason": str(exc)}

    if comparison.rate_a > 0:
        summary["lift_pct"] = round(comparison.difference / comparison.rate_a * 100, 4)
    summary["p_value"] = round(comparison.p_value, 6)

    if comparison.significant and comparison.difference > 0:
        lift = f"{summary['lift_pct']:.1f}% relative lift" if summary["lift_pct"] is not None else "a lift"
        return {
            **summary,
            "winner": best,
            "significant": True,
            "reason": f"{best} is the significant winner over {second} with {lift} (p={comparison.p_value:.4f})",
        }
    return {
        **summary,
        "reason": f"No significant difference between {best} and {second} yet (p={comparison.p_value:.4f})",
    }
