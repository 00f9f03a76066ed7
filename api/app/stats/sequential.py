"""Group-sequential testing with O'Brien-Fleming boundaries.

Peeking at a fixed-sample test k times inflates the false positive rate.
O'Brien-Fleming boundaries are very strict at early looks and relax to the
fixed-sample critical value once all planned information is in:

    boundary(t) = z_(alpha/2) / sqrt(t)

where ``t`` is the information fraction (observations so far / planned
total).  The alpha spent by look ``t`` follows the Lan-DeMets
O'Brien-Fleming spending function ``2 - 2 * Phi(z_(alpha/2) / sqrt(t))``,
which reaches ``alpha`` at ``t = 1``.
"""

from __future__ import annotations

import math

from scipy import stats as sp_stats

from app.models.sequential import SequentialDecision


def obrien_fleming_boundary(information_fraction: float, alpha: float = 0.05) -> float:
    """Two-sided O'Brien-Fleming z boundary at an information fraction.

    Parameters
    ----------
    information_fraction : float
        Share of planned observations collected, in (0, 1].
    alpha : float
        Overall two-sided significance level.

    Returns
    -------
    float
        Critical |z|; equals the fixed-sample value (1.96 at alpha=0.05) at t=1.
    """
    if not 0 < information_fraction <= 1:
        raise ValueError("information_fraction must be in (0, 1]")
    if not 0 < alpha < 1:
        raise ValueError("alpha must be between 0 and 1 exclusive")
    z_crit = float(sp_stats.norm.ppf(1 - alpha / 2))
    return z_crit / math.sqrt(information_fraction)


def alpha_spent(information_fraction: float, alpha: float = 0.05) -> float:
    """Cumulative alpha spent by ``information_fraction`` (Lan-DeMets OBF)."""
    if information_fraction <= 0:
        return 0.0
    boundary = obrien_fleming_boundary(min(information_fraction, 1.0), alpha)
    return float(2 - 2 * sp_stats.norm.cdf(boundary))


def check_points(planned_total: int, total_checks: int) -> list[int]:
    """Observation counts at which each interim check is due.

    Check ``i`` (1-based) is due once ``round(i / K * planned_total)``
    observations exist; the last one is always ``planned_total``.
    """
    if planned_total <= 0:
        raise ValueError("planned_total must be positive")
    if total_checks <= 0:
        raise ValueError("total_checks must be positive")
    return [round(i / total_checks * planned_total) for i in range(1, total_checks + 1)]


def boundary_curve(total_checks: int, alpha: float = 0.05) -> list[dict]:
    """Boundary and alpha spent at each equally spaced planned check."""
    curve = []
    for i in range(1, total_checks + 1):
        t = i / total_checks
        b = obrien_fleming_boundary(t, alpha)
        curve.append(
            {
                "check_number": i,
                "information_fraction": round(t, 6),
                "boundary_upper": round(b, 6),
                "boundary_lower": round(-b, 6),
                "alpha_spent": round(alpha_spent(t, alpha), 8),
            }
        )
    return curve


def decide(z_statistic: float, boundary_upper: float, boundary_lower: float) -> tuple[SequentialDecision, str]:
    """Apply the stopping rule to one interim z statistic.

    A boundary is crossed only when z lies strictly beyond it; z equal to
    a boundary continues.

    Returns
    -------
    tuple[SequentialDecision, str]
        (decision, human-readable reason)
    """
    if z_statistic > boundary_upper:
        return (
            SequentialDecision.stop_winner,
            f"z={z_statistic:.4f} crossed the upper boundary {boundary_upper:.4f}: treatment is significantly better",
        )
    if z_statistic < boundary_lower:
        return (
            SequentialDecision.stop_futile,
            f"z={z_statistic:.4f} crossed the lower boundary {boundary_lower:.4f}: treatment is significantly worse",
        )
    return (
        SequentialDecision.continue_,
        f"z={z_statistic:.4f} within [{boundary_lower:.4f}, {boundary_upper:.4f}]: continue collecting data",
    )
