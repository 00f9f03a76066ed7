"""Power analysis for two-proportion tests.

All effects are *absolute* differences in conversion rate: a baseline of
0.10 with ``mde=0.02`` means detecting a move to 0.12.  Sample sizes are
per variant.
"""

from __future__ import annotations

import math

from scipy import optimize as sp_optimize
from scipy import stats as sp_stats

POWER_CURVE_SAMPLE_SIZES = (50, 100, 150, 200, 300, 400, 500, 750, 1000, 1500, 2000, 3000, 4000, 5000)

LARGE_SAMPLE_THRESHOLD = 5000
LONG_DURATION_DAYS = 30
MIN_POWER = 0.80
SMALL_LIFT_PCT = 10.0


def _validate(baseline_rate: float, mde: float, alpha: float) -> None:
    if not 0 < baseline_rate < 1:
        raise ValueError("baseline_rate must be between 0 and 1 exclusive")
    if not 0 < mde < 1:
        raise ValueError("mde must be between 0 and 1 exclusive")
    if baseline_rate + mde >= 1:
        raise ValueError("baseline_rate + mde must be below 1")
    if not 0 < alpha < 1:
        raise ValueError("alpha must be between 0 and 1 exclusive")


def required_sample_size(baseline_rate: float, mde: float, power: float = 0.80, alpha: float = 0.05) -> int:
    """Samples per variant to detect ``mde`` with the given power.

    Formula
    -------
    n = (z_(1-alpha/2) * sqrt(2 p(1-p)) + z_power * sqrt(p1(1-p1) + p2(1-p2)))^2 / (p2 - p1)^2

    where ``p`` is the average of ``p1`` and ``p2``.
    """
    _validate(baseline_rate, mde, alpha)
    if not 0 < power < 1:
        raise ValueError("power must be between 0 and 1 exclusive")
    p1 = baseline_rate
    p2 = baseline_rate + mde
    z_alpha = sp_stats.norm.ppf(1 - alpha / 2)
    z_beta = sp_stats.norm.ppf(power)
    p_bar = (p1 + p2) / 2
    numerator = (
        z_alpha * math.sqrt(2 * p_bar * (1 - p_bar))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)


def achieved_power(n: int, baseline_rate: float, mde: float, alpha: float = 0.05) -> float:
    """Power of a two-sided test with ``n`` samples per variant."""
    _validate(baseline_rate, mde, alpha)
    if n <= 0:
        raise ValueError("n must be positive")
    p1 = baseline_rate
    p2 = baseline_rate + mde
    z_alpha = sp_stats.norm.ppf(1 - alpha / 2)
    p_bar = (p1 + p2) / 2
    se_alt = math.sqrt(p1 * (1 - p1) / n + p2 * (1 - p2) / n)
    se_null = math.sqrt(2 * p_bar * (1 - p_bar) / n)
    z_beta = (abs(p2 - p1) - z_alpha * se_null) / se_alt
    return float(sp_stats.norm.cdf(z_beta))


def minimum_detectable_effect(n: int, baseline_rate: float, power: float = 0.80, alpha: float = 0.05) -> float:
    """Smallest absolute effect detectable with ``n`` samples per variant.

    Solved with Brent's method on ``achieved_power(mde) - power``.  If even
    the largest feasible effect cannot reach ``power``, returns that
    largest effect.
    """
    if not 0 < baseline_rate < 1:
        raise ValueError("baseline_rate must be between 0 and 1 exclusive")
    if n <= 0:
        raise ValueError("n must be positive")

    upper = (1 - baseline_rate) * (1 - 1e-9)
    lower = 1e-9

    def gap(mde: float) -> float:
        return achieved_power(n, baseline_rate, mde, alpha) - power

    if gap(upper) < 0:
        return upper
    if gap(lower) >= 0:
        return lower
    return float(sp_optimize.brentq(gap, lower, upper, xtol=1e-10))


def estimate_duration(sample_size_per_variant: int, variant_count: int, daily_volume: int) -> int:
    """Days needed to collect ``sample_size_per_variant * variant_count`` recipients."""
    if daily_volume <= 0:
        raise ValueError("daily_volume must be positive")
    return math.ceil(sample_size_per_variant * variant_count / daily_volume)


def power_curve(baseline_rate: float, mde: float, alpha: float = 0.05) -> list[dict]:
    """Power at the standard grid of per-variant sample sizes."""
    return [
        {"sample_size": n, "power": round(achieved_power(n, baseline_rate, mde, alpha), 4)}
        for n in POWER_CURVE_SAMPLE_SIZES
    ]


def recommendations(
    sample_size_per_variant: int,
    power: float,
    relative_lift_pct: float | None = None,
    estimated_duration_days: int | None = None,
    daily_volume: int | None = None,
) -> dict:
    """Warnings and a one-line summary for a planned test."""
    items: list[dict] = []

    if sample_size_per_variant > LARGE_SAMPLE_THRESHOLD:
        items.append({
            "type": "warning",
            "message": "Large sample size required. Consider increasing MDE or decreasing power.",
        })
    if estimated_duration_days and estimated_duration_days > LONG_DURATION_DAYS:
        items.append({
            "type": "warning",
            "message": (
                f"Long experiment duration ({estimated_duration_days} days). "
                "Consider increasing daily volume or MDE."
            ),
        })
    if power < MIN_POWER:
        items.append({
            "type": "error",
            "message": "Power below 80%. Increase sample size to reduce false negatives.",
        })
    if relative_lift_pct is not None and relative_lift_pct < SMALL_LIFT_PCT:
        items.append({
            "type": "info",
            "message": f"Detecting small effect ({relative_lift_pct:.1f}% lift) requires large sample.",
        })

    if any(r["type"] in ("warning", "error") for r in items):
        summary = f"Need {sample_size_per_variant} samples per variant. Review warnings before starting."
    elif estimated_duration_days:
        summary = (
            f"Need {sample_size_per_variant} samples per variant "
            f"(~{estimated_duration_days} days at {daily_volume}/day). Ready to start!"
        )
    else:
        lift = f"{relative_lift_pct:.1f}%" if relative_lift_pct is not None else "the target"
        summary = f"Need {sample_size_per_variant} samples per variant to detect {lift} lift with {power:.0%} power."

    return {"recommendations": items, "summary": summary}
