"""Expected-loss computation and the Bayesian stop / recommendation rules.

Expected loss is the Bayesian answer to "how much conversion rate am I
leaving on the table if I pick this variant and it is not the best?".
Together with the probability of being best it drives the recommendation
returned by the Bayesian analyzer.
"""

from __future__ import annotations

import numpy as np

from app.stats.bayesian import BetaBinomial, RandomSource, draw_sample_matrix


# ======================================================================
# Probability of being best and expected loss
# ======================================================================

def probability_and_loss(
    models: list[BetaBinomial],
    n_samples: int = 10_000,
    rng: RandomSource = None,
) -> tuple[list[float], list[float]]:
    """Probability of being best and expected loss from one shared sample matrix.

    For variant *i*, expected loss is defined as::

        E[ max_j(theta_j) - theta_i ]

    i.e. the average shortfall of variant *i* against the best simulated
    draw.  A lower value means less risk in committing to that variant.

    Parameters
    ----------
    models : list[BetaBinomial]
        One posterior per variant.
    n_samples : int
        Monte Carlo draws.
    rng : int | numpy.random.Generator | None
        Seed or generator for reproducibility.

    Returns
    -------
    tuple[list[float], list[float]]
        P(best) per variant (sums to 1.0) and expected loss per variant.
    """
    samples = draw_sample_matrix(models, n_samples, rng)
    winners = np.argmax(samples, axis=1)
    prob_best = (np.bincount(winners, minlength=len(models)) / n_samples).tolist()
    losses = np.mean(np.max(samples, axis=1, keepdims=True) - samples, axis=0).tolist()
    return prob_best, losses


# ======================================================================
# Stop rule and recommendation
# ======================================================================

def should_stop(
    probability_best: list[float],
    sample_sizes: list[int],
    minimum_sample_size: int,
    threshold: float = 0.95,
) -> dict:
    """Decide whether a Bayesian test has enough evidence to stop.

    Stops only once every variant has at least ``minimum_sample_size``
    observations and some variant's probability of being best reaches
    ``threshold``.

    Returns
    -------
    dict
        should_stop: bool, reason: str, leader_index: int | None
    """
    if not probability_best:
        return {"should_stop": False, "reason": "no_variants", "leader_index": None}

    smallest = min(sample_sizes) if sample_sizes else 0
    if smallest < minimum_sample_size:
        return {
            "should_stop": False,
            "reason": f"minimum sample size not reached ({smallest}/{minimum_sample_size})",
            "leader_index": None,
        }

    leader = int(np.argmax(probability_best))
    if probability_best[leader] >= threshold:
        return {
            "should_stop": True,
            "reason": f"probability of being best {probability_best[leader]:.3f} >= {threshold}",
            "leader_index": leader,
        }
    return {
        "should_stop": False,
        "reason": f"highest probability of being best {probability_best[leader]:.3f} < {threshold}",
        "leader_index": leader,
    }


def generate_recommendation(
    variant_names: list[str],
    probability_best: list[float],
    expected_losses: list[float],
    win_threshold: float = 0.95,
    likely_threshold: float = 0.80,
) -> dict:
    """Turn probability-of-best into an action.

    - ``declare_winner``: leader's probability of being best >= win_threshold
    - ``likely_winner``: leader's probability >= likely_threshold
    - ``continue``: otherwise

    Returns
    -------
    dict
        action, winning_variant, probability, expected_loss, message
    """
    if not variant_names:
        return {
            "action": "continue",
            "winning_variant": None,
            "probability": None,
            "expected_loss": None,
            "message": "No variants to compare.",
        }

    leader = int(np.argmax(probability_best))
    name = variant_names[leader]
    prob = float(probability_best[leader])
    loss = float(expected_losses[leader])

    if prob >= win_threshold:
        action = "declare_winner"
        message = f"{name} is the winner with {prob:.1%} probability of being best."
    elif prob >= likely_threshold:
        action = "likely_winner"
        message = f"{name} is likely the best ({prob:.1%}). Collect more data to confirm."
    else:
        action = "continue"
        message = f"No clear winner yet; {name} leads with {prob:.1%}. Keep the test running."

    return {
        "action": action,
        "winning_variant": name if action != "continue" else None,
        "probability": round(prob, 4),
        "expected_loss": round(loss, 6),
        "message": message,
    }
