"""Bayesian analyzer: persisted Beta posteriors per variant.

Each outcome is a single atomic ``UPDATE ... SET alpha_posterior =
alpha_posterior + 1`` on one row, so concurrent outcomes for the same
variant never lose an increment.  Summaries (probability of being best,
credible intervals, expected loss) are recomputed on demand from the
stored posteriors and written back to the same rows for reporting.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

import numpy as np
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import EngineConfig
from app.core.dependencies import get_experiment
from app.core.errors import InsufficientDataError, VariantNotFoundError
from app.models.bayesian_stats import BayesianStats
from app.models.experiment import Experiment, Variant
from app.stats.bayesian import BetaBinomial
from app.stats.decisions import generate_recommendation, probability_and_loss, should_stop
from app.stats.priors import resolve_priors

logger = logging.getLogger(__name__)


class BayesianAnalyzer:
    """Beta-Binomial analysis backed by ``ab_bayesian_stats``.

    Parameters
    ----------
    db : AsyncSession
        Session the caller commits.
    config : EngineConfig
        Monte Carlo sample count, decision thresholds and default seed.
    rng : numpy.random.Generator | None
        Generator for Monte Carlo draws; defaults to one seeded from
        ``config.seed``.
    """

    def __init__(
        self,
        db: AsyncSession,
        config: EngineConfig | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.db = db
        self.config = config or EngineConfig()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)

    # ------------------------------------------------------------------
    # State setup and updates
    # ------------------------------------------------------------------

    async def initialize(
        self,
        experiment: Experiment,
        priors: Mapping[str, Mapping[str, float]] | None = None,
    ) -> list[BayesianStats]:
        """Create one stats row per variant that does not have one yet.

        Parameters
        ----------
        experiment : Experiment
            Experiment with its variants loaded.
        priors : Mapping[str, Mapping[str, float]] | None
            Optional ``{variant_name: {"alpha": a, "beta": b}}``.  Without
            it the experiment's elicited prior, or Beta(1, 1), is used.

        Returns
        -------
        list[BayesianStats]
            All rows for the experiment, alphabetical by variant name.
        """
        variants = sorted(experiment.variants, key=lambda v: v.variant_name)
        resolved, source = resolve_priors(
            [v.variant_name for v in variants],
            explicit=priors,
            expected_rate=experiment.expected_conversion_rate,
            confidence=experiment.prior_confidence,
        )

        existing = {row.variant_id for row, _ in await self._rows(experiment.id)}
        for variant in variants:
            if variant.id in existing:
                continue
            prior = resolved[variant.variant_name]
            self.db.add(
                BayesianStats(
                    experiment_id=experiment.id,
                    variant_id=variant.id,
                    alpha_prior=prior.alpha,
                    beta_prior=prior.beta,
                    alpha_posterior=prior.alpha,
                    beta_posterior=prior.beta,
                )
            )
        await self.db.flush()
        logger.info("Initialized Bayesian state for experiment %s (prior=%s)", experiment.id, source)
        return [row for row, _ in await self._rows(experiment.id)]

    async def update_posterior(self, experiment_id: uuid.UUID, variant_id: uuid.UUID, success: bool) -> BayesianStats:
        """Conjugate update for one outcome on one variant, as a single atomic UPDATE."""
        column = BayesianStats.alpha_posterior if success else BayesianStats.beta_posterior
        stmt = (
            update(BayesianStats)
            .where(BayesianStats.experiment_id == experiment_id, BayesianStats.variant_id == variant_id)
            .values({column: column + 1})
            .returning(BayesianStats)
            .execution_options(populate_existing=True)
        )
        row = (await self.db.execute(stmt)).scalar_one_or_none()
        if row is None:
            # No row yet: the variant must belong to the experiment, then lazily initialize
            experiment = await get_experiment(experiment_id, self.db)
            if variant_id not in {v.id for v in experiment.variants}:
                raise VariantNotFoundError(variant_id)
            await self.initialize(experiment)
            row = (await self.db.execute(stmt)).scalar_one()

        logger.debug(
            "Posterior for variant %s now Beta(%.1f, %.1f)", variant_id, row.alpha_posterior, row.beta_posterior
        )
        return row

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def compute_probability_best(self, experiment_id: uuid.UUID) -> list[dict[str, Any]]:
        """Probability of being best, expected loss and credible interval per variant.

        Uses one Monte Carlo matrix of ``config.monte_carlo_samples`` draws
        per variant.  For two variants the exact P(B > A) is added when the
        posterior parameters allow it.  Results are written back to the
        stats rows.
        """
        experiment = await get_experiment(experiment_id, self.db)
        rows = await self._rows(experiment_id)
        if not rows:
            raise InsufficientDataError(f"Experiment {experiment_id} has no Bayesian state")

        models = [BetaBinomial(r.alpha_posterior, r.beta_posterior) for r, _ in rows]
        prob_best, losses = probability_and_loss(models, self.config.monte_carlo_samples, self.rng)
        width = experiment.confidence_level / 100.0

        summaries = []
        for (row, variant), model, p, loss in zip(rows, models, prob_best, losses):
            low, high = model.credible_interval(width)
            row.probability_best = p
            row.expected_loss = loss
            row.credible_interval_lower = low
            row.credible_interval_upper = high
            summaries.append(
                {
                    "variant_id": variant.id,
                    "variant": variant.variant_name,
                    "alpha_prior": row.alpha_prior,
                    "beta_prior": row.beta_prior,
                    "alpha_posterior": row.alpha_posterior,
                    "beta_posterior": row.beta_posterior,
                    "successes": int(round(row.successes)),
                    "failures": int(round(row.failures)),
                    "posterior_mean": round(model.posterior_mean(), 6),
                    "probability_best": round(p, 4),
                    "expected_loss": round(loss, 6),
                    "credible_interval": (round(low, 6), round(high, 6)),
                }
            )

        if len(models) == 2 and float(models[1].alpha).is_integer():
            exact = BetaBinomial.probability_b_beats_a_exact(models[0], models[1])
            summaries[1]["probability_beats_control_exact"] = round(exact, 6)
            summaries[0]["probability_beats_control_exact"] = None

        await self.db.flush()
        return summaries

    async def should_stop(self, experiment_id: uuid.UUID, threshold: float | None = None) -> dict[str, Any]:
        """Stop once every variant has the minimum sample and one is best with ``threshold`` probability."""
        experiment = await get_experiment(experiment_id, self.db)
        summaries = await self.compute_probability_best(experiment_id)
        decision = should_stop(
            [s["probability_best"] for s in summaries],
            [s["successes"] + s["failures"] for s in summaries],
            experiment.minimum_sample_size,
            threshold if threshold is not None else self.config.win_threshold,
        )
        leader = decision.pop("leader_index")
        decision["winning_variant"] = summaries[leader]["variant"] if leader is not None else None
        return decision

    async def results(self, experiment_id: uuid.UUID) -> dict[str, Any]:
        """Full Bayesian report with a recommendation."""
        experiment = await get_experiment(experiment_id, self.db)
        try:
            summaries = await self.compute_probability_best(experiment_id)
        except InsufficientDataError as exc:
            return {"status": "insufficient_data", "message": str(exc), "variants": []}

        prob_best = [s["probability_best"] for s in summaries]
        recommendation = generate_recommendation(
            [s["variant"] for s in summaries],
            prob_best,
            [s["expected_loss"] for s in summaries],
            win_threshold=self.config.win_threshold,
            likely_threshold=self.config.likely_threshold,
        )
        stop = should_stop(
            prob_best,
            [s["successes"] + s["failures"] for s in summaries],
            experiment.minimum_sample_size,
            self.config.win_threshold,
        )
        stop.pop("leader_index")
        return {
            "status": "ok",
            "variants": summaries,
            "recommendation": recommendation,
            "stop": stop,
        }

    # ------------------------------------------------------------------
    # Private query helpers
    # ------------------------------------------------------------------

    async def _rows(self, experiment_id: uuid.UUID) -> list[tuple[BayesianStats, Variant]]:
        result = await self.db.execute(
            select(BayesianStats, Variant)
            .join(Variant, Variant.id == BayesianStats.variant_id)
            .where(BayesianStats.experiment_id == experiment_id)
            .order_by(Variant.variant_name)
        )
        return [(row[0], row[1]) for row in result.all()]
