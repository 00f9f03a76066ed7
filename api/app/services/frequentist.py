"""Frequentist analyzer: pairwise two-proportion z-tests over every variant pair."""

from __future__ import annotations

import logging
import uuid
from itertools import combinations
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_experiment
from app.core.errors import InsufficientDataError, StatisticalComputationError
from app.services.counts import VariantCounts, variant_counts
from app.stats.frequentist import determine_winner, two_proportion_z_test

logger = logging.getLogger(__name__)


class FrequentistAnalyzer:
    """Read-only analysis from assignment and outcome counts."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def analyze(self, experiment_id: uuid.UUID) -> dict[str, Any]:
        """Per-variant rates, a z-test for each pair in alphabetical order, and the winner readout.

        A variant with no assignments makes the whole result
        ``insufficient_data``; a degenerate pair only marks that comparison.
        ``winner`` tests the leader against the runner-up once both reach the
        experiment's ``minimum_sample_size``.
        """
        experiment = await get_experiment(experiment_id, self.db)
        counts = await variant_counts(self.db, experiment)
        result: dict[str, Any] = {
            "status": "ok",
            "confidence_level": experiment.confidence_level,
            "per_variant": [
                {"variant": c.name, "n": c.n, "conversions": c.conversions, "rate": round(c.rate, 6)}
                for c in counts
            ],
            "comparisons": [],
        }

        try:
            self._require_data(counts)
        except InsufficientDataError as exc:
            result["status"] = "insufficient_data"
            result["message"] = str(exc)
            result["winner"] = self._no_winner(str(exc))
            return result

        confidence = experiment.confidence_level / 100.0
        for a, b in combinations(counts, 2):
            try:
                comparison = two_proportion_z_test(
                    a.name, a.conversions, a.n, b.name, b.conversions, b.n, confidence=confidence
                )
                result["comparisons"].append(comparison.to_dict())
            except StatisticalComputationError as exc:
                logger.warning("Skipping %s vs %s in experiment %s: %s", a.name, b.name, experiment_id, exc)
                result["comparisons"].append({"a": a.name, "b": b.name, "error": str(exc)})

        winner = determine_winner(
            [(c.name, c.conversions, c.n) for c in counts], experiment.minimum_sample_size, confidence
        )
        ids = {c.name: c.variant_id for c in counts}
        winner["variant_id"] = ids.get(winner["winner"])
        result["winner"] = winner
        return result

    @staticmethod
    def _require_data(counts: list[VariantCounts]) -> None:
        empty = [c.name for c in counts if c.n == 0]
        if empty or not counts:
            raise InsufficientDataError(f"No assignments yet for: {', '.join(empty) or 'any variant'}")

    @staticmethod
    def _no_winner(reason: str) -> dict[str, Any]:
        return {
            "winner": None,
            "variant_id": None,
            "runner_up": None,
            "significant": False,
            "lift_pct": None,
            "p_value": None,
            "reason": reason,
        }
