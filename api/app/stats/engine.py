"""StatsEngine: orchestrator for inbound experiment events and full results.

Exposure events go through the assignment engine.  Outcome events record
the conversion once per recipient and then feed whichever analyzer the
experiment's ``statistical_method`` needs.  ``analyze_experiment`` bundles
the frequentist comparison with the method-specific report.

This is the main entry point for the events and stats routers.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import numpy as np
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import EngineConfig
from app.core.dependencies import get_experiment
from app.core.errors import InsufficientDataError
from app.models.assignment import Assignment, Outcome
from app.models.experiment import Experiment, ExperimentStatus, StatisticalMethod
from app.services.assignment import AssignmentEngine
from app.services.bandit import BanditAllocator
from app.services.bayesian import BayesianAnalyzer
from app.services.counts import total_assignments
from app.services.frequentist import FrequentistAnalyzer
from app.services.registry import ExperimentRegistry
from app.services.sequential import SequentialAnalyzer

logger = logging.getLogger(__name__)


class StatsEngine:
    """Routes experiment events to the right analyzers.

    Parameters
    ----------
    db : AsyncSession
        Session the caller commits.
    config : EngineConfig
        Engine tuning shared with every analyzer.
    rng : numpy.random.Generator | None
        Shared generator for assignment draws and Monte Carlo work.
    """

    def __init__(
        self,
        db: AsyncSession,
        config: EngineConfig | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.db = db
        self.config = config or EngineConfig()
        self.rng = rng

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def record_exposure(
        self,
        experiment_id: uuid.UUID,
        recipient_id: str,
        recipient_name: str | None = None,
        message_id: uuid.UUID | None = None,
    ) -> Assignment:
        """Assign the recipient on first exposure; repeat exposures return the same row."""
        engine = AssignmentEngine(self.db, self.config, rng=self.rng)
        return await engine.assign(experiment_id, recipient_id, recipient_name=recipient_name, message_id=message_id)

    async def record_outcome(self, experiment_id: uuid.UUID, recipient_id: str, success: bool) -> dict[str, Any]:
        """Record a recipient's conversion outcome and update live analyzer state.

        Steps:
        1. Look up the recipient's assignment (404 if never exposed)
        2. Insert the outcome; a repeat for the same recipient is a no-op
        3. Unless the experiment is completed, feed the method's analyzer:
           bayesian posterior, bandit reward, or a due sequential check
           (checks themselves only run while the experiment is running)

        Returns
        -------
        dict
            ``{"recorded": bool, "variant_id": ..., "sequential_check": ...}``
        """
        # ----------------------------------------------------------
        # 1. Assignment
        # ----------------------------------------------------------
        assignment = await AssignmentEngine(self.db, self.config).get(experiment_id, recipient_id)

        # ----------------------------------------------------------
        # 2. Outcome row, at most one per recipient
        # ----------------------------------------------------------
        outcome = Outcome(
            experiment_id=experiment_id,
            variant_id=assignment.variant_id,
            recipient_id=recipient_id,
            success=success,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(outcome)
        except IntegrityError:
            logger.info("Outcome for %s in %s already recorded; ignoring", recipient_id, experiment_id)
            return {"recorded": False, "variant_id": assignment.variant_id, "sequential_check": None}

        # ----------------------------------------------------------
        # 3. Live analyzer state
        # ----------------------------------------------------------
        experiment = await get_experiment(experiment_id, self.db)
        check = None
        if experiment.status != ExperimentStatus.completed:
            check = await self._dispatch(experiment, assignment.variant_id, success)

        logger.debug("Outcome %s for %s in %s", success, recipient_id, experiment_id)
        return {"recorded": True, "variant_id": assignment.variant_id, "sequential_check": check}

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def analyze_experiment(self, experiment_id: uuid.UUID) -> dict[str, Any]:
        """Frequentist comparison plus the report for the experiment's own method."""
        experiment = await get_experiment(experiment_id, self.db)
        method = experiment.statistical_method

        analysis: dict[str, Any] = {
            "experiment_id": experiment.id,
            "name": experiment.name,
            "status": experiment.status.value,
            "statistical_method": method.value,
            "total_assignments": await total_assignments(self.db, experiment_id),
            "winning_variant_id": experiment.winning_variant_id,
            "frequentist": await self.method_results(experiment_id, StatisticalMethod.frequentist),
            "bayesian": None,
            "sequential": None,
            "bandit": None,
        }
        if method != StatisticalMethod.frequentist:
            analysis[method.value] = await self.method_results(experiment_id, method)
        return analysis

    async def method_results(self, experiment_id: uuid.UUID, method: StatisticalMethod) -> dict[str, Any]:
        """Report of a single analyzer, regardless of the experiment's configured method.

        Missing Bayesian or bandit state is reported as ``insufficient_data``.
        """
        if method == StatisticalMethod.frequentist:
            return await FrequentistAnalyzer(self.db).analyze(experiment_id)
        if method == StatisticalMethod.bayesian:
            return await self._bayesian().results(experiment_id)
        if method == StatisticalMethod.sequential:
            return await SequentialAnalyzer(self.db, self.config).results(experiment_id)
        try:
            return {"status": "ok", **await self._bandit().results(experiment_id)}
        except InsufficientDataError as exc:
            return {"status": "insufficient_data", "message": str(exc)}

    # ------------------------------------------------------------------
    # Early stopping
    # ------------------------------------------------------------------

    async def check_and_stop(self, experiment_id: uuid.UUID) -> dict[str, Any]:
        """Check for a winner and complete the experiment when early stopping is on.

        Frequentist experiments stop on a significant winner from
        ``FrequentistAnalyzer``; Bayesian ones on ``should_stop``.
        Sequential experiments stop through their own scheduled checks and
        bandits never stop on a winner, so both only report.  The experiment
        is completed only if ``early_stopping_enabled`` is set and it is
        running or paused.

        Returns
        -------
        dict
            ``{"should_stop", "stopped", "winning_variant", "winning_variant_id", "reason"}``
        """
        experiment = await get_experiment(experiment_id, self.db)
        method = experiment.statistical_method
        decision: dict[str, Any] = {
            "should_stop": False,
            "stopped": False,
            "winning_variant": None,
            "winning_variant_id": None,
            "reason": "",
        }

        if method == StatisticalMethod.frequentist:
            winner = (await FrequentistAnalyzer(self.db).analyze(experiment_id))["winner"]
            decision["reason"] = winner["reason"]
            if winner["significant"]:
                decision.update(
                    should_stop=True, winning_variant=winner["winner"], winning_variant_id=winner["variant_id"]
                )
        elif method == StatisticalMethod.bayesian:
            try:
                stop = await self._bayesian().should_stop(experiment_id)
            except InsufficientDataError as exc:
                decision["reason"] = str(exc)
            else:
                decision["reason"] = stop["reason"]
                if stop["should_stop"]:
                    ids = {v.variant_name: v.id for v in experiment.variants}
                    decision.update(
                        should_stop=True,
                        winning_variant=stop["winning_variant"],
                        winning_variant_id=ids.get(stop["winning_variant"]),
                    )
        elif method == StatisticalMethod.sequential:
            decision["reason"] = "Sequential experiments stop at their scheduled checks"
        else:
            decision["reason"] = "Bandit experiments keep reallocating traffic and do not stop on a winner"

        stoppable = experiment.status in (ExperimentStatus.running, ExperimentStatus.paused)
        if decision["should_stop"] and experiment.early_stopping_enabled and stoppable:
            await ExperimentRegistry(self.db, self.config).complete(
                experiment_id, winning_variant_id=decision["winning_variant_id"]
            )
            decision["stopped"] = True

        logger.info(
            "Winner check for %s: should_stop=%s stopped=%s winner=%s",
            experiment_id, decision["should_stop"], decision["stopped"], decision["winning_variant"],
        )
        return decision

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _dispatch(self, experiment: Experiment, variant_id: uuid.UUID, success: bool) -> dict[str, Any] | None:
        method = experiment.statistical_method
        if method == StatisticalMethod.bayesian:
            await self._bayesian().update_posterior(experiment.id, variant_id, success)
        elif method == StatisticalMethod.bandit:
            await self._bandit().record_reward(experiment.id, variant_id, int(success))
        elif method == StatisticalMethod.sequential:
            return await SequentialAnalyzer(self.db, self.config).auto_check_if_needed(experiment.id)
        return None

    def _bayesian(self) -> BayesianAnalyzer:
        return BayesianAnalyzer(self.db, self.config, rng=self.rng)

    def _bandit(self) -> BanditAllocator:
        return BanditAllocator(self.db, self.config, rng=self.rng)
