"""Sequential analyzer: planned interim checks with O'Brien-Fleming stopping.

The first two variants in alphabetical order are compared; the first is the
control and a positive z favors the second (treatment).  Each check appends
one immutable ``ab_sequential_analysis`` row numbered 1..K.  Checks run
under a per-experiment advisory lock so concurrent triggers cannot both
write a decision for the same check number.
"""

from __future__ import annotations

import enum
import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import EngineConfig
from app.core.dependencies import get_experiment, lock_experiment
from app.core.errors import SequentialStateError, StatisticalComputationError
from app.models.experiment import Experiment, ExperimentStatus, StatisticalMethod
from app.models.sequential import SequentialAnalysis, SequentialDecision
from app.services.counts import variant_counts
from app.services.registry import ExperimentRegistry
from app.stats import sequential as obf
from app.stats.frequentist import pooled_z_statistic

logger = logging.getLogger(__name__)


class SequentialState(str, enum.Enum):
    not_started = "not_started"
    checking = "checking"
    stopped_winner = "stopped_winner"
    stopped_futile = "stopped_futile"
    completed_planned = "completed_planned"


TERMINAL_STATES = frozenset(
    {SequentialState.stopped_winner, SequentialState.stopped_futile, SequentialState.completed_planned}
)


class SequentialAnalyzer:
    """Group-sequential testing over the experiment's planned sample.

    Parameters
    ----------
    db : AsyncSession
        Session the caller commits.
    config : EngineConfig
        Supplies the default number of planned checks.
    """

    def __init__(self, db: AsyncSession, config: EngineConfig | None = None) -> None:
        self.db = db
        self.config = config or EngineConfig()

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    async def initialize(
        self,
        experiment_id: uuid.UUID,
        planned_sample_size: int,
        total_checks: int | None = None,
    ) -> dict[str, Any]:
        """Store the plan on the experiment and return its check points.

        ``planned_sample_size`` is per variant; the planned total covers
        the two compared variants.
        """
        if planned_sample_size <= 0:
            raise ValueError("planned_sample_size must be positive")
        total_checks = total_checks or self.config.default_total_checks

        experiment = await get_experiment(experiment_id, self.db)
        if await self.history(experiment_id):
            raise SequentialStateError("Cannot re-plan a sequential test after interim checks have run")

        experiment.statistical_method = StatisticalMethod.sequential
        experiment.planned_sample_size = planned_sample_size
        experiment.total_checks = total_checks
        experiment.early_stopping_enabled = True
        await self.db.flush()

        planned_total = self._planned_total(experiment)
        points = obf.check_points(planned_total, total_checks)
        logger.info(
            "Planned sequential test for %s: %d checks over %d assignments", experiment_id, total_checks, planned_total
        )
        return {
            "planned_sample_size": planned_sample_size,
            "planned_total": planned_total,
            "total_checks": total_checks,
            "check_points": points,
            "boundaries": obf.boundary_curve(total_checks, experiment.alpha),
        }

    # ------------------------------------------------------------------
    # Interim check
    # ------------------------------------------------------------------

    async def perform_interim_check(self, experiment_id: uuid.UUID) -> dict[str, Any]:
        """Run the next interim check and record its decision.

        Steps:
        1. Take the per-experiment lock
        2. Verify stored check numbers are exactly 1..k
        3. Refuse if a stop decision exists or all planned checks ran
        4. Compute information fraction, boundary and z statistic
        5. Append the check row; complete the experiment on a stop

        Returns
        -------
        dict
            The recorded check, or ``{"status": "insufficient_data"}`` when
            either arm has no assignments yet (no check number is used).
        """
        experiment = await get_experiment(experiment_id, self.db)
        if experiment.planned_sample_size is None:
            raise SequentialStateError(f"Experiment {experiment_id} has no sequential plan")

        # ----------------------------------------------------------
        # 1. Serialize checks for this experiment
        # ----------------------------------------------------------
        await lock_experiment(self.db, experiment_id)

        # ----------------------------------------------------------
        # 2 & 3. Validate the audit trail
        # ----------------------------------------------------------
        history = await self.history(experiment_id)
        self._verify_contiguous(history)
        total_checks = self._total_checks(experiment)
        state = self._state_from(history, total_checks)
        if state in TERMINAL_STATES:
            raise SequentialStateError(f"Sequential test is {state.value}; no further checks allowed")

        # ----------------------------------------------------------
        # 4. Statistics
        # ----------------------------------------------------------
        counts = await variant_counts(self.db, experiment)
        if len(counts) < 2:
            raise SequentialStateError("Sequential testing needs two variants")
        control, treatment = counts[0], counts[1]
        if control.n == 0 or treatment.n == 0:
            return {
                "status": "insufficient_data",
                "message": "Both variants need at least one assignment before an interim check",
            }

        observed = control.n + treatment.n
        fraction = min(observed / self._planned_total(experiment), 1.0)
        alpha = experiment.alpha
        upper = obf.obrien_fleming_boundary(fraction, alpha)
        lower = -upper
        try:
            z = pooled_z_statistic(control.conversions, control.n, treatment.conversions, treatment.n)
            decision, reason = obf.decide(z, upper, lower)
        except StatisticalComputationError as exc:
            z = 0.0
            decision = SequentialDecision.continue_
            reason = f"{exc}; treating as no evidence and continuing"

        # ----------------------------------------------------------
        # 5. Record
        # ----------------------------------------------------------
        row = SequentialAnalysis(
            experiment_id=experiment_id,
            check_number=len(history) + 1,
            total_checks=total_checks,
            total_assignments=observed,
            information_fraction=fraction,
            alpha_spent=obf.alpha_spent(fraction, alpha),
            z_statistic=z,
            boundary_upper=upper,
            boundary_lower=lower,
            decision=decision,
            decision_reason=reason,
        )
        self.db.add(row)
        await self.db.flush()
        logger.info(
            "Sequential check %d/%d for %s: t=%.3f z=%.4f bound=%.4f -> %s",
            row.check_number, total_checks, experiment_id, fraction, z, upper, decision.value,
        )

        if decision != SequentialDecision.continue_:
            await self._apply_stop(experiment, decision, treatment.variant_id)

        return {
            "status": "ok",
            "check": self._row_dict(row),
            "control": control.name,
            "treatment": treatment.name,
            "state": self._state_from(history + [row], total_checks).value,
        }

    async def auto_check_if_needed(self, experiment_id: uuid.UUID) -> dict[str, Any] | None:
        """Run a check only if the next check point has been reached."""
        experiment = await get_experiment(experiment_id, self.db)
        if experiment.statistical_method != StatisticalMethod.sequential or experiment.planned_sample_size is None:
            return None
        if experiment.status != ExperimentStatus.running:
            return None

        point = await self.next_check_point(experiment_id)
        if point is None:
            return None
        counts = await variant_counts(self.db, experiment)
        observed = sum(c.n for c in counts[:2])
        if observed < point:
            return None
        return await self.perform_interim_check(experiment_id)

    # ------------------------------------------------------------------
    # Status and history
    # ------------------------------------------------------------------

    async def history(self, experiment_id: uuid.UUID) -> list[SequentialAnalysis]:
        result = await self.db.execute(
            select(SequentialAnalysis)
            .where(SequentialAnalysis.experiment_id == experiment_id)
            .order_by(SequentialAnalysis.check_number)
        )
        return list(result.scalars().all())

    async def state(self, experiment_id: uuid.UUID) -> SequentialState:
        experiment = await get_experiment(experiment_id, self.db)
        return self._state_from(await self.history(experiment_id), self._total_checks(experiment))

    async def next_check_point(self, experiment_id: uuid.UUID) -> int | None:
        """Assignment count at which the next check is due, or None once finished."""
        experiment = await get_experiment(experiment_id, self.db)
        if experiment.planned_sample_size is None:
            return None
        history = await self.history(experiment_id)
        total_checks = self._total_checks(experiment)
        if self._state_from(history, total_checks) in TERMINAL_STATES:
            return None
        return obf.check_points(self._planned_total(experiment), total_checks)[len(history)]

    async def results(self, experiment_id: uuid.UUID) -> dict[str, Any]:
        experiment = await get_experiment(experiment_id, self.db)
        history = await self.history(experiment_id)
        if experiment.planned_sample_size is None:
            return {"status": "not_planned", "state": SequentialState.not_started.value, "checks": []}
        total_checks = self._total_checks(experiment)
        return {
            "status": "ok",
            "state": self._state_from(history, total_checks).value,
            "planned_sample_size": experiment.planned_sample_size,
            "total_checks": total_checks,
            "next_check_point": await self.next_check_point(experiment_id),
            "check_points": obf.check_points(self._planned_total(experiment), total_checks),
            "boundaries": obf.boundary_curve(total_checks, experiment.alpha),
            "checks": [self._row_dict(r) for r in history],
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _total_checks(self, experiment: Experiment) -> int:
        return experiment.total_checks or self.config.default_total_checks

    @staticmethod
    def _planned_total(experiment: Experiment) -> int:
        return experiment.planned_sample_size * 2

    @staticmethod
    def _verify_contiguous(history: list[SequentialAnalysis]) -> None:
        numbers = [r.check_number for r in history]
        if numbers != list(range(1, len(numbers) + 1)):
            logger.error("Sequential audit trail is corrupt: check numbers %s", numbers)
            raise SequentialStateError(f"Check numbers are not contiguous from 1: {numbers}")
        for earlier in history[:-1]:
            if earlier.decision != SequentialDecision.continue_:
                raise SequentialStateError(
                    f"Check {earlier.check_number} stopped the test but later checks exist"
                )

    @staticmethod
    def _state_from(history: list[SequentialAnalysis], total_checks: int) -> SequentialState:
        if not history:
            return SequentialState.not_started
        last = history[-1].decision
        if last == SequentialDecision.stop_winner:
            return SequentialState.stopped_winner
        if last == SequentialDecision.stop_futile:
            return SequentialState.stopped_futile
        if len(history) >= total_checks:
            return SequentialState.completed_planned
        return SequentialState.checking

    async def _apply_stop(
        self, experiment: Experiment, decision: SequentialDecision, treatment_id: uuid.UUID
    ) -> None:
        if not experiment.early_stopping_enabled:
            return
        if experiment.status not in (ExperimentStatus.running, ExperimentStatus.paused):
            return
        winner = treatment_id if decision == SequentialDecision.stop_winner else None
        await ExperimentRegistry(self.db, self.config).complete(experiment.id, winning_variant_id=winner)

    @staticmethod
    def _row_dict(row: SequentialAnalysis) -> dict[str, Any]:
        return {
            "check_number": row.check_number,
            "total_checks": row.total_checks,
            "total_assignments": row.total_assignments,
            "information_fraction": round(row.information_fraction, 6),
            "alpha_spent": round(row.alpha_spent, 8),
            "z_statistic": round(row.z_statistic, 6) if row.z_statistic is not None else None,
            "boundary_upper": round(row.boundary_upper, 6),
            "boundary_lower": round(row.boundary_lower, 6),
            "decision": row.decision.value,
            "decision_reason": row.decision_reason,
            "checked_at": row.checked_at,
        }
