"""Tests for planned interim checks with O'Brien-Fleming stopping."""

import pytest

from app.core.errors import SequentialStateError
from app.core.method_config import SequentialConfig
from app.models import ExperimentStatus, SequentialAnalysis, SequentialDecision
from app.services.sequential import SequentialAnalyzer, SequentialState


@pytest.fixture
def analyzer(db, config):
    return SequentialAnalyzer(db, config)


def _row(experiment_id, check_number):
    return SequentialAnalysis(
        experiment_id=experiment_id,
        check_number=check_number,
        total_checks=5,
        total_assignments=check_number * 20,
        information_fraction=check_number / 5,
        alpha_spent=0.0,
        z_statistic=0.0,
        boundary_upper=3.0,
        boundary_lower=-3.0,
        decision=SequentialDecision.continue_,
    )


class TestPlan:
    async def test_initialize(self, analyzer, make_experiment):
        experiment = await make_experiment()
        plan = await analyzer.initialize(experiment.id, planned_sample_size=500, total_checks=5)
        assert plan["planned_total"] == 1000
        assert plan["check_points"] == [200, 400, 600, 800, 1000]
        assert len(plan["boundaries"]) == 5
        assert plan["boundaries"][-1]["boundary_upper"] == pytest.approx(1.96, abs=0.001)
        assert experiment.planned_sample_size == 500

    async def test_default_check_count(self, analyzer, make_experiment):
        experiment = await make_experiment()
        plan = await analyzer.initialize(experiment.id, planned_sample_size=100)
        assert plan["total_checks"] == 5

    async def test_cannot_replan_after_checks(self, db, analyzer, make_experiment):
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=50))
        db.add(_row(experiment.id, 1))
        await db.flush()
        with pytest.raises(SequentialStateError):
            await analyzer.initialize(experiment.id, planned_sample_size=100)

    async def test_check_without_plan(self, analyzer, make_experiment):
        experiment = await make_experiment()
        with pytest.raises(SequentialStateError):
            await analyzer.perform_interim_check(experiment.id)


class TestInterimCheck:
    async def test_insufficient_data_uses_no_check_number(self, analyzer, make_experiment, seed_results):
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=100))
        await seed_results(experiment, {"control": (20, 2)})
        result = await analyzer.perform_interim_check(experiment.id)
        assert result["status"] == "insufficient_data"
        assert await analyzer.history(experiment.id) == []

    async def test_strong_effect_stops_with_winner(self, analyzer, make_experiment, seed_results):
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=100))
        await seed_results(experiment, {"control": (100, 10), "treatment": (100, 40)})

        result = await analyzer.perform_interim_check(experiment.id)
        check = result["check"]
        assert check["check_number"] == 1
        assert check["information_fraction"] == pytest.approx(1.0)
        assert check["z_statistic"] > check["boundary_upper"]
        assert check["decision"] == "stop_winner"
        assert result["state"] == SequentialState.stopped_winner.value

        treatment = next(v for v in experiment.variants if v.variant_name == "treatment")
        assert experiment.status == ExperimentStatus.completed
        assert experiment.winning_variant_id == treatment.id

        with pytest.raises(SequentialStateError):
            await analyzer.perform_interim_check(experiment.id)

    async def test_early_small_effect_continues(self, analyzer, make_experiment, seed_results):
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=1000))
        await seed_results(experiment, {"control": (100, 10), "treatment": (100, 13)})

        result = await analyzer.perform_interim_check(experiment.id)
        check = result["check"]
        assert check["information_fraction"] == pytest.approx(0.1)
        assert check["boundary_upper"] == pytest.approx(1.96 / 0.1 ** 0.5, abs=0.01)
        assert check["decision"] == "continue"
        assert result["state"] == SequentialState.checking.value
        assert experiment.status == ExperimentStatus.running

    async def test_futility_stop(self, analyzer, make_experiment, seed_results):
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=100))
        await seed_results(experiment, {"control": (100, 40), "treatment": (100, 10)})

        result = await analyzer.perform_interim_check(experiment.id)
        assert result["check"]["decision"] == "stop_futile"
        assert experiment.status == ExperimentStatus.completed
        assert experiment.winning_variant_id is None

    async def test_early_stopping_disabled_keeps_running(self, analyzer, make_experiment, seed_results):
        experiment = await make_experiment(
            method=SequentialConfig(planned_sample_size=100, early_stopping_enabled=False)
        )
        await seed_results(experiment, {"control": (100, 10), "treatment": (100, 40)})

        result = await analyzer.perform_interim_check(experiment.id)
        assert result["check"]["decision"] == "stop_winner"
        assert experiment.status == ExperimentStatus.running

    async def test_zero_variance_continues(self, analyzer, make_experiment, seed_results):
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=100))
        await seed_results(experiment, {"control": (50, 0), "treatment": (50, 0)})

        result = await analyzer.perform_interim_check(experiment.id)
        assert result["check"]["z_statistic"] == 0.0
        assert result["check"]["decision"] == "continue"

    async def test_gap_in_check_numbers(self, db, analyzer, make_experiment, seed_results):
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=100))
        await seed_results(experiment, {"control": (30, 3), "treatment": (30, 4)})
        db.add_all([_row(experiment.id, 1), _row(experiment.id, 3)])
        await db.flush()

        with pytest.raises(SequentialStateError, match="not contiguous"):
            await analyzer.perform_interim_check(experiment.id)

    async def test_all_planned_checks_used(self, analyzer, make_experiment, seed_results):
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=100, total_checks=2))
        await seed_results(experiment, {"control": (100, 10), "treatment": (100, 11)})

        await analyzer.perform_interim_check(experiment.id)
        result = await analyzer.perform_interim_check(experiment.id)
        assert result["check"]["check_number"] == 2
        assert result["state"] == SequentialState.completed_planned.value
        with pytest.raises(SequentialStateError):
            await analyzer.perform_interim_check(experiment.id)


class TestAutoCheck:
    async def test_runs_only_at_check_points(self, analyzer, make_experiment, seed_results):
        # 50 per variant and 5 checks: due at 20, 40, 60, 80 and 100 assignments
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=50))
        assert await analyzer.next_check_point(experiment.id) == 20

        await seed_results(experiment, {"control": (9, 1), "treatment": (9, 1)})
        assert await analyzer.auto_check_if_needed(experiment.id) is None

        await seed_results(experiment, {"control": (2, 0), "treatment": (2, 0)})
        result = await analyzer.auto_check_if_needed(experiment.id)
        assert result["check"]["check_number"] == 1
        assert result["check"]["total_assignments"] == 22
        assert await analyzer.next_check_point(experiment.id) == 40

        assert await analyzer.auto_check_if_needed(experiment.id) is None

    async def test_ignores_other_methods(self, analyzer, make_experiment):
        experiment = await make_experiment()
        assert await analyzer.auto_check_if_needed(experiment.id) is None

    async def test_results_report(self, analyzer, make_experiment, seed_results):
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=50))
        report = await analyzer.results(experiment.id)
        assert report["state"] == SequentialState.not_started.value
        assert report["check_points"] == [20, 40, 60, 80, 100]
        assert report["checks"] == []

        await seed_results(experiment, {"control": (10, 1), "treatment": (10, 2)})
        await analyzer.perform_interim_check(experiment.id)
        report = await analyzer.results(experiment.id)
        assert report["state"] == SequentialState.checking.value
        assert len(report["checks"]) == 1

    async def test_results_without_plan(self, analyzer, make_experiment):
        experiment = await make_experiment()
        assert (await analyzer.results(experiment.id))["status"] == "not_planned"
