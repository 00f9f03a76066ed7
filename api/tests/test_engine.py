"""Tests for StatsEngine event routing and the combined results report."""

import pytest
from sqlalchemy import select

from app.core.errors import AssignmentNotFoundError
from app.core.method_config import BanditConfig, BayesianConfig, FrequentistConfig, SequentialConfig
from app.models import BanditState, BayesianStats, ExperimentStatus, Outcome, StatisticalMethod
from app.services.frequentist import FrequentistAnalyzer
from app.services.registry import ExperimentRegistry
from app.stats.engine import StatsEngine


@pytest.fixture
def engine(db, config, rng):
    return StatsEngine(db, config, rng=rng)


class TestOutcomes:
    async def test_outcome_requires_assignment(self, engine, make_experiment):
        experiment = await make_experiment()
        with pytest.raises(AssignmentNotFoundError):
            await engine.record_outcome(experiment.id, "stranger", True)

    async def test_outcome_recorded_once(self, db, engine, make_experiment):
        experiment = await make_experiment()
        assignment = await engine.record_exposure(experiment.id, "alice")

        first = await engine.record_outcome(experiment.id, "alice", True)
        second = await engine.record_outcome(experiment.id, "alice", False)
        assert first == {"recorded": True, "variant_id": assignment.variant_id, "sequential_check": None}
        assert second["recorded"] is False

        outcomes = (await db.execute(select(Outcome).where(Outcome.experiment_id == experiment.id))).scalars().all()
        assert [o.success for o in outcomes] == [True]

    async def test_bayesian_dispatch(self, db, engine, make_experiment):
        experiment = await make_experiment(method=BayesianConfig())
        assignment = await engine.record_exposure(experiment.id, "bob")
        await engine.record_outcome(experiment.id, "bob", True)

        row = (
            await db.execute(select(BayesianStats).where(BayesianStats.variant_id == assignment.variant_id))
        ).scalar_one()
        assert (row.alpha_posterior, row.beta_posterior) == (2.0, 1.0)

    async def test_bandit_dispatch(self, db, engine, make_experiment):
        experiment = await make_experiment(method=BanditConfig())
        assignment = await engine.record_exposure(experiment.id, "carol")
        await engine.record_outcome(experiment.id, "carol", False)

        state = (
            await db.execute(select(BanditState).where(BanditState.variant_id == assignment.variant_id))
        ).scalar_one()
        assert (state.pulls, state.failure_count) == (1, 1)

    async def test_paused_outcome_reaches_posterior(self, db, config, engine, make_experiment):
        experiment = await make_experiment(method=BayesianConfig())
        assignment = await engine.record_exposure(experiment.id, "dave")
        registry = ExperimentRegistry(db, config)
        await registry.pause(experiment.id)

        result = await engine.record_outcome(experiment.id, "dave", True)
        await registry.resume(experiment.id)
        assert result["recorded"] is True

        row = (
            await db.execute(select(BayesianStats).where(BayesianStats.variant_id == assignment.variant_id))
        ).scalar_one()
        names = {v.id: v.variant_name for v in experiment.variants}
        frequentist = await FrequentistAnalyzer(db).analyze(experiment.id)
        conversions = {p["variant"]: p["conversions"] for p in frequentist["per_variant"]}
        assert row.successes == conversions[names[assignment.variant_id]] == 1

    async def test_paused_outcome_reaches_bandit(self, db, config, engine, make_experiment):
        experiment = await make_experiment(method=BanditConfig())
        assignment = await engine.record_exposure(experiment.id, "erin")
        await ExperimentRegistry(db, config).pause(experiment.id)

        await engine.record_outcome(experiment.id, "erin", True)
        state = (
            await db.execute(select(BanditState).where(BanditState.variant_id == assignment.variant_id))
        ).scalar_one()
        assert (state.pulls, state.success_count) == (1, 1)

    async def test_completed_experiment_freezes_posterior(self, db, config, engine, make_experiment):
        experiment = await make_experiment(method=BayesianConfig())
        assignment = await engine.record_exposure(experiment.id, "fay")
        await ExperimentRegistry(db, config).complete(experiment.id)

        result = await engine.record_outcome(experiment.id, "fay", True)
        assert result["recorded"] is True
        row = (
            await db.execute(select(BayesianStats).where(BayesianStats.variant_id == assignment.variant_id))
        ).scalar_one()
        assert row.alpha_posterior == 1.0

    async def test_sequential_check_triggered_at_check_point(self, engine, make_experiment):
        # 5 per variant and 5 checks: first check due at 2 assignments
        experiment = await make_experiment(method=SequentialConfig(planned_sample_size=5))
        results = []
        for i in range(6):
            await engine.record_exposure(experiment.id, f"r{i}")
            results.append(await engine.record_outcome(experiment.id, f"r{i}", i % 2 == 0))
        checks = [r["sequential_check"] for r in results if r["sequential_check"] is not None]
        assert checks
        assert all(c["status"] in ("ok", "insufficient_data") for c in checks)


class TestFrequentistAnalyzer:
    async def test_pairwise_comparisons(self, db, make_experiment, seed_results):
        experiment = await make_experiment(variants=("a", "b", "c"))
        await seed_results(experiment, {"a": (1000, 100), "b": (1000, 130), "c": (1000, 100)})

        result = await FrequentistAnalyzer(db).analyze(experiment.id)
        assert result["status"] == "ok"
        assert [(p["variant"], p["rate"]) for p in result["per_variant"]] == [("a", 0.1), ("b", 0.13), ("c", 0.1)]
        pairs = {(c["a"], c["b"]): c for c in result["comparisons"]}
        assert set(pairs) == {("a", "b"), ("a", "c"), ("b", "c")}
        assert pairs[("a", "b")]["significant"] is True
        assert pairs[("a", "c")]["z_stat"] == 0.0

    async def test_empty_variant(self, db, make_experiment, seed_results):
        experiment = await make_experiment()
        await seed_results(experiment, {"control": (10, 1)})
        result = await FrequentistAnalyzer(db).analyze(experiment.id)
        assert result["status"] == "insufficient_data"
        assert "treatment" in result["message"]
        assert result["comparisons"] == []

    async def test_degenerate_pair_reported(self, db, make_experiment, seed_results):
        experiment = await make_experiment()
        await seed_results(experiment, {"control": (10, 0), "treatment": (10, 0)})
        result = await FrequentistAnalyzer(db).analyze(experiment.id)
        assert result["status"] == "ok"
        assert "error" in result["comparisons"][0]


class TestAnalyzeExperiment:
    async def test_frequentist_only(self, engine, make_experiment, seed_results):
        experiment = await make_experiment()
        await seed_results(experiment, {"control": (200, 20), "treatment": (200, 30)})
        report = await engine.analyze_experiment(experiment.id)
        assert report["statistical_method"] == "frequentist"
        assert report["total_assignments"] == 400
        assert report["frequentist"]["status"] == "ok"
        assert report["bayesian"] is None and report["bandit"] is None and report["sequential"] is None

    async def test_includes_method_report(self, engine, make_experiment):
        experiment = await make_experiment(method=BayesianConfig())
        for recipient in ("a", "b", "c", "d"):
            await engine.record_exposure(experiment.id, recipient)
            await engine.record_outcome(experiment.id, recipient, recipient in ("a", "b"))
        report = await engine.analyze_experiment(experiment.id)
        assert report["bayesian"]["status"] == "ok"
        assert len(report["bayesian"]["variants"]) == 2

    async def test_method_results_for_missing_state(self, engine, make_experiment):
        experiment = await make_experiment()
        bandit = await engine.method_results(experiment.id, StatisticalMethod.bandit)
        assert bandit["status"] == "insufficient_data"
        bayesian = await engine.method_results(experiment.id, StatisticalMethod.bayesian)
        assert bayesian["status"] == "insufficient_data"
        sequential = await engine.method_results(experiment.id, StatisticalMethod.sequential)
        assert sequential["status"] == "not_planned"


class TestCheckAndStop:
    async def test_frequentist_winner_reported(self, db, make_experiment, seed_results):
        experiment = await make_experiment()
        await seed_results(experiment, {"control": (1000, 100), "treatment": (1000, 130)})
        result = await FrequentistAnalyzer(db).analyze(experiment.id)
        treatment = next(v.id for v in experiment.variants if v.variant_name == "treatment")
        assert result["winner"]["winner"] == "treatment"
        assert result["winner"]["variant_id"] == treatment
        assert result["winner"]["significant"] is True

    async def test_frequentist_stops_with_winner(self, engine, make_experiment, seed_results):
        experiment = await make_experiment(method=FrequentistConfig(early_stopping_enabled=True))
        await seed_results(experiment, {"control": (1000, 100), "treatment": (1000, 130)})

        decision = await engine.check_and_stop(experiment.id)
        treatment = next(v.id for v in experiment.variants if v.variant_name == "treatment")
        assert decision["should_stop"] is True
        assert decision["stopped"] is True
        assert decision["winning_variant"] == "treatment"
        assert experiment.status == ExperimentStatus.completed
        assert experiment.winning_variant_id == treatment

    async def test_frequentist_reports_only_without_early_stopping(self, engine, make_experiment, seed_results):
        experiment = await make_experiment()
        await seed_results(experiment, {"control": (1000, 100), "treatment": (1000, 130)})

        decision = await engine.check_and_stop(experiment.id)
        assert decision["should_stop"] is True
        assert decision["stopped"] is False
        assert experiment.status == ExperimentStatus.running

    async def test_frequentist_no_winner_keeps_running(self, engine, make_experiment, seed_results):
        experiment = await make_experiment(method=FrequentistConfig(early_stopping_enabled=True))
        await seed_results(experiment, {"control": (50, 5), "treatment": (50, 20)})

        decision = await engine.check_and_stop(experiment.id)
        assert decision["should_stop"] is False
        assert "Insufficient sample size" in decision["reason"]
        assert experiment.status == ExperimentStatus.running

    async def test_bayesian_stops_with_winner(self, db, engine, make_experiment):
        experiment = await make_experiment(method=BayesianConfig(early_stopping_enabled=True))
        rows = (
            await db.execute(select(BayesianStats).where(BayesianStats.experiment_id == experiment.id))
        ).scalars().all()
        names = {v.id: v.variant_name for v in experiment.variants}
        posteriors = {"control": (21.0, 181.0), "treatment": (61.0, 141.0)}
        for row in rows:
            row.alpha_posterior, row.beta_posterior = posteriors[names[row.variant_id]]
        await db.flush()

        decision = await engine.check_and_stop(experiment.id)
        treatment = next(v.id for v in experiment.variants if v.variant_name == "treatment")
        assert decision["stopped"] is True
        assert decision["winning_variant"] == "treatment"
        assert experiment.status == ExperimentStatus.completed
        assert experiment.winning_variant_id == treatment

    async def test_bayesian_below_minimum_sample(self, engine, make_experiment):
        experiment = await make_experiment(method=BayesianConfig(early_stopping_enabled=True))
        await engine.record_exposure(experiment.id, "gus")
        await engine.record_outcome(experiment.id, "gus", True)

        decision = await engine.check_and_stop(experiment.id)
        assert decision["should_stop"] is False
        assert decision["winning_variant_id"] is None
        assert experiment.status == ExperimentStatus.running

    @pytest.mark.parametrize("method", [SequentialConfig(planned_sample_size=50), BanditConfig()])
    async def test_other_methods_only_report(self, engine, make_experiment, seed_results, method):
        experiment = await make_experiment(method=method)
        await seed_results(experiment, {"control": (1000, 100), "treatment": (1000, 130)})

        decision = await engine.check_and_stop(experiment.id)
        assert decision["should_stop"] is False
        assert decision["stopped"] is False
        assert decision["reason"]
        assert experiment.status == ExperimentStatus.running
