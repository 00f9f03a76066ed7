"""Tests for experiment creation, lifecycle transitions and variant edits."""

import uuid

import pytest
from sqlalchemy import select

from app.core.errors import (
    ExperimentCompletedError,
    ExperimentNotFoundError,
    InvalidAllocationError,
    InvalidTransitionError,
    VariantLockedError,
    VariantNotFoundError,
)
from app.core.method_config import BanditConfig, BayesianConfig, BetaPrior, SequentialConfig
from app.models import BanditState, BayesianStats, Channel, ExperimentStatus, StatisticalMethod
from app.services.assignment import AssignmentEngine
from app.services.registry import ExperimentRegistry


@pytest.fixture
def registry(db, config):
    return ExperimentRegistry(db, config)


class TestCreate:
    async def test_defaults_to_even_split_draft(self, make_experiment):
        experiment = await make_experiment(start=False)
        assert experiment.status == ExperimentStatus.draft
        assert experiment.traffic_allocation == {"control": 50.0, "treatment": 50.0}
        assert experiment.statistical_method == StatisticalMethod.frequentist
        assert [v.variant_name for v in experiment.variants] == ["control", "treatment"]

    async def test_custom_allocation(self, make_experiment):
        experiment = await make_experiment(start=False, traffic_allocation={"control": 20, "treatment": 80})
        assert experiment.traffic_allocation == {"control": 20.0, "treatment": 80.0}

    async def test_allocation_must_sum_to_100(self, make_experiment):
        with pytest.raises(InvalidAllocationError):
            await make_experiment(start=False, traffic_allocation={"control": 20, "treatment": 70})

    async def test_allocation_must_name_variants(self, make_experiment):
        with pytest.raises(InvalidAllocationError):
            await make_experiment(start=False, traffic_allocation={"control": 50, "other": 50})

    async def test_needs_two_unique_variants(self, make_experiment):
        with pytest.raises(InvalidAllocationError):
            await make_experiment(variants=("only",), start=False)
        with pytest.raises(InvalidAllocationError):
            await make_experiment(variants=("same", "same"), start=False)

    async def test_method_config_copied_to_columns(self, make_experiment):
        experiment = await make_experiment(
            start=False, method=SequentialConfig(planned_sample_size=500, total_checks=4)
        )
        assert experiment.statistical_method == StatisticalMethod.sequential
        assert experiment.planned_sample_size == 500
        assert experiment.total_checks == 4
        assert experiment.early_stopping_enabled is True

    async def test_explicit_priors_initialize_state(self, db, make_experiment):
        method = BayesianConfig(priors={"treatment": BetaPrior(alpha=3, beta=7)})
        experiment = await make_experiment(start=False, method=method)
        rows = (
            await db.execute(select(BayesianStats).where(BayesianStats.experiment_id == experiment.id))
        ).scalars().all()
        by_variant = {row.variant_id: row for row in rows}
        names = {v.id: v.variant_name for v in experiment.variants}
        priors = {names[vid]: (r.alpha_prior, r.beta_prior) for vid, r in by_variant.items()}
        assert priors == {"control": (1.0, 1.0), "treatment": (3.0, 7.0)}


class TestLifecycle:
    async def test_start_pause_resume_complete(self, registry, make_experiment):
        experiment = await make_experiment(start=False)

        experiment = await registry.start(experiment.id)
        assert experiment.status == ExperimentStatus.running
        assert experiment.started_at is not None

        experiment = await registry.pause(experiment.id)
        assert experiment.status == ExperimentStatus.paused

        experiment = await registry.resume(experiment.id)
        assert experiment.status == ExperimentStatus.running

        winner = experiment.variants[1].id
        experiment = await registry.complete(experiment.id, winning_variant_id=winner)
        assert experiment.status == ExperimentStatus.completed
        assert experiment.winning_variant_id == winner
        assert experiment.ended_at is not None

    async def test_complete_from_paused(self, registry, make_experiment):
        experiment = await make_experiment()
        await registry.pause(experiment.id)
        experiment = await registry.complete(experiment.id)
        assert experiment.status == ExperimentStatus.completed
        assert experiment.winning_variant_id is None

    @pytest.mark.parametrize("action", ["pause", "resume", "complete"])
    async def test_invalid_from_draft(self, registry, make_experiment, action):
        experiment = await make_experiment(start=False)
        with pytest.raises(InvalidTransitionError):
            await getattr(registry, action)(experiment.id)

    async def test_cannot_start_twice(self, registry, make_experiment):
        experiment = await make_experiment()
        with pytest.raises(InvalidTransitionError):
            await registry.start(experiment.id)

    async def test_completed_is_terminal(self, registry, make_experiment):
        experiment = await make_experiment()
        await registry.complete(experiment.id)
        for action in ("start", "pause", "resume", "complete"):
            with pytest.raises(InvalidTransitionError):
                await getattr(registry, action)(experiment.id)

    async def test_start_revalidates_allocation(self, db, registry, make_experiment):
        experiment = await make_experiment(start=False)
        # Bypass the registry to simulate a corrupted row
        experiment.traffic_allocation = {"control": 50.0, "treatment": 40.0}
        await db.flush()
        with pytest.raises(InvalidAllocationError):
            await registry.start(experiment.id)
        assert experiment.status == ExperimentStatus.draft

    async def test_unknown_winner(self, registry, make_experiment):
        experiment = await make_experiment()
        with pytest.raises(VariantNotFoundError):
            await registry.complete(experiment.id, winning_variant_id=uuid.uuid4())

    async def test_missing_experiment(self, registry):
        with pytest.raises(ExperimentNotFoundError):
            await registry.start(uuid.uuid4())

    async def test_bandit_start_initializes_state(self, db, make_experiment):
        experiment = await make_experiment(method=BanditConfig())
        states = (
            await db.execute(select(BanditState).where(BanditState.experiment_id == experiment.id))
        ).scalars().all()
        assert len(states) == 2
        assert {s.initial_allocation for s in states} == {50.0}

    async def test_bayesian_start_initializes_state(self, db, make_experiment):
        experiment = await make_experiment(method=BayesianConfig(expected_conversion_rate=0.1, prior_confidence=100))
        rows = (
            await db.execute(select(BayesianStats).where(BayesianStats.experiment_id == experiment.id))
        ).scalars().all()
        assert len(rows) == 2
        assert all(r.alpha_prior == pytest.approx(10.0) and r.beta_prior == pytest.approx(90.0) for r in rows)


class TestUpdates:
    async def test_update_fields(self, registry, make_experiment):
        experiment = await make_experiment()
        updated = await registry.update(experiment.id, name="Renamed", minimum_sample_size=250)
        assert updated.name == "Renamed"
        assert updated.minimum_sample_size == 250

    async def test_update_allocation_validated(self, registry, make_experiment):
        experiment = await make_experiment(start=False)
        with pytest.raises(InvalidAllocationError):
            await registry.update(experiment.id, traffic_allocation={"control": 10, "treatment": 10})
        updated = await registry.update(experiment.id, traffic_allocation={"control": 10, "treatment": 90})
        assert updated.traffic_allocation == {"control": 10.0, "treatment": 90.0}

    async def test_unknown_field(self, registry, make_experiment):
        experiment = await make_experiment()
        with pytest.raises(ValueError):
            await registry.update(experiment.id, status=ExperimentStatus.completed)

    async def test_required_field_cannot_be_cleared(self, registry, make_experiment):
        experiment = await make_experiment()
        with pytest.raises(ValueError, match="name"):
            await registry.update(experiment.id, name=None)
        with pytest.raises(ValueError, match="variant_metadata"):
            await registry.update_variant(experiment.id, experiment.variants[0].id, variant_metadata=None)
        assert (await registry.get(experiment.id)).name == "Subject line test"

    async def test_completed_is_read_only(self, registry, make_experiment):
        experiment = await make_experiment()
        await registry.complete(experiment.id)
        with pytest.raises(ExperimentCompletedError):
            await registry.update(experiment.id, name="Too late")

    async def test_variant_edit_before_assignment(self, registry, make_experiment):
        experiment = await make_experiment()
        variant = experiment.variants[0]
        updated = await registry.update_variant(experiment.id, variant.id, subject="New subject")
        assert updated.subject == "New subject"

    async def test_variant_locked_after_assignment(self, db, config, registry, make_experiment):
        experiment = await make_experiment(traffic_allocation={"control": 100, "treatment": 0})
        assignment = await AssignmentEngine(db, config).assign(experiment.id, "alice")
        with pytest.raises(VariantLockedError):
            await registry.update_variant(experiment.id, assignment.variant_id, body="Changed")

    async def test_unknown_variant(self, registry, make_experiment):
        experiment = await make_experiment()
        with pytest.raises(VariantNotFoundError):
            await registry.update_variant(experiment.id, uuid.uuid4(), body="x")

    async def test_delete(self, registry, make_experiment):
        experiment = await make_experiment()
        await registry.delete(experiment.id)
        with pytest.raises(ExperimentNotFoundError):
            await registry.get(experiment.id)


class TestList:
    async def test_filters_and_counts(self, db, config, registry, make_experiment):
        running = await make_experiment(name="Running email")
        await make_experiment(name="Draft sms", channel=Channel.sms, start=False)
        engine = AssignmentEngine(db, config)
        for recipient in ("a", "b", "c"):
            await engine.assign(running.id, recipient)

        all_rows = await registry.list_experiments(tenant_id=running.tenant_id)
        assert len(all_rows) == 2

        rows = await registry.list_experiments(status=ExperimentStatus.running)
        assert [(e.name, n) for e, n in rows] == [("Running email", 3)]

        rows = await registry.list_experiments(channel=Channel.sms)
        assert [(e.name, n) for e, n in rows] == [("Draft sms", 0)]

        assert await registry.list_experiments(tenant_id=uuid.uuid4()) == []
