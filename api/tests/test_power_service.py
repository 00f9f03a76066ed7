"""Tests for stored power analyses and experiment-level planning helpers."""

import uuid

import pytest

from app.core.errors import InsufficientDataError, PowerAnalysisNotFoundError
from app.services.power import DEFAULT_BASELINE_RATE, PowerAnalysisService
from app.stats.power import minimum_detectable_effect


@pytest.fixture
def service(db):
    return PowerAnalysisService(db)


class TestCreate:
    async def test_persists_and_links_experiment(self, service, make_experiment):
        experiment = await make_experiment(start=False)
        analysis = await service.create(
            tenant_id=experiment.tenant_id,
            baseline_rate=0.10,
            mde=0.02,
            daily_volume=500,
            experiment_id=experiment.id,
        )
        assert analysis.required_sample_size == 3841
        assert analysis.total_sample_size == 7682
        assert analysis.estimated_duration_days == 16
        assert experiment.power_analysis_id == analysis.id
        assert (await service.get(analysis.id)).id == analysis.id

    async def test_standalone(self, service):
        analysis = await service.create(tenant_id=uuid.uuid4(), baseline_rate=0.2, mde=0.05)
        assert analysis.experiment_id is None
        assert analysis.estimated_duration_days is None

    async def test_new_analysis_replaces_link(self, service, make_experiment):
        experiment = await make_experiment(start=False)
        first = await service.create(experiment.tenant_id, 0.10, 0.02, experiment_id=experiment.id)
        second = await service.create(experiment.tenant_id, 0.10, 0.03, experiment_id=experiment.id)
        assert experiment.power_analysis_id == second.id
        assert (await service.get(first.id)).minimum_detectable_effect == 0.02

    async def test_missing(self, service):
        with pytest.raises(PowerAnalysisNotFoundError):
            await service.get(uuid.uuid4())


class TestMinimumDetectableEffect:
    async def test_default_baseline(self, service, make_experiment):
        experiment = await make_experiment()
        result = await service.mde_for_experiment(experiment.id, planned_sample_size=2000)
        assert result["baseline_source"] == "default"
        assert result["baseline_rate"] == DEFAULT_BASELINE_RATE
        assert result["minimum_detectable_effect"] == pytest.approx(
            minimum_detectable_effect(2000, DEFAULT_BASELINE_RATE), abs=1e-6
        )

    async def test_observed_baseline(self, service, make_experiment, seed_results):
        experiment = await make_experiment()
        await seed_results(experiment, {"control": (100, 20), "treatment": (100, 30)})
        result = await service.mde_for_experiment(experiment.id, planned_sample_size=2000)
        assert result["baseline_source"] == "observed"
        assert result["baseline_rate"] == pytest.approx(0.25)

    async def test_linked_analysis_wins(self, service, make_experiment, seed_results):
        experiment = await make_experiment()
        await seed_results(experiment, {"control": (100, 20), "treatment": (100, 30)})
        await service.create(experiment.tenant_id, 0.05, 0.01, experiment_id=experiment.id)
        result = await service.mde_for_experiment(experiment.id, planned_sample_size=2000)
        assert result["baseline_source"] == "power_analysis"
        assert result["baseline_rate"] == pytest.approx(0.05)


class TestDuration:
    async def test_uses_linked_analysis(self, service, make_experiment):
        experiment = await make_experiment(variants=("a", "b", "c"))
        await service.create(experiment.tenant_id, 0.10, 0.02, experiment_id=experiment.id)
        estimate = await service.estimate_duration_for_experiment(experiment.id, daily_volume=1000)
        assert estimate["variant_count"] == 3
        assert estimate["total_required"] == 3841 * 3
        assert estimate["estimated_days"] == 12
        assert estimate["estimated_weeks"] == pytest.approx(1.7)

    async def test_without_analysis(self, service, make_experiment):
        experiment = await make_experiment()
        with pytest.raises(InsufficientDataError):
            await service.estimate_duration_for_experiment(experiment.id, daily_volume=1000)
