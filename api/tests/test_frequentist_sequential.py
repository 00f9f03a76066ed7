"""Tests for the two-proportion z-test and O'Brien-Fleming boundaries."""

import math

import pytest

from app.core.errors import InsufficientDataError, StatisticalComputationError
from app.models.sequential import SequentialDecision
from app.stats.frequentist import determine_winner, pooled_z_statistic, two_proportion_z_test, z_critical
from app.stats.sequential import (
    alpha_spent,
    boundary_curve,
    check_points,
    decide,
    obrien_fleming_boundary,
)


# ======================================================================
# Two-proportion z-test
# ======================================================================


class TestZTest:
    def test_known_example(self):
        """10% vs 13% on 1000 each: pooled z of about 2.10."""
        result = two_proportion_z_test("control", 100, 1000, "treatment", 130, 1000)
        assert result.z_stat == pytest.approx(2.10, abs=0.01)
        assert result.p_value == pytest.approx(0.0357, abs=0.002)
        assert result.significant is True
        assert result.difference == pytest.approx(0.03)
        assert result.ci_low > 0
        assert result.ci_low < result.difference < result.ci_high

    def test_not_significant(self):
        result = two_proportion_z_test("a", 100, 1000, "b", 105, 1000)
        assert result.significant is False
        assert result.ci_low < 0 < result.ci_high

    def test_direction(self):
        assert pooled_z_statistic(130, 1000, 100, 1000) < 0

    def test_higher_confidence_widens_interval(self):
        narrow = two_proportion_z_test("a", 50, 500, "b", 60, 500, confidence=0.90)
        wide = two_proportion_z_test("a", 50, 500, "b", 60, 500, confidence=0.99)
        assert (wide.ci_high - wide.ci_low) > (narrow.ci_high - narrow.ci_low)

    def test_zero_variance(self):
        with pytest.raises(StatisticalComputationError):
            two_proportion_z_test("a", 0, 100, "b", 0, 100)
        with pytest.raises(StatisticalComputationError):
            pooled_z_statistic(50, 50, 80, 80)

    def test_empty_group(self):
        with pytest.raises(InsufficientDataError):
            pooled_z_statistic(0, 0, 5, 100)

    def test_to_dict(self):
        payload = two_proportion_z_test("a", 100, 1000, "b", 130, 1000).to_dict()
        assert payload["a"] == "a"
        assert payload["significant"] is True
        assert set(payload) >= {"z_stat", "p_value", "ci_low", "ci_high"}

    def test_z_critical(self):
        assert z_critical(0.95) == pytest.approx(1.959964, abs=1e-6)
        with pytest.raises(ValueError):
            z_critical(95)


class TestDetermineWinner:
    def test_significant_winner(self):
        result = determine_winner([("a", 100, 1000), ("b", 130, 1000)], minimum_sample_size=100)
        assert result["winner"] == "b"
        assert result["runner_up"] == "a"
        assert result["significant"] is True
        assert result["lift_pct"] == pytest.approx(30.0)
        assert result["p_value"] < 0.05

    def test_leader_found_regardless_of_order(self):
        result = determine_winner([("b", 130, 1000), ("a", 100, 1000), ("c", 90, 1000)], 100)
        assert (result["winner"], result["runner_up"]) == ("b", "a")

    def test_small_samples_have_no_winner(self):
        result = determine_winner([("a", 5, 50), ("b", 20, 50)], minimum_sample_size=100)
        assert result["winner"] is None
        assert result["significant"] is False
        assert "Insufficient sample size" in result["reason"]

    def test_no_significant_difference(self):
        result = determine_winner([("a", 100, 1000), ("b", 105, 1000)], minimum_sample_size=100)
        assert result["winner"] is None
        assert result["runner_up"] == "a"
        assert result["p_value"] > 0.05
        assert "No significant difference" in result["reason"]

    def test_single_variant(self):
        result = determine_winner([("a", 10, 100)], minimum_sample_size=1)
        assert result["winner"] is None
        assert "at least 2 variants" in result["reason"]


# ======================================================================
# O'Brien-Fleming
# ======================================================================


class TestBoundary:
    def test_final_look_matches_fixed_sample(self):
        assert obrien_fleming_boundary(1.0) == pytest.approx(1.96, abs=0.001)

    def test_quarter_information_doubles_boundary(self):
        assert obrien_fleming_boundary(0.25) == pytest.approx(3.92, abs=0.001)

    def test_boundary_decreases_with_information(self):
        fractions = [0.1, 0.2, 0.4, 0.6, 0.8, 1.0]
        bounds = [obrien_fleming_boundary(t) for t in fractions]
        assert all(earlier > later for earlier, later in zip(bounds, bounds[1:]))

    def test_invalid_inputs(self):
        with pytest.raises(ValueError):
            obrien_fleming_boundary(0.0)
        with pytest.raises(ValueError):
            obrien_fleming_boundary(1.5)
        with pytest.raises(ValueError):
            obrien_fleming_boundary(0.5, alpha=0)


class TestAlphaSpending:
    def test_total_alpha_at_end(self):
        assert alpha_spent(1.0) == pytest.approx(0.05, abs=1e-9)
        assert alpha_spent(1.0, alpha=0.01) == pytest.approx(0.01, abs=1e-9)

    def test_spending_is_cumulative(self):
        spent = [alpha_spent(t) for t in (0.2, 0.4, 0.6, 0.8, 1.0)]
        assert all(earlier < later for earlier, later in zip(spent, spent[1:]))
        assert spent[0] < 0.001

    def test_no_information(self):
        assert alpha_spent(0.0) == 0.0

    def test_capped_past_plan(self):
        assert alpha_spent(1.3) == pytest.approx(alpha_spent(1.0))


class TestCheckPoints:
    def test_evenly_spaced(self):
        assert check_points(1000, 5) == [200, 400, 600, 800, 1000]

    def test_last_point_is_planned_total(self):
        assert check_points(7, 3)[-1] == 7

    def test_invalid(self):
        with pytest.raises(ValueError):
            check_points(0, 5)
        with pytest.raises(ValueError):
            check_points(100, 0)

    def test_boundary_curve(self):
        curve = boundary_curve(4)
        assert [c["check_number"] for c in curve] == [1, 2, 3, 4]
        assert curve[0]["boundary_upper"] == pytest.approx(3.92, abs=0.001)
        assert curve[-1]["alpha_spent"] == pytest.approx(0.05, abs=1e-6)
        assert all(c["boundary_lower"] == -c["boundary_upper"] for c in curve)


class TestDecide:
    def test_upper_crossing(self):
        decision, reason = decide(2.5, 1.96, -1.96)
        assert decision == SequentialDecision.stop_winner
        assert "upper boundary" in reason

    def test_lower_crossing(self):
        decision, _ = decide(-3.0, 2.8, -2.8)
        assert decision == SequentialDecision.stop_futile

    def test_inside_boundaries(self):
        decision, reason = decide(1.2, 2.8, -2.8)
        assert decision == SequentialDecision.continue_
        assert "continue" in reason

    def test_boundary_is_exclusive(self):
        assert decide(1.96, 1.96, -1.96)[0] == SequentialDecision.continue_
        assert decide(-1.96, 1.96, -1.96)[0] == SequentialDecision.continue_
        assert decide(1.9601, 1.96, -1.96)[0] == SequentialDecision.stop_winner
        assert decide(-1.9601, 1.96, -1.96)[0] == SequentialDecision.stop_futile

    def test_infinite_z(self):
        decision, _ = decide(math.inf, 1.96, -1.96)
        assert decision == SequentialDecision.stop_winner
