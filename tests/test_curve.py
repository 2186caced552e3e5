"""Tests for the double logistic curve model."""

import numpy as np
import pytest

from phenomix.curve import (
    CurveParameters,
    evaluate,
    huber,
    huber_loss,
    npv_fraction,
    rmse,
    soil_fraction,
)


class TestEvaluate:

    def test_scalar_returns_float(self, known_params):
        value = evaluate(known_params, 200.0)
        assert isinstance(value, float)

    def test_half_height_at_sos(self):
        # Autumn term is ~1 at sos when eos is far away
        params = CurveParameters(0.1, 0.6, 100.0, 400.0, 0.1, 0.1)
        assert evaluate(params, 100.0) == pytest.approx(0.1 + 0.3, abs=1e-6)

    @pytest.mark.parametrize("rate", [0.02, 0.6, 5.0, 50.0])
    def test_bounded_for_extreme_inputs(self, rate):
        params = CurveParameters(0.2, 0.5, 150.0, 250.0, rate, rate)
        t = np.array([-1e6, -1000.0, 0.0, 150.0, 200.0, 250.0, 1000.0, 1e6])
        values = evaluate(params, t)
        assert np.all(np.isfinite(values))
        assert np.all(values >= params.baseline - 1e-12)
        assert np.all(values <= params.peak + 1e-12)

    def test_saturates_far_from_season(self, known_params):
        far = evaluate(known_params, np.array([-5000.0, 5000.0]))
        np.testing.assert_allclose(far, known_params.baseline, atol=1e-9)

    def test_method_matches_function(self, known_params):
        t = np.linspace(0, 365, 20)
        np.testing.assert_array_equal(known_params.evaluate(t), evaluate(known_params, t))


class TestParameters:

    def test_derived_values(self, known_params):
        assert known_params.peak == pytest.approx(0.75)
        assert known_params.season_length == pytest.approx(120.0)

    def test_vector_form(self, known_params):
        x = known_params.to_vector()
        np.testing.assert_allclose(x, [0.15, 0.6, 140.0, 0.08, 120.0, 0.06])
        restored = CurveParameters.from_vector(x)
        assert restored.eos == pytest.approx(known_params.eos)
        assert np.isnan(restored.rmse)

    def test_with_rmse(self, known_params):
        assert known_params.with_rmse(0.03).rmse == pytest.approx(0.03)
        assert np.isnan(known_params.rmse)


class TestLoss:

    def test_rmse_zero_on_own_curve(self, known_params):
        t = np.arange(0.0, 365.0, 10.0)
        assert rmse(known_params, t, evaluate(known_params, t)) == pytest.approx(0.0)

    def test_rmse_empty_is_inf(self, known_params):
        assert rmse(known_params, [], []) == float('inf')

    def test_huber_quadratic_then_linear(self):
        losses = huber([0.05, -0.05, 0.3], k=0.1)
        np.testing.assert_allclose(losses, [0.00125, 0.00125, 0.1 * (0.3 - 0.05)])

    def test_weighted_huber_loss(self, known_params):
        t = np.array([100.0, 200.0])
        values = evaluate(known_params, t) + np.array([0.02, 0.02])
        plain = huber_loss(known_params, t, values)
        weighted = huber_loss(known_params, t, values, weights=[2.0, 0.0])
        assert weighted == pytest.approx(plain)


class TestFractionModels:

    def test_soil_fraction_decreases_through_sos(self, known_params):
        t = np.array([0.0, known_params.sos, 365.0])
        soil = soil_fraction(known_params, t)
        assert soil[0] > 0.99
        assert soil[1] == pytest.approx(0.5)
        assert soil[2] < 0.01
        assert np.all(np.diff(soil) < 0)

    def test_npv_fraction_increases_through_eos(self, known_params):
        t = np.array([0.0, known_params.eos, 1000.0])
        npv = npv_fraction(known_params, t, low=0.1, high=0.6)
        assert npv[0] == pytest.approx(0.1, abs=1e-3)
        assert npv[1] == pytest.approx(0.35)
        assert npv[2] == pytest.approx(0.6, abs=1e-3)
