"""Tests for fitting configuration and bounds validation."""

import pytest

from phenomix.config import ParameterBounds, PhenologyConfig


class TestParameterBounds:

    def test_defaults(self):
        bounds = ParameterBounds()
        assert bounds.sos == (1.0, 365.0)
        assert bounds.eos == (1.0, 730.0)
        assert set(bounds.as_dict()) == {
            'baseline', 'amplitude', 'sos', 'eos', 'spring_rate', 'autumn_rate'
        }

    def test_inverted_bounds_raise(self):
        with pytest.raises(ValueError, match="sos"):
            ParameterBounds(sos=(200.0, 100.0))

    def test_rate_lower_bound_must_be_positive(self):
        with pytest.raises(ValueError):
            ParameterBounds(spring_rate=(0.0, 0.5))

    def test_negative_amplitude_rejected(self):
        with pytest.raises(ValueError):
            ParameterBounds(amplitude=(-0.1, 1.0))


class TestPhenologyConfig:

    def test_defaults(self):
        config = PhenologyConfig()
        assert config.area_runs == 50
        assert config.pixel_runs == 5
        assert config.rmse_threshold == pytest.approx(0.10)
        assert config.min_observations == 4
        assert config.cluster_threshold == pytest.approx(4.0)
        assert config.residual_floor == pytest.approx(0.05)

    def test_fraction_mode_tightens_residual_floor(self):
        assert PhenologyConfig(fraction_mode=True).residual_floor == pytest.approx(0.03)

    @pytest.mark.parametrize("kwargs", [
        {'min_observations': 3},
        {'area_runs': 0},
        {'perturbation': 1.5},
        {'min_season_length': 200.0, 'max_season_length': 100.0},
        {'second_pass_weight_min': 3.0, 'second_pass_weight_max': 1.0},
        {'huber_k': 0.0},
        {'spatial_rescue_fraction': 2.0},
    ])
    def test_invalid_settings_raise(self, kwargs):
        with pytest.raises(ValueError):
            PhenologyConfig(**kwargs)

    def test_config_is_frozen(self):
        config = PhenologyConfig()
        with pytest.raises(AttributeError):
            config.area_runs = 10

    def test_with_bounds(self):
        config = PhenologyConfig().with_bounds(sos=(50.0, 200.0), eos=(200.0, 350.0))
        assert config.bounds.sos == (50.0, 200.0)
        assert config.bounds.eos == (200.0, 350.0)
        assert config.bounds.baseline == ParameterBounds().baseline

    def test_from_dict(self):
        config = PhenologyConfig.from_dict({
            'pixel_runs': 3,
            'rmse_threshold': 0.08,
            'bounds': {'sos': [60, 180]},
        })
        assert config.pixel_runs == 3
        assert config.rmse_threshold == pytest.approx(0.08)
        assert config.bounds.sos == (60.0, 180.0)

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ValueError, match="Unknown config keys"):
            PhenologyConfig.from_dict({'n_runs': 10})
        with pytest.raises(ValueError, match="Unknown bound names"):
            PhenologyConfig.from_dict({'bounds': {'peak': [0, 1]}})
