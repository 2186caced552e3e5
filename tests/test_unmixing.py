"""Tests for fully constrained spectral unmixing."""

import numpy as np
import pytest

from phenomix.unmixing import (
    BARE_SOIL,
    DEFAULT_BANDS,
    DEFAULT_LIBRARY,
    GREEN_VEGETATION,
    NPV,
    UnmixFractions,
    dn_to_reflectance,
    endmember_matrix,
    fcls,
    fraction_series,
    predict_spectrum,
    unmix_frame,
    unmix_pixel,
    unmix_stack,
)


@pytest.fixture
def endmembers():
    return endmember_matrix(DEFAULT_BANDS)


def _mix(fractions, endmembers):
    return np.asarray(fractions) @ endmembers


class TestLibrary:

    def test_endmember_matrix(self, endmembers):
        assert endmembers.shape == (3, 4)
        np.testing.assert_allclose(endmembers[0], [0.05, 0.09, 0.04, 0.45])
        np.testing.assert_allclose(endmembers[2], [0.12, 0.17, 0.22, 0.28])

    def test_unknown_band(self):
        with pytest.raises(ValueError, match="B99"):
            endmember_matrix(('B02', 'B99'))

    def test_library_covers_ten_bands(self):
        for em in DEFAULT_LIBRARY:
            assert len(em.bands) == 10
        assert GREEN_VEGETATION.values['B8A'] == (865.0, 0.45)


class TestReflectance:

    def test_dn_conversion(self):
        refl = dn_to_reflectance([0, 65535, 1000, 500, 16000, 3500], offset=-1000)
        assert np.isnan(refl[0]) and np.isnan(refl[1])
        assert refl[2] == pytest.approx(0.0)
        assert refl[3] == pytest.approx(0.0)  # -0.05 is valid, clamped
        assert refl[4] == pytest.approx(1.5)
        assert refl[5] == pytest.approx(0.25)

    def test_out_of_range_is_invalid(self):
        refl = dn_to_reflectance([16001, 400], offset=-1000)
        assert np.isnan(refl).all()


class TestUnmixPixel:

    @pytest.mark.parametrize("index", [0, 1, 2])
    def test_pure_endmember(self, endmembers, index):
        result = unmix_pixel(endmembers[index], endmembers)
        fractions = result.as_array()
        expected = np.eye(3)[index]
        np.testing.assert_allclose(fractions, expected, atol=1e-6)
        assert result.rmse == pytest.approx(0.0, abs=1e-8)

    def test_known_mixture(self, endmembers):
        result = unmix_pixel(_mix([0.5, 0.3, 0.2], endmembers), endmembers)
        np.testing.assert_allclose(result.as_array(), [0.5, 0.3, 0.2], atol=1e-6)

    def test_default_endmembers(self):
        observed = GREEN_VEGETATION.reflectance(DEFAULT_BANDS)
        assert unmix_pixel(observed).fveg == pytest.approx(1.0, abs=1e-6)

    def test_constraints_hold_for_arbitrary_spectra(self, endmembers):
        rng = np.random.default_rng(3)
        for observed in rng.uniform(0.0, 0.6, size=(200, 4)):
            result = unmix_pixel(observed, endmembers)
            assert result.is_valid
            assert abs(result.total - 1.0) < 1e-4
            assert result.as_array().min() >= -1e-6
            assert result.rmse >= 0

    def test_bright_spectrum_clamps_to_simplex(self, endmembers):
        # Brighter than every endmember: unconstrained solution leaves the simplex
        result = unmix_pixel(np.array([0.3, 0.4, 0.5, 0.6]), endmembers)
        assert abs(result.total - 1.0) < 1e-4
        assert result.as_array().min() >= 0.0
        assert result.rmse > 0

    def test_nan_band_dropped(self, endmembers):
        observed = _mix([0.2, 0.2, 0.6], endmembers)
        observed[1] = np.nan
        result = unmix_pixel(observed, endmembers)
        assert result.is_valid
        np.testing.assert_allclose(result.as_array(), [0.2, 0.2, 0.6], atol=1e-6)

    def test_fewer_than_three_bands_is_no_data(self, endmembers):
        observed = _mix([0.2, 0.2, 0.6], endmembers)
        observed[:2] = np.nan
        result = unmix_pixel(observed, endmembers)
        assert not result.is_valid
        assert np.isnan(result.fveg) and np.isnan(result.rmse)

    def test_two_band_input_is_no_data(self):
        em = endmember_matrix(('B04', 'B08'))
        assert not unmix_pixel([0.1, 0.3], em).is_valid

    def test_wrong_endmember_count(self, endmembers):
        with pytest.raises(ValueError):
            unmix_pixel(endmembers[0], endmembers[:2])

    def test_band_count_mismatch(self, endmembers):
        with pytest.raises(ValueError):
            unmix_pixel([0.1, 0.2, 0.3], endmembers)

    def test_weights_keep_exact_mixture(self, endmembers):
        observed = _mix([0.4, 0.4, 0.2], endmembers)
        weighted = unmix_pixel(observed, endmembers, weights=[1.0, 5.0, 1.0, 0.5])
        np.testing.assert_allclose(weighted.as_array(), [0.4, 0.4, 0.2], atol=1e-6)

    def test_no_data_sentinel(self):
        sentinel = UnmixFractions.no_data()
        assert not sentinel.is_valid
        assert np.isnan(sentinel.total)


class TestFcls:

    def test_single_remaining_endmember(self, endmembers):
        # Far beyond soil along the soil direction: only soil survives
        fractions = fcls(endmembers[2] * 3.0, endmembers)
        assert fractions.sum() == pytest.approx(1.0)
        assert np.all(fractions >= 0)


class TestFrames:

    @pytest.fixture
    def frame(self, endmembers):
        rasters = np.empty((4, 3, 4))
        rasters[:, :, :2] = endmembers[0][:, None, None]
        rasters[:, :, 2:] = _mix([0.0, 0.5, 0.5], endmembers)[:, None, None]
        return rasters

    def test_unmix_frame(self, frame):
        mask = np.ones((3, 4), dtype=bool)
        mask[0, 0] = False
        ds = unmix_frame(frame, valid_mask=mask, scheduler='synchronous', block_rows=2)
        assert set(ds.data_vars) == {'fveg', 'fnpv', 'fsoil', 'rmse'}
        assert np.isnan(ds['fveg'].values[0, 0])
        assert ds['fveg'].values[1, 0] == pytest.approx(1.0, abs=1e-6)
        assert ds['fnpv'].values[2, 3] == pytest.approx(0.5, abs=1e-6)
        assert ds.attrs['n_valid'] == 11

    def test_unmix_frame_from_dn(self, endmembers):
        dn = np.full((4, 2, 2), 0, dtype=np.uint16)
        dn[:, 1, 1] = np.round(endmembers[2] * 10000 + 1000).astype(np.uint16)
        ds = unmix_frame(dn, dn_offset=-1000.0, scheduler='synchronous')
        assert np.isnan(ds['fsoil'].values[0, 0])
        assert ds['fsoil'].values[1, 1] == pytest.approx(1.0, abs=1e-4)

    def test_frame_band_mismatch(self, frame):
        with pytest.raises(ValueError):
            unmix_frame(frame[:3])

    def test_unmix_stack_and_series(self, frame):
        stack = np.stack([frame, frame, np.full_like(frame, np.nan)])
        ds = unmix_stack(stack, times=[100.0, 130.0, 160.0], scheduler='synchronous')
        assert ds['fveg'].dims == ('time', 'y', 'x')
        np.testing.assert_array_equal(ds['time'].values, [100.0, 130.0, 160.0])

        series = fraction_series(ds)
        assert list(series.index) == [100.0, 130.0, 160.0]
        assert series.loc[100.0, 'n_valid'] == 12
        assert series.loc[160.0, 'n_valid'] == 0
        assert np.isnan(series.loc[160.0, 'fveg'])
        # Half pure vegetation, half zero vegetation
        assert series.loc[100.0, 'fveg'] == pytest.approx(0.5, abs=1e-6)

    def test_fraction_series_aoi(self, frame):
        ds = unmix_stack(frame[None], scheduler='synchronous')
        aoi = np.zeros((3, 4), dtype=bool)
        aoi[:, :2] = True
        series = fraction_series(ds, aoi_mask=aoi)
        assert series['fveg'].iloc[0] == pytest.approx(1.0, abs=1e-6)
        assert series['n_valid'].iloc[0] == 6


class TestPredictSpectrum:

    def test_pure_vegetation(self):
        pure = UnmixFractions(1.0, 0.0, 0.0, 0.0)
        spectrum = predict_spectrum(pure)
        assert len(spectrum) == 10
        assert spectrum['wavelength'].is_monotonic_increasing
        assert spectrum.loc['B08', 'reflectance'] == pytest.approx(0.45)

    def test_mixture(self):
        mixed = UnmixFractions(0.0, 0.5, 0.5, 0.0)
        spectrum = predict_spectrum(mixed, bands=['B04'])
        expected = 0.5 * NPV.values['B04'][1] + 0.5 * BARE_SOIL.values['B04'][1]
        assert spectrum.loc['B04', 'reflectance'] == pytest.approx(expected)
