"""
Linear spectral unmixing into green vegetation, NPV and bare soil.

This module handles:
- The reference endmember library (Sentinel-2 band centres)
- DN to surface reflectance conversion with validity screening
- Fully constrained least squares (non-negative, sum-to-one) per pixel
- Frame and time-stack unmixing, parallel over row blocks with dask
- Per-frame median fraction series for re-fitting with the curve model
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import dask
import numpy as np
import pandas as pd
import xarray as xr
from tqdm import tqdm


logger = logging.getLogger(__name__)

# Default bands used for unmixing (3 endmembers, 4 bands: overdetermined)
DEFAULT_BANDS = ('B02', 'B03', 'B04', 'B08')

FRACTION_NAMES = ('fveg', 'fnpv', 'fsoil')

# Active-set iterations; 3 endmembers need at most 2 reductions
MAX_PROJECTION_ITER = 5

# Below this many usable bands a pixel is no data
MIN_BANDS = 3

# Sentinel-2 L2A scaling
REFLECTANCE_SCALE = 10000.0
DN_NODATA = (0, 65535)
VALID_REFLECTANCE = (-0.05, 1.5)


@dataclass(frozen=True)
class Endmember:
    """
    Reference spectrum of a pure material.

    ``values`` maps band name to ``(wavelength_nm, reflectance)``.
    """

    name: str
    values: Dict[str, Tuple[float, float]]

    @property
    def bands(self) -> Tuple[str, ...]:
        return tuple(self.values)

    def reflectance(self, bands: Sequence[str]) -> np.ndarray:
        missing = [b for b in bands if b not in self.values]
        if missing:
            raise ValueError(f"{self.name} has no reflectance for bands {missing}")
        return np.array([self.values[b][1] for b in bands], dtype=float)

    def wavelengths(self, bands: Sequence[str]) -> np.ndarray:
        return np.array([self.values[b][0] for b in bands], dtype=float)


def _spectrum(reflectances: Sequence[float]) -> Dict[str, Tuple[float, float]]:
    centres = [('B02', 490), ('B03', 560), ('B04', 665), ('B05', 705),
               ('B06', 740), ('B07', 783), ('B08', 842), ('B8A', 865),
               ('B11', 1610), ('B12', 2190)]
    return {band: (float(nm), float(r)) for (band, nm), r in zip(centres, reflectances)}


GREEN_VEGETATION = Endmember(
    'Green Vegetation',
    _spectrum([0.05, 0.09, 0.04, 0.06, 0.30, 0.40, 0.45, 0.45, 0.20, 0.10]),
)
NPV = Endmember(
    'NPV (Dry Vegetation)',
    _spectrum([0.05, 0.08, 0.10, 0.14, 0.20, 0.24, 0.26, 0.26, 0.30, 0.22]),
)
BARE_SOIL = Endmember(
    'Bare Soil',
    _spectrum([0.12, 0.17, 0.22, 0.24, 0.26, 0.27, 0.28, 0.29, 0.35, 0.30]),
)

# Order matches FRACTION_NAMES
DEFAULT_LIBRARY = (GREEN_VEGETATION, NPV, BARE_SOIL)


def endmember_matrix(bands: Sequence[str] = DEFAULT_BANDS,
                     library: Sequence[Endmember] = DEFAULT_LIBRARY) -> np.ndarray:
    """(3, n_bands) endmember reflectance matrix for the given bands."""
    if len(library) != len(FRACTION_NAMES):
        raise ValueError(f"Expected 3 endmembers, got {len(library)}")
    return np.vstack([em.reflectance(bands) for em in library])


@dataclass(frozen=True)
class UnmixFractions:
    """
    Fractions of one pixel and the reconstruction RMSE.

    A pixel that could not be unmixed carries NaN everywhere (see
    ``no_data``); it is missing data, never an all-zero mixture.
    """

    fveg: float
    fnpv: float
    fsoil: float
    rmse: float

    @classmethod
    def no_data(cls) -> "UnmixFractions":
        return cls(np.nan, np.nan, np.nan, np.nan)

    @property
    def is_valid(self) -> bool:
        return bool(np.isfinite([self.fveg, self.fnpv, self.fsoil]).all())

    @property
    def total(self) -> float:
        return self.fveg + self.fnpv + self.fsoil

    def as_array(self) -> np.ndarray:
        return np.array([self.fveg, self.fnpv, self.fsoil])


# ---------------------------------------------------------------------------
# Reflectance
# ---------------------------------------------------------------------------

def dn_to_reflectance(dn, offset: float = 0.0) -> np.ndarray:
    """
    Convert Sentinel-2 L2A digital numbers to surface reflectance.

    ``reflectance = (dn + offset) / 10000``. DN 0 and 65535 (no data /
    saturated) and reflectance outside [-0.05, 1.5] become NaN; slightly
    negative reflectance is clamped to 0.

    Parameters
    ----------
    dn : array-like
        Raw digital numbers
    offset : float
        BOA additive offset (e.g. -1000 for processing baseline >= 04.00)

    Returns
    -------
    np.ndarray
        float reflectance, NaN where invalid
    """
    dn = np.asarray(dn, dtype=float)
    refl = (dn + offset) / REFLECTANCE_SCALE
    invalid = ~np.isfinite(dn) | np.isin(dn, DN_NODATA)
    invalid |= (refl < VALID_REFLECTANCE[0]) | (refl > VALID_REFLECTANCE[1])
    return np.where(invalid, np.nan, np.maximum(refl, 0.0))


# ---------------------------------------------------------------------------
# Solver
# ---------------------------------------------------------------------------

def _sum_to_one_solve(endmembers: np.ndarray, observed: np.ndarray,
                      weights: np.ndarray) -> np.ndarray:
    """
    Weighted least squares with sum(f) = 1 via the augmented normal equations.

    ``endmembers`` is (k, n_bands). Solves
    ``[[E W E^T, 1], [1^T, 0]] [f, lambda] = [E W y, 1]``.
    """
    k = endmembers.shape[0]
    if k == 1:
        return np.ones(1)
    gram = (endmembers * weights) @ endmembers.T
    aug = np.zeros((k + 1, k + 1))
    aug[:k, :k] = gram
    aug[:k, k] = 1.0
    aug[k, :k] = 1.0
    rhs = np.append((endmembers * weights) @ observed, 1.0)
    # lstsq tolerates collinear endmembers over the retained bands
    solution = np.linalg.lstsq(aug, rhs, rcond=None)[0]
    return solution[:k]


def fcls(observed: np.ndarray, endmembers: np.ndarray,
         weights: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Fully constrained least squares fractions.

    The sum-to-one solution is computed first. While any fraction is
    negative, negative components are fixed at zero and the reduced system
    is solved again over the remaining endmembers. If the iteration cap is
    reached, remaining negatives are clamped and the rest renormalized.

    Parameters
    ----------
    observed : np.ndarray
        (n_bands,) reflectance, all finite
    endmembers : np.ndarray
        (n_endmembers, n_bands) endmember matrix
    weights : np.ndarray, optional
        (n_bands,) per-band weights

    Returns
    -------
    np.ndarray
        (n_endmembers,) fractions, non-negative and summing to one
    """
    n_end = endmembers.shape[0]
    weights = np.ones(endmembers.shape[1]) if weights is None else weights
    active = np.ones(n_end, dtype=bool)
    fractions = np.zeros(n_end)

    for _ in range(MAX_PROJECTION_ITER):
        idx = np.flatnonzero(active)
        solution = _sum_to_one_solve(endmembers[idx], observed, weights)
        fractions[:] = 0.0
        fractions[idx] = solution
        negative = solution < 0
        if not negative.any():
            return fractions
        active[idx[negative]] = False

    fractions = np.maximum(fractions, 0.0)
    total = fractions.sum()
    if total > 0:
        return fractions / total
    return np.full(n_end, 1.0 / n_end)


def unmix_pixel(observed, endmembers=None,
                weights=None) -> UnmixFractions:
    """
    Unmix one pixel into vegetation, NPV and soil fractions.

    Bands with a NaN observation are dropped together with the matching
    endmember values. Fewer than 3 usable bands gives
    ``UnmixFractions.no_data()``.

    Parameters
    ----------
    observed : array-like
        (n_bands,) surface reflectance
    endmembers : array-like, optional
        (3, n_bands) endmember matrix, rows in vegetation / NPV / soil order
        (default: library at ``DEFAULT_BANDS``)
    weights : array-like, optional
        (n_bands,) per-band weights

    Returns
    -------
    UnmixFractions
    """
    observed = np.asarray(observed, dtype=float).ravel()
    endmembers = endmember_matrix() if endmembers is None else np.asarray(endmembers, dtype=float)
    if endmembers.ndim != 2 or endmembers.shape[0] != len(FRACTION_NAMES):
        raise ValueError(
            f"Expected a (3, n_bands) endmember matrix, got shape {endmembers.shape}"
        )
    if endmembers.shape[1] != observed.size:
        raise ValueError(
            f"{observed.size} observed bands for {endmembers.shape[1]} endmember bands"
        )
    weights = (np.ones(observed.size) if weights is None
               else np.asarray(weights, dtype=float).ravel())
    if weights.size != observed.size:
        raise ValueError(f"{weights.size} weights for {observed.size} bands")

    usable = np.isfinite(observed) & np.isfinite(endmembers).all(axis=0)
    if usable.sum() < MIN_BANDS:
        return UnmixFractions.no_data()

    y = observed[usable]
    em = endmembers[:, usable]
    fractions = fcls(y, em, weights[usable])
    residual = y - fractions @ em
    rmse = float(np.sqrt(np.mean(residual ** 2)))
    return UnmixFractions(float(fractions[0]), float(fractions[1]),
                          float(fractions[2]), rmse)


def predict_spectrum(fractions: UnmixFractions,
                     library: Sequence[Endmember] = DEFAULT_LIBRARY,
                     bands: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    Mixed spectrum implied by a set of fractions.

    Returns a frame indexed by band with ``wavelength`` (nm) and
    ``reflectance`` columns, ordered by wavelength. All library bands are
    used when ``bands`` is None.
    """
    bands = list(bands or library[0].bands)
    matrix = endmember_matrix(bands, library)
    return pd.DataFrame(
        {'wavelength': library[0].wavelengths(bands),
         'reflectance': fractions.as_array() @ matrix},
        index=pd.Index(bands, name='band'),
    ).sort_values('wavelength')


# ---------------------------------------------------------------------------
# Frames and stacks
# ---------------------------------------------------------------------------

def _unmix_rows(block: np.ndarray, endmembers: np.ndarray,
                weights: Optional[np.ndarray]) -> np.ndarray:
    """Unmix a (n_bands, rows, width) block into a (4, rows, width) array."""
    out = np.full((4,) + block.shape[1:], np.nan)
    for r in range(block.shape[1]):
        for c in range(block.shape[2]):
            pixel = block[:, r, c]
            if not np.isfinite(pixel).any():
                continue
            result = unmix_pixel(pixel, endmembers, weights)
            out[:, r, c] = (result.fveg, result.fnpv, result.fsoil, result.rmse)
    return out


def _band_cube(band_rasters, bands: Sequence[str]) -> np.ndarray:
    if isinstance(band_rasters, xr.DataArray):
        if 'band' not in band_rasters.dims:
            raise ValueError("DataArray input needs a 'band' dimension")
        if 'band' in band_rasters.coords and band_rasters['band'].dtype.kind in 'OUS':
            band_rasters = band_rasters.sel(band=list(bands))
        spatial = [d for d in band_rasters.dims if d != 'band']
        band_rasters = band_rasters.transpose('band', *spatial).values
    cube = np.array(band_rasters, dtype=float)
    if cube.ndim != 3:
        raise ValueError(f"Expected (band, y, x) rasters, got {cube.ndim}D")
    return cube


def unmix_frame(band_rasters, endmembers=None,
                bands: Sequence[str] = DEFAULT_BANDS,
                valid_mask=None, dn_offset: Optional[float] = None,
                weights=None, scheduler: str = 'threads',
                block_rows: Optional[int] = None) -> xr.Dataset:
    """
    Unmix every pixel of one frame.

    Pixels are independent; the frame is split into row blocks computed as
    ``dask.delayed`` tasks.

    Parameters
    ----------
    band_rasters : np.ndarray or xr.DataArray
        (n_bands, height, width) reflectance (or DN, see ``dn_offset``).
        A DataArray with string ``band`` labels is reordered to ``bands``.
    endmembers : array-like, optional
        (3, n_bands) matrix (default: library at ``bands``)
    bands : sequence of str
        Band names of the rasters, used for the default endmembers
    valid_mask : np.ndarray, optional
        (height, width) boolean, False pixels are no data
    dn_offset : float, optional
        If given, rasters are raw DN and converted with ``dn_to_reflectance``
    weights : array-like, optional
        Per-band weights
    scheduler : str
        dask scheduler
    block_rows : int, optional
        Rows per task (default: height split across the CPU count)

    Returns
    -------
    xr.Dataset
        ``fveg``, ``fnpv``, ``fsoil``, ``rmse`` on (y, x), NaN for no data
    """
    cube = _band_cube(band_rasters, bands)
    if dn_offset is not None:
        cube = dn_to_reflectance(cube, dn_offset)
    endmembers = (endmember_matrix(bands) if endmembers is None
                  else np.asarray(endmembers, dtype=float))
    if endmembers.ndim != 2 or endmembers.shape[1] != cube.shape[0]:
        raise ValueError(
            f"{cube.shape[0]} raster bands for endmember matrix {endmembers.shape}"
        )
    height, width = cube.shape[1:]
    if valid_mask is not None:
        valid_mask = np.asarray(valid_mask, dtype=bool)
        if valid_mask.shape != (height, width):
            raise ValueError(
                f"valid_mask shape {valid_mask.shape} != frame shape {(height, width)}"
            )
        cube[:, ~valid_mask] = np.nan

    if block_rows is None:
        block_rows = max(1, -(-height // max(1, os.cpu_count() or 1)))
    tasks = [
        dask.delayed(_unmix_rows)(cube[:, r0:r0 + block_rows], endmembers, weights)
        for r0 in range(0, height, block_rows)
    ]
    blocks = dask.compute(*tasks, scheduler=scheduler)
    out = (np.concatenate(blocks, axis=1) if blocks
           else np.full((4, height, width), np.nan))

    dims = ('y', 'x')
    ds = xr.Dataset(
        {name: (dims, out[i]) for i, name in enumerate(FRACTION_NAMES + ('rmse',))},
        coords={'y': np.arange(height), 'x': np.arange(width)},
    )
    ds.attrs['n_valid'] = int(np.isfinite(out[0]).sum())
    return ds


def unmix_stack(band_stack, times=None, endmembers=None,
                bands: Sequence[str] = DEFAULT_BANDS,
                valid_mask=None, dn_offset: Optional[float] = None,
                weights=None, scheduler: str = 'threads',
                show_progress: bool = False) -> xr.Dataset:
    """
    Unmix a time series of band rasters.

    Parameters
    ----------
    band_stack : np.ndarray
        (n_frames, n_bands, height, width) rasters
    times : array-like, optional
        Per-frame time coordinate (default: frame index)
    valid_mask : np.ndarray, optional
        (n_frames, height, width) or (height, width) validity

    Other parameters are passed to ``unmix_frame``.

    Returns
    -------
    xr.Dataset
        Fractions and RMSE on (time, y, x)
    """
    stack = np.asarray(band_stack, dtype=float)
    if stack.ndim != 4:
        raise ValueError(f"Expected (time, band, y, x) stack, got {stack.ndim}D")
    n_frames = stack.shape[0]
    times = np.arange(n_frames) if times is None else np.asarray(times)
    if times.size != n_frames:
        raise ValueError(f"{times.size} times for {n_frames} frames")
    if valid_mask is not None:
        valid_mask = np.asarray(valid_mask, dtype=bool)
        if valid_mask.ndim == 2:
            valid_mask = np.broadcast_to(valid_mask, (n_frames,) + valid_mask.shape)

    frames = []
    for i in tqdm(range(n_frames), desc="Unmixing", disable=not show_progress):
        frames.append(unmix_frame(
            stack[i], endmembers=endmembers, bands=bands,
            valid_mask=None if valid_mask is None else valid_mask[i],
            dn_offset=dn_offset, weights=weights, scheduler=scheduler,
        ))
    ds = xr.concat(frames, dim='time').assign_coords(time=times)
    ds.attrs = {}
    logger.info("Unmixed %d frames of %dx%d pixels", n_frames, *stack.shape[2:])
    return ds


def fraction_series(fractions: xr.Dataset, aoi_mask=None,
                    min_valid: int = 1) -> pd.DataFrame:
    """
    Per-frame median fractions inside the AOI.

    Frames with fewer than ``min_valid`` unmixed pixels get NaN medians.
    The ``fveg`` column can be fitted with ``fit_area`` in fraction mode.

    Parameters
    ----------
    fractions : xr.Dataset
        Output of ``unmix_stack``
    aoi_mask : np.ndarray, optional
        (height, width) AOI
    min_valid : int
        Minimum valid pixels per frame

    Returns
    -------
    pd.DataFrame
        Indexed by time, columns ``fveg``, ``fnpv``, ``fsoil``, ``rmse``,
        ``n_valid``
    """
    if 'time' not in fractions.dims:
        raise ValueError("Expected a Dataset with a 'time' dimension")
    if aoi_mask is not None:
        aoi = xr.DataArray(np.asarray(aoi_mask, dtype=bool), dims=('y', 'x'))
        fractions = fractions.where(aoi)

    n_valid = fractions['fveg'].notnull().sum(dim=('y', 'x')).values
    records = {name: fractions[name].median(dim=('y', 'x'), skipna=True).values
               for name in FRACTION_NAMES + ('rmse',)}
    frame = pd.DataFrame(records, index=pd.Index(fractions['time'].values, name='time'))
    frame.loc[n_valid < min_valid, list(records)] = np.nan
    frame['n_valid'] = n_valid.astype(int)
    return frame
