"""
Per-pixel phenology fitting.

This module handles:
- Frame coverage screening against the AOI
- Area-level (per-frame median) and per-pixel series extraction
- Parallel per-pixel ensemble fitting seeded from the area-level fit
- Progress reporting and cooperative cancellation
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import dask
import numpy as np
import xarray as xr
from tqdm import tqdm

from .config import PhenologyConfig
from .curve import CurveParameters
from .fitting import continuous_day_of_year, ensemble_fit
from .grid import FitOutcome, PhenologyGrid, PixelFit, RejectionDetail, classify


logger = logging.getLogger(__name__)

STATUS_COMPLETED = 'completed'
STATUS_CANCELLED = 'cancelled'

# The cancel token is an in-process event, so workers must share memory
SCHEDULERS = ('threads', 'synchronous')


class CancellationToken:
    """Thread-safe cancel flag shared between the caller and the workers."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class PixelFitRun:
    """
    Result of ``fit_all_pixels``.

    A cancelled run never carries a grid.
    """

    status: str
    grid: Optional[PhenologyGrid]
    n_processed: int
    n_total: int

    @property
    def cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED


# ---------------------------------------------------------------------------
# Input preparation
# ---------------------------------------------------------------------------

def as_cube(values, times=None, valid_mask=None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Normalize an observation stack to a (n_frames, height, width) float cube.

    Parameters
    ----------
    values : np.ndarray or xr.DataArray
        Observation stack, NaN where masked. A DataArray must have a ``time``
        dimension; its times are taken from a ``doy`` coordinate if present,
        otherwise converted from the ``time`` coordinate.
    times : array-like, optional
        Continuous day of year per frame (required for plain arrays)
    valid_mask : np.ndarray, optional
        Boolean stack, False where the observation is invalid

    Returns
    -------
    tuple
        (cube, times)
    """
    if isinstance(values, xr.DataArray):
        if 'time' not in values.dims:
            raise ValueError("DataArray input needs a 'time' dimension")
        if times is None:
            if 'doy' in values.coords:
                times = values['doy'].values
            else:
                times = continuous_day_of_year(values['time'].values)
        spatial = [d for d in values.dims if d != 'time']
        values = values.transpose('time', *spatial).values

    cube = np.array(values, dtype=float)
    if cube.ndim != 3:
        raise ValueError(f"Expected (time, y, x) stack, got {cube.ndim}D")
    if times is None:
        raise ValueError("times are required for array input")
    times = np.asarray(times, dtype=float).ravel()
    if times.size != cube.shape[0]:
        raise ValueError(
            f"{times.size} times for {cube.shape[0]} frames"
        )
    if valid_mask is not None:
        valid_mask = np.asarray(valid_mask, dtype=bool)
        if valid_mask.shape != cube.shape:
            raise ValueError(
                f"valid_mask shape {valid_mask.shape} != stack shape {cube.shape}"
            )
        cube[~valid_mask] = np.nan
    return cube, times


def _aoi(aoi_mask, shape) -> np.ndarray:
    if aoi_mask is None:
        return np.ones(shape, dtype=bool)
    aoi_mask = np.asarray(aoi_mask, dtype=bool)
    if aoi_mask.shape != shape:
        raise ValueError(f"aoi_mask shape {aoi_mask.shape} != frame shape {shape}")
    return aoi_mask


def frame_coverage(values, aoi_mask=None) -> np.ndarray:
    """
    Fraction of AOI pixels with a valid observation, per frame.

    Parameters
    ----------
    values : np.ndarray
        (n_frames, height, width) stack, NaN where invalid
    aoi_mask : np.ndarray, optional
        (height, width) boolean AOI; all pixels if None

    Returns
    -------
    np.ndarray
        (n_frames,) coverage in [0, 1]
    """
    values = np.asarray(values, dtype=float)
    aoi = _aoi(aoi_mask, values.shape[1:])
    n_aoi = int(aoi.sum())
    if n_aoi == 0:
        return np.zeros(values.shape[0])
    valid = np.isfinite(values) & aoi[None, :, :]
    return valid.reshape(values.shape[0], -1).sum(axis=1) / n_aoi


def select_frames(values, aoi_mask=None, coverage_threshold: float = 0.0) -> np.ndarray:
    """Boolean mask of frames whose AOI coverage reaches the threshold."""
    return frame_coverage(values, aoi_mask) >= coverage_threshold


def area_series(values, times=None, aoi_mask=None,
                config: Optional[PhenologyConfig] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-frame median observation inside the AOI, for the area-level fit.

    Frames below the coverage threshold are dropped, as they are for every
    pixel series.

    Returns
    -------
    tuple
        (times, medians) for the retained frames
    """
    config = config or PhenologyConfig()
    cube, times = as_cube(values, times)
    aoi = _aoi(aoi_mask, cube.shape[1:])
    keep = select_frames(cube, aoi, config.coverage_threshold)

    out_times, out_values = [], []
    for t, frame in zip(times[keep], cube[keep]):
        sample = frame[aoi]
        sample = sample[np.isfinite(sample)]
        if sample.size:
            out_times.append(t)
            out_values.append(float(np.median(sample)))
    return np.asarray(out_times), np.asarray(out_values)


def extract_pixel_series(cube: np.ndarray, times: np.ndarray,
                         row: int, col: int) -> Tuple[np.ndarray, np.ndarray]:
    """Valid (times, values) of one pixel from a (n_frames, h, w) cube."""
    series = cube[:, row, col]
    valid = np.isfinite(series)
    return times[valid], series[valid]


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------

def pixel_rng(seed: int, row: int, col: int) -> np.random.Generator:
    """Random source for one pixel, independent of scheduling order."""
    return np.random.default_rng(np.random.SeedSequence([seed, row, col]))


def fit_pixel(times, values, row: int, col: int, seed_params: CurveParameters,
              config: PhenologyConfig) -> PixelFit:
    """
    Fit one pixel's series and classify the outcome.

    Fewer than ``config.min_observations`` valid observations gives a
    ``skipped`` pixel with no parameters. Otherwise a small ensemble seeded
    from ``seed_params`` is run and the pixel is ``good`` when its RMSE is at
    most ``config.rmse_threshold``, ``poor`` otherwise.
    """
    n_valid = int(len(values))
    if n_valid < config.min_observations:
        return PixelFit(
            row=row, col=col, params=None, outcome=FitOutcome.SKIPPED,
            n_valid=n_valid,
            detail=RejectionDetail(
                reason=FitOutcome.SKIPPED,
                observation_count=n_valid,
                min_observations=config.min_observations,
            ),
        )

    result = ensemble_fit(
        times, values, config,
        n_runs=config.pixel_runs,
        perturbation=config.pixel_perturbation,
        slope_perturbation=config.pixel_slope_perturbation,
        initial=seed_params,
        rng=pixel_rng(config.seed, row, col),
    )
    px = PixelFit(row=row, col=col, params=result.best,
                  outcome=FitOutcome.POOR, n_valid=n_valid)
    return classify(px, config.rmse_threshold)


def _fit_chunk(work: List[Tuple[int, int]], cube: np.ndarray, times: np.ndarray,
               seed_params: CurveParameters, config: PhenologyConfig,
               token: CancellationToken) -> List[Optional[PixelFit]]:
    results = []
    for row, col in work:
        if token.is_cancelled:
            results.append(None)
            continue
        t, v = extract_pixel_series(cube, times, row, col)
        results.append(fit_pixel(t, v, row, col, seed_params, config))
    return results


def fit_all_pixels(values, times=None, seed_params: Optional[CurveParameters] = None,
                   config: Optional[PhenologyConfig] = None,
                   aoi_mask=None, valid_mask=None,
                   progress_callback: Optional[Callable[[float], None]] = None,
                   cancel_token: Optional[CancellationToken] = None,
                   batch_size: int = 256,
                   scheduler: str = 'threads',
                   show_progress: bool = False) -> PixelFitRun:
    """
    Fit every AOI pixel independently.

    Frames whose valid fraction inside the AOI is below
    ``config.coverage_threshold`` are removed from every pixel's series first.
    Pixels are processed in batches through ``dask`` (each batch split into
    one task per worker); progress is reported after every batch and the
    cancel token is checked before every pixel. A cancelled run discards all
    partial results.

    Parameters
    ----------
    values : np.ndarray or xr.DataArray
        (n_frames, height, width) observation stack, NaN where invalid
    times : array-like, optional
        Continuous day of year per frame
    seed_params : CurveParameters
        Area-level fit used as the starting point of every pixel ensemble
    config : PhenologyConfig, optional
        Fitting configuration
    aoi_mask : np.ndarray, optional
        (height, width) AOI; pixels outside are left absent
    valid_mask : np.ndarray, optional
        (n_frames, height, width) validity, False where masked
    progress_callback : callable, optional
        Called with the completed fraction in [0, 1]
    cancel_token : CancellationToken, optional
        Cooperative cancellation flag
    batch_size : int
        Pixels per progress / cancellation step
    scheduler : str
        dask scheduler, 'threads' or 'synchronous'
    show_progress : bool
        Show a tqdm progress bar

    Returns
    -------
    PixelFitRun
        Completed run with a ``PhenologyGrid``, or a cancelled run without one
    """
    if seed_params is None:
        raise ValueError("seed_params is required (run fit_area first)")
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    if scheduler not in SCHEDULERS:
        raise ValueError(
            f"Unsupported scheduler {scheduler!r}; expected one of {SCHEDULERS}"
        )
    config = config or PhenologyConfig()
    token = cancel_token or CancellationToken()
    t0 = time.perf_counter()

    cube, times = as_cube(values, times, valid_mask)
    height, width = cube.shape[1:]
    aoi = _aoi(aoi_mask, (height, width))

    frame_mask = select_frames(cube, aoi, config.coverage_threshold)
    n_dropped = int((~frame_mask).sum())
    if n_dropped:
        logger.info(
            "Dropping %d of %d frames below %.0f%% coverage",
            n_dropped, len(frame_mask), 100 * config.coverage_threshold,
        )
    cube, times = cube[frame_mask], times[frame_mask]

    work = [(int(r), int(c)) for r, c in zip(*np.nonzero(aoi))]
    n_total = len(work)
    n_workers = max(1, os.cpu_count() or 1)
    logger.info("Per-pixel fit: %d pixels, %d frames", n_total, len(times))

    grid = PhenologyGrid.empty(height, width, seed_params=seed_params,
                               frame_mask=frame_mask)
    bar = tqdm(total=n_total, desc="Pixel fits") if show_progress else None
    n_done = 0
    try:
        for start in range(0, n_total, batch_size):
            if token.is_cancelled:
                break
            batch = work[start:start + batch_size]
            chunk = max(1, -(-len(batch) // n_workers))
            tasks = [
                dask.delayed(_fit_chunk)(batch[i:i + chunk], cube, times,
                                         seed_params, config, token)
                for i in range(0, len(batch), chunk)
            ]
            for chunk_results in dask.compute(*tasks, scheduler=scheduler):
                for px in chunk_results:
                    if px is not None:
                        grid.pixels[px.row, px.col] = px
                        n_done += 1

            if bar is not None:
                bar.update(len(batch))
            if progress_callback is not None:
                progress_callback(n_done / n_total)
    finally:
        if bar is not None:
            bar.close()

    if token.is_cancelled:
        logger.info("Per-pixel fit cancelled after %d of %d pixels", n_done, n_total)
        return PixelFitRun(status=STATUS_CANCELLED, grid=None,
                           n_processed=n_done, n_total=n_total)

    if n_total == 0 and progress_callback is not None:
        progress_callback(1.0)

    grid.compute_seconds = time.perf_counter() - t0
    counts = grid.counts
    logger.info(
        "Per-pixel fit done in %.1fs: %d good, %d poor, %d skipped",
        grid.compute_seconds, counts['good'], counts['poor'], counts['skipped'],
    )
    return PixelFitRun(status=STATUS_COMPLETED, grid=grid,
                       n_processed=n_done, n_total=n_total)
