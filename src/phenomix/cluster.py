"""
Cluster-based outlier filtering of per-pixel fits.

Each good pixel gets a robust distance from the field's typical phenology,
d = sqrt(mean(z^2)) with z = |value - median| / MAD per curve parameter.
Pixels beyond the threshold are flagged as outliers unless enough of their
3x3 neighbourhood is good, which keeps spatially coherent sub-fields.
"""

import logging
from dataclasses import replace
from typing import Optional, Tuple

import numpy as np

from .config import PARAMETER_NAMES, PhenologyConfig
from .grid import FitOutcome, PhenologyGrid, RejectionDetail


logger = logging.getLogger(__name__)

# Floor for a per-parameter MAD (all values identical)
MAD_FLOOR = 1e-10

# Fewer good pixels than this and there is nothing to compare against
MIN_GOOD_PIXELS = 5

NEIGHBOUR_OFFSETS = [(-1, -1), (-1, 0), (-1, 1), (0, -1),
                     (0, 1), (1, -1), (1, 0), (1, 1)]


def robust_statistics(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-column median and MAD of an (n_pixels, n_params) array.

    MAD values below ``MAD_FLOOR`` are raised to it.
    """
    medians = np.median(values, axis=0)
    mads = np.median(np.abs(values - medians), axis=0)
    return medians, np.maximum(mads, MAD_FLOOR)


def cluster_filter(grid: PhenologyGrid, threshold: Optional[float] = None,
                   spatial_rescue_fraction: Optional[float] = None,
                   config: Optional[PhenologyConfig] = None) -> PhenologyGrid:
    """
    Flag good pixels whose parameters are far from the field median.

    Algorithm:
    1. Start from the grid with any previous cluster flags cleared, so the
       statistics always come from the same population of good fits and the
       filter is a single pass.
    2. Median and MAD of each curve parameter across good pixels.
    3. Distance of each good pixel: RMS of its per-parameter z-scores.
       Pixels with ``d > threshold`` become candidates.
    4. Spatial rescue: a candidate whose good 8-neighbours are at least
       ``spatial_rescue_fraction`` non-candidates stays good.
    5. Remaining candidates become ``outlier`` with their z-scores, distance
       and threshold recorded. Fitted parameters are never changed.

    Parameters
    ----------
    grid : PhenologyGrid
        Per-pixel fits (not modified)
    threshold : float, optional
        Distance threshold in MADs (default ``config.cluster_threshold``)
    spatial_rescue_fraction : float, optional
        Share of good neighbours needed to rescue a candidate
        (default ``config.spatial_rescue_fraction``)
    config : PhenologyConfig, optional
        Source of the defaults above

    Returns
    -------
    PhenologyGrid
        New grid with outliers flagged
    """
    config = config or PhenologyConfig()
    if threshold is None:
        threshold = config.cluster_threshold
    if spatial_rescue_fraction is None:
        spatial_rescue_fraction = config.spatial_rescue_fraction
    if threshold <= 0:
        raise ValueError("threshold must be positive")

    pixels = grid.pixels.copy()
    for px in grid.iter_pixels():
        if px.outcome == FitOutcome.OUTLIER:
            pixels[px.row, px.col] = replace(px, outcome=FitOutcome.GOOD, detail=None)

    good = [px for px in pixels.ravel()
            if px is not None and px.outcome == FitOutcome.GOOD]
    if len(good) < MIN_GOOD_PIXELS:
        logger.info("Cluster filter skipped: only %d good pixels", len(good))
        return grid.copy(pixels=pixels, cluster_threshold=threshold)

    values = np.array([[getattr(px.params, name) for name in PARAMETER_NAMES]
                       for px in good])
    medians, mads = robust_statistics(values)
    z_scores = np.abs(values - medians) / mads
    distances = np.sqrt(np.mean(z_scores ** 2, axis=1))

    height, width = grid.shape
    is_good = np.zeros((height, width), dtype=bool)
    is_candidate = np.zeros((height, width), dtype=bool)
    distance_map = np.zeros((height, width))
    for px, d in zip(good, distances):
        is_good[px.row, px.col] = True
        is_candidate[px.row, px.col] = d > threshold
        distance_map[px.row, px.col] = d

    # Spatial rescue, read-only over the candidate map
    is_outlier = is_candidate.copy()
    for row, col in zip(*np.nonzero(is_candidate)):
        n_good, n_kept = 0, 0
        for dr, dc in NEIGHBOUR_OFFSETS:
            r, c = row + dr, col + dc
            if 0 <= r < height and 0 <= c < width and is_good[r, c]:
                n_good += 1
                n_kept += not is_candidate[r, c]
        if n_good > 0 and n_kept / n_good >= spatial_rescue_fraction:
            is_outlier[row, col] = False

    for px, z in zip(good, z_scores):
        if not is_outlier[px.row, px.col]:
            continue
        pixels[px.row, px.col] = replace(
            px,
            outcome=FitOutcome.OUTLIER,
            detail=RejectionDetail(
                reason=FitOutcome.OUTLIER,
                observation_count=px.n_valid,
                rmse=px.rmse,
                cluster_distance=float(distance_map[px.row, px.col]),
                cluster_threshold=threshold,
                z_scores={name: float(v) for name, v in zip(PARAMETER_NAMES, z)},
            ),
        )

    logger.info(
        "Cluster filter: %d candidates, %d rescued, %d outliers",
        int(is_candidate.sum()), int(is_candidate.sum() - is_outlier.sum()),
        int(is_outlier.sum()),
    )
    return grid.copy(pixels=pixels, cluster_threshold=threshold)
