"""
Per-pixel phenology result grid.

This module handles:
- Fit outcome classification and rejection diagnostics
- The height x width grid of per-pixel fits and its derived counts
- Parameter / outcome maps, uncertainty summaries and xarray export
- Cheap reclassification against a new RMSE threshold
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterator, Optional, Sequence

import numpy as np
import pandas as pd
import xarray as xr

from .config import PARAMETER_NAMES
from .curve import CurveParameters


class FitOutcome(str, Enum):
    GOOD = 'good'
    POOR = 'poor'
    SKIPPED = 'skipped'
    OUTLIER = 'outlier'


# Codes used by outcome_map()
OUTCOME_CODES = {
    FitOutcome.GOOD: 0,
    FitOutcome.POOR: 1,
    FitOutcome.OUTLIER: 2,
    FitOutcome.SKIPPED: 3,
}

# Parameters available as maps (the six free values plus derived ones)
MAP_PARAMETERS = PARAMETER_NAMES + ('peak', 'season_length', 'rmse')


@dataclass(frozen=True)
class RejectionDetail:
    """Why a pixel is not ``good``."""

    reason: FitOutcome
    observation_count: int
    rmse: Optional[float] = None
    rmse_threshold: Optional[float] = None
    min_observations: Optional[int] = None
    cluster_distance: Optional[float] = None
    cluster_threshold: Optional[float] = None
    z_scores: Optional[Dict[str, float]] = None

    def describe(self) -> str:
        if self.reason == FitOutcome.SKIPPED:
            return (f"Too few observations ({self.observation_count} < "
                    f"{self.min_observations})")
        if self.reason == FitOutcome.POOR:
            return f"Poor fit (RMSE {self.rmse:.4f} > {self.rmse_threshold:.4f})"
        if self.reason == FitOutcome.OUTLIER:
            return (f"Outlier parameters (distance {self.cluster_distance:.1f} "
                    f"> {self.cluster_threshold:.1f})")
        return "Good fit"


@dataclass(frozen=True)
class PixelFit:
    """
    Fit attempt for one pixel.

    ``params`` is None for skipped pixels (nothing was computed).
    """

    row: int
    col: int
    params: Optional[CurveParameters]
    outcome: FitOutcome
    n_valid: int
    detail: Optional[RejectionDetail] = None

    @property
    def rmse(self) -> float:
        return self.params.rmse if self.params is not None else float('nan')


def parameter_value(params: CurveParameters, name: str) -> float:
    """Read a map parameter (free, derived or rmse) from a fit."""
    if name not in MAP_PARAMETERS:
        raise ValueError(f"Unknown parameter '{name}', expected one of {MAP_PARAMETERS}")
    return float(getattr(params, name))


@dataclass
class PhenologyGrid:
    """
    Grid of per-pixel fits.

    ``pixels`` is a (height, width) object array holding a ``PixelFit`` or
    None (outside the AOI / never attempted). Counts are derived from the
    cells on demand. Grids are treated as values: reclassification and
    cluster filtering return new grids.
    """

    pixels: np.ndarray
    seed_params: Optional[CurveParameters] = None
    compute_seconds: float = 0.0
    frame_mask: Optional[np.ndarray] = None
    cluster_threshold: Optional[float] = None
    attrs: Dict = field(default_factory=dict)

    def __post_init__(self):
        self.pixels = np.asarray(self.pixels, dtype=object)
        if self.pixels.ndim != 2:
            raise ValueError(f"Expected a 2D pixel grid, got {self.pixels.ndim}D")

    @classmethod
    def empty(cls, height: int, width: int, **kwargs) -> "PhenologyGrid":
        return cls(np.full((height, width), None, dtype=object), **kwargs)

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def shape(self):
        return self.pixels.shape

    def __getitem__(self, index) -> Optional[PixelFit]:
        return self.pixels[index]

    def iter_pixels(self) -> Iterator[PixelFit]:
        """Present cells in row-major order."""
        for px in self.pixels.ravel():
            if px is not None:
                yield px

    def copy(self, pixels: Optional[np.ndarray] = None, **changes) -> "PhenologyGrid":
        grid = replace(self, **changes)
        grid.pixels = self.pixels.copy() if pixels is None else pixels
        grid.attrs = dict(self.attrs)
        return grid

    # -- counts -----------------------------------------------------------

    def count(self, outcome: FitOutcome) -> int:
        return sum(1 for px in self.iter_pixels() if px.outcome == outcome)

    @property
    def counts(self) -> Dict[str, int]:
        counts = {o.value: 0 for o in FitOutcome}
        for px in self.iter_pixels():
            counts[px.outcome.value] += 1
        return counts

    @property
    def good_count(self) -> int:
        return self.count(FitOutcome.GOOD)

    @property
    def poor_count(self) -> int:
        return self.count(FitOutcome.POOR)

    @property
    def skipped_count(self) -> int:
        return self.count(FitOutcome.SKIPPED)

    @property
    def outlier_count(self) -> int:
        return self.count(FitOutcome.OUTLIER)

    # -- maps -------------------------------------------------------------

    def outcome_mask(self, outcome: FitOutcome) -> np.ndarray:
        mask = np.zeros(self.shape, dtype=bool)
        for px in self.iter_pixels():
            mask[px.row, px.col] = px.outcome == outcome
        return mask

    def parameter_map(self, name: str,
                      outcomes: Sequence[FitOutcome] = (FitOutcome.GOOD,)) -> np.ndarray:
        """
        2D map of one parameter.

        Parameters
        ----------
        name : str
            One of the curve parameters, ``peak``, ``season_length`` or ``rmse``
        outcomes : sequence of FitOutcome
            Pixels with these outcomes are filled; everything else is NaN

        Returns
        -------
        np.ndarray
            float array (height, width)
        """
        out = np.full(self.shape, np.nan)
        for px in self.iter_pixels():
            if px.params is not None and px.outcome in outcomes:
                out[px.row, px.col] = parameter_value(px.params, name)
        return out

    def outcome_map(self) -> np.ndarray:
        """Outcome codes: 0 good, 1 poor, 2 outlier, 3 skipped, NaN absent."""
        out = np.full(self.shape, np.nan)
        for px in self.iter_pixels():
            out[px.row, px.col] = OUTCOME_CODES[px.outcome]
        return out

    def parameter_uncertainty(self) -> pd.DataFrame:
        """
        Median and interquartile range of each parameter across good pixels.

        Returns an empty frame when fewer than 3 pixels are good.
        """
        good = [px.params for px in self.iter_pixels()
                if px.outcome == FitOutcome.GOOD and px.params is not None]
        if len(good) < 3:
            return pd.DataFrame(columns=['median', 'iqr'])

        rows = {}
        for name in PARAMETER_NAMES + ('season_length',):
            values = np.array([parameter_value(p, name) for p in good])
            q1, median, q3 = np.percentile(values, [25, 50, 75])
            rows[name] = {'median': float(median), 'iqr': float(q3 - q1)}
        return pd.DataFrame.from_dict(rows, orient='index')

    def to_dataframe(self) -> pd.DataFrame:
        """One row per present pixel with parameters, outcome and reason."""
        records = []
        for px in self.iter_pixels():
            record = {'row': px.row, 'col': px.col,
                      'outcome': px.outcome.value, 'n_valid': px.n_valid}
            if px.params is not None:
                record.update(px.params.as_dict())
            record['reason'] = px.detail.describe() if px.detail else None
            records.append(record)
        return pd.DataFrame.from_records(records)

    def to_dataset(self) -> xr.Dataset:
        """Parameter maps (good pixels) and outcome codes as an xarray Dataset."""
        dims = ('y', 'x')
        data = {name: (dims, self.parameter_map(name)) for name in MAP_PARAMETERS}
        data['outcome'] = (dims, self.outcome_map())
        n_valid = np.full(self.shape, np.nan)
        for px in self.iter_pixels():
            n_valid[px.row, px.col] = px.n_valid
        data['n_valid'] = (dims, n_valid)

        ds = xr.Dataset(data, coords={'y': np.arange(self.height),
                                      'x': np.arange(self.width)})
        ds.attrs.update({f'n_{k}': v for k, v in self.counts.items()})
        ds.attrs['compute_seconds'] = self.compute_seconds
        if self.cluster_threshold is not None:
            ds.attrs['cluster_threshold'] = self.cluster_threshold
        return ds

    def filtered_median_series(self, values: np.ndarray) -> np.ndarray:
        """
        Per-frame median of ``values`` over good pixels only.

        Parameters
        ----------
        values : np.ndarray
            (n_frames, height, width) observation cube, NaN where invalid

        Returns
        -------
        np.ndarray
            (n_frames,) medians, NaN for frames with no valid good pixel
        """
        values = np.asarray(values, dtype=float)
        if values.shape[1:] != self.shape:
            raise ValueError(
                f"Frame shape {values.shape[1:]} does not match grid {self.shape}"
            )
        good = self.outcome_mask(FitOutcome.GOOD)
        out = np.full(values.shape[0], np.nan)
        for i, frame in enumerate(values):
            sample = frame[good]
            sample = sample[np.isfinite(sample)]
            if sample.size:
                out[i] = np.median(sample)
        return out

    # -- reclassification -------------------------------------------------

    def reclassified(self, rmse_threshold: float) -> "PhenologyGrid":
        """
        Move pixels across the good / poor boundary for a new RMSE threshold.

        Only good and poor pixels are touched; parameters are never refitted.
        Applying the same threshold twice gives the same grid.
        """
        pixels = self.pixels.copy()
        for px in self.iter_pixels():
            if px.outcome not in (FitOutcome.GOOD, FitOutcome.POOR):
                continue
            pixels[px.row, px.col] = classify(px, rmse_threshold)
        return self.copy(pixels=pixels)


def classify(px: PixelFit, rmse_threshold: float) -> PixelFit:
    """Good if RMSE <= threshold, otherwise poor with a rejection detail."""
    if px.params is not None and px.params.rmse <= rmse_threshold:
        return replace(px, outcome=FitOutcome.GOOD, detail=None)
    return replace(
        px,
        outcome=FitOutcome.POOR,
        detail=RejectionDetail(
            reason=FitOutcome.POOR,
            observation_count=px.n_valid,
            rmse=px.rmse,
            rmse_threshold=rmse_threshold,
        ),
    )


def reclassify(grid: PhenologyGrid, rmse_threshold: float) -> PhenologyGrid:
    """Functional alias of ``PhenologyGrid.reclassified``."""
    return grid.reclassified(rmse_threshold)
