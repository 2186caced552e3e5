"""
Fitting configuration.

This module handles:
- Per-parameter optimizer bounds for the double logistic model
- The immutable settings object passed into every fit / filter / unmix call
- Validation of caller supplied settings
"""

from dataclasses import dataclass, field, fields, replace
from typing import Dict, Optional, Tuple


# Minimum number of observations for any curve fit (6 parameters, 4 points
# is the smallest series the initial guess can still read a season from)
MIN_FIT_OBSERVATIONS = 4

# Names of the six free curve parameters, in the order used everywhere
PARAMETER_NAMES = (
    'baseline', 'amplitude', 'sos', 'eos', 'spring_rate', 'autumn_rate'
)


@dataclass(frozen=True)
class ParameterBounds:
    """
    Hard [lo, hi] limits for each curve parameter.

    Each field is a ``(lo, hi)`` tuple. Bounds act on the optimizer only:
    candidates outside them are penalized inside the search, they are never
    a reason to reject input data.
    """

    baseline: Tuple[float, float] = (-0.5, 0.8)
    amplitude: Tuple[float, float] = (0.05, 1.5)
    sos: Tuple[float, float] = (1.0, 365.0)
    eos: Tuple[float, float] = (1.0, 730.0)
    spring_rate: Tuple[float, float] = (0.02, 0.6)
    autumn_rate: Tuple[float, float] = (0.02, 0.6)

    def __post_init__(self):
        for name in PARAMETER_NAMES:
            lo, hi = getattr(self, name)
            if lo > hi:
                raise ValueError(
                    f"Invalid bounds for {name}: lo={lo} > hi={hi}"
                )
        if self.spring_rate[0] <= 0 or self.autumn_rate[0] <= 0:
            raise ValueError("Rate lower bounds must be strictly positive")
        if self.amplitude[0] < 0:
            raise ValueError("Amplitude lower bound must be >= 0")

    def as_dict(self) -> Dict[str, Tuple[float, float]]:
        return {name: tuple(getattr(self, name)) for name in PARAMETER_NAMES}


@dataclass(frozen=True)
class PhenologyConfig:
    """
    Immutable settings for area-level fitting, per-pixel fitting,
    cluster filtering and reclassification.

    Parameters
    ----------
    bounds : ParameterBounds
        Per-parameter optimizer limits.
    area_runs, pixel_runs : int
        Ensemble restart counts for the area-level and per-pixel fits.
    perturbation, slope_perturbation : float
        Multiplicative jitter (fraction) applied to the area-level starting
        point; the slope value applies to the two rate parameters.
    pixel_perturbation, pixel_slope_perturbation : float
        Same, for the per-pixel ensembles.
    min_season_length, max_season_length : float
        Allowed range of ``eos - sos`` in days.
    slope_symmetry : float, optional
        If set, ``|rsp - rau| <= slope_symmetry * max(rsp, rau)``.
    huber_k : float
        Huber loss transition point (VI units).
    max_iter : int
        Nelder-Mead iteration cap per simplex.
    rmse_threshold : float
        Pixels with RMSE at or below this are ``good``, above are ``poor``.
    min_observations : int
        Pixels with fewer valid observations are ``skipped``.
    coverage_threshold : float
        Frames whose valid fraction inside the AOI is below this are dropped.
    second_pass : bool
        Run a residual-weighted refit after the ensemble.
    second_pass_weight_min, second_pass_weight_max : float
        Weight range for the second pass.
    cluster_threshold : float
        Combined MAD distance above which a pixel is an outlier candidate.
    spatial_rescue_fraction : float
        Fraction of good 8-neighbours needed to rescue a candidate.
    outlier_residual_floor, outlier_mad_factor : float
        Outlier-date exclusion threshold is
        ``max(floor, factor * median(|residual|))``.
    viable_factor : float
        Ensemble members within ``viable_factor * best_rmse`` are viable.
    fraction_mode : bool
        Fix baseline at 0 and amplitude at 1 (fraction series, 4-param fit).
    seed : int
        Seed for every randomized restart.
    """

    bounds: ParameterBounds = field(default_factory=ParameterBounds)
    area_runs: int = 50
    pixel_runs: int = 5
    perturbation: float = 0.50
    slope_perturbation: float = 0.10
    pixel_perturbation: float = 0.50
    pixel_slope_perturbation: float = 0.10
    min_season_length: float = 50.0
    max_season_length: float = 150.0
    slope_symmetry: Optional[float] = None
    huber_k: float = 0.10
    max_iter: int = 500
    rmse_threshold: float = 0.10
    min_observations: int = 4
    coverage_threshold: float = 0.49
    second_pass: bool = False
    second_pass_weight_min: float = 0.2
    second_pass_weight_max: float = 2.0
    cluster_threshold: float = 4.0
    spatial_rescue_fraction: float = 0.5
    outlier_residual_floor: float = 0.05
    outlier_mad_factor: float = 4.0
    viable_factor: float = 1.5
    fraction_mode: bool = False
    seed: int = 0

    def __post_init__(self):
        if not isinstance(self.bounds, ParameterBounds):
            raise ValueError("bounds must be a ParameterBounds instance")
        if self.area_runs < 1 or self.pixel_runs < 1:
            raise ValueError("Ensemble run counts must be >= 1")
        for name in ('perturbation', 'slope_perturbation',
                     'pixel_perturbation', 'pixel_slope_perturbation'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value}")
        if self.min_season_length <= 0:
            raise ValueError("min_season_length must be positive")
        if self.min_season_length > self.max_season_length:
            raise ValueError(
                f"min_season_length ({self.min_season_length}) > "
                f"max_season_length ({self.max_season_length})"
            )
        if self.slope_symmetry is not None and self.slope_symmetry < 0:
            raise ValueError("slope_symmetry must be >= 0")
        if self.huber_k <= 0:
            raise ValueError("huber_k must be positive")
        if self.max_iter < 1:
            raise ValueError("max_iter must be >= 1")
        if self.min_observations < MIN_FIT_OBSERVATIONS:
            raise ValueError(
                f"min_observations must be >= {MIN_FIT_OBSERVATIONS}, "
                f"got {self.min_observations}"
            )
        if not 0.0 <= self.coverage_threshold <= 1.0:
            raise ValueError("coverage_threshold must be in [0, 1]")
        if self.second_pass_weight_min > self.second_pass_weight_max:
            raise ValueError("second_pass_weight_min > second_pass_weight_max")
        if self.second_pass_weight_min < 0:
            raise ValueError("Second pass weights must be non-negative")
        if self.cluster_threshold <= 0:
            raise ValueError("cluster_threshold must be positive")
        if not 0.0 <= self.spatial_rescue_fraction <= 1.0:
            raise ValueError("spatial_rescue_fraction must be in [0, 1]")
        if self.viable_factor < 1.0:
            raise ValueError("viable_factor must be >= 1")
        if self.seed < 0:
            raise ValueError("seed must be >= 0")

    @property
    def residual_floor(self) -> float:
        """Outlier-date floor, tighter for fraction series."""
        if self.fraction_mode:
            return min(self.outlier_residual_floor, 0.03)
        return self.outlier_residual_floor

    def with_bounds(self, **kwargs) -> "PhenologyConfig":
        """Copy with some parameter bounds replaced, e.g. ``sos=(50, 200)``."""
        return replace(self, bounds=replace(self.bounds, **kwargs))

    @classmethod
    def from_dict(cls, values: Dict) -> "PhenologyConfig":
        """
        Build a config from a plain mapping.

        A nested ``bounds`` mapping of ``name -> [lo, hi]`` is accepted.
        Unknown keys raise ``ValueError``.
        """
        values = dict(values)
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")

        bounds = values.pop('bounds', None)
        if bounds is not None and not isinstance(bounds, ParameterBounds):
            unknown = set(bounds) - set(PARAMETER_NAMES)
            if unknown:
                raise ValueError(f"Unknown bound names: {sorted(unknown)}")
            bounds = ParameterBounds(
                **{k: (float(v[0]), float(v[1])) for k, v in bounds.items()}
            )
        if bounds is not None:
            values['bounds'] = bounds
        return cls(**values)
