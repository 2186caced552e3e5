"""
Robust double logistic fitting.

This module handles:
- Initial parameter guess from a VI time series
- Removal of observations belonging to adjacent growing cycles
- Bounded Nelder-Mead minimization of the Huber loss
- Ensembles of randomized restarts (best fit + viable set)
- Area-level fitting with outlier-date exclusion
"""

import logging
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import minimize

from .config import MIN_FIT_OBSERVATIONS, PhenologyConfig
from .curve import CurveParameters, evaluate, huber, rmse


logger = logging.getLogger(__name__)

# Weight of a (range-normalized) constraint violation in the cost function
CONSTRAINT_PENALTY = 1.0e3

# Starting simplex edge, as a fraction of each parameter's bound range
SIMPLEX_STEP = 0.05
POLISH_STEP = 0.005

# Fallback when there is nothing to read a season from
DEFAULT_GUESS = CurveParameters(
    baseline=0.1, amplitude=0.5, sos=120.0, eos=280.0,
    spring_rate=0.05, autumn_rate=0.05,
)


class Observation(NamedTuple):
    """A single valid observation: continuous day of year and value."""
    time: float
    value: float


@dataclass(frozen=True)
class EnsembleResult:
    """
    Outcome of an ensemble fit.

    ``best`` is None when the series is too short to fit.
    """

    best: Optional[CurveParameters]
    viable: Tuple[CurveParameters, ...] = ()
    n_runs: int = 0
    n_observations: int = 0
    n_contaminated: int = 0
    second_pass_applied: bool = False


@dataclass(frozen=True)
class AreaFitResult:
    """
    Area-level fit after outlier-date exclusion.

    ``excluded_times`` / ``excluded_residuals`` describe the observations
    dropped before the refit (empty if none were dropped, or if the refit was
    abandoned because too few observations remained).
    """

    best: Optional[CurveParameters]
    viable: Tuple[CurveParameters, ...] = ()
    residual_threshold: float = float('nan')
    excluded_times: np.ndarray = field(default_factory=lambda: np.empty(0))
    excluded_residuals: np.ndarray = field(default_factory=lambda: np.empty(0))
    n_observations: int = 0
    warnings: Tuple[str, ...] = ()

    @property
    def n_excluded(self) -> int:
        return int(len(self.excluded_times))


# ---------------------------------------------------------------------------
# Series helpers
# ---------------------------------------------------------------------------

def as_series(times, values=None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Normalize input to chronologically sorted, finite (times, values) arrays.

    Accepts ``(times, values)`` arrays, a sequence of ``Observation`` /
    ``(time, value)`` pairs, or a DataFrame with ``time`` and ``value``
    columns.
    """
    if values is None:
        if isinstance(times, pd.DataFrame):
            values = times['value'].to_numpy(dtype=float)
            times = times['time'].to_numpy(dtype=float)
        else:
            pairs = np.asarray(list(times), dtype=float).reshape(-1, 2)
            times, values = pairs[:, 0], pairs[:, 1]

    times = np.asarray(times, dtype=float).ravel()
    values = np.asarray(values, dtype=float).ravel()
    if times.shape != values.shape:
        raise ValueError(
            f"times and values differ in length: {times.size} vs {values.size}"
        )

    valid = np.isfinite(times) & np.isfinite(values)
    times, values = times[valid], values[valid]
    order = np.argsort(times, kind='stable')
    return times[order], values[order]


def continuous_day_of_year(dates) -> np.ndarray:
    """
    Convert datetimes to a continuous day of year.

    Day 1 is January 1st of the earliest year; dates in later years continue
    past 365 (e.g. Jan 1st of the following year is 366 or 367) so a season
    spanning the year boundary has no wraparound.
    """
    index = pd.DatetimeIndex(pd.to_datetime(dates))
    if index.tz is not None:
        index = index.tz_localize(None)
    if len(index) == 0:
        return np.empty(0)
    origin = pd.Timestamp(year=int(index.year.min()), month=1, day=1)
    return np.asarray((index - origin) / pd.Timedelta(days=1) + 1.0, dtype=float)


# ---------------------------------------------------------------------------
# Initial guess and contamination filter
# ---------------------------------------------------------------------------

def initial_guess(times, values) -> CurveParameters:
    """
    Estimate starting parameters from the data.

    Baseline and peak come from the 10th / 90th percentiles. SOS / EOS are the
    midpoints of the steepest rising / falling finite differences, and the
    rates are the local slope at those points scaled by the amplitude (the
    maximum slope of a logistic is ``amplitude * rate / 4``).

    Parameters
    ----------
    times, values : array-like
        Observation series (need not be sorted)

    Returns
    -------
    CurveParameters
        Starting point for the optimizer (not clamped to any bounds)
    """
    times, values = as_series(times, values)
    if len(values) == 0:
        return DEFAULT_GUESS

    baseline = float(np.percentile(values, 10))
    peak = float(np.percentile(values, 90))
    amplitude = max(peak - baseline, 1e-3)

    if len(values) < 2 or times[-1] <= times[0]:
        return CurveParameters(
            baseline=baseline, amplitude=amplitude,
            sos=DEFAULT_GUESS.sos, eos=DEFAULT_GUESS.eos,
            spring_rate=DEFAULT_GUESS.spring_rate,
            autumn_rate=DEFAULT_GUESS.autumn_rate,
        )

    span = times[-1] - times[0]
    dt = np.diff(times)
    ok = dt > 0
    slopes = np.diff(values)[ok] / dt[ok]
    mids = (times[:-1] + 0.5 * dt)[ok]

    sos = times[0] + 0.25 * span
    spring_rate = DEFAULT_GUESS.spring_rate
    if slopes.size and slopes.max() > 0:
        i = int(np.argmax(slopes))
        sos = float(mids[i])
        spring_rate = 4.0 * float(slopes[i]) / amplitude

    eos = times[0] + 0.75 * span
    autumn_rate = DEFAULT_GUESS.autumn_rate
    after = mids > sos
    if np.any(after) and slopes[after].min() < 0:
        j = int(np.argmin(np.where(after, slopes, np.inf)))
        eos = float(mids[j])
        autumn_rate = 4.0 * float(-slopes[j]) / amplitude
    if eos <= sos:
        eos = sos + 0.5 * span

    return CurveParameters(
        baseline=baseline, amplitude=amplitude, sos=float(sos), eos=float(eos),
        spring_rate=float(spring_rate), autumn_rate=float(autumn_rate),
    )


def filter_cycle_contamination(times, values) -> Tuple[np.ndarray, np.ndarray]:
    """
    Trim observations that belong to the previous or next growing cycle.

    Leading observations that are high (above 40% of the seasonal range) and
    falling, well before the main peak, are the tail of the previous season's
    senescence. Trailing observations that are high and rising, well after
    the peak, are the next season's green-up. At most a third of the series
    is trimmed from either end. Series shorter than 6 points are returned
    sorted but otherwise untouched.

    Returns
    -------
    tuple
        (times, values), chronologically sorted
    """
    times, values = as_series(times, values)
    n = len(values)
    if n < 6:
        return times, values

    # Main peak from a 3-point moving average
    smoothed = (values[:-2] + values[1:-1] + values[2:]) / 3.0
    i_peak = int(np.argmax(smoothed)) + 1
    peak_value = float(smoothed[i_peak - 1])
    peak_time = float(times[i_peak])

    baseline = float(np.sort(values)[n // 5])
    threshold = baseline + (peak_value - baseline) * 0.4
    margin = 30.0

    start = 0
    if values[0] > threshold and times[0] < peak_time - margin:
        for i in range(min(n // 3, n - 1)):
            if (values[i] > threshold and values[i + 1] < values[i]
                    and times[i] < peak_time - margin):
                start = i + 1
            else:
                break

    end = n - 1
    if values[-1] > threshold and times[-1] > peak_time + margin:
        for i in range(n - 1, max(2 * n // 3, 1) - 1, -1):
            if (values[i] > threshold and values[i - 1] < values[i]
                    and times[i] > peak_time + margin):
                end = i - 1
            else:
                break

    return times[start:end + 1], values[start:end + 1]


# ---------------------------------------------------------------------------
# Bounded Nelder-Mead
# ---------------------------------------------------------------------------

def _vector_limits(config: PhenologyConfig) -> Tuple[np.ndarray, np.ndarray]:
    """Box limits in optimizer space [baseline, amplitude, sos, rsp, len, rau]."""
    b = config.bounds
    lo = np.array([b.baseline[0], b.amplitude[0], b.sos[0], b.spring_rate[0],
                   config.min_season_length, b.autumn_rate[0]], dtype=float)
    hi = np.array([b.baseline[1], b.amplitude[1], b.sos[1], b.spring_rate[1],
                   config.max_season_length, b.autumn_rate[1]], dtype=float)
    if config.fraction_mode:
        lo[0], hi[0] = 0.0, 0.0
        lo[1], hi[1] = 1.0, 1.0
    return lo, hi


def _eos_window(sos: float, config: PhenologyConfig) -> Tuple[float, float]:
    eos_lo, eos_hi = config.bounds.eos
    return (max(eos_lo, sos + config.min_season_length),
            min(eos_hi, sos + config.max_season_length))


def project(params: CurveParameters, config: PhenologyConfig) -> CurveParameters:
    """
    Move parameters inside the configured bounds and season-length window.

    EOS is clamped into the part of its bound range that also satisfies the
    season-length limits; if those do not intersect, the season-length limit
    wins.
    """
    lo, hi = _vector_limits(config)
    x = params.to_vector()
    x[4] = params.eos - params.sos
    x = np.clip(x, lo, hi)
    eos_lo, eos_hi = _eos_window(x[2], config)
    if eos_lo <= eos_hi:
        x[4] = np.clip(x[2] + x[4], eos_lo, eos_hi) - x[2]
    return CurveParameters.from_vector(x, rmse=params.rmse)


def _constraint_violation(x: np.ndarray, lo: np.ndarray, hi: np.ndarray,
                          config: PhenologyConfig) -> float:
    scale = np.where(hi > lo, hi - lo, 1.0)
    violation = float(np.sum(np.abs(x - np.clip(x, lo, hi)) / scale))

    xc = np.clip(x, lo, hi)
    eos = xc[2] + xc[4]
    eos_lo, eos_hi = config.bounds.eos
    eos_scale = eos_hi - eos_lo if eos_hi > eos_lo else 1.0
    violation += max(0.0, eos_lo - eos, eos - eos_hi) / eos_scale

    if config.slope_symmetry is not None:
        rsp, rau = xc[3], xc[5]
        excess = abs(rsp - rau) - config.slope_symmetry * max(rsp, rau)
        if excess > 0:
            violation += excess / scale[3]
    return violation


def fit(times, values, initial: CurveParameters,
        config: Optional[PhenologyConfig] = None,
        weights=None, max_iter: Optional[int] = None) -> CurveParameters:
    """
    Bounded Nelder-Mead fit of the double logistic, minimizing Huber loss.

    The search runs in range-normalized parameter space. Candidates outside
    the bounds are evaluated at their clamped position plus a penalty
    proportional to the violation, which pushes the simplex back inside
    without ever failing. After the first simplex converges (or hits
    ``max_iter``), a second, much smaller simplex is restarted from the
    result to polish it. The whole procedure is deterministic.

    Parameters
    ----------
    times, values : array-like
        Observation series
    initial : CurveParameters
        Starting point (projected into the bounds first)
    config : PhenologyConfig, optional
        Bounds, season-length / slope-symmetry constraints, Huber constant
    weights : array-like, optional
        Per-observation loss weights, aligned with the sorted series
    max_iter : int, optional
        Iteration cap per simplex. Defaults to ``config.max_iter``.

    Returns
    -------
    CurveParameters
        Fitted parameters with ``rmse`` set against the (unweighted) series
    """
    config = config or PhenologyConfig()
    max_iter = max_iter or config.max_iter
    times, values, weights = _sorted_with_weights(times, values, weights)
    if len(values) == 0:
        return project(initial, config).with_rmse(float('inf'))

    lo, hi = _vector_limits(config)
    free = hi > lo
    scale = np.where(free, hi - lo, 1.0)
    x_start = project(initial, config).to_vector()
    k = config.huber_k

    def to_full(u):
        x = x_start.copy()
        x[free] = lo[free] + u * scale[free]
        return x

    def cost(u):
        x = to_full(u)
        xc = np.clip(x, lo, hi)
        p = CurveParameters.from_vector(xc)
        losses = huber(evaluate(p, times) - values, k)
        if weights is not None:
            losses = losses * weights
        penalty = _constraint_violation(x, lo, hi, config)
        return float(np.sum(losses)) + CONSTRAINT_PENALTY * penalty

    u0 = (x_start[free] - lo[free]) / scale[free]
    best_u, best_cost = u0, cost(u0)
    for step in (SIMPLEX_STEP, POLISH_STEP):
        result = minimize(
            cost, best_u, method='Nelder-Mead',
            options={
                'initial_simplex': _initial_simplex(best_u, step),
                'maxiter': max_iter,
                'xatol': 1e-9,
                'fatol': 1e-13,
            },
        )
        if result.fun <= best_cost:
            best_u, best_cost = result.x, float(result.fun)

    fitted = project(CurveParameters.from_vector(np.clip(to_full(best_u), lo, hi)), config)
    return fitted.with_rmse(rmse(fitted, times, values))


def _initial_simplex(u0: np.ndarray, step: float) -> np.ndarray:
    n = len(u0)
    simplex = np.tile(u0, (n + 1, 1))
    for i in range(n):
        # Step inward from the upper edge of the normalized box
        simplex[i + 1, i] += step if u0[i] + step <= 1.0 else -step
    return simplex


def _sorted_with_weights(times, values, weights):
    if weights is None:
        times, values = as_series(times, values)
        return times, values, None
    times = np.asarray(times, dtype=float).ravel()
    values = np.asarray(values, dtype=float).ravel()
    weights = np.asarray(weights, dtype=float).ravel()
    if not (times.shape == values.shape == weights.shape):
        raise ValueError("times, values and weights must have the same length")
    valid = np.isfinite(times) & np.isfinite(values) & np.isfinite(weights)
    order = np.argsort(times[valid], kind='stable')
    return times[valid][order], values[valid][order], weights[valid][order]


# ---------------------------------------------------------------------------
# Ensembles
# ---------------------------------------------------------------------------

def perturb(params: CurveParameters, rng: np.random.Generator,
            perturbation: float, slope_perturbation: float,
            config: PhenologyConfig) -> CurveParameters:
    """
    Multiply every field by an independent U(1-p, 1+p) factor.

    The two rates use the tighter ``slope_perturbation`` band. The result is
    projected back inside the bounds.
    """
    p, sp = perturbation, slope_perturbation
    factors = rng.uniform(1.0 - p, 1.0 + p, size=4)
    rate_factors = rng.uniform(1.0 - sp, 1.0 + sp, size=2)
    jittered = CurveParameters(
        baseline=params.baseline * factors[0],
        amplitude=params.amplitude * factors[1],
        sos=params.sos * factors[2],
        eos=params.eos * factors[3],
        spring_rate=params.spring_rate * rate_factors[0],
        autumn_rate=params.autumn_rate * rate_factors[1],
    )
    return project(jittered, config)


def second_pass_weights(residuals, weight_min: float, weight_max: float) -> np.ndarray:
    """
    Observation weights from first-pass residuals.

    The observation closest to the curve gets ``weight_max``, the farthest
    ``weight_min``, linearly in between. All weights are ``weight_max`` when
    every residual is zero.
    """
    r = np.abs(np.asarray(residuals, dtype=float))
    r_max = float(r.max()) if r.size else 0.0
    if r_max <= 0:
        return np.full(r.shape, weight_max)
    return weight_max - (weight_max - weight_min) * (r / r_max)


def ensemble_fit(times, values, config: Optional[PhenologyConfig] = None,
                 n_runs: Optional[int] = None,
                 perturbation: Optional[float] = None,
                 slope_perturbation: Optional[float] = None,
                 initial: Optional[CurveParameters] = None,
                 second_pass: Optional[bool] = None,
                 rng: Optional[np.random.Generator] = None,
                 max_iter: Optional[int] = None) -> EnsembleResult:
    """
    Fit from many randomized starting points and keep the best.

    The series is first passed through ``filter_cycle_contamination`` (the
    unfiltered series is used if filtering leaves fewer than 4 points). Run 0
    starts from ``initial`` (or ``initial_guess``); the others from perturbed
    copies of it. The lowest-RMSE run is ``best``; all runs within
    ``config.viable_factor`` times that RMSE form the viable set. With the
    second pass enabled, a residual-weighted refit from ``best`` replaces it
    when its RMSE is lower.

    Parameters
    ----------
    times, values : array-like
        Observation series
    config : PhenologyConfig, optional
        Bounds and defaults; area-level defaults are used for any argument
        left as None
    n_runs : int, optional
        Number of restarts (default ``config.area_runs``)
    perturbation, slope_perturbation : float, optional
        Jitter fractions (default ``config.perturbation`` / ``slope_perturbation``)
    initial : CurveParameters, optional
        Seed for the restarts (e.g. the area-level fit for a pixel)
    second_pass : bool, optional
        Override ``config.second_pass``
    rng : np.random.Generator, optional
        Random source (default: seeded from ``config.seed``)
    max_iter : int, optional
        Iteration cap per simplex

    Returns
    -------
    EnsembleResult
        ``best`` is None if the series has fewer than 4 valid observations
    """
    config = config or PhenologyConfig()
    n_runs = n_runs or config.area_runs
    p = config.perturbation if perturbation is None else perturbation
    sp = config.slope_perturbation if slope_perturbation is None else slope_perturbation
    second_pass = config.second_pass if second_pass is None else second_pass
    rng = rng if rng is not None else np.random.default_rng(config.seed)

    times, values = as_series(times, values)
    if len(values) < MIN_FIT_OBSERVATIONS:
        return EnsembleResult(best=None, n_observations=len(values))

    fit_times, fit_values = filter_cycle_contamination(times, values)
    if len(fit_values) < MIN_FIT_OBSERVATIONS:
        fit_times, fit_values = times, values
    n_contaminated = len(values) - len(fit_values)

    start = project(initial if initial is not None
                    else initial_guess(fit_times, fit_values), config)

    fits: List[CurveParameters] = []
    for i in range(n_runs):
        origin = start if i == 0 else perturb(start, rng, p, sp, config)
        fits.append(fit(fit_times, fit_values, origin, config, max_iter=max_iter))

    fits.sort(key=lambda f: f.rmse)
    best = fits[0]
    viable = tuple(f for f in fits if f.rmse <= config.viable_factor * best.rmse)

    applied = False
    if second_pass:
        residuals = fit_values - evaluate(best, fit_times)
        weights = second_pass_weights(
            residuals, config.second_pass_weight_min, config.second_pass_weight_max
        )
        candidate = fit(fit_times, fit_values, best, config,
                        weights=weights, max_iter=max_iter)
        if candidate.rmse < best.rmse:
            best = candidate
            applied = True

    return EnsembleResult(
        best=best,
        viable=viable,
        n_runs=n_runs,
        n_observations=len(fit_values),
        n_contaminated=n_contaminated,
        second_pass_applied=applied,
    )


def fit_area(times, values, config: Optional[PhenologyConfig] = None) -> AreaFitResult:
    """
    Area-level fit with outlier-date exclusion.

    After an initial ensemble fit, every observation's residual against the
    best curve is computed. Observations with
    ``|residual| > max(floor, factor * median(|residual|))`` are dropped and
    the ensemble is re-run on the rest. If fewer than 4 observations would
    remain, the initial fit is kept and a warning is recorded.

    Parameters
    ----------
    times, values : array-like
        Area-level observation series (e.g. per-frame median VI)
    config : PhenologyConfig, optional
        Fitting configuration

    Returns
    -------
    AreaFitResult
        Best fit, viable ensemble and exclusion diagnostics
    """
    config = config or PhenologyConfig()
    times, values = as_series(times, values)

    initial = ensemble_fit(times, values, config)
    if initial.best is None:
        message = (f"Too few observations for a curve fit "
                   f"({len(values)} < {MIN_FIT_OBSERVATIONS})")
        logger.warning(message)
        return AreaFitResult(best=None, n_observations=len(values),
                             warnings=(message,))

    residuals = values - evaluate(initial.best, times)
    mad = float(np.median(np.abs(residuals)))
    threshold = max(config.residual_floor, config.outlier_mad_factor * mad)
    outliers = np.abs(residuals) > threshold

    if not np.any(outliers):
        logger.info(
            "Area fit RMSE=%.4f, %d viable of %d",
            initial.best.rmse, len(initial.viable), initial.n_runs,
        )
        return AreaFitResult(
            best=initial.best, viable=initial.viable,
            residual_threshold=threshold, n_observations=len(values),
        )

    keep = ~outliers
    if keep.sum() < MIN_FIT_OBSERVATIONS:
        message = (f"Too few dates remaining after outlier exclusion "
                   f"({int(keep.sum())}); keeping the unfiltered fit")
        logger.error(message)
        return AreaFitResult(
            best=initial.best, viable=initial.viable,
            residual_threshold=threshold, n_observations=len(values),
            warnings=(message,),
        )

    logger.warning("Excluded %d outlier date(s) from area fit:", int(outliers.sum()))
    for t, r in zip(times[outliers], residuals[outliers]):
        logger.warning("  DOY %.1f (residual=%.3f)", t, r)

    refit = ensemble_fit(times[keep], values[keep], config)
    logger.info(
        "Area fit (excl. %d outlier) RMSE=%.4f",
        int(outliers.sum()), refit.best.rmse,
    )
    return AreaFitResult(
        best=refit.best,
        viable=refit.viable,
        residual_threshold=threshold,
        excluded_times=times[outliers],
        excluded_residuals=residuals[outliers],
        n_observations=int(keep.sum()),
    )
