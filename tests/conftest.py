"""Shared fixtures: synthetic seasons, observation cubes and pixel grids."""

import numpy as np
import pytest

from phenomix.config import PhenologyConfig
from phenomix.curve import CurveParameters, evaluate
from phenomix.grid import FitOutcome, PhenologyGrid, PixelFit


@pytest.fixture
def known_params() -> CurveParameters:
    return CurveParameters(
        baseline=0.15, amplitude=0.6, sos=140.0, eos=260.0,
        spring_rate=0.08, autumn_rate=0.06,
    )


@pytest.fixture
def fast_config() -> PhenologyConfig:
    """Small ensembles so per-pixel tests stay quick."""
    return PhenologyConfig(area_runs=5, pixel_runs=2, max_iter=300)


@pytest.fixture
def season_cube(known_params):
    """(12 frames, 3, 3) cube generated from ``known_params`` with light noise."""
    rng = np.random.default_rng(42)
    times = np.arange(60.0, 340.0, 24.0)
    curve = evaluate(known_params, times)
    cube = curve[:, None, None] + rng.normal(0.0, 0.005, size=(len(times), 3, 3))
    return times, cube


def make_grid(params_by_cell, shape) -> PhenologyGrid:
    """Grid of ``good`` pixels from a ``{(row, col): CurveParameters}`` mapping."""
    grid = PhenologyGrid.empty(*shape)
    for (row, col), params in params_by_cell.items():
        grid.pixels[row, col] = PixelFit(
            row=row, col=col, params=params, outcome=FitOutcome.GOOD, n_valid=20,
        )
    return grid


def jittered(rng, base: CurveParameters, **shifts) -> CurveParameters:
    """``base`` with a small uniform jitter on every field plus optional shifts."""
    values = {
        'baseline': base.baseline + rng.uniform(-0.01, 0.01),
        'amplitude': base.amplitude + rng.uniform(-0.01, 0.01),
        'sos': base.sos + rng.uniform(-2.0, 2.0),
        'eos': base.eos + rng.uniform(-2.0, 2.0),
        'spring_rate': base.spring_rate + rng.uniform(-0.002, 0.002),
        'autumn_rate': base.autumn_rate + rng.uniform(-0.002, 0.002),
    }
    for name, delta in shifts.items():
        values[name] += delta
    return CurveParameters(rmse=0.02, **values)
