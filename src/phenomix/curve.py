"""
Double logistic seasonal curve.

f(t) = baseline + amplitude * (1/(1+exp(-rsp*(t-sos))) + 1/(1+exp(rau*(t-eos))) - 1)

This module handles:
- The curve parameter record and its optimizer vector form
- Numerically stable evaluation (saturating logistic terms)
- Fit quality metrics (RMSE, Huber loss)
- Soil / NPV fraction models derived from a fitted curve
"""

from dataclasses import dataclass, replace
from typing import Dict

import numpy as np
from scipy.special import expit


@dataclass(frozen=True)
class CurveParameters:
    """
    Parameters of a single-season double logistic curve.

    ``rmse`` is not part of the model; it records the fit quality against
    the dataset the parameters were fitted to (NaN if never fitted).
    """

    baseline: float
    amplitude: float
    sos: float
    eos: float
    spring_rate: float
    autumn_rate: float
    rmse: float = float('nan')

    @property
    def peak(self) -> float:
        return self.baseline + self.amplitude

    @property
    def season_length(self) -> float:
        return self.eos - self.sos

    def evaluate(self, t):
        """Evaluate the curve at day(s) of year ``t``."""
        return evaluate(self, t)

    def to_vector(self) -> np.ndarray:
        """Optimizer form: [baseline, amplitude, sos, rsp, season_length, rau]."""
        return np.array([
            self.baseline, self.amplitude, self.sos,
            self.spring_rate, self.season_length, self.autumn_rate,
        ], dtype=float)

    @classmethod
    def from_vector(cls, x, rmse: float = float('nan')) -> "CurveParameters":
        return cls(
            baseline=float(x[0]),
            amplitude=float(x[1]),
            sos=float(x[2]),
            eos=float(x[2] + x[4]),
            spring_rate=float(x[3]),
            autumn_rate=float(x[5]),
            rmse=float(rmse),
        )

    def with_rmse(self, rmse: float) -> "CurveParameters":
        return replace(self, rmse=float(rmse))

    def as_dict(self) -> Dict[str, float]:
        return {
            'baseline': self.baseline,
            'amplitude': self.amplitude,
            'sos': self.sos,
            'eos': self.eos,
            'spring_rate': self.spring_rate,
            'autumn_rate': self.autumn_rate,
            'rmse': self.rmse,
        }


def evaluate(params: CurveParameters, t):
    """
    Evaluate the double logistic at day(s) of year ``t``.

    Uses ``expit`` so very large exponents saturate to 0 or 1 instead of
    overflowing. Output always lies in ``[baseline, baseline + amplitude]``.

    Parameters
    ----------
    params : CurveParameters
        Curve parameters
    t : float or array-like
        Continuous day of year

    Returns
    -------
    float or np.ndarray
        Curve value(s), same shape as ``t``
    """
    t = np.asarray(t, dtype=float)
    spring = expit(params.spring_rate * (t - params.sos))
    autumn = expit(-params.autumn_rate * (t - params.eos))
    value = params.baseline + params.amplitude * (spring + autumn - 1.0)
    if value.ndim == 0:
        return float(value)
    return value


def rmse(params: CurveParameters, times, values) -> float:
    """Root mean squared error of the curve against observations."""
    values = np.asarray(values, dtype=float)
    if values.size == 0:
        return float('inf')
    residuals = evaluate(params, times) - values
    return float(np.sqrt(np.mean(residuals ** 2)))


def huber(residuals, k: float) -> np.ndarray:
    """Elementwise Huber loss: r^2/2 inside ``k``, linear beyond."""
    r = np.abs(np.asarray(residuals, dtype=float))
    return np.where(r <= k, 0.5 * r * r, k * (r - 0.5 * k))


def huber_loss(params: CurveParameters, times, values, k: float = 0.10,
               weights=None) -> float:
    """Sum of (optionally weighted) Huber losses of the residuals."""
    values = np.asarray(values, dtype=float)
    if values.size == 0:
        return float('inf')
    losses = huber(evaluate(params, times) - values, k)
    if weights is not None:
        losses = losses * np.asarray(weights, dtype=float)
    return float(np.sum(losses))


def soil_fraction(params: CurveParameters, t, low: float = 0.0,
                  high: float = 1.0):
    """
    Soil fraction model: one decreasing logistic centred at SOS.

    Bare soil is exposed before green-up and covered as the canopy closes,
    at the same timing and rate as the spring limb of the fitted curve.
    """
    t = np.asarray(t, dtype=float)
    value = low + (high - low) * expit(-params.spring_rate * (t - params.sos))
    return float(value) if value.ndim == 0 else value


def npv_fraction(params: CurveParameters, t, low: float = 0.0,
                 high: float = 1.0):
    """
    Non-photosynthetic vegetation model: one increasing logistic at EOS.

    Senesced material accumulates as green vegetation declines, at the
    timing and rate of the autumn limb of the fitted curve.
    """
    t = np.asarray(t, dtype=float)
    value = low + (high - low) * expit(params.autumn_rate * (t - params.eos))
    return float(value) if value.ndim == 0 else value
