"""
Phenomix: Per-Pixel Vegetation Phenology and Spectral Unmixing
===============================================================

Modules:
    config: Fitting settings and parameter bounds
    curve: Double logistic seasonal curve and robust loss
    fitting: Bounded ensemble fitting and area-level fit
    grid: Per-pixel result grid, outcomes and map products
    pixel_fit: Parallel per-pixel fitting with progress and cancellation
    cluster: MAD-based outlier filter with spatial rescue
    unmixing: Fully constrained vegetation / NPV / soil unmixing
"""

from .config import (
    ParameterBounds,
    PhenologyConfig,
    PARAMETER_NAMES,
)

from .curve import (
    CurveParameters,
    evaluate,
    rmse,
    huber_loss,
    soil_fraction,
    npv_fraction,
)

from .fitting import (
    EnsembleResult,
    AreaFitResult,
    continuous_day_of_year,
    initial_guess,
    filter_cycle_contamination,
    fit,
    ensemble_fit,
    fit_area,
)

from .grid import (
    FitOutcome,
    RejectionDetail,
    PixelFit,
    PhenologyGrid,
    reclassify,
)

from .pixel_fit import (
    CancellationToken,
    PixelFitRun,
    frame_coverage,
    area_series,
    fit_all_pixels,
)

from .cluster import cluster_filter

from .unmixing import (
    Endmember,
    DEFAULT_LIBRARY,
    DEFAULT_BANDS,
    UnmixFractions,
    dn_to_reflectance,
    unmix_pixel,
    unmix_frame,
    unmix_stack,
    fraction_series,
    predict_spectrum,
)

__version__ = "0.1.0"
