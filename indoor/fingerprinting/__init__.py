"""Non-linear RSSI fingerprint positioning.

A query fingerprint is located from calibration fingerprints recorded at
known positions. The closest calibration fingerprints are selected by RSSI
similarity, then the position is refined by weighted non-linear least
squares on a first, second or third order Taylor expansion of the path-loss
model around each matched fingerprint. Optionally, positions of radio
sources without a known location are estimated jointly.

Main components:
    - RadioSource, Reading, Fingerprint, LocatedFingerprint: Input records
    - find_nearest_fingerprints: RSSI-similarity matcher
    - solve, linear_seed: Non-linear and closed-form solvers
    - NonLinearFingerprintPositionEstimator: Stateful estimator with listeners

Example usage:
    >>> from indoor.fingerprinting import (
    ...     LocatedFingerprint,
    ...     NonLinearFingerprintPositionEstimator,
    ...     TaylorOrder,
    ... )
    >>> estimator = NonLinearFingerprintPositionEstimator(
    ...     calibration, query, access_points, taylor_order=TaylorOrder.THIRD_ORDER
    ... )
    >>> estimate = estimator.estimate()
    >>> estimate.position, estimate.covariance

Author: Li-Ta Hsu
Date: 2024
"""

from indoor.rf.path_loss import TaylorOrder

from .estimator import (
    EstimatorState,
    FingerprintEstimatorListener,
    NonLinearFingerprintPositionEstimator,
)
from .exceptions import (
    CovarianceNotPositiveSemidefiniteError,
    FingerprintConfigurationError,
    FingerprintEstimationError,
    LockedError,
    NotReadyError,
)
from .matching import (
    find_nearest_fingerprints,
    rank_fingerprints,
    sqr_distance,
    validate_nearest_bounds,
)
from .solver import (
    DEFAULT_FALLBACK_RSSI_STD,
    SolverResult,
    SolverSettings,
    effective_rssi_std,
    linear_seed,
    solve,
)
from .types import (
    Fingerprint,
    LocatedFingerprint,
    PositionEstimate,
    RadioSource,
    Reading,
)

__all__ = [
    # Core types
    "RadioSource",
    "Reading",
    "Fingerprint",
    "LocatedFingerprint",
    "PositionEstimate",
    # Errors
    "FingerprintConfigurationError",
    "NotReadyError",
    "LockedError",
    "FingerprintEstimationError",
    "CovarianceNotPositiveSemidefiniteError",
    # Matching
    "sqr_distance",
    "rank_fingerprints",
    "find_nearest_fingerprints",
    "validate_nearest_bounds",
    # Solvers
    "TaylorOrder",
    "DEFAULT_FALLBACK_RSSI_STD",
    "SolverSettings",
    "SolverResult",
    "effective_rssi_std",
    "linear_seed",
    "solve",
    # Estimator
    "EstimatorState",
    "FingerprintEstimatorListener",
    "NonLinearFingerprintPositionEstimator",
]

__version__ = "0.1.0"
