"""
Estimation algorithms for indoor positioning.

Available estimators:
    - Weighted linear least squares
    - Nonlinear Least Squares (Levenberg-Marquardt)
    - First-order covariance propagation through LS solutions
"""

from indoor.estimators.covariance import (
    block_covariance,
    is_positive_semidefinite,
    least_squares_sensitivity,
    numerical_jacobian,
    propagate_covariance,
)
from indoor.estimators.least_squares import weighted_least_squares
from indoor.estimators.nonlinear_least_squares import (
    NonlinearLSResult,
    levenberg_marquardt,
)

__all__ = [
    # Linear LS
    "weighted_least_squares",
    # Nonlinear LS
    "levenberg_marquardt",
    "NonlinearLSResult",
    # Covariance propagation
    "numerical_jacobian",
    "least_squares_sensitivity",
    "block_covariance",
    "propagate_covariance",
    "is_positive_semidefinite",
]
