"""
First-order covariance propagation through least-squares solutions.

A weighted least-squares estimate x̂ depends on a set of uncertain inputs θ
(measured RSSI, path-loss exponents, calibration and source positions)
through the residuals r(x, θ). Linearizing the normal equations at the
solution gives the sensitivity of the estimate to the residuals,

    A = (J'WJ)⁺ J'W

so that a perturbation of the inputs moves the estimate by

    δx̂ = A (∂r/∂θ) δθ = G δθ

and the estimate covariance follows from the input covariance Cθ as

    P = G Cθ G'

Uncorrelated input groups are assembled into a block-diagonal Cθ with
scipy.linalg.block_diag.
"""

from typing import Callable, Sequence

import numpy as np
from scipy.linalg import block_diag

# Default numerical-differentiation step
DEFAULT_JACOBIAN_EPSILON = 1e-6
# Tolerances for the positive semidefinite check
PSD_RTOL = 1e-9
PSD_ATOL = 1e-12


def numerical_jacobian(
    f: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    epsilon: float = DEFAULT_JACOBIAN_EPSILON,
) -> np.ndarray:
    """
    Compute Jacobian numerically using central differences.

    Args:
        f: Function that takes x and returns y (scalar or 1D).
        x: Point at which to compute Jacobian, shape (n,).
        epsilon: Step size for finite differences.

    Returns:
        Numerical Jacobian, shape (len(y), len(x)).

    Example:
        >>> J = numerical_jacobian(lambda x: np.array([x[0] * x[1]]), np.array([2.0, 3.0]))
        >>> np.round(J, 6)
        array([[3., 2.]])
    """
    x = np.asarray(x, dtype=float)
    y0 = np.atleast_1d(np.asarray(f(x), dtype=float))

    n_out = len(y0)
    n_in = len(x)

    J = np.zeros((n_out, n_in))

    for i in range(n_in):
        x_plus = x.copy()
        x_minus = x.copy()

        x_plus[i] += epsilon
        x_minus[i] -= epsilon

        y_plus = np.atleast_1d(np.asarray(f(x_plus), dtype=float))
        y_minus = np.atleast_1d(np.asarray(f(x_minus), dtype=float))

        # Central difference
        J[:, i] = (y_plus - y_minus) / (2 * epsilon)

    return J


def least_squares_sensitivity(jacobian: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """
    Sensitivity A = (J'WJ)⁺ J'W of a weighted LS estimate to its residuals.

    The pseudo-inverse keeps the result defined when J'WJ is rank
    deficient; directions the data cannot observe get zero sensitivity.

    Args:
        jacobian: Jacobian of the predicted observations J (m × n).
        weights: Diagonal weights w (m,).

    Returns:
        Sensitivity matrix A (n × m).
    """
    J = np.asarray(jacobian, dtype=float)
    w = np.asarray(weights, dtype=float)
    if J.ndim != 2 or w.shape != (J.shape[0],):
        raise ValueError(
            f"Jacobian must be (m, n) with weights (m,), got {J.shape} and {w.shape}"
        )

    JtW = J.T * w
    return np.linalg.pinv(JtW @ J) @ JtW


def block_covariance(blocks: Sequence[np.ndarray]) -> np.ndarray:
    """
    Assemble uncorrelated covariance blocks into one block-diagonal matrix.

    Scalars are treated as 1×1 variances. An empty sequence returns a 0×0
    matrix.
    """
    if len(blocks) == 0:
        return np.zeros((0, 0))
    return block_diag(*[np.atleast_2d(np.asarray(b, dtype=float)) for b in blocks])


def propagate_covariance(jacobian: np.ndarray, input_covariance: np.ndarray) -> np.ndarray:
    """
    Propagate an input covariance through a linear map: P = G C G'.

    The result is symmetrised to remove round-off asymmetry.

    Args:
        jacobian: Linear map G (n × p).
        input_covariance: Input covariance C (p × p).

    Returns:
        Output covariance P (n × n).

    Raises:
        ValueError: If the shapes are inconsistent.
    """
    G = np.asarray(jacobian, dtype=float)
    C = np.asarray(input_covariance, dtype=float)
    if G.ndim != 2 or C.shape != (G.shape[1], G.shape[1]):
        raise ValueError(
            f"Input covariance must be ({G.shape[1] if G.ndim == 2 else '?'}, same), "
            f"got {C.shape} for map {G.shape}"
        )

    P = G @ C @ G.T
    return 0.5 * (P + P.T)


def is_positive_semidefinite(
    matrix: np.ndarray, rtol: float = PSD_RTOL, atol: float = PSD_ATOL
) -> bool:
    """
    Check whether a matrix is a valid covariance.

    A matrix passes when it is finite, symmetric within tolerance, has a
    non-negative diagonal and no eigenvalue below
    -(atol + rtol * max|eigenvalue|).
    """
    P = np.asarray(matrix, dtype=float)
    if P.ndim != 2 or P.shape[0] != P.shape[1]:
        return False
    if P.size == 0:
        return True
    if not np.all(np.isfinite(P)):
        return False

    scale = max(np.max(np.abs(P)), atol)
    if not np.allclose(P, P.T, rtol=0.0, atol=atol + rtol * scale):
        return False
    if np.any(np.diag(P) < -atol):
        return False

    eigenvalues = np.linalg.eigvalsh(0.5 * (P + P.T))
    threshold = atol + rtol * np.max(np.abs(eigenvalues))
    return bool(np.min(eigenvalues) >= -threshold)
