"""
Weighted linear least squares.

Used for closed-form position seeds: the first-order path-loss model is
linear in position, so a seed follows from a single weighted solve.
"""

from typing import Optional, Tuple

import numpy as np


def weighted_least_squares(
    A: np.ndarray,
    b: np.ndarray,
    W_or_sigma: np.ndarray,
    is_sigma: bool = False,
    return_covariance: bool = True,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Weighted least squares estimation with measurement weights or std devs.

    Solves: x_hat = argmin (Ax - b)' W (Ax - b)
    Solution: x_hat = (A'WA)^(-1) A'Wb

    Setting wᵢ = 1/σᵢ² (the inverse of noise variance) yields the best
    linear unbiased estimate.

    Args:
        A: Design matrix (m × n).
        b: Observation vector (m,).
        W_or_sigma: Weight specification, one of:
            - 2D array (m × m): Full weight matrix W
            - 1D array (m,): Diagonal weights wᵢ (if is_sigma=False)
            - 1D array (m,): Measurement std devs σᵢ (if is_sigma=True)
        is_sigma: If True, interpret 1D W_or_sigma as σᵢ and compute wᵢ = 1/σᵢ².
        return_covariance: If True, compute covariance matrix (A'WA)^(-1).

    Returns:
        Tuple of:
            - x_hat: Estimated state vector (n,).
            - P: Covariance matrix (n × n), or None if return_covariance is False.

    Raises:
        ValueError: If dimensions don't match, weights are invalid or A'WA
            is rank deficient.

    Example:
        >>> A = np.array([[1, 0], [0, 1], [1, 1]])
        >>> b = np.array([1.0, 2.0, 3.2])
        >>> sigma = np.array([0.1, 0.1, 0.5])  # Third measurement less accurate
        >>> x_hat, P = weighted_least_squares(A, b, sigma, is_sigma=True)
    """
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)

    # Validate inputs
    if A.ndim != 2 or b.ndim != 1:
        raise ValueError(
            f"Invalid dimensions: A must be 2D, b must be 1D. "
            f"Got A={A.shape}, b={b.shape}"
        )

    m, n = A.shape
    if len(b) != m:
        raise ValueError(
            f"Dimension mismatch: A has {m} rows, b has {len(b)} elements"
        )

    W_or_sigma = np.asarray(W_or_sigma, dtype=float)

    if W_or_sigma.ndim == 1:
        if len(W_or_sigma) != m:
            raise ValueError(
                f"Weight vector length mismatch: expected {m}, got {len(W_or_sigma)}"
            )
        if is_sigma:
            if np.any(W_or_sigma <= 0):
                raise ValueError("Sigma values must be positive")
            weights = 1.0 / W_or_sigma**2
        else:
            if np.any(W_or_sigma < 0):
                raise ValueError("Weights must be non-negative")
            weights = W_or_sigma
        W = np.diag(weights)

    elif W_or_sigma.ndim == 2:
        if W_or_sigma.shape != (m, m):
            raise ValueError(
                f"Weight matrix shape mismatch: expected ({m}, {m}), "
                f"got {W_or_sigma.shape}"
            )
        W = W_or_sigma
        if not np.allclose(W, W.T):
            raise ValueError("Weight matrix W must be symmetric")
    else:
        raise ValueError(
            f"W_or_sigma must be 1D or 2D array, got {W_or_sigma.ndim}D"
        )

    # Weighted normal equations: A'WA x = A'Wb
    ATWA = A.T @ W @ A
    ATWb = A.T @ W @ b

    rank = np.linalg.matrix_rank(ATWA)
    if rank < n:
        raise ValueError(f"A'WA is rank deficient: rank={rank} < n={n}")

    try:
        x_hat = np.linalg.solve(ATWA, ATWb)
    except np.linalg.LinAlgError as e:
        raise ValueError(f"Failed to solve weighted normal equations: {e}") from e

    P = None
    if return_covariance:
        P = np.linalg.inv(ATWA)

    return x_hat, P
