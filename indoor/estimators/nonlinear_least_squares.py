"""
Nonlinear Least Squares solver using Levenberg-Marquardt.

This module implements the iterative weighted least-squares engine used by
the non-linear fingerprint solvers.

Mathematical Formulation:
    Given observations y and measurement model h(x), we seek:
        x̂ = argmin ½‖r(x)‖²_W
    where r(x) = y - h(x) is the residual vector and W = diag(w).

    Levenberg-Marquardt update:
        (J'WJ + μI) Δx = J'W r  →  x ← x + Δx
    where μ is an adaptive damping parameter driven by the gain ratio
    between the actual and the predicted cost decrease. As μ → 0 the
    step approaches the Gauss-Newton step.

The Jacobian at the returned estimate is kept in the result, so callers can
propagate input uncertainty through the solution without re-evaluating it.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 100
DEFAULT_TOLERANCE = 1e-9
MAX_DAMPING = 1e10


@dataclass
class NonlinearLSResult:
    """Result container for nonlinear least squares optimization.

    Attributes:
        x: Estimated state vector.
        jacobian: Jacobian J = ∂h/∂x at the estimate (m × n).
        iterations: Number of iterations performed.
        residuals: Final residuals r = y - h(x̂).
        cost: Final cost value ½‖r‖²_W.
        converged: Whether the solver converged within tolerance.
        weights: Measurement weights used (m,).
    """

    x: np.ndarray
    jacobian: np.ndarray
    iterations: int
    residuals: np.ndarray
    cost: float
    converged: bool
    weights: np.ndarray

    @property
    def chi_sq(self) -> float:
        """Weighted residual sum of squares r'Wr."""
        return 2.0 * self.cost


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = DEFAULT_MAX_ITERATIONS,
    tol: float = DEFAULT_TOLERANCE,
    mu0: float = 1e-3,
) -> NonlinearLSResult:
    """
    Levenberg-Marquardt solver for nonlinear least squares.

    Solves: x̂ = argmin ½‖y - h(x)‖²_W

    Each iteration solves (J'WJ + μI) Δx = J'W r, where μ is an adaptive
    damping parameter. LM combines Gauss-Newton (fast near solution) with
    gradient descent (robust far from solution) by adjusting μ:
        - Small μ: Gauss-Newton behavior (quadratic convergence)
        - Large μ: Gradient descent behavior (global convergence)

    The damping also keeps steps bounded when J'WJ is rank deficient, as
    happens when a single radio source is heard.

    Args:
        h: Measurement model function h: R^n → R^m.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial state estimate (n,).
        weights: Optional measurement weights (m,) for weighted LS.
        max_iter: Maximum number of iterations.
        tol: Convergence tolerance on ‖Δx‖.
        mu0: Initial damping parameter (default 1e-3).

    Returns:
        NonlinearLSResult containing estimate, final Jacobian and diagnostics.

    Example:
        >>> import numpy as np
        >>> anchors = np.array([[0, 0], [10, 0], [0, 10], [10, 10]])
        >>> def h(x):
        ...     return np.linalg.norm(anchors - x, axis=1)
        >>> def jac(x):
        ...     diff = x - anchors
        ...     ranges = np.linalg.norm(diff, axis=1, keepdims=True)
        ...     return diff / np.maximum(ranges, 1e-10)
        >>> y = np.array([5.0, 7.07, 7.07, 5.0])  # True position (5, 5)
        >>> # Poor initial guess far from solution
        >>> result = levenberg_marquardt(h, jac, y, x0=np.array([0.0, 0.0]))
        >>> print(f"Estimate: {result.x}, Converged: {result.converged}")
    """
    # Input validation
    y = np.asarray(y, dtype=float)
    x0 = np.asarray(x0, dtype=float)

    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x0.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x0.shape}")
    if max_iter < 1:
        raise ValueError(f"max_iter must be at least 1, got {max_iter}")
    if tol <= 0:
        raise ValueError(f"tol must be positive, got {tol}")

    m = len(y)
    n = len(x0)
    x = x0.copy()

    # Setup weight matrix
    if weights is None:
        weights = np.ones(m)
    else:
        weights = np.asarray(weights, dtype=float)
        if weights.ndim != 1 or len(weights) != m:
            raise ValueError(f"weights must be 1D array of length {m}")
        if np.any(weights < 0):
            raise ValueError("weights must be non-negative")
    W = np.diag(weights)

    mu = mu0
    nu = 2.0

    converged = False
    iteration = 0

    for iteration in range(max_iter):
        # Evaluate model and Jacobian
        hx = np.asarray(h(x), dtype=float)
        if len(hx) != m:
            raise ValueError(f"h(x) returned {len(hx)} elements, expected {m}")

        J = np.asarray(jacobian(x), dtype=float)
        if J.shape != (m, n):
            raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")

        # Residual: r = y - h(x)
        r = y - hx

        # Weighted normal equations: (J'WJ) Δx = J'Wr
        JtW = J.T @ W
        JtWJ = JtW @ J
        JtWr = JtW @ r

        # Cost function: f = ½ r'Wr
        cost = 0.5 * r @ W @ r
        if not np.isfinite(cost):
            logger.debug("Non-finite cost at iteration %d", iteration)
            break

        # Solve (J'WJ + μI) Δx = J'Wr until a step lowers the cost
        while True:
            JtWJ_damped = JtWJ + mu * np.eye(n)

            try:
                delta_x = np.linalg.solve(JtWJ_damped, JtWr)
            except np.linalg.LinAlgError:
                delta_x = np.linalg.lstsq(JtWJ_damped, JtWr, rcond=None)[0]

            # Evaluate new cost
            x_new = x + delta_x
            r_new = y - h(x_new)
            cost_new = 0.5 * r_new @ W @ r_new

            # Predicted decrease: ½ Δx'(μΔx + J'Wr)
            predicted_decrease = 0.5 * delta_x @ (mu * delta_x + JtWr)
            actual_decrease = cost - cost_new

            if predicted_decrease > 1e-15 and np.isfinite(cost_new):
                gain_ratio = actual_decrease / predicted_decrease
            else:
                gain_ratio = 0.0

            if gain_ratio > 0:
                # Accept step
                x = x_new
                # Decrease damping (more GN-like)
                mu = mu * max(1.0 / 3.0, 1.0 - (2.0 * gain_ratio - 1.0) ** 3)
                nu = 2.0
                break
            else:
                # Reject step, increase damping (more GD-like)
                mu = mu * nu
                nu = 2.0 * nu

                # Prevent infinite loop with very large damping
                if mu > MAX_DAMPING:
                    break

        # Check convergence
        step_norm = np.linalg.norm(delta_x)
        if step_norm < tol:
            converged = True
            break

    # Final evaluation
    r = y - np.asarray(h(x), dtype=float)
    cost = float(0.5 * r @ W @ r)
    J = np.asarray(jacobian(x), dtype=float)

    if not (np.isfinite(cost) and np.all(np.isfinite(x))):
        converged = False

    logger.debug(
        "LM finished after %d iterations (cost %.6g, converged %s)",
        iteration + 1,
        cost,
        converged,
    )

    return NonlinearLSResult(
        x=x,
        jacobian=J,
        iterations=iteration + 1,
        residuals=r,
        cost=cost,
        converged=converged,
        weights=weights,
    )
