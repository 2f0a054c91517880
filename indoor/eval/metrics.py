"""
Evaluation Metrics for Indoor Positioning.

This module provides functions to compute position error statistics over
many estimates, for example over the queries of a fingerprint survey.

Author: Navigation Engineering Team
Date: December 2025
"""

from typing import Dict

import numpy as np


def compute_position_errors(
    truth: np.ndarray, estimated: np.ndarray
) -> np.ndarray:
    """
    Compute position error magnitudes between true and estimated positions.

    Failed estimates can be passed as rows of NaN; their error is +inf.

    Args:
        truth: True positions, shape (N, 2) or (N, 3)
        estimated: Estimated positions, shape (N, 2) or (N, 3)

    Returns:
        errors: Euclidean error per estimate, shape (N,)

    Raises:
        ValueError: If inputs have incompatible shapes
    """
    truth = np.asarray(truth, dtype=float)
    estimated = np.asarray(estimated, dtype=float)

    if truth.shape != estimated.shape:
        raise ValueError(
            f"Shape mismatch: truth {truth.shape} vs estimated {estimated.shape}"
        )

    errors = np.linalg.norm(np.atleast_2d(estimated - truth), axis=1)
    errors[~np.isfinite(errors)] = np.inf
    return errors


def compute_error_stats(errors: np.ndarray) -> Dict[str, float]:
    """
    Compute error statistics.

    Args:
        errors: Error magnitudes, shape (N,). Non-finite values count as
                failures and are excluded from the other statistics.

    Returns:
        stats: Dictionary with keys:
               - 'mean': Mean error
               - 'median': Median error
               - 'std': Standard deviation
               - 'rmse': Root mean square error
               - 'p75': 75th percentile
               - 'p90': 90th percentile
               - 'p95': 95th percentile
               - 'max': Maximum error
               - 'failures': Number of non-finite errors
    """
    errors = np.abs(np.asarray(errors, dtype=float).ravel())
    finite = errors[np.isfinite(errors)]
    failures = float(len(errors) - len(finite))

    if finite.size == 0:
        nan = float("nan")
        return {
            "mean": nan, "median": nan, "std": nan, "rmse": nan,
            "p75": nan, "p90": nan, "p95": nan, "max": nan,
            "failures": failures,
        }

    stats = {
        "mean": float(np.mean(finite)),
        "median": float(np.median(finite)),
        "std": float(np.std(finite)),
        "rmse": float(np.sqrt(np.mean(finite**2))),
        "p75": float(np.percentile(finite, 75)),
        "p90": float(np.percentile(finite, 90)),
        "p95": float(np.percentile(finite, 95)),
        "max": float(np.max(finite)),
        "failures": failures,
    }

    return stats
