"""
Scalar accuracy from a position covariance.

The error ellipsoid of a Gaussian position estimate containing a given
probability mass has squared semi-axes k·λᵢ, where λᵢ are the covariance
eigenvalues and k is the chi-square quantile with d degrees of freedom.
The reported accuracy is the largest semi-axis:

    accuracy = sqrt(χ²_d(confidence) · λ_max)
"""

import numpy as np
from scipy import stats

# One standard deviation of a 1D Gaussian
DEFAULT_CONFIDENCE = 0.6827


def accuracy_from_covariance(
    covariance: np.ndarray, confidence: float = DEFAULT_CONFIDENCE
) -> float:
    """
    Expected-error distance of a position covariance at a confidence level.

    Args:
        covariance: Position covariance, shape (d, d).
        confidence: Probability mass inside the error ellipsoid, in (0, 1).

    Returns:
        Largest semi-axis of the confidence ellipsoid, in position units.

    Raises:
        ValueError: If the covariance is not square or confidence is invalid.

    Example:
        >>> acc = accuracy_from_covariance(np.diag([4.0, 1.0]), confidence=0.95)
        >>> print(f"{acc:.2f} m")
        4.90 m
    """
    P = np.asarray(covariance, dtype=float)
    if P.ndim != 2 or P.shape[0] != P.shape[1] or P.shape[0] == 0:
        raise ValueError(f"Covariance must be a non-empty square matrix, got {P.shape}")
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"Confidence must be in (0, 1), got {confidence}")

    eigenvalues = np.linalg.eigvalsh(0.5 * (P + P.T))
    lambda_max = max(float(eigenvalues[-1]), 0.0)

    k = float(stats.chi2.ppf(confidence, P.shape[0]))
    return float(np.sqrt(k * lambda_max))
