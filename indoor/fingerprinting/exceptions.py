"""Exceptions raised by non-linear fingerprint position estimators.

Configuration problems derive from ValueError, so invalid inputs can be
caught the same way as elsewhere in the package. Failures during a solve
derive from RuntimeError.

Author: Li-Ta Hsu
Date: 2024
"""


class FingerprintConfigurationError(ValueError):
    """Raised when an estimator parameter or input has an invalid value."""


class NotReadyError(FingerprintConfigurationError):
    """Raised when estimating without the inputs required for a solve."""


class LockedError(RuntimeError):
    """Raised when an estimator is reconfigured or re-entered while estimating."""


class FingerprintEstimationError(RuntimeError):
    """Raised when no working set of nearest fingerprints yields a solution."""


class CovarianceNotPositiveSemidefiniteError(FingerprintEstimationError):
    """
    Raised when propagated covariance is not positive semidefinite.

    The position estimate of the failing solve is still published on the
    estimator, only its covariance is discarded.
    """
