"""Core modules for RSSI fingerprint indoor positioning.

This package contains reusable components for non-linear fingerprinting:
- rf: Path-loss model and its Taylor expansion
- estimators: Linear and non-linear least squares, covariance propagation
- fingerprinting: Matcher, solvers and the stateful position estimator
- eval: Accuracy, error metrics and plots
"""

__version__ = "0.1.0"
