"""
Evaluation and Visualization Module.

This module provides evaluation metrics and visualization utilities
for indoor positioning algorithms.

Modules:
    accuracy: Scalar accuracy from a position covariance
    metrics: Position error statistics
    plots: Visualization functions for fingerprint surveys and error CDFs
"""

from .accuracy import DEFAULT_CONFIDENCE, accuracy_from_covariance
from .metrics import compute_error_stats, compute_position_errors
from .plots import plot_error_cdf, plot_fingerprint_geometry, save_figure

__all__ = [
    # Accuracy
    "DEFAULT_CONFIDENCE",
    "accuracy_from_covariance",
    # Metrics
    "compute_position_errors",
    "compute_error_stats",
    # Plots
    "plot_error_cdf",
    "plot_fingerprint_geometry",
    "save_figure",
]
