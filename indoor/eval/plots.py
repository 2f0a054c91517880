"""
Visualization Utilities for Indoor Positioning.

This module provides plotting functions for fingerprint survey geometry
and position error distributions.

All functions return matplotlib Figure objects for flexible display/saving.

Author: Navigation Engineering Team
Date: December 2025
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np


def plot_error_cdf(
    errors_dict: Dict[str, np.ndarray], title: str = "Error CDF"
) -> plt.Figure:
    """
    Plot Cumulative Distribution Function (CDF) of position errors.

    Failed estimates (non-finite errors) never reach the CDF, so a curve
    ending below 1 shows the share of failures.

    Args:
        errors_dict: Dictionary of error magnitude arrays {name: errors}
        title: Plot title

    Returns:
        fig: Matplotlib figure
    """
    fig, ax = plt.subplots(figsize=(10, 6))

    colors = ["blue", "red", "green", "orange", "purple"]
    linestyles = ["-", "--", "-.", ":", "-"]

    for i, (name, errors) in enumerate(errors_dict.items()):
        errors = np.abs(np.asarray(errors, dtype=float))
        if len(errors) == 0:
            continue

        sorted_errors = np.sort(errors[np.isfinite(errors)])
        cdf = np.arange(1, len(sorted_errors) + 1) / len(errors)

        ax.plot(
            sorted_errors,
            cdf,
            label=name,
            color=colors[i % len(colors)],
            linestyle=linestyles[i % len(linestyles)],
            linewidth=2,
        )

    ax.set_xlabel("Position Error (m)", fontsize=12)
    ax.set_ylabel("CDF", fontsize=12)
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.legend(fontsize=10)
    ax.grid(True, alpha=0.3)
    ax.set_xlim(left=0)
    ax.set_ylim([0, 1.05])

    plt.tight_layout()
    return fig


def plot_fingerprint_geometry(
    fingerprints_xy: np.ndarray,
    sources_xy: np.ndarray,
    truth_xy: Optional[np.ndarray] = None,
    estimated_xy: Optional[np.ndarray] = None,
    title: str = "Fingerprint Survey",
) -> plt.Figure:
    """
    Plot calibration fingerprints, radio sources and located queries.

    Args:
        fingerprints_xy: Calibration fingerprint positions, shape (M, 2)
        sources_xy: Radio source positions, shape (S, 2)
        truth_xy: True query positions, shape (N, 2) (optional)
        estimated_xy: Estimated query positions, shape (N, 2) (optional)
        title: Plot title

    Returns:
        fig: Matplotlib figure
    """
    fig, ax = plt.subplots(figsize=(10, 8))

    ax.plot(
        fingerprints_xy[:, 0],
        fingerprints_xy[:, 1],
        ".",
        color="gray",
        markersize=4,
        label="Fingerprints",
    )
    ax.plot(
        sources_xy[:, 0],
        sources_xy[:, 1],
        "s",
        color="blue",
        markersize=12,
        label="Radio sources",
    )
    for i, source in enumerate(sources_xy):
        ax.text(source[0], source[1] + 1.5, f"S{i}", fontsize=10, ha="center", color="blue")

    if truth_xy is not None:
        ax.plot(truth_xy[:, 0], truth_xy[:, 1], "go", markersize=6, label="Truth")
    if estimated_xy is not None:
        ax.plot(estimated_xy[:, 0], estimated_xy[:, 1], "rx", markersize=6, label="Estimate")
        if truth_xy is not None:
            for t, e in zip(truth_xy, estimated_xy):
                ax.plot([t[0], e[0]], [t[1], e[1]], "r-", linewidth=0.8, alpha=0.5)

    ax.set_xlabel("X (m)", fontsize=12)
    ax.set_ylabel("Y (m)", fontsize=12)
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.legend(fontsize=10)
    ax.grid(True, alpha=0.3)
    ax.axis("equal")

    plt.tight_layout()
    return fig


def save_figure(
    fig: plt.Figure,
    out_dir: Union[str, Path],
    name: str,
    formats: Tuple[str, ...] = ("svg", "pdf", "png"),
) -> List[Path]:
    """
    Save figure in multiple formats.

    Args:
        fig: Matplotlib figure to save
        out_dir: Output directory
        name: Base filename (without extension)
        formats: Tuple of format extensions

    Returns:
        paths: List of saved file paths
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    paths = []
    for fmt in formats:
        filepath = out_dir / f"{name}.{fmt}"
        fig.savefig(filepath, dpi=150, bbox_inches="tight")
        paths.append(filepath)

    return paths
