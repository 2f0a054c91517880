"""Nearest-fingerprint matching for non-linear fingerprint positioning.

Calibration fingerprints are ranked by RSSI similarity to a query
fingerprint. The distance is the sum of squared RSSI differences over the
radio sources heard by both fingerprints:

    D(q, f) = Σ_s (q_s - f_s)²

With mean removal, each fingerprint is first centred on its own mean RSSI
over the shared readings, which cancels a constant gain offset between the
device that recorded the calibration data and the one being located:

    D(q, f) = Σ_s ((q_s - q̄) - (f_s - f̄))²

Candidates sharing no radio source with the query are never returned.

Author: Li-Ta Hsu
Date: 2024
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .exceptions import FingerprintConfigurationError, FingerprintEstimationError
from .types import Fingerprint, LocatedFingerprint

logger = logging.getLogger(__name__)


def sqr_distance(
    fingerprint: Fingerprint, other: Fingerprint, remove_mean: bool = False
) -> float:
    """
    Squared RSSI distance D(q, f) between two fingerprints.

    Args:
        fingerprint: Query fingerprint q.
        other: Reference fingerprint f.
        remove_mean: Centre both fingerprints on their mean RSSI over shared
                     readings before differencing.

    Returns:
        Squared distance. +inf if the fingerprints share no radio source.

    Examples:
        >>> a, b = RadioSource("a"), RadioSource("b")
        >>> q = Fingerprint([Reading(a, -50.0), Reading(b, -60.0)])
        >>> f = Fingerprint([Reading(a, -55.0), Reading(b, -65.0)])
        >>> sqr_distance(q, f)
        50.0
        >>> sqr_distance(q, f, remove_mean=True)
        0.0
    """
    rssi = fingerprint.rssi_by_source
    other_rssi = other.rssi_by_source
    shared = [source for source in rssi if source in other_rssi]
    if not shared:
        return np.inf

    z = np.array([rssi[source] for source in shared])
    f = np.array([other_rssi[source] for source in shared])
    if remove_mean:
        z = z - z.mean()
        f = f - f.mean()

    diff = z - f
    return float(diff @ diff)


def rank_fingerprints(
    fingerprint: Fingerprint,
    located_fingerprints: Sequence[LocatedFingerprint],
    remove_mean: bool = False,
) -> Tuple[List[LocatedFingerprint], np.ndarray]:
    """
    Sort calibration fingerprints closest-first to a query.

    Ties keep the order of ``located_fingerprints``.

    Args:
        fingerprint: Query fingerprint.
        located_fingerprints: Calibration fingerprints.
        remove_mean: Use mean-removed distances.

    Returns:
        Tuple (ranked, distances) holding the candidates that share at least
        one radio source with the query and their squared distances.
    """
    distances = np.array(
        [sqr_distance(fingerprint, f, remove_mean) for f in located_fingerprints],
        dtype=float,
    )
    order = np.argsort(distances, kind="stable")
    order = order[np.isfinite(distances[order])]
    return [located_fingerprints[i] for i in order], distances[order]


def validate_nearest_bounds(min_nearest: int, max_nearest: Optional[int]) -> None:
    """Raise FingerprintConfigurationError unless 1 <= min <= max."""
    if isinstance(min_nearest, bool) or not isinstance(min_nearest, (int, np.integer)):
        raise FingerprintConfigurationError(
            f"Minimum nearest fingerprints must be an integer, got {min_nearest!r}"
        )
    if min_nearest < 1:
        raise FingerprintConfigurationError(
            f"Minimum nearest fingerprints must be at least 1, got {min_nearest}"
        )
    if max_nearest is None:
        return
    if isinstance(max_nearest, bool) or not isinstance(max_nearest, (int, np.integer)):
        raise FingerprintConfigurationError(
            f"Maximum nearest fingerprints must be an integer, got {max_nearest!r}"
        )
    if max_nearest < min_nearest:
        raise FingerprintConfigurationError(
            f"Maximum nearest fingerprints ({max_nearest}) must not be less "
            f"than minimum ({min_nearest})"
        )


def find_nearest_fingerprints(
    located_fingerprints: Sequence[LocatedFingerprint],
    fingerprint: Fingerprint,
    min_nearest: int = 1,
    max_nearest: Optional[int] = None,
    remove_mean: bool = True,
) -> List[LocatedFingerprint]:
    """
    Select the calibration fingerprints closest to a query.

    Args:
        located_fingerprints: Calibration fingerprints.
        fingerprint: Query fingerprint.
        min_nearest: Minimum number of fingerprints required (>= 1).
        max_nearest: Maximum number returned. None returns all candidates.
        remove_mean: Use mean-removed distances.

    Returns:
        Between ``min_nearest`` and ``max_nearest`` fingerprints, closest first.

    Raises:
        FingerprintConfigurationError: If the bounds are invalid.
        FingerprintEstimationError: If fewer than ``min_nearest`` candidates
            share a radio source with the query.
    """
    validate_nearest_bounds(min_nearest, max_nearest)

    ranked, distances = rank_fingerprints(fingerprint, located_fingerprints, remove_mean)
    if len(ranked) < min_nearest:
        raise FingerprintEstimationError(
            f"Only {len(ranked)} calibration fingerprints share a radio source "
            f"with the query, at least {min_nearest} required"
        )

    if max_nearest is not None:
        ranked = ranked[:max_nearest]
    logger.debug(
        "Matched %d of %d fingerprints (closest sqr distance %.3f)",
        len(ranked),
        len(located_fingerprints),
        distances[0],
    )
    return ranked
