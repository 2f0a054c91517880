"""Data structures for non-linear RSSI fingerprint positioning.

This module defines the records exchanged between the matcher, the solvers
and the estimator: radio sources, RSSI readings, fingerprints captured at
unknown or known locations, and the position estimate produced by a solve.

All records are immutable. Positions and covariances are stored as
read-only numpy copies, so callers can keep using the arrays they passed in.

Author: Li-Ta Hsu
Date: 2024
"""

from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterable, Iterator, Optional, Tuple

import numpy as np

from .exceptions import FingerprintConfigurationError

# Type aliases for clarity and documentation
Position = np.ndarray  # Shape (d,), d=2 (x, y) or d=3 (x, y, z)
Covariance = np.ndarray  # Shape (d, d)

SUPPORTED_DIMENSIONS = (2, 3)


def as_position(value, name: str = "position") -> np.ndarray:
    """
    Convert a coordinate sequence into a read-only position vector.

    Args:
        value: Sequence of 2 or 3 finite coordinates.
        name: Name used in error messages.

    Returns:
        Read-only float array of shape (d,).

    Raises:
        FingerprintConfigurationError: If the shape or values are invalid.
    """
    try:
        arr = np.array(value, dtype=float)
    except (TypeError, ValueError) as e:
        raise FingerprintConfigurationError(f"{name} must be numeric: {e}") from e

    if arr.ndim != 1 or arr.shape[0] not in SUPPORTED_DIMENSIONS:
        raise FingerprintConfigurationError(
            f"{name} must have 2 or 3 coordinates, got shape {arr.shape}"
        )
    if not np.all(np.isfinite(arr)):
        raise FingerprintConfigurationError(f"{name} must be finite, got {arr}")

    arr.setflags(write=False)
    return arr


def as_covariance(value, dims: int, name: str = "covariance") -> np.ndarray:
    """Convert a matrix into a read-only (dims, dims) covariance."""
    try:
        arr = np.array(value, dtype=float)
    except (TypeError, ValueError) as e:
        raise FingerprintConfigurationError(f"{name} must be numeric: {e}") from e

    if arr.shape != (dims, dims):
        raise FingerprintConfigurationError(
            f"{name} must have shape ({dims}, {dims}), got {arr.shape}"
        )
    if not np.all(np.isfinite(arr)):
        raise FingerprintConfigurationError(f"{name} must be finite")

    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class RadioSource:
    """
    Radio transmitter heard by fingerprints (WiFi access point, BLE beacon).

    Equality and hashing use only ``source_id``, so a source supplied to an
    estimator matches the readings that reference the same transmitter even
    when the two objects carry different descriptions.

    Attributes:
        source_id: Stable identifier (e.g., BSSID or beacon UUID).
        frequency: Carrier frequency in Hz.
        position: Known position, shape (d,). None when not located.
        position_covariance: Covariance of the position, shape (d, d).
        transmitted_power_dbm: Equivalent transmitted power in dBm.
        path_loss_exponent: Path-loss exponent specific to this source.
        path_loss_exponent_std: Standard deviation of the exponent.

    Example:
        >>> ap = RadioSource("ap-1", 2.4e9, position=[10.0, 5.0])
        >>> ap.is_located, ap.dims
        (True, 2)
        >>> ap == RadioSource("ap-1", 2.4e9)
        True
    """

    source_id: Hashable
    frequency: float = 2.4e9
    position: Optional[Position] = None
    position_covariance: Optional[Covariance] = None
    transmitted_power_dbm: Optional[float] = None
    path_loss_exponent: Optional[float] = None
    path_loss_exponent_std: Optional[float] = None

    def __post_init__(self):
        if self.frequency is None or not self.frequency > 0:
            raise FingerprintConfigurationError(
                f"Frequency of source {self.source_id!r} must be positive"
            )

        if self.position is not None:
            position = as_position(self.position, f"position of {self.source_id!r}")
            object.__setattr__(self, "position", position)
            if self.position_covariance is not None:
                cov = as_covariance(
                    self.position_covariance,
                    len(position),
                    f"position covariance of {self.source_id!r}",
                )
                object.__setattr__(self, "position_covariance", cov)
        elif self.position_covariance is not None:
            raise FingerprintConfigurationError(
                f"Source {self.source_id!r} has a covariance but no position"
            )

        if self.path_loss_exponent is not None and not self.path_loss_exponent > 0:
            raise FingerprintConfigurationError(
                f"Path-loss exponent of {self.source_id!r} must be positive"
            )
        if self.path_loss_exponent_std is not None and self.path_loss_exponent_std < 0:
            raise FingerprintConfigurationError(
                f"Path-loss exponent std of {self.source_id!r} must be non-negative"
            )

    def __eq__(self, other):
        if not isinstance(other, RadioSource):
            return NotImplemented
        return self.source_id == other.source_id

    def __hash__(self):
        return hash(self.source_id)

    @property
    def is_located(self) -> bool:
        """True when the source position is known."""
        return self.position is not None

    @property
    def dims(self) -> Optional[int]:
        """Position dimensionality, or None when not located."""
        return None if self.position is None else len(self.position)

    def with_position(
        self, position: Position, covariance: Optional[Covariance] = None
    ) -> "RadioSource":
        """Return a located copy of this source with the given position."""
        return RadioSource(
            source_id=self.source_id,
            frequency=self.frequency,
            position=position,
            position_covariance=covariance,
            transmitted_power_dbm=self.transmitted_power_dbm,
            path_loss_exponent=self.path_loss_exponent,
            path_loss_exponent_std=self.path_loss_exponent_std,
        )


@dataclass(frozen=True)
class Reading:
    """
    RSSI measured from one radio source.

    Attributes:
        source: Radio source the reading was received from.
        rssi: Received signal strength in dBm.
        rssi_std: Standard deviation of the RSSI in dB, if known.
    """

    source: RadioSource
    rssi: float
    rssi_std: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.source, RadioSource):
            raise FingerprintConfigurationError(
                f"Reading source must be a RadioSource, got {type(self.source).__name__}"
            )
        if not np.isfinite(self.rssi):
            raise FingerprintConfigurationError(
                f"RSSI from {self.source.source_id!r} must be finite"
            )
        if self.rssi_std is not None and not self.rssi_std >= 0:
            raise FingerprintConfigurationError(
                f"RSSI std from {self.source.source_id!r} must be non-negative"
            )


@dataclass(frozen=True, eq=False)
class Fingerprint:
    """
    Set of RSSI readings captured at one location.

    A fingerprint holds at most one reading per radio source. Order of the
    readings is irrelevant for matching and solving.

    Example:
        >>> ap1, ap2 = RadioSource("ap-1"), RadioSource("ap-2")
        >>> fp = Fingerprint([Reading(ap1, -50.0), Reading(ap2, -70.0)])
        >>> fp.mean_rssi
        -60.0
    """

    readings: Tuple[Reading, ...]

    def __post_init__(self):
        readings = tuple(self.readings)
        seen = set()
        for reading in readings:
            if not isinstance(reading, Reading):
                raise FingerprintConfigurationError(
                    f"Fingerprint readings must be Reading, got {type(reading).__name__}"
                )
            if reading.source in seen:
                raise FingerprintConfigurationError(
                    f"Duplicate reading for source {reading.source.source_id!r}"
                )
            seen.add(reading.source)
        object.__setattr__(self, "readings", readings)
        object.__setattr__(
            self, "_by_source", {reading.source: reading for reading in readings}
        )

    def __len__(self) -> int:
        return len(self.readings)

    def __iter__(self) -> Iterator[Reading]:
        return iter(self.readings)

    @property
    def sources(self) -> Tuple[RadioSource, ...]:
        return tuple(reading.source for reading in self.readings)

    @property
    def rssi_by_source(self) -> Dict[RadioSource, float]:
        return {reading.source: reading.rssi for reading in self.readings}

    @property
    def mean_rssi(self) -> float:
        """Mean RSSI over all readings (NaN when empty)."""
        if not self.readings:
            return float("nan")
        return float(np.mean([reading.rssi for reading in self.readings]))

    def reading_for(self, source: RadioSource) -> Optional[Reading]:
        """Return the reading of ``source``, or None if it was not heard."""
        return self._by_source.get(source)


@dataclass(frozen=True, eq=False)
class LocatedFingerprint(Fingerprint):
    """
    Fingerprint captured at a known position, the unit of calibration data.

    Attributes:
        readings: RSSI readings, at least one.
        position: Known position, shape (d,) with d=2 or d=3.
        position_covariance: Covariance of the position, shape (d, d).
    """

    position: Position = None
    position_covariance: Optional[Covariance] = None

    def __post_init__(self):
        super().__post_init__()
        if not self.readings:
            raise FingerprintConfigurationError(
                "A located fingerprint must have at least one reading"
            )
        if self.position is None:
            raise FingerprintConfigurationError("A located fingerprint needs a position")

        position = as_position(self.position, "fingerprint position")
        object.__setattr__(self, "position", position)
        if self.position_covariance is not None:
            cov = as_covariance(
                self.position_covariance, len(position), "fingerprint covariance"
            )
            object.__setattr__(self, "position_covariance", cov)

    @property
    def dims(self) -> int:
        return len(self.position)


@dataclass(frozen=True)
class PositionEstimate:
    """
    Result of one non-linear fingerprint solve.

    Attributes:
        position: Estimated position, shape (d,).
        covariance: Position covariance, shape (d, d). None when no
                    propagation was requested or it was rejected.
        chi_sq: Weighted residual sum of squares at the solution.
        nearest_fingerprints: Working set of located fingerprints used,
                              closest first.
        estimated_sources: Located copies of sources estimated jointly.
        iterations: Number of solver iterations.
    """

    position: Position
    covariance: Optional[Covariance]
    chi_sq: float
    nearest_fingerprints: Tuple[LocatedFingerprint, ...]
    estimated_sources: Tuple[RadioSource, ...] = field(default_factory=tuple)
    iterations: int = 0


def fingerprint_centroid(fingerprints: Iterable[LocatedFingerprint]) -> np.ndarray:
    """Mean position of located fingerprints."""
    positions = np.array([fp.position for fp in fingerprints], dtype=float)
    if positions.size == 0:
        raise ValueError("Cannot compute centroid of no fingerprints")
    return positions.mean(axis=0)
