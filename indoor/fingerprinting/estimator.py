"""Non-linear fingerprint position estimator.

The estimator wraps the non-linear solvers in a small state machine:

    UNREADY  --(located fingerprints, query fingerprint, sources set)-->  READY
    READY    --estimate()-->  ESTIMATING  --(success or failure)-->  READY

While ESTIMATING, every setter and estimate() itself raise LockedError, so
a listener reacting to on_estimate_start / on_estimate_end cannot
reconfigure the solve in flight. State transitions are guarded by a
threading.Lock, so one instance can be shared between threads.

Example:
    >>> estimator = NonLinearFingerprintPositionEstimator(
    ...     calibration, query, access_points,
    ...     taylor_order=TaylorOrder.SECOND_ORDER,
    ... )
    >>> estimate = estimator.estimate()
    >>> estimate.position, estimator.chi_sq

Author: Li-Ta Hsu
Date: 2024
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from indoor.estimators.nonlinear_least_squares import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TOLERANCE,
)
from indoor.rf.path_loss import DEFAULT_PATH_LOSS_EXPONENT, TaylorOrder

from .exceptions import (
    CovarianceNotPositiveSemidefiniteError,
    FingerprintConfigurationError,
    LockedError,
    NotReadyError,
)
from .matching import validate_nearest_bounds
from .solver import (
    DEFAULT_FALLBACK_RSSI_STD,
    SolverSettings,
    check_dimensions,
    solve,
)
from .types import (
    Fingerprint,
    LocatedFingerprint,
    PositionEstimate,
    RadioSource,
    as_position,
)


class EstimatorState(Enum):
    """Lifecycle state of an estimator."""

    UNREADY = "unready"
    READY = "ready"
    ESTIMATING = "estimating"


class FingerprintEstimatorListener(ABC):
    """
    Receives notifications bracketing every estimate() call.

    Both callbacks run synchronously on the thread calling estimate(), while
    the estimator is locked. on_estimate_end is also called when the solve
    or on_estimate_start fails, before the error is raised to the caller.
    """

    @abstractmethod
    def on_estimate_start(self, estimator: "NonLinearFingerprintPositionEstimator"):
        """Called before any computation."""

    @abstractmethod
    def on_estimate_end(self, estimator: "NonLinearFingerprintPositionEstimator"):
        """Called after results are published."""


def _validate_located_fingerprints(value) -> Tuple[LocatedFingerprint, ...]:
    if value is None:
        raise FingerprintConfigurationError("Located fingerprints must not be None")
    fingerprints = tuple(value)
    if not fingerprints:
        raise FingerprintConfigurationError("Located fingerprints must not be empty")
    for f in fingerprints:
        if not isinstance(f, LocatedFingerprint):
            raise FingerprintConfigurationError(
                f"Expected LocatedFingerprint, got {type(f).__name__}"
            )
    dims = {f.dims for f in fingerprints}
    if len(dims) > 1:
        raise FingerprintConfigurationError(
            f"Located fingerprints mix dimensions {sorted(dims)}"
        )
    return fingerprints


def _validate_fingerprint(value) -> Fingerprint:
    if not isinstance(value, Fingerprint):
        raise FingerprintConfigurationError(
            f"Expected Fingerprint, got {type(value).__name__}"
        )
    if len(value) == 0:
        raise FingerprintConfigurationError("Query fingerprint has no readings")
    return value


def _validate_sources(value) -> Tuple[RadioSource, ...]:
    if value is None:
        raise FingerprintConfigurationError("Radio sources must not be None")
    sources = tuple(value)
    if not sources:
        raise FingerprintConfigurationError("Radio sources must not be empty")
    for s in sources:
        if not isinstance(s, RadioSource):
            raise FingerprintConfigurationError(
                f"Expected RadioSource, got {type(s).__name__}"
            )
    if len(set(sources)) != len(sources):
        raise FingerprintConfigurationError("Radio sources must have unique ids")
    dims = {s.dims for s in sources if s.is_located}
    if len(dims) > 1:
        raise FingerprintConfigurationError(
            f"Radio sources mix dimensions {sorted(dims)}"
        )
    return sources


def _validate_listener(value):
    if value is None:
        return None
    for name in ("on_estimate_start", "on_estimate_end"):
        if not callable(getattr(value, name, None)):
            raise FingerprintConfigurationError(f"Listener must implement {name}")
    return value


def _validate_taylor_order(value) -> TaylorOrder:
    try:
        return TaylorOrder(value)
    except ValueError as e:
        raise FingerprintConfigurationError(
            f"Taylor order must be 1, 2 or 3, got {value!r}"
        ) from e


def _validate_initial_position(value) -> Optional[np.ndarray]:
    return None if value is None else as_position(value, "initial position")


def _validate_flag(value) -> bool:
    if not isinstance(value, (bool, np.bool_)):
        raise FingerprintConfigurationError(f"Flag must be a bool, got {value!r}")
    return bool(value)


def _positive(name: str) -> Callable[[float], float]:
    def validate(value):
        try:
            valid = (
                not isinstance(value, bool)
                and value is not None
                and bool(np.isfinite(value))
                and value > 0
            )
        except TypeError:
            valid = False
        if not valid:
            raise FingerprintConfigurationError(
                f"{name} must be positive and finite, got {value!r}"
            )
        return float(value)

    return validate


def _validate_max_iterations(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
        raise FingerprintConfigurationError(
            f"Maximum iterations must be a positive integer, got {value!r}"
        )
    return int(value)


class _GuardedSetting:
    """Estimator attribute validated on assignment and locked while estimating."""

    def __init__(self, validator: Callable = _validate_flag):
        self._validator = validator

    def __set_name__(self, owner, name):
        self._attr = "_" + name

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        return getattr(instance, self._attr)

    def __set__(self, instance, value):
        with instance._mutation():
            setattr(instance, self._attr, self._validator(value))


class NonLinearFingerprintPositionEstimator:
    """
    Locates a fingerprint from calibration fingerprints with a non-linear solver.

    One estimator covers the first, second and third order solvers
    (``taylor_order``) and the joint position/source solver
    (``estimate_sources``).

    Args:
        located_fingerprints: Calibration fingerprints.
        fingerprint: Query fingerprint to locate.
        sources: Radio sources heard by the fingerprints.
        listener: Optional FingerprintEstimatorListener.
        taylor_order: Taylor order of the path-loss model.
        estimate_sources: Estimate positions of sources without one.
        min_nearest_fingerprints: Smallest working set tried.
        max_nearest_fingerprints: Largest working set tried (None: all).
        initial_position: Seed for the query position.

    The remaining keyword arguments mirror the SolverSettings fields of the
    same name. Every argument is also a property that can be reassigned
    while the estimator is not estimating.

    Raises:
        FingerprintConfigurationError: If any argument is invalid.
    """

    located_fingerprints = _GuardedSetting(_validate_located_fingerprints)
    fingerprint = _GuardedSetting(_validate_fingerprint)
    sources = _GuardedSetting(_validate_sources)
    listener = _GuardedSetting(_validate_listener)
    initial_position = _GuardedSetting(_validate_initial_position)

    taylor_order = _GuardedSetting(_validate_taylor_order)
    estimate_sources = _GuardedSetting()
    path_loss_exponent = _GuardedSetting(_positive("Path-loss exponent"))
    use_sources_path_loss_exponent = _GuardedSetting()
    use_no_mean_matcher = _GuardedSetting()
    remove_mean_from_readings = _GuardedSetting()
    use_linear_seed = _GuardedSetting()
    fallback_rssi_std = _GuardedSetting(_positive("Fallback RSSI std"))
    propagate_rssi_variance = _GuardedSetting()
    propagate_path_loss_exponent_variance = _GuardedSetting()
    propagate_fingerprint_position_covariance = _GuardedSetting()
    propagate_source_position_covariance = _GuardedSetting()
    drop_underdetermined_sources = _GuardedSetting()
    max_iterations = _GuardedSetting(_validate_max_iterations)
    tolerance = _GuardedSetting(_positive("Tolerance"))

    def __init__(
        self,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[Fingerprint] = None,
        sources: Optional[Sequence[RadioSource]] = None,
        listener: Optional[FingerprintEstimatorListener] = None,
        taylor_order: TaylorOrder = TaylorOrder.THIRD_ORDER,
        estimate_sources: bool = False,
        min_nearest_fingerprints: int = 1,
        max_nearest_fingerprints: Optional[int] = None,
        initial_position: Optional[np.ndarray] = None,
        path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        use_sources_path_loss_exponent: bool = True,
        use_no_mean_matcher: bool = True,
        remove_mean_from_readings: bool = False,
        use_linear_seed: bool = False,
        fallback_rssi_std: float = DEFAULT_FALLBACK_RSSI_STD,
        propagate_rssi_variance: bool = True,
        propagate_path_loss_exponent_variance: bool = True,
        propagate_fingerprint_position_covariance: bool = True,
        propagate_source_position_covariance: bool = True,
        drop_underdetermined_sources: bool = True,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        tolerance: float = DEFAULT_TOLERANCE,
    ):
        self._state_lock = threading.Lock()
        self._estimating = False
        self._position_estimate: Optional[PositionEstimate] = None

        self._located_fingerprints = None
        self._fingerprint = None
        self._sources = None
        if located_fingerprints is not None:
            self.located_fingerprints = located_fingerprints
        if fingerprint is not None:
            self.fingerprint = fingerprint
        if sources is not None:
            self.sources = sources

        self.listener = listener
        self.initial_position = initial_position
        self.taylor_order = taylor_order
        self.estimate_sources = estimate_sources
        self.set_min_max_nearest_fingerprints(
            min_nearest_fingerprints, max_nearest_fingerprints
        )
        self.path_loss_exponent = path_loss_exponent
        self.use_sources_path_loss_exponent = use_sources_path_loss_exponent
        self.use_no_mean_matcher = use_no_mean_matcher
        self.remove_mean_from_readings = remove_mean_from_readings
        self.use_linear_seed = use_linear_seed
        self.fallback_rssi_std = fallback_rssi_std
        self.propagate_rssi_variance = propagate_rssi_variance
        self.propagate_path_loss_exponent_variance = propagate_path_loss_exponent_variance
        self.propagate_fingerprint_position_covariance = (
            propagate_fingerprint_position_covariance
        )
        self.propagate_source_position_covariance = propagate_source_position_covariance
        self.drop_underdetermined_sources = drop_underdetermined_sources
        self.max_iterations = max_iterations
        self.tolerance = tolerance

    @contextmanager
    def _mutation(self):
        with self._state_lock:
            if self._estimating:
                raise LockedError("Estimator cannot be modified while estimating")
            yield

    @property
    def type(self) -> TaylorOrder:
        """Solver variant, as its Taylor order."""
        return self._taylor_order

    @property
    def min_nearest_fingerprints(self) -> int:
        return self._min_nearest_fingerprints

    @min_nearest_fingerprints.setter
    def min_nearest_fingerprints(self, value: int):
        self.set_min_max_nearest_fingerprints(value, self._max_nearest_fingerprints)

    @property
    def max_nearest_fingerprints(self) -> Optional[int]:
        return self._max_nearest_fingerprints

    @max_nearest_fingerprints.setter
    def max_nearest_fingerprints(self, value: Optional[int]):
        self.set_min_max_nearest_fingerprints(self._min_nearest_fingerprints, value)

    def set_min_max_nearest_fingerprints(
        self, min_nearest: int, max_nearest: Optional[int] = None
    ) -> None:
        """
        Set the working-set bounds together.

        Raises:
            FingerprintConfigurationError: If min < 1 or max < min.
            LockedError: If called while estimating.
        """
        with self._mutation():
            validate_nearest_bounds(min_nearest, max_nearest)
            self._min_nearest_fingerprints = int(min_nearest)
            self._max_nearest_fingerprints = (
                None if max_nearest is None else int(max_nearest)
            )

    @property
    def is_locked(self) -> bool:
        return self._estimating

    @property
    def is_ready(self) -> bool:
        """True when inputs are present, non-empty and of one dimension."""
        if not self._located_fingerprints or self._fingerprint is None or not self._sources:
            return False
        try:
            check_dimensions(self._located_fingerprints, self._sources, self._initial_position)
        except FingerprintConfigurationError:
            return False
        return True

    @property
    def state(self) -> EstimatorState:
        if self._estimating:
            return EstimatorState.ESTIMATING
        return EstimatorState.READY if self.is_ready else EstimatorState.UNREADY

    @property
    def dims(self) -> Optional[int]:
        if not self._located_fingerprints:
            return None
        return self._located_fingerprints[0].dims

    def settings(self) -> SolverSettings:
        """Current configuration as SolverSettings."""
        return SolverSettings(
            taylor_order=self._taylor_order,
            estimate_sources=self._estimate_sources,
            min_nearest_fingerprints=self._min_nearest_fingerprints,
            max_nearest_fingerprints=self._max_nearest_fingerprints,
            path_loss_exponent=self._path_loss_exponent,
            use_sources_path_loss_exponent=self._use_sources_path_loss_exponent,
            use_no_mean_matcher=self._use_no_mean_matcher,
            remove_mean_from_readings=self._remove_mean_from_readings,
            use_linear_seed=self._use_linear_seed,
            fallback_rssi_std=self._fallback_rssi_std,
            propagate_rssi_variance=self._propagate_rssi_variance,
            propagate_path_loss_exponent_variance=self._propagate_path_loss_exponent_variance,
            propagate_fingerprint_position_covariance=(
                self._propagate_fingerprint_position_covariance
            ),
            propagate_source_position_covariance=self._propagate_source_position_covariance,
            drop_underdetermined_sources=self._drop_underdetermined_sources,
            max_iterations=self._max_iterations,
            tolerance=self._tolerance,
        )

    def estimate(self) -> PositionEstimate:
        """
        Locate the query fingerprint.

        Returns:
            The new PositionEstimate, also readable from the estimator.

        Raises:
            LockedError: If already estimating.
            NotReadyError: If required inputs are missing or inconsistent.
                No listener is notified and no result is modified.
            FingerprintEstimationError: If no solution is found. Previous
                results stay readable.
            CovarianceNotPositiveSemidefiniteError: If the propagated
                covariance is invalid. The position is still published,
                with covariance None.
        """
        with self._state_lock:
            if self._estimating:
                raise LockedError("Estimator is already estimating")
            if not self.is_ready:
                raise NotReadyError(
                    "Located fingerprints, a query fingerprint and radio sources "
                    "of one dimension are required"
                )
            self._estimating = True
            settings = self.settings()

        try:
            try:
                self._notify_start()
                result = solve(
                    self._located_fingerprints,
                    self._fingerprint,
                    self._sources,
                    settings,
                    self._initial_position,
                )
                self._position_estimate = result.estimate
            finally:
                self._notify_end()
        finally:
            with self._state_lock:
                self._estimating = False

        if result.covariance_rejected:
            raise CovarianceNotPositiveSemidefiniteError(
                "Propagated covariance is not positive semidefinite"
            )
        return result.estimate

    def _notify_start(self):
        if self._listener is not None:
            self._listener.on_estimate_start(self)

    def _notify_end(self):
        if self._listener is not None:
            self._listener.on_estimate_end(self)

    # Results of the last successful estimate

    @property
    def position_estimate(self) -> Optional[PositionEstimate]:
        return self._position_estimate

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._position_estimate is None else self._position_estimate.position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return None if self._position_estimate is None else self._position_estimate.covariance

    @property
    def chi_sq(self) -> Optional[float]:
        return None if self._position_estimate is None else self._position_estimate.chi_sq

    @property
    def nearest_fingerprints(self) -> Tuple[LocatedFingerprint, ...]:
        if self._position_estimate is None:
            return ()
        return self._position_estimate.nearest_fingerprints

    @property
    def estimated_sources(self) -> Tuple[RadioSource, ...]:
        if self._position_estimate is None:
            return ()
        return self._position_estimate.estimated_sources
