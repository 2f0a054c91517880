"""Non-linear RSSI fingerprint position solvers.

The position x of a query fingerprint is refined from the calibration
fingerprints closest to it. Every pair (matched fingerprint i, radio source
s heard by both) gives one observation: the query RSSI q_s compared to the
RSSI predicted at x by expanding the path-loss model around the fingerprint
position p_i, where the RSSI f_is was measured:

    P_is(x) = f_is + gᵀδ + ½ δᵀHδ + ⅙ T[δ, δ, δ],    δ = x - p_i

truncated to the configured Taylor order. The solver minimizes

    ½ ‖C (q - P(x))‖²_W

with Levenberg-Marquardt, where W holds the inverse RSSI variances and C is
either the identity or, when readings are mean-removed, the operator that
centres each fingerprint's observations on their mean. Centring makes the
residuals exactly invariant to a constant RSSI offset of either device.

In joint mode, the position of every supplied radio source without a known
location is appended to the unknowns, so sources are self-calibrated while
the query is located.

Author: Li-Ta Hsu
Date: 2024
"""

import logging
import warnings
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from indoor.estimators.covariance import (
    block_covariance,
    is_positive_semidefinite,
    least_squares_sensitivity,
    numerical_jacobian,
    propagate_covariance,
)
from indoor.estimators.least_squares import weighted_least_squares
from indoor.estimators.nonlinear_least_squares import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TOLERANCE,
    levenberg_marquardt,
)
from indoor.rf.path_loss import (
    DEFAULT_PATH_LOSS_EXPONENT,
    TaylorOrder,
    path_loss_derivatives,
    taylor_received_power,
)

from .exceptions import FingerprintConfigurationError, FingerprintEstimationError
from .matching import find_nearest_fingerprints
from .types import (
    Fingerprint,
    LocatedFingerprint,
    PositionEstimate,
    RadioSource,
    fingerprint_centroid,
)

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_RSSI_STD = 1.0  # dB, used when a reading carries none
TINY_RSSI_STD = 1e-12  # Smaller effective std values use the fallback


@dataclass(frozen=True)
class SolverSettings:
    """
    Configuration of a non-linear fingerprint solve.

    Attributes:
        taylor_order: Number of Taylor terms of the path-loss model.
        estimate_sources: Also estimate positions of sources without one.
        min_nearest_fingerprints: Smallest working set tried (>= 1).
        max_nearest_fingerprints: Largest working set tried. None tries
                                  every candidate sharing a source.
        path_loss_exponent: Exponent used when a source has none.
        use_sources_path_loss_exponent: Prefer each source's own exponent.
        use_no_mean_matcher: Rank fingerprints on mean-removed RSSI.
        remove_mean_from_readings: Centre residuals per fingerprint.
        use_linear_seed: Seed with the closed-form first-order solution
                         when no initial position is given.
        fallback_rssi_std: RSSI std (dB) used when a reading has none.
        propagate_rssi_variance: Propagate query and fingerprint RSSI variance.
        propagate_path_loss_exponent_variance: Propagate exponent variance.
        propagate_fingerprint_position_covariance: Propagate fingerprint
                                                   position covariance.
        propagate_source_position_covariance: Propagate located source
                                              position covariance.
        drop_underdetermined_sources: In joint mode, drop sources with too
                                      few readings instead of failing.
        max_iterations: Levenberg-Marquardt iteration cap.
        tolerance: Convergence tolerance on the step norm.
    """

    taylor_order: TaylorOrder = TaylorOrder.THIRD_ORDER
    estimate_sources: bool = False
    min_nearest_fingerprints: int = 1
    max_nearest_fingerprints: Optional[int] = None
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT
    use_sources_path_loss_exponent: bool = True
    use_no_mean_matcher: bool = True
    remove_mean_from_readings: bool = False
    use_linear_seed: bool = False
    fallback_rssi_std: float = DEFAULT_FALLBACK_RSSI_STD
    propagate_rssi_variance: bool = True
    propagate_path_loss_exponent_variance: bool = True
    propagate_fingerprint_position_covariance: bool = True
    propagate_source_position_covariance: bool = True
    drop_underdetermined_sources: bool = True
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    tolerance: float = DEFAULT_TOLERANCE

    @property
    def propagates_covariance(self) -> bool:
        return (
            self.propagate_rssi_variance
            or self.propagate_path_loss_exponent_variance
            or self.propagate_fingerprint_position_covariance
            or self.propagate_source_position_covariance
        )


@dataclass(frozen=True)
class SolverResult:
    """
    Outcome of a solve.

    Attributes:
        estimate: Published position estimate.
        covariance_rejected: True when the propagated covariance was not
                             positive semidefinite and was discarded.
    """

    estimate: PositionEstimate
    covariance_rejected: bool = False


@dataclass(frozen=True)
class _Observation:
    group: int  # index of the fingerprint in the working set
    source: RadioSource
    query_rssi: float
    query_rssi_std: Optional[float]
    fingerprint_rssi: float
    fingerprint_rssi_std: Optional[float]
    path_loss_exponent: float
    path_loss_exponent_std: Optional[float]


def effective_rssi_std(
    query_rssi_std: Optional[float],
    fingerprint_rssi_std: Optional[float],
    fallback: float = DEFAULT_FALLBACK_RSSI_STD,
) -> float:
    """
    Standard deviation of the difference between two RSSI readings.

    Combines the available standard deviations as sqrt(σq² + σf²). Falls
    back to ``fallback`` when neither is known or the result is negligible.

    Example:
        >>> effective_rssi_std(3.0, 4.0)
        5.0
        >>> effective_rssi_std(None, None, fallback=2.0)
        2.0
    """
    variances = [s * s for s in (query_rssi_std, fingerprint_rssi_std) if s is not None]
    if not variances:
        return fallback

    std = float(np.sqrt(sum(variances)))
    return std if std >= TINY_RSSI_STD else fallback


def _centering_matrix(groups: np.ndarray, remove_mean: bool) -> np.ndarray:
    """Identity, or the operator removing each group's mean."""
    m = len(groups)
    C = np.eye(m)
    if remove_mean:
        for group in np.unique(groups):
            idx = np.flatnonzero(groups == group)
            C[np.ix_(idx, idx)] -= 1.0 / len(idx)
    return C


def _collect_observations(
    nearest: Sequence[LocatedFingerprint],
    fingerprint: Fingerprint,
    sources: Sequence[RadioSource],
    settings: SolverSettings,
    unknown_sources: Sequence[RadioSource] = (),
) -> List[_Observation]:
    supplied = {source: source for source in sources}
    unknown = set(unknown_sources)

    observations = []
    for group, located in enumerate(nearest):
        for reading in located:
            source = supplied.get(reading.source)
            if source is None:
                continue
            if not source.is_located and source not in unknown:
                continue

            query = fingerprint.reading_for(source)
            if query is None:
                continue

            exponent = settings.path_loss_exponent
            exponent_std = None
            if (
                settings.use_sources_path_loss_exponent
                and source.path_loss_exponent is not None
            ):
                exponent = source.path_loss_exponent
                exponent_std = source.path_loss_exponent_std

            observations.append(
                _Observation(
                    group=group,
                    source=source,
                    query_rssi=query.rssi,
                    query_rssi_std=query.rssi_std,
                    fingerprint_rssi=reading.rssi,
                    fingerprint_rssi_std=reading.rssi_std,
                    path_loss_exponent=exponent,
                    path_loss_exponent_std=exponent_std,
                )
            )

    return observations


class _ResidualModel:
    """
    Centred RSSI predictions of a working set as a function of the unknowns.

    The parameter vector stacks the query position and, in joint mode, the
    position of every estimated source: [x, s_1, ..., s_k].
    """

    def __init__(
        self,
        nearest: Sequence[LocatedFingerprint],
        observations: Sequence[_Observation],
        settings: SolverSettings,
        unknown_sources: Sequence[RadioSource] = (),
    ):
        self.nearest = nearest
        self.observations = list(observations)
        self.order = settings.taylor_order
        self.dims = nearest[0].dims
        self.unknown_sources = list(unknown_sources)
        self._unknown_index = {s: i for i, s in enumerate(self.unknown_sources)}

        groups = np.array([o.group for o in self.observations])
        self.centering = _centering_matrix(groups, settings.remove_mean_from_readings)
        self.observed = self.centering @ np.array([o.query_rssi for o in self.observations])
        stds = np.array(
            [
                effective_rssi_std(
                    o.query_rssi_std, o.fingerprint_rssi_std, settings.fallback_rssi_std
                )
                for o in self.observations
            ]
        )
        self.weights = 1.0 / stds**2

    @property
    def n_params(self) -> int:
        return self.dims * (1 + len(self.unknown_sources))

    def source_slice(self, source: RadioSource) -> Optional[slice]:
        index = self._unknown_index.get(source)
        if index is None:
            return None
        start = self.dims * (index + 1)
        return slice(start, start + self.dims)

    def _source_position(self, obs: _Observation, params: np.ndarray) -> np.ndarray:
        cols = self.source_slice(obs.source)
        return obs.source.position if cols is None else params[cols]

    def _predict(
        self,
        obs: _Observation,
        position: np.ndarray,
        source_position: np.ndarray,
        fingerprint_position: Optional[np.ndarray] = None,
    ) -> Tuple[float, np.ndarray]:
        if fingerprint_position is None:
            fingerprint_position = self.nearest[obs.group].position
        return taylor_received_power(
            obs.fingerprint_rssi,
            fingerprint_position,
            source_position,
            position,
            obs.path_loss_exponent,
            self.order,
        )

    def predictions(
        self, params: np.ndarray, with_jacobian: bool = True
    ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """Raw predicted RSSI P(params) and, optionally, ∂P/∂params."""
        position = params[: self.dims]
        m = len(self.observations)
        P = np.empty(m)
        D = np.zeros((m, self.n_params)) if with_jacobian else None

        for k, obs in enumerate(self.observations):
            source_position = self._source_position(obs, params)
            P[k], gradient = self._predict(obs, position, source_position)
            if not with_jacobian:
                continue

            D[k, : self.dims] = gradient
            cols = self.source_slice(obs.source)
            if cols is not None:
                D[k, cols] = numerical_jacobian(
                    lambda s: self._predict(obs, position, s)[0], source_position
                )[0]

        return P, D

    def h(self, params: np.ndarray) -> np.ndarray:
        return self.centering @ self.predictions(params, with_jacobian=False)[0]

    def jacobian(self, params: np.ndarray) -> np.ndarray:
        return self.centering @ self.predictions(params)[1]

    def input_sensitivities(
        self, params: np.ndarray, settings: SolverSettings
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Derivatives of the residuals with respect to uncertain inputs, and their covariance.

        Returns:
            Tuple (∂r/∂θ of shape (m, p), input covariance of shape (p, p)).
        """
        position = params[: self.dims]
        observations = self.observations
        m = len(observations)
        C = self.centering
        predicted, _ = self.predictions(params, with_jacobian=False)

        observed_sources = list(dict.fromkeys(o.source for o in observations))
        columns = []
        blocks = []

        if settings.propagate_rssi_variance:
            # Query RSSI, one input per source: ∂r/∂q_s = C e_s
            for source in observed_sources:
                mask = np.array([o.source == source for o in observations], dtype=float)
                std = next(o.query_rssi_std for o in observations if o.source == source)
                if std is None:
                    std = settings.fallback_rssi_std
                columns.append((C @ mask)[:, None])
                blocks.append(std**2)

            # Fingerprint RSSI, one input per observation: ∂r/∂f_k = -C e_k
            for k, obs in enumerate(observations):
                if obs.fingerprint_rssi_std is not None:
                    columns.append(-C[:, k : k + 1])
                    blocks.append(obs.fingerprint_rssi_std**2)

        if settings.propagate_path_loss_exponent_variance:
            # Every Taylor term is proportional to n: ∂P/∂n = (P - f) / n
            for source in observed_sources:
                rows = [k for k, o in enumerate(observations) if o.source == source]
                std = observations[rows[0]].path_loss_exponent_std
                if std is None:
                    continue
                d = np.zeros(m)
                for k in rows:
                    obs = observations[k]
                    d[k] = (predicted[k] - obs.fingerprint_rssi) / obs.path_loss_exponent
                columns.append(-(C @ d)[:, None])
                blocks.append(std**2)

        if settings.propagate_fingerprint_position_covariance:
            for group, located in enumerate(self.nearest):
                if located.position_covariance is None:
                    continue
                d = np.zeros((m, self.dims))
                for k, obs in enumerate(observations):
                    if obs.group != group:
                        continue
                    source_position = self._source_position(obs, params)
                    d[k] = numerical_jacobian(
                        lambda p: self._predict(obs, position, source_position, p)[0],
                        located.position,
                    )[0]
                columns.append(-(C @ d))
                blocks.append(located.position_covariance)

        if settings.propagate_source_position_covariance:
            for source in observed_sources:
                if self.source_slice(source) is not None:
                    continue
                if source.position_covariance is None:
                    continue
                d = np.zeros((m, self.dims))
                for k, obs in enumerate(observations):
                    if obs.source != source:
                        continue
                    d[k] = numerical_jacobian(
                        lambda s: self._predict(obs, position, s)[0], source.position
                    )[0]
                columns.append(-(C @ d))
                blocks.append(source.position_covariance)

        if not columns:
            return np.zeros((m, 0)), np.zeros((0, 0))
        return np.hstack(columns), block_covariance(blocks)


def linear_seed(
    nearest: Sequence[LocatedFingerprint],
    fingerprint: Fingerprint,
    sources: Sequence[RadioSource],
    settings: Optional[SolverSettings] = None,
) -> np.ndarray:
    """
    Closed-form position from the first-order path-loss model.

    The first-order model is linear in x, so stacking

        g_isᵀ x = q_s - f_is + g_isᵀ p_i

    over all observations of located sources gives a weighted linear
    least-squares problem solved without iterating.

    Args:
        nearest: Working set of located fingerprints.
        fingerprint: Query fingerprint.
        sources: Radio sources; only located ones are used.
        settings: Solver settings (exponent, mean removal, fallback std).

    Returns:
        Position estimate, shape (d,).

    Raises:
        FingerprintEstimationError: If there are no observations or the
            system is rank deficient.
    """
    settings = settings or SolverSettings()
    observations = _collect_observations(nearest, fingerprint, sources, settings)
    if not observations:
        raise FingerprintEstimationError(
            "No located radio source is shared by the query and the working set"
        )

    dims = nearest[0].dims
    m = len(observations)
    A = np.zeros((m, dims))
    b = np.zeros(m)
    weights = np.zeros(m)
    for k, obs in enumerate(observations):
        p1 = nearest[obs.group].position
        g, _, _ = path_loss_derivatives(
            p1, obs.source.position, obs.path_loss_exponent, TaylorOrder.FIRST_ORDER
        )
        A[k] = g
        b[k] = obs.query_rssi - obs.fingerprint_rssi + g @ p1
        std = effective_rssi_std(
            obs.query_rssi_std, obs.fingerprint_rssi_std, settings.fallback_rssi_std
        )
        weights[k] = 1.0 / std**2

    groups = np.array([o.group for o in observations])
    C = _centering_matrix(groups, settings.remove_mean_from_readings)
    try:
        x, _ = weighted_least_squares(C @ A, C @ b, weights, return_covariance=False)
    except ValueError as e:
        raise FingerprintEstimationError(f"Linear seed unavailable: {e}") from e

    return x


def _resolvable_sources(
    unknown_sources: Sequence[RadioSource],
    observations: Sequence[_Observation],
    dims: int,
    drop: bool,
) -> List[RadioSource]:
    """Unknown sources heard often enough in the working set to be estimated."""
    counts = Counter(o.source for o in observations)
    resolvable = []
    for source in unknown_sources:
        n = counts.get(source, 0)
        if n == 0:
            logger.debug("Source %r not heard in working set", source.source_id)
        elif n > dims:
            resolvable.append(source)
        elif drop:
            warnings.warn(
                f"Dropping radio source {source.source_id!r}: {n} readings cannot "
                f"determine a {dims}D position",
                RuntimeWarning,
            )
        else:
            raise FingerprintEstimationError(
                f"Radio source {source.source_id!r} is under-determined: {n} "
                f"readings for a {dims}D position"
            )
    return resolvable


def _source_seed(
    source: RadioSource, located_fingerprints: Sequence[LocatedFingerprint]
) -> np.ndarray:
    """Centroid of every calibration fingerprint hearing the source."""
    return fingerprint_centroid(
        f for f in located_fingerprints if f.reading_for(source) is not None
    )


def _initial_position(
    nearest: Sequence[LocatedFingerprint],
    fingerprint: Fingerprint,
    sources: Sequence[RadioSource],
    settings: SolverSettings,
    initial_position: Optional[np.ndarray],
) -> np.ndarray:
    if initial_position is not None:
        return np.array(initial_position, dtype=float)

    if settings.use_linear_seed:
        try:
            return linear_seed(nearest, fingerprint, sources, settings)
        except FingerprintEstimationError as e:
            logger.debug("%s, seeding with working-set centroid", e)

    return fingerprint_centroid(nearest)


def _solve_working_set(
    nearest: Sequence[LocatedFingerprint],
    located_fingerprints: Sequence[LocatedFingerprint],
    fingerprint: Fingerprint,
    sources: Sequence[RadioSource],
    settings: SolverSettings,
    initial_position: Optional[np.ndarray],
) -> SolverResult:
    dims = nearest[0].dims

    unknown = []
    if settings.estimate_sources:
        unknown = [s for s in sources if not s.is_located]
    observations = _collect_observations(nearest, fingerprint, sources, settings, unknown)
    if unknown:
        unknown = _resolvable_sources(
            unknown, observations, dims, settings.drop_underdetermined_sources
        )
        kept = set(unknown)
        observations = [o for o in observations if o.source.is_located or o.source in kept]

    if not observations:
        raise FingerprintEstimationError(
            "No usable radio source is shared by the query and the working set"
        )

    model = _ResidualModel(nearest, observations, settings, unknown)
    x0 = np.concatenate(
        [_initial_position(nearest, fingerprint, sources, settings, initial_position)]
        + [_source_seed(s, located_fingerprints) for s in unknown]
    )

    try:
        result = levenberg_marquardt(
            model.h,
            model.jacobian,
            model.observed,
            x0,
            weights=model.weights,
            max_iter=settings.max_iterations,
            tol=settings.tolerance,
        )
    except np.linalg.LinAlgError as e:
        raise FingerprintEstimationError(f"Solver failed: {e}") from e

    if not result.converged:
        raise FingerprintEstimationError(
            f"Solver did not converge in {result.iterations} iterations"
        )

    covariance = None
    rejected = False
    if settings.propagates_covariance:
        sensitivity, input_covariance = model.input_sensitivities(result.x, settings)
        A = least_squares_sensitivity(result.jacobian, model.weights)
        covariance = propagate_covariance(A @ sensitivity, input_covariance)
        if not is_positive_semidefinite(covariance):
            logger.debug("Discarding covariance that is not positive semidefinite")
            covariance = None
            rejected = True

    estimated_sources = []
    for source in unknown:
        cols = model.source_slice(source)
        source_covariance = None if covariance is None else covariance[cols, cols]
        estimated_sources.append(source.with_position(result.x[cols], source_covariance))

    estimate = PositionEstimate(
        position=result.x[:dims].copy(),
        covariance=None if covariance is None else covariance[:dims, :dims],
        chi_sq=result.chi_sq,
        nearest_fingerprints=tuple(nearest),
        estimated_sources=tuple(estimated_sources),
        iterations=result.iterations,
    )
    return SolverResult(estimate=estimate, covariance_rejected=rejected)


def check_dimensions(
    located_fingerprints: Sequence[LocatedFingerprint],
    sources: Sequence[RadioSource],
    initial_position: Optional[np.ndarray],
) -> None:
    """Raise FingerprintConfigurationError unless all positions share one dimension."""
    dims = {f.dims for f in located_fingerprints}
    dims.update(s.dims for s in sources if s.is_located)
    if initial_position is not None:
        dims.add(len(initial_position))
    if len(dims) > 1:
        raise FingerprintConfigurationError(
            f"Fingerprints, sources and initial position mix dimensions {sorted(dims)}"
        )


def solve(
    located_fingerprints: Sequence[LocatedFingerprint],
    fingerprint: Fingerprint,
    sources: Sequence[RadioSource],
    settings: Optional[SolverSettings] = None,
    initial_position: Optional[np.ndarray] = None,
) -> SolverResult:
    """
    Locate a query fingerprint from calibration fingerprints.

    Calibration fingerprints are ranked once; working sets of the k closest
    are then tried for k from the minimum up to the maximum (or every
    candidate), and the first converged solve is returned.

    Near a radio source the path loss changes faster than the Taylor model
    can follow across a grid cell, and the RSSI of that source dominates
    the mean-removed matcher distance. The closest match may then be
    several cells away, and since the single-fingerprint working set
    usually converges, the estimate can stay biased by up to that
    distance. Larger minimum working sets, or ranking with
    ``use_no_mean_matcher=False`` when no device offset is expected,
    reduce the effect.

    Args:
        located_fingerprints: Calibration fingerprints.
        fingerprint: Query fingerprint.
        sources: Radio sources. Located sources are modelled; in joint mode
                 sources without a position are estimated too.
        settings: Solver settings. Defaults to SolverSettings().
        initial_position: Seed for the query position.

    Returns:
        SolverResult with the estimate.

    Raises:
        FingerprintConfigurationError: If inputs are inconsistent.
        FingerprintEstimationError: If too few fingerprints match or no
            working set produces a converged solution.

    Example:
        >>> result = solve(calibration, query, access_points)
        >>> print(result.estimate.position)
    """
    settings = settings or SolverSettings()
    check_dimensions(located_fingerprints, sources, initial_position)

    ranked = find_nearest_fingerprints(
        located_fingerprints,
        fingerprint,
        settings.min_nearest_fingerprints,
        settings.max_nearest_fingerprints,
        settings.use_no_mean_matcher,
    )

    last_error = None
    for k in range(settings.min_nearest_fingerprints, len(ranked) + 1):
        try:
            result = _solve_working_set(
                ranked[:k],
                located_fingerprints,
                fingerprint,
                sources,
                settings,
                initial_position,
            )
        except FingerprintEstimationError as e:
            logger.debug("Working set of %d fingerprints failed: %s", k, e)
            last_error = e
            continue

        logger.debug(
            "Solved with %d nearest fingerprints in %d iterations (chi_sq %.4g)",
            k,
            result.estimate.iterations,
            result.estimate.chi_sq,
        )
        return result

    raise FingerprintEstimationError(
        f"No working set of {settings.min_nearest_fingerprints} to {len(ranked)} "
        f"nearest fingerprints produced a solution"
    ) from last_error
