"""Unit tests for the non-linear fingerprint solvers.

Simulated calibration fingerprints are generated from the power-law model
on a regular grid, then held-out queries are located with the first,
second and third order solvers, the closed-form seed and the joint
position/source solver.

Author: Li-Ta Hsu
Date: December 2024
"""

import itertools
import warnings

import numpy as np
import pytest
from numpy.testing import assert_allclose

from indoor.estimators.covariance import is_positive_semidefinite
from indoor.fingerprinting import (
    Fingerprint,
    FingerprintConfigurationError,
    FingerprintEstimationError,
    LocatedFingerprint,
    RadioSource,
    Reading,
    SolverSettings,
    TaylorOrder,
    find_nearest_fingerprints,
    linear_seed,
    solve,
)
from indoor.fingerprinting.solver import effective_rssi_std
from indoor.rf.path_loss import received_power_dbm, taylor_received_power

FREQUENCY = 2.4e9  # Hz
TX_POWER = 20.0  # dBm
AREA = 100.0  # m


def make_sources(positions, **kwargs):
    return [
        RadioSource(
            f"ap-{i}",
            FREQUENCY,
            position=p,
            transmitted_power_dbm=TX_POWER,
            path_loss_exponent=2.0,
            **kwargs,
        )
        for i, p in enumerate(positions)
    ]


def rssi_at(source, position):
    distance = max(np.linalg.norm(np.asarray(position) - source.position), 1e-3)
    return received_power_dbm(TX_POWER, distance, FREQUENCY, 2.0)


def make_query(sources, position, bias=0.0, rssi_std=None):
    return Fingerprint([Reading(s, rssi_at(s, position) + bias, rssi_std) for s in sources])


def make_grid(sources, nx=20, ny=15, hearing_radius=None, **kwargs):
    """Zero-noise calibration fingerprints on an nx-by-ny grid."""
    fingerprints = []
    for x, y in itertools.product(np.linspace(0, AREA, nx), np.linspace(0, AREA, ny)):
        position = np.array([x, y])
        readings = [
            Reading(s, rssi_at(s, position))
            for s in sources
            if hearing_radius is None
            or np.linalg.norm(position - s.position) <= hearing_radius.get(s, np.inf)
        ]
        fingerprints.append(LocatedFingerprint(readings, position=position, **kwargs))
    return fingerprints


def farthest_cell_centre(sources, nx=20, ny=15):
    """Grid cell centre farthest from every source."""
    xs = np.linspace(0, AREA, nx)
    ys = np.linspace(0, AREA, ny)
    centres = np.array(
        list(itertools.product((xs[:-1] + xs[1:]) / 2, (ys[:-1] + ys[1:]) / 2))
    )
    anchors = np.array([s.position for s in sources])
    clearance = np.min(
        np.linalg.norm(centres[:, None, :] - anchors[None, :, :], axis=2), axis=1
    )
    return centres[np.argmax(clearance)]


@pytest.fixture(scope="module")
def scenario_a():
    """5 random sources in a 100x100 area and 300 grid fingerprints."""
    rng = np.random.default_rng(42)
    sources = make_sources(rng.uniform(0, AREA, size=(5, 2)))
    fingerprints = make_grid(sources)
    truth = farthest_cell_centre(sources)
    return sources, fingerprints, truth, make_query(sources, truth)


class TestScenarioA:
    """Held-out query among 300 zero-noise fingerprints."""

    @pytest.mark.parametrize("order", list(TaylorOrder))
    def test_recovers_query_position(self, scenario_a, order):
        sources, fingerprints, truth, query = scenario_a

        result = solve(fingerprints, query, sources, SolverSettings(taylor_order=order))

        estimate = result.estimate
        assert np.linalg.norm(estimate.position - truth) < 0.5
        assert len(estimate.nearest_fingerprints) == 1
        assert estimate.chi_sq >= 0
        assert estimate.iterations > 0
        assert not result.covariance_rejected

    def test_third_order_is_at_least_as_accurate_as_first(self, scenario_a):
        sources, fingerprints, truth, query = scenario_a
        errors = {}
        for order in (TaylorOrder.FIRST_ORDER, TaylorOrder.THIRD_ORDER):
            estimate = solve(
                fingerprints, query, sources, SolverSettings(taylor_order=order)
            ).estimate
            errors[order] = np.linalg.norm(estimate.position - truth)

        assert errors[TaylorOrder.THIRD_ORDER] <= errors[TaylorOrder.FIRST_ORDER] + 1e-6

    def test_resolving_from_solution_is_fixed_point(self, scenario_a):
        sources, fingerprints, _, query = scenario_a
        first = solve(fingerprints, query, sources).estimate

        again = solve(fingerprints, query, sources, initial_position=first.position).estimate

        assert_allclose(again.position, first.position, atol=1e-6)

    def test_true_seed_no_worse_than_linear_seed(self, scenario_a):
        sources, fingerprints, truth, query = scenario_a

        seeded = solve(fingerprints, query, sources, initial_position=truth).estimate
        linear = solve(
            fingerprints, query, sources, SolverSettings(use_linear_seed=True)
        ).estimate

        error_seeded = np.linalg.norm(seeded.position - truth)
        error_linear = np.linalg.norm(linear.position - truth)
        assert error_seeded <= error_linear + 1e-3

    def test_source_path_loss_exponent_preferred(self, scenario_a):
        sources, fingerprints, truth, query = scenario_a
        own = SolverSettings(path_loss_exponent=3.5)
        configured = SolverSettings(path_loss_exponent=3.5, use_sources_path_loss_exponent=False)

        with_own = solve(fingerprints, query, sources, own).estimate
        with_configured = solve(fingerprints, query, sources, configured).estimate

        assert np.linalg.norm(with_own.position - truth) < 0.5
        assert not np.allclose(with_own.position, with_configured.position)


class TestScenarioARandomQueries:
    """Uniformly random held-out queries, including ones close to a source."""

    N_LAYOUTS = 20

    def test_most_queries_within_half_a_unit(self):
        errors = []
        for seed in range(self.N_LAYOUTS):
            rng = np.random.default_rng(seed)
            sources = make_sources(rng.uniform(0, AREA, size=(5, 2)))
            fingerprints = make_grid(sources)
            truth = rng.uniform(0, AREA, size=2)
            query = make_query(sources, truth)
            for order in TaylorOrder:
                try:
                    estimate = solve(
                        fingerprints, query, sources, SolverSettings(taylor_order=order)
                    ).estimate
                except FingerprintEstimationError:
                    errors.append(np.inf)
                    continue
                errors.append(np.linalg.norm(estimate.position - truth))

        errors = np.array(errors)
        # Queries close to a source can match a fingerprint several cells away
        assert len(errors) == 3 * self.N_LAYOUTS
        assert np.mean(errors < 0.5) >= 0.8
        assert np.median(errors) < 0.5


class TestFixedPoint:
    """Seeding with the true position of a consistent problem does not move it."""

    @pytest.mark.parametrize("order", list(TaylorOrder))
    def test_model_consistent_data(self, order):
        sources = make_sources([[0.0, 0.0], [60.0, 5.0], [55.0, 70.0], [-5.0, 50.0]])
        anchor = np.array([40.0, 30.0])
        truth = np.array([43.0, 28.0])
        calibration = LocatedFingerprint(
            [Reading(s, rssi_at(s, anchor)) for s in sources], position=anchor
        )
        query = Fingerprint(
            [
                Reading(
                    s,
                    taylor_received_power(
                        rssi_at(s, anchor), anchor, s.position, truth, 2.0, order
                    )[0],
                )
                for s in sources
            ]
        )

        estimate = solve(
            [calibration],
            query,
            sources,
            SolverSettings(taylor_order=order),
            initial_position=truth,
        ).estimate

        assert_allclose(estimate.position, truth, atol=1e-6)
        assert estimate.chi_sq == pytest.approx(0.0, abs=1e-12)


class TestScenarioB:
    """A single radio source cannot fix a 2D position from RSSI alone."""

    def setup_method(self):
        self.sources = make_sources([[50.0, 50.0]])
        self.fingerprints = make_grid(self.sources, nx=10, ny=10)
        self.query = make_query(self.sources, [23.0, 61.0])

    def test_still_returns_a_position(self):
        result = solve(self.fingerprints, self.query, self.sources)

        estimate = result.estimate
        assert estimate.position.shape == (2,)
        assert np.all(np.isfinite(estimate.position))
        if estimate.covariance is not None:
            assert is_positive_semidefinite(estimate.covariance)

    def test_linear_seed_falls_back_to_centroid(self):
        result = solve(
            self.fingerprints,
            self.query,
            self.sources,
            SolverSettings(use_linear_seed=True),
        )

        assert np.all(np.isfinite(result.estimate.position))


class TestBiasRobustness:
    """A constant query offset is absorbed when means are removed."""

    def test_mean_removal_reduces_error_under_bias(self):
        rng = np.random.default_rng(7)
        sources = make_sources(rng.uniform(0, AREA, size=(5, 2)))
        fingerprints = make_grid(sources)
        with_mean_removal = SolverSettings(
            use_no_mean_matcher=True,
            remove_mean_from_readings=True,
            max_nearest_fingerprints=4,
        )
        without_mean_removal = SolverSettings(
            use_no_mean_matcher=False,
            remove_mean_from_readings=False,
            max_nearest_fingerprints=4,
        )

        def error(query, truth, settings):
            try:
                estimate = solve(fingerprints, query, sources, settings).estimate
            except FingerprintEstimationError:
                return np.hypot(AREA, AREA)
            return np.linalg.norm(estimate.position - truth)

        errors_on = []
        errors_off = []
        for _ in range(20):
            truth = rng.uniform(15, 85, size=2)
            query = make_query(sources, truth, bias=15.0)
            errors_on.append(error(query, truth, with_mean_removal))
            errors_off.append(error(query, truth, without_mean_removal))

        assert np.mean(errors_on) <= np.mean(errors_off)

    def test_centred_residuals_ignore_offset(self, scenario_a):
        sources, fingerprints, truth, _ = scenario_a
        settings = SolverSettings(remove_mean_from_readings=True)

        clean = solve(fingerprints, make_query(sources, truth), sources, settings)
        biased = solve(fingerprints, make_query(sources, truth, bias=-12.0), sources, settings)

        assert_allclose(biased.estimate.position, clean.estimate.position, atol=1e-6)


class TestLinearSeed:
    def test_close_to_truth(self, scenario_a):
        sources, fingerprints, truth, query = scenario_a
        nearest = find_nearest_fingerprints(fingerprints, query, 1, 1, remove_mean=False)

        seed = linear_seed(nearest, query, sources)

        assert seed.shape == (2,)
        assert np.linalg.norm(seed - truth) < 3.0

    def test_single_source_is_rank_deficient(self):
        sources = make_sources([[10.0, 10.0]])
        calibration = LocatedFingerprint(
            [Reading(sources[0], -50.0)], position=[0.0, 0.0]
        )

        with pytest.raises(FingerprintEstimationError, match="rank deficient"):
            linear_seed([calibration], make_query(sources, [3.0, 4.0]), sources)

    def test_requires_located_source(self):
        source = RadioSource("ap")
        calibration = LocatedFingerprint([Reading(source, -50.0)], position=[0.0, 0.0])

        with pytest.raises(FingerprintEstimationError):
            linear_seed([calibration], Fingerprint([Reading(source, -55.0)]), [source])


class TestCovariance:
    def test_absent_when_propagation_disabled(self, scenario_a):
        sources, fingerprints, _, query = scenario_a
        settings = SolverSettings(
            propagate_rssi_variance=False,
            propagate_path_loss_exponent_variance=False,
            propagate_fingerprint_position_covariance=False,
            propagate_source_position_covariance=False,
        )

        estimate = solve(fingerprints, query, sources, settings).estimate

        assert estimate.covariance is None

    def test_rssi_only_is_positive_semidefinite(self, scenario_a):
        sources, fingerprints, _, query = scenario_a

        covariance = solve(fingerprints, query, sources).estimate.covariance

        assert covariance.shape == (2, 2)
        assert_allclose(covariance, covariance.T)
        assert np.all(np.diag(covariance) >= 0)
        assert is_positive_semidefinite(covariance)

    def test_every_input_uncertainty(self):
        rng = np.random.default_rng(3)
        sources = make_sources(
            rng.uniform(0, AREA, size=(4, 2)),
            position_covariance=np.eye(2) * 0.5,
            path_loss_exponent_std=0.1,
        )
        fingerprints = [
            LocatedFingerprint(
                [Reading(r.source, r.rssi, 2.0) for r in fp],
                position=fp.position,
                position_covariance=np.eye(2) * 0.04,
            )
            for fp in make_grid(sources, nx=12, ny=12)
        ]
        truth = farthest_cell_centre(sources, nx=12, ny=12)
        query = make_query(sources, truth, rssi_std=3.0)
        settings = SolverSettings(max_nearest_fingerprints=3)

        full = solve(fingerprints, query, sources, settings).estimate
        source_only = solve(
            fingerprints,
            query,
            sources,
            SolverSettings(
                max_nearest_fingerprints=3,
                propagate_rssi_variance=False,
                propagate_path_loss_exponent_variance=False,
                propagate_fingerprint_position_covariance=False,
            ),
        ).estimate

        assert is_positive_semidefinite(full.covariance)
        assert is_positive_semidefinite(source_only.covariance)
        assert np.trace(source_only.covariance) > 0
        assert np.trace(full.covariance) > np.trace(source_only.covariance)

    def test_rejected_covariance_is_reported(self, scenario_a, monkeypatch):
        sources, fingerprints, _, query = scenario_a
        monkeypatch.setattr(
            "indoor.fingerprinting.solver.is_positive_semidefinite", lambda P: False
        )

        result = solve(fingerprints, query, sources)

        assert result.covariance_rejected
        assert result.estimate.covariance is None
        assert np.all(np.isfinite(result.estimate.position))


class TestJointSolver:
    """Position and unknown source positions estimated together."""

    def setup_method(self):
        located = make_sources(
            [[20.0, 20.0], [80.0, 25.0], [75.0, 80.0], [25.0, 75.0], [60.0, 60.0]]
        )
        self.true_source = located[4]
        self.unknown = RadioSource("ap-4", FREQUENCY, path_loss_exponent=2.0)
        self.sources = located[:4] + [self.unknown]
        self.fingerprints = make_grid(located, hearing_radius={self.true_source: 45.0})
        self.truth = np.array([40.0, 40.0])
        self.query = make_query(located, self.truth)

    def test_all_sources_known_matches_position_only_solve(self, scenario_a):
        sources, fingerprints, _, query = scenario_a

        joint = solve(fingerprints, query, sources, SolverSettings(estimate_sources=True))
        single = solve(fingerprints, query, sources)

        assert_allclose(joint.estimate.position, single.estimate.position)
        assert joint.estimate.estimated_sources == ()

    def test_estimates_unknown_source(self):
        settings = SolverSettings(
            estimate_sources=True, min_nearest_fingerprints=4, max_nearest_fingerprints=8
        )

        estimate = solve(self.fingerprints, self.query, self.sources, settings).estimate

        assert np.linalg.norm(estimate.position - self.truth) < 1.0
        assert is_positive_semidefinite(estimate.covariance)
        assert len(estimate.estimated_sources) == 1
        estimated = estimate.estimated_sources[0]
        assert estimated == self.unknown
        assert estimated.is_located
        assert np.linalg.norm(estimated.position - self.true_source.position) < 1.0
        assert estimated.position_covariance.shape == (2, 2)

    @pytest.mark.parametrize("min_nearest,max_nearest", [(6, 12), (8, 20)])
    def test_larger_working_sets_locate_source(self, min_nearest, max_nearest):
        settings = SolverSettings(
            estimate_sources=True,
            min_nearest_fingerprints=min_nearest,
            max_nearest_fingerprints=max_nearest,
        )

        estimate = solve(self.fingerprints, self.query, self.sources, settings).estimate

        estimated = estimate.estimated_sources[0]
        assert np.linalg.norm(estimated.position - self.true_source.position) < 1.0

    def test_unknown_source_ignored_without_joint_mode(self):
        settings = SolverSettings(min_nearest_fingerprints=4, max_nearest_fingerprints=8)

        estimate = solve(self.fingerprints, self.query, self.sources, settings).estimate

        assert np.linalg.norm(estimate.position - self.truth) < 1.0
        assert estimate.estimated_sources == ()

    def test_underdetermined_source_dropped_with_warning(self):
        settings = SolverSettings(
            estimate_sources=True, min_nearest_fingerprints=2, max_nearest_fingerprints=2
        )

        with pytest.warns(RuntimeWarning, match="ap-4"):
            estimate = solve(self.fingerprints, self.query, self.sources, settings).estimate

        assert estimate.estimated_sources == ()
        assert np.linalg.norm(estimate.position - self.truth) < 1.0

    def test_underdetermined_source_fails_when_not_dropped(self):
        settings = SolverSettings(
            estimate_sources=True,
            min_nearest_fingerprints=2,
            max_nearest_fingerprints=2,
            drop_underdetermined_sources=False,
        )

        with pytest.raises(FingerprintEstimationError):
            solve(self.fingerprints, self.query, self.sources, settings)

    def test_source_not_heard_by_working_set_is_skipped(self):
        located = make_sources([[20.0, 20.0], [80.0, 25.0], [75.0, 80.0], [98.0, 98.0]])
        unknown = RadioSource("ap-3", FREQUENCY)
        fingerprints = make_grid(located, hearing_radius={located[3]: 10.0})
        settings = SolverSettings(
            estimate_sources=True, min_nearest_fingerprints=3, max_nearest_fingerprints=3
        )

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            estimate = solve(
                fingerprints, make_query(located, self.truth), located[:3] + [unknown], settings
            ).estimate

        assert estimate.estimated_sources == ()


class TestThreeDimensions:
    def test_recovers_3d_position(self):
        sources = make_sources(
            [[0.0, 0.0, 3.0], [40.0, 0.0, 0.0], [40.0, 40.0, 3.0], [0.0, 40.0, 0.0]]
        )
        fingerprints = []
        for position in itertools.product(
            np.linspace(5, 35, 7), np.linspace(5, 35, 7), np.linspace(0.5, 2.5, 3)
        ):
            position = np.array(position)
            fingerprints.append(
                LocatedFingerprint(
                    [Reading(s, rssi_at(s, position)) for s in sources], position=position
                )
            )
        truth = np.array([17.0, 22.0, 1.5])

        estimate = solve(fingerprints, make_query(sources, truth), sources).estimate

        assert estimate.position.shape == (3,)
        assert np.linalg.norm(estimate.position - truth) < 0.5
        assert estimate.covariance.shape == (3, 3)


class TestInputErrors:
    def test_mixed_dimensions(self, scenario_a):
        sources, fingerprints, _, query = scenario_a

        with pytest.raises(FingerprintConfigurationError):
            solve(fingerprints, query, sources, initial_position=np.zeros(3))

    def test_query_shares_no_source(self, scenario_a):
        sources, fingerprints, _, _ = scenario_a
        stranger = RadioSource("stranger", FREQUENCY, position=[1.0, 1.0])

        with pytest.raises(FingerprintEstimationError):
            solve(fingerprints, Fingerprint([Reading(stranger, -40.0)]), sources)


class TestEffectiveRssiStd:
    def test_combines_available_stds(self):
        assert effective_rssi_std(3.0, 4.0) == pytest.approx(5.0)
        assert effective_rssi_std(None, 2.0) == pytest.approx(2.0)
        assert effective_rssi_std(1.5, None) == pytest.approx(1.5)

    def test_falls_back(self):
        assert effective_rssi_std(None, None, fallback=2.5) == 2.5
        assert effective_rssi_std(0.0, 0.0, fallback=2.5) == 2.5
