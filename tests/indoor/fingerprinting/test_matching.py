"""Unit tests for nearest-fingerprint matching.

Tests squared RSSI distances with and without mean removal, candidate
ranking and the bounds on the number of matches.

Author: Li-Ta Hsu
Date: December 2024
"""

import numpy as np
import pytest

from indoor.fingerprinting import (
    Fingerprint,
    FingerprintConfigurationError,
    FingerprintEstimationError,
    LocatedFingerprint,
    RadioSource,
    Reading,
    find_nearest_fingerprints,
    rank_fingerprints,
    sqr_distance,
    validate_nearest_bounds,
)

A, B, C, D = (RadioSource(name) for name in "abcd")


def located(position, **rssi):
    readings = [Reading(RadioSource(name), value) for name, value in rssi.items()]
    return LocatedFingerprint(readings, position=position)


class TestSqrDistance:
    """Test squared RSSI distance."""

    def setup_method(self):
        self.q = Fingerprint([Reading(A, -50.0), Reading(B, -60.0)])
        self.f = Fingerprint([Reading(A, -55.0), Reading(B, -65.0)])

    def test_plain_distance(self):
        # (5)² + (5)² = 50
        assert sqr_distance(self.q, self.f) == pytest.approx(50.0)

    def test_mean_removal_cancels_constant_offset(self):
        assert sqr_distance(self.q, self.f, remove_mean=True) == pytest.approx(0.0)

    def test_only_shared_sources_count(self):
        f = Fingerprint([Reading(A, -52.0), Reading(C, -90.0)])

        assert sqr_distance(self.q, f) == pytest.approx(4.0)
        # A single shared reading is always zero once its mean is removed
        assert sqr_distance(self.q, f, remove_mean=True) == pytest.approx(0.0)

    def test_nothing_shared(self):
        f = Fingerprint([Reading(C, -50.0), Reading(D, -60.0)])

        assert sqr_distance(self.q, f) == np.inf
        assert sqr_distance(self.q, f, remove_mean=True) == np.inf

    def test_symmetric(self):
        f = Fingerprint([Reading(A, -40.0), Reading(B, -75.0), Reading(C, -80.0)])

        assert sqr_distance(self.q, f) == pytest.approx(sqr_distance(f, self.q))
        assert sqr_distance(self.q, f, True) == pytest.approx(sqr_distance(f, self.q, True))


class TestRankFingerprints:
    def setup_method(self):
        self.query = Fingerprint([Reading(A, -50.0), Reading(B, -60.0), Reading(C, -70.0)])
        self.db = [
            located([0.0, 0.0], a=-60.0, b=-70.0, c=-80.0),  # 300, offset only
            located([1.0, 0.0], a=-51.0, b=-60.0, c=-70.0),  # 1
            located([2.0, 0.0], d=-40.0),  # nothing shared
            located([3.0, 0.0], a=-50.0, b=-65.0, c=-70.0),  # 25
        ]

    def test_closest_first(self):
        ranked, distances = rank_fingerprints(self.query, self.db)

        assert ranked == [self.db[1], self.db[3], self.db[0]]
        np.testing.assert_allclose(distances, [1.0, 25.0, 300.0])

    def test_mean_removal_changes_order(self):
        ranked, distances = rank_fingerprints(self.query, self.db, remove_mean=True)

        assert ranked[0] is self.db[0]
        assert distances[0] == pytest.approx(0.0)
        assert self.db[2] not in ranked

    def test_ties_keep_input_order(self):
        db = [located([float(i), 0.0], a=-50.0, b=-60.0) for i in range(4)]

        ranked, _ = rank_fingerprints(self.query, db)

        assert ranked == db


class TestFindNearestFingerprints:
    def setup_method(self):
        self.query = Fingerprint([Reading(A, -50.0), Reading(B, -60.0)])
        self.db = [
            located([float(i), 0.0], a=-50.0 - i, b=-60.0 + i) for i in range(5)
        ] + [located([9.0, 9.0], c=-50.0)]

    def test_all_candidates_by_default(self):
        nearest = find_nearest_fingerprints(self.db, self.query)

        assert nearest == self.db[:5]

    def test_maximum(self):
        nearest = find_nearest_fingerprints(self.db, self.query, 1, 2, remove_mean=False)

        assert nearest == self.db[:2]

    def test_fewer_candidates_than_minimum(self):
        with pytest.raises(FingerprintEstimationError, match="at least 6"):
            find_nearest_fingerprints(self.db, self.query, min_nearest=6)

    def test_no_shared_source(self):
        query = Fingerprint([Reading(D, -50.0)])

        with pytest.raises(FingerprintEstimationError):
            find_nearest_fingerprints(self.db, query)

    def test_invalid_bounds(self):
        with pytest.raises(FingerprintConfigurationError):
            find_nearest_fingerprints(self.db, self.query, min_nearest=0)
        with pytest.raises(FingerprintConfigurationError):
            find_nearest_fingerprints(self.db, self.query, 3, 2)


@pytest.mark.parametrize(
    "min_nearest, max_nearest",
    [(0, None), (-1, 4), (3, 2), (1.5, None), (True, None), (2, 2.0)],
)
def test_validate_nearest_bounds_rejects(min_nearest, max_nearest):
    with pytest.raises(FingerprintConfigurationError):
        validate_nearest_bounds(min_nearest, max_nearest)


def test_validate_nearest_bounds_accepts_equal():
    validate_nearest_bounds(3, 3)
    validate_nearest_bounds(np.int64(1), None)
