"""
Tests for the Confidence-In-Visit scorer.

Covers: neutral prior, bounded output, single-sample cap, corroboration,
recency and accuracy weighting, and out-of-order / malformed samples.
"""
import math
import random
from datetime import timedelta

import pytest

from citycircle.services.civ_scorer import (
    ACCURACY_REFERENCE_M,
    DEFAULT_PRIOR,
    FAR_DISTANCE_SCALE_M,
    LOW_CONFIDENCE_ACCURACY_M,
    MISSING_ACCURACY_WEIGHT,
    LocationFix,
    accuracy_weight,
    explain_samples,
    order_samples,
    sample_evidence,
    score_samples,
)
from citycircle.services.geo import haversine_m, is_valid_coordinate
from tests.helpers.checkin_helpers import STORE_LAT, STORE_LNG, T0, fix_at


def _score(samples, **kwargs):
    return score_samples(samples, STORE_LAT, STORE_LNG, **kwargs)


class TestGeo:
    def test_haversine_zero_distance(self):
        assert haversine_m(STORE_LAT, STORE_LNG, STORE_LAT, STORE_LNG) == 0.0

    def test_haversine_known_offset(self):
        """A fix 100m north measures ~100m away."""
        sample = fix_at(north_m=100)
        distance = haversine_m(STORE_LAT, STORE_LNG, sample.lat, sample.lng)
        assert distance == pytest.approx(100, abs=1)

    def test_coordinate_validation(self):
        assert is_valid_coordinate(30.0, -97.0)
        assert not is_valid_coordinate(91.0, 0.0)
        assert not is_valid_coordinate(0.0, 181.0)
        assert not is_valid_coordinate(float("nan"), 0.0)
        assert not is_valid_coordinate(None, 0.0)
        assert not is_valid_coordinate(True, 0.0)


class TestSampleEvidence:
    def test_inside_geofence_is_full_evidence(self):
        assert sample_evidence(30, 5, 50) == 1.0

    def test_accuracy_band_falls_linearly(self):
        """Halfway across the accuracy band beyond the geofence is half evidence."""
        assert sample_evidence(75, 50, 50) == pytest.approx(0.5)

    def test_far_away_reaches_minus_one(self):
        assert sample_evidence(50 + 100 + FAR_DISTANCE_SCALE_M, 100, 50) == -1.0
        assert sample_evidence(50_000, 10, 50) == -1.0

    def test_accuracy_credit_is_capped(self):
        """A 500m accuracy radius only buys the capped band."""
        assert sample_evidence(200, 500, 50) == pytest.approx(-0.2)

    def test_accuracy_weight_halves_at_reference(self):
        assert accuracy_weight(ACCURACY_REFERENCE_M) == pytest.approx(0.5)


class TestScoreBounds:
    def test_no_samples_returns_prior(self):
        assert _score([]) == DEFAULT_PRIOR

    def test_custom_prior_without_samples(self):
        assert _score([], prior=0.3) == 0.3

    def test_single_sample_at_store_is_capped(self):
        """One sample, however close, moves the score at most half way."""
        score = _score([fix_at(accuracy_m=3)])
        assert score == pytest.approx(0.75)
        assert score < 0.85

    def test_three_corroborating_samples(self):
        samples = [fix_at(north_m=10, seconds=0), fix_at(east_m=15, seconds=30), fix_at(seconds=60)]
        assert _score(samples) == pytest.approx(0.875)

    def test_more_samples_approach_but_never_reach_one(self):
        samples = [fix_at(seconds=30 * i) for i in range(20)]
        score = _score(samples)
        assert 0.95 < score < 1.0

    def test_burst_of_samples_counts_once(self):
        """Samples a second apart are one observation, not three."""
        samples = [fix_at(seconds=0), fix_at(seconds=1), fix_at(seconds=2)]
        assert _score(samples) == pytest.approx(0.75)

    def test_far_samples_lower_the_score(self):
        samples = [fix_at(north_m=2000, seconds=30 * i) for i in range(3)]
        assert _score(samples) == pytest.approx(0.125)

    def test_adversarial_inputs_stay_in_range(self):
        rng = random.Random(7)
        candidates = [
            LocationFix(lat=90.0, lng=180.0, accuracy_m=0.0, captured_at=T0),
            LocationFix(lat=-90.0, lng=-180.0, accuracy_m=-5.0, captured_at=T0),
            LocationFix(lat=STORE_LAT, lng=STORE_LNG, accuracy_m=1e12, captured_at=T0),
            LocationFix(lat=STORE_LAT, lng=STORE_LNG, accuracy_m=float("inf"), captured_at=None),
            LocationFix(lat=float("nan"), lng=STORE_LNG, accuracy_m=5.0, captured_at=T0),
        ]
        for _ in range(200):
            count = rng.randint(0, 12)
            samples = [
                fix_at(
                    north_m=rng.uniform(-5000, 5000),
                    east_m=rng.uniform(-5000, 5000),
                    accuracy_m=rng.choice([None, 0, 1, 25, 400, 10_000]),
                    seconds=rng.randint(0, 600),
                )
                for _ in range(count)
            ]
            samples += rng.sample(candidates, rng.randint(0, len(candidates)))
            score = _score(samples, prior=rng.random())
            assert 0.0 <= score <= 1.0
            assert not math.isnan(score)


class TestWeighting:
    def test_later_samples_weigh_more(self):
        far_then_near = [fix_at(north_m=3000, seconds=0), fix_at(seconds=60)]
        near_then_far = [fix_at(seconds=0), fix_at(north_m=3000, seconds=60)]
        assert _score(far_then_near) > 0.5 > _score(near_then_far)

    def test_accurate_samples_outweigh_inaccurate(self):
        accurate_near = [fix_at(accuracy_m=5, seconds=0), fix_at(north_m=3000, accuracy_m=80, seconds=60)]
        assert _score(accurate_near) > 0.5

    @pytest.mark.parametrize("accuracy", [None, 0, -3, float("nan"), float("inf")])
    def test_missing_accuracy_is_low_confidence(self, accuracy):
        breakdown = explain_samples([fix_at(accuracy_m=accuracy)], STORE_LAT, STORE_LNG)
        sample = breakdown.samples[0]
        assert sample.accuracy_reported is False
        assert sample.accuracy_m == LOW_CONFIDENCE_ACCURACY_M
        expected = accuracy_weight(LOW_CONFIDENCE_ACCURACY_M) * MISSING_ACCURACY_WEIGHT
        assert sample.weight == pytest.approx(expected)
        assert math.isfinite(breakdown.score)

    def test_missing_accuracy_weighs_less_than_reported(self):
        breakdown = explain_samples(
            [fix_at(accuracy_m=None, seconds=0), fix_at(accuracy_m=LOW_CONFIDENCE_ACCURACY_M, seconds=0)],
            STORE_LAT,
            STORE_LNG,
        )
        missing, reported = sorted(breakdown.samples, key=lambda s: s.accuracy_reported)
        assert missing.weight < reported.weight


class TestOrdering:
    def test_sorted_by_captured_at_not_delivery_order(self):
        samples = [fix_at(north_m=3000, seconds=0), fix_at(seconds=60), fix_at(seconds=30)]
        shuffled = [samples[1], samples[0], samples[2]]
        assert _score(samples) == _score(shuffled)

    def test_ties_broken_by_insertion_id(self):
        first = LocationFix(lat=1.0, lng=1.0, captured_at=T0, id=2)
        second = LocationFix(lat=2.0, lng=2.0, captured_at=T0, id=1)
        assert order_samples([first, second]) == [second, first]

    def test_deterministic(self):
        samples = [fix_at(north_m=40 * i, seconds=15 * i) for i in range(6)]
        assert _score(samples) == _score(list(samples))


class TestMalformedInput:
    def test_non_finite_coordinates_are_ignored(self):
        bad = LocationFix(lat=float("nan"), lng=STORE_LNG, accuracy_m=5, captured_at=T0)
        breakdown = explain_samples([bad], STORE_LAT, STORE_LNG)
        assert breakdown.score == DEFAULT_PRIOR
        assert breakdown.ignored_samples == 1

    def test_bad_sample_does_not_poison_good_ones(self):
        bad = LocationFix(lat=float("inf"), lng=STORE_LNG, accuracy_m=5, captured_at=T0)
        assert _score([bad, fix_at(seconds=5)]) == pytest.approx(0.75)

    def test_store_without_coordinates_returns_prior(self):
        assert score_samples([fix_at()], None, None) == DEFAULT_PRIOR

    def test_explain_reports_distances(self):
        breakdown = explain_samples(
            [fix_at(north_m=200, seconds=0), fix_at(seconds=20)], STORE_LAT, STORE_LNG
        )
        assert breakdown.corroborating_samples == 2
        assert breakdown.samples[0].distance_m == pytest.approx(200, abs=2)
        assert breakdown.samples[1].evidence == 1.0
        assert breakdown.samples[1].captured_at == T0 + timedelta(seconds=20)
