"""
Confidence-In-Visit (CIV) scoring.

Turns the location samples collected during a check-in session into a score in
[0, 1] estimating how likely the customer was physically at the store.

The score is a pure, deterministic function of its inputs:

- Each usable sample yields evidence in [-1, 1] from its distance to the store.
  Inside the geofence it is +1, across the sample's own accuracy band it falls
  linearly to 0, and beyond that it turns negative, reaching -1 at
  FAR_DISTANCE_SCALE_M past the band.
- Samples are weighted by recency (the latest weighs twice the earliest) and by
  reported accuracy. A fix with no usable accuracy is treated as a poor
  LOW_CONFIDENCE_ACCURACY_M fix and down-weighted again.
- The weighted mean evidence moves the score away from the prior by at most
  n / (n + 1) of the remaining distance, where n counts corroborating samples
  spaced at least MIN_SAMPLE_SPACING_SECONDS apart. A single sample can never
  move the score more than half way.
"""
from dataclasses import dataclass, field
from datetime import datetime
from math import isfinite
from typing import Iterable, List, Optional, Sequence

from .geo import haversine_m, is_valid_coordinate

DEFAULT_PRIOR = 0.5
DEFAULT_GEOFENCE_RADIUS_M = 50.0

# Evidence reaches -1 this far beyond the geofence + accuracy band
FAR_DISTANCE_SCALE_M = 250.0
# Accuracy assumed for fixes that report none (or a nonsensical one)
LOW_CONFIDENCE_ACCURACY_M = 100.0
# Largest accuracy band credited towards "inside"
MAX_ACCURACY_CREDIT_M = 100.0
# Accuracy at which a fix's weight halves
ACCURACY_REFERENCE_M = 25.0
MISSING_ACCURACY_WEIGHT = 0.5
MIN_SAMPLE_SPACING_SECONDS = 10.0


@dataclass(frozen=True)
class LocationFix:
    """A location sample not (yet) stored in the database."""
    lat: float
    lng: float
    accuracy_m: Optional[float] = None
    captured_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class SampleEvidence:
    lat: float
    lng: float
    captured_at: Optional[datetime]
    distance_m: float
    accuracy_m: float
    accuracy_reported: bool
    evidence: float
    weight: float


@dataclass
class ScoreBreakdown:
    """Everything that went into a CIV score, for audit and support tooling."""
    score: float
    prior: float
    mean_evidence: float = 0.0
    corroborating_samples: int = 0
    ignored_samples: int = 0
    samples: List[SampleEvidence] = field(default_factory=list)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _usable_accuracy(accuracy_m) -> Optional[float]:
    if accuracy_m is None or isinstance(accuracy_m, bool):
        return None
    try:
        accuracy = float(accuracy_m)
    except (TypeError, ValueError):
        return None
    if not isfinite(accuracy) or accuracy <= 0:
        return None
    return accuracy


def sample_evidence(distance_m: float, accuracy_m: float, geofence_radius_m: float) -> float:
    """Evidence in [-1, 1] for one fix at distance_m from the store."""
    if distance_m <= geofence_radius_m:
        return 1.0

    band = min(accuracy_m, MAX_ACCURACY_CREDIT_M)
    beyond = distance_m - geofence_radius_m
    if beyond <= band:
        return 1.0 - beyond / band

    return -min(1.0, (beyond - band) / FAR_DISTANCE_SCALE_M)


def accuracy_weight(accuracy_m: float) -> float:
    return 1.0 / (1.0 + accuracy_m / ACCURACY_REFERENCE_M)


def order_samples(samples: Iterable) -> list:
    """
    Sort samples by captured_at, ties broken by insertion id.

    Client delivery order is never trusted. Samples without an id keep their
    relative input order among equal timestamps.
    """
    indexed = list(enumerate(samples))

    def key(item):
        index, sample = item
        captured_at = getattr(sample, "captured_at", None) or datetime.min
        seq = getattr(sample, "id", None)
        return (captured_at, seq if seq is not None else index, index)

    return [sample for _, sample in sorted(indexed, key=key)]


def _count_corroborating(captured: Sequence[Optional[datetime]]) -> int:
    # Bursts of fixes a few seconds apart are one observation; untimed fixes
    # never corroborate anything after the first.
    if not captured:
        return 0
    count = 1
    last = captured[0]
    for captured_at in captured[1:]:
        if last is None or captured_at is None:
            continue
        if (captured_at - last).total_seconds() >= MIN_SAMPLE_SPACING_SECONDS:
            count += 1
            last = captured_at
    return count


def explain_samples(
    samples: Iterable,
    store_lat: float,
    store_lng: float,
    geofence_radius_m: float = DEFAULT_GEOFENCE_RADIUS_M,
    prior: float = DEFAULT_PRIOR,
) -> ScoreBreakdown:
    """
    Score samples against a store location and return the full breakdown.

    Samples are any objects with lat, lng, accuracy_m and captured_at
    attributes (stored LocationSample rows or LocationFix values).
    """
    prior = _clamp(prior) if isfinite(prior) else DEFAULT_PRIOR
    ordered = order_samples(samples)

    if not is_valid_coordinate(store_lat, store_lng):
        return ScoreBreakdown(score=prior, prior=prior, ignored_samples=len(ordered))

    if not isfinite(geofence_radius_m) or geofence_radius_m < 0:
        geofence_radius_m = DEFAULT_GEOFENCE_RADIUS_M

    usable = []
    ignored = 0
    for sample in ordered:
        lat = getattr(sample, "lat", None)
        lng = getattr(sample, "lng", None)
        if not is_valid_coordinate(lat, lng):
            ignored += 1
            continue
        usable.append(sample)

    if not usable:
        return ScoreBreakdown(score=prior, prior=prior, ignored_samples=ignored)

    breakdown = ScoreBreakdown(score=prior, prior=prior, ignored_samples=ignored)
    last_index = len(usable) - 1
    weighted_sum = 0.0
    total_weight = 0.0

    for index, sample in enumerate(usable):
        accuracy = _usable_accuracy(getattr(sample, "accuracy_m", None))
        reported = accuracy is not None
        if not reported:
            accuracy = LOW_CONFIDENCE_ACCURACY_M

        distance = haversine_m(store_lat, store_lng, sample.lat, sample.lng)
        evidence = sample_evidence(distance, accuracy, geofence_radius_m)

        recency = 1.0 if last_index == 0 else 0.5 + 0.5 * index / last_index
        weight = recency * accuracy_weight(accuracy)
        if not reported:
            weight *= MISSING_ACCURACY_WEIGHT

        weighted_sum += weight * evidence
        total_weight += weight
        breakdown.samples.append(SampleEvidence(
            lat=sample.lat,
            lng=sample.lng,
            captured_at=getattr(sample, "captured_at", None),
            distance_m=distance,
            accuracy_m=accuracy,
            accuracy_reported=reported,
            evidence=evidence,
            weight=weight,
        ))

    mean_evidence = _clamp(weighted_sum / total_weight, -1.0, 1.0)
    n = _count_corroborating([s.captured_at for s in breakdown.samples])
    target = 1.0 if mean_evidence >= 0 else 0.0

    breakdown.mean_evidence = mean_evidence
    breakdown.corroborating_samples = n
    breakdown.score = _clamp(prior + (target - prior) * abs(mean_evidence) * n / (n + 1))
    return breakdown


def score_samples(
    samples: Iterable,
    store_lat: float,
    store_lng: float,
    geofence_radius_m: float = DEFAULT_GEOFENCE_RADIUS_M,
    prior: float = DEFAULT_PRIOR,
) -> float:
    """CIV score in [0, 1]; the prior when there is nothing usable to score."""
    return explain_samples(samples, store_lat, store_lng, geofence_radius_m, prior).score
