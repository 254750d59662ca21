"""
Tests for the Matching Module

These tests verify that:
1. Distance metrics are symmetric, normalized and map to similarities
2. IdentityMatcher.compare() applies thresholds and confidence weighting
3. IdentityMatcher.identify() picks the best identity and enforces the gap
   over the runner-up identity
4. Adaptive thresholds move with the success rate and stay clamped
5. Edge cases are rejected loudly (empty, mismatched, empty gallery)
"""

import numpy as np
import pytest

from faceauth.errors import (
    DimensionMismatchError,
    EmptyDescriptorError,
    NoIdentitiesEnrolledError,
    RejectionReason,
)
from faceauth.matching import (
    DistanceMetric,
    IdentityMatcher,
    MatcherOptions,
    compute_distance,
    distance_to_similarity,
    normalize,
)
from faceauth.matching.identity_matcher import MAX_THRESHOLD, MIN_THRESHOLD


# ============================================================
# Test Fixtures
# ============================================================

@pytest.fixture
def descriptors():
    """Ten unit-normalized random 128-dim descriptors."""
    np.random.seed(42)
    desc = np.random.randn(10, 128).astype(np.float32)
    return desc / np.linalg.norm(desc, axis=1, keepdims=True)


@pytest.fixture
def matcher():
    return IdentityMatcher(MatcherOptions.default())


def unit(*values) -> np.ndarray:
    v = np.asarray(values, dtype=np.float64)
    return v / np.linalg.norm(v)


# ============================================================
# Metric Tests
# ============================================================

class TestMetrics:
    """Tests for distance metrics."""

    @pytest.mark.parametrize("metric", list(DistanceMetric))
    def test_self_distance_zero(self, metric, descriptors):
        """Test that a descriptor is at distance ~0 from itself."""
        assert compute_distance(descriptors[0], descriptors[0], metric) == pytest.approx(0.0, abs=1e-6)

    @pytest.mark.parametrize("metric", list(DistanceMetric))
    def test_symmetric(self, metric, descriptors):
        """Test that distance(a, b) == distance(b, a)."""
        a, b = descriptors[0], descriptors[1]
        assert compute_distance(a, b, metric) == pytest.approx(compute_distance(b, a, metric))

    @pytest.mark.parametrize("metric", list(DistanceMetric))
    def test_self_similarity_is_one(self, metric, descriptors):
        """Test that identical descriptors have similarity ~1."""
        distance = compute_distance(descriptors[3], descriptors[3], metric)
        assert distance_to_similarity(distance, metric) == pytest.approx(1.0, abs=1e-6)

    def test_orthogonal_vectors(self):
        """Test the metrics on orthogonal unit vectors."""
        a, b = unit(1, 0), unit(0, 1)

        assert compute_distance(a, b, DistanceMetric.COSINE) == pytest.approx(1.0)
        assert compute_distance(a, b, DistanceMetric.EUCLIDEAN) == pytest.approx(np.sqrt(2.0))
        assert compute_distance(a, b, DistanceMetric.MANHATTAN) == pytest.approx(2.0)

    def test_combined_metric(self):
        """Test combined = 0.7 cosine + 0.3 euclidean / sqrt(n)."""
        a, b = unit(1, 0), unit(0, 1)
        expected = 0.7 * 1.0 + 0.3 * np.sqrt(2.0) / np.sqrt(2.0)
        assert compute_distance(a, b, DistanceMetric.COMBINED) == pytest.approx(expected)

    def test_inputs_are_normalized(self):
        """Test that vector scale does not change the distance."""
        a, b = np.array([3.0, 4.0]), np.array([6.0, 8.0])
        assert compute_distance(a, b, DistanceMetric.COSINE) == pytest.approx(0.0, abs=1e-9)

    def test_similarity_monotonic(self):
        """Test that larger distances give smaller similarities."""
        for metric in DistanceMetric:
            assert distance_to_similarity(0.1, metric) > distance_to_similarity(0.5, metric)

    def test_normalize_zero_vector_unchanged(self):
        """Test that a zero vector is returned as-is instead of dividing by zero."""
        zero = np.zeros(4)
        assert np.array_equal(normalize(zero), zero)

    def test_dimension_mismatch(self):
        """Test that descriptors of different lengths are rejected."""
        with pytest.raises(DimensionMismatchError) as exc_info:
            compute_distance(np.ones(128), np.ones(64), DistanceMetric.COSINE)
        assert exc_info.value.expected == 128
        assert exc_info.value.actual == 64

    def test_empty_descriptor(self):
        """Test that an empty descriptor is rejected."""
        with pytest.raises(EmptyDescriptorError):
            compute_distance(np.array([]), np.ones(3), DistanceMetric.COSINE)


# ============================================================
# compare() Tests
# ============================================================

class TestCompare:
    """Tests for IdentityMatcher.compare()."""

    def test_identical_descriptors_match(self, matcher, descriptors):
        """Test that identical descriptors match with full confidence."""
        result = matcher.compare(descriptors[0], descriptors[0])

        assert result.is_match
        assert result.similarity == pytest.approx(1.0)
        assert result.confidence == pytest.approx(1.0)
        assert result.threshold == pytest.approx(0.6)

    def test_random_descriptors_do_not_match(self, matcher, descriptors):
        """Test that unrelated descriptors are below threshold."""
        result = matcher.compare(descriptors[0], descriptors[1])
        assert not result.is_match

    def test_confidence_weighting(self, matcher):
        """Test confidence = 0.5 + 0.5 * margin over threshold."""
        result = matcher.compare(unit(1, 0), unit(0.8, 0.6))
        assert result.similarity == pytest.approx(0.8)
        assert result.confidence == pytest.approx(0.5 + 0.5 * (0.8 - 0.6) / (1.0 - 0.6))

    def test_confidence_without_weighting(self):
        """Test that without weighting confidence equals similarity."""
        matcher = IdentityMatcher(MatcherOptions.fast())
        result = matcher.compare(unit(1, 0), unit(0.8, 0.6))
        assert result.confidence == pytest.approx(result.similarity)

    def test_statistics_recorded_per_identity(self, matcher, descriptors):
        """Test that comparisons against a known identity update its statistics."""
        matcher.compare(descriptors[0], descriptors[0], identity_id="idn_a")
        matcher.compare(descriptors[0], descriptors[1], identity_id="idn_a")

        stats = matcher.get_statistics("idn_a")
        assert stats.total_comparisons == 2
        assert stats.successful_matches == 1
        assert stats.success_rate == pytest.approx(0.5)

    def test_anonymous_compare_records_nothing(self, matcher, descriptors):
        """Test that comparisons without an identity leave statistics empty."""
        matcher.compare(descriptors[0], descriptors[0])
        assert matcher.get_statistics() == {}


# ============================================================
# identify() Tests
# ============================================================

class TestIdentify:
    """Tests for 1:N identification."""

    def test_identifies_correct_identity(self, matcher, descriptors):
        """Test that the query is attributed to the identity it came from."""
        gallery = {
            "idn_alice": [descriptors[0], descriptors[1]],
            "idn_bob": [descriptors[2], descriptors[3]],
        }
        result = matcher.identify(descriptors[2], gallery)

        assert result.is_identified
        assert result.identity_id == "idn_bob"
        assert result.rejection is None
        assert set(result.all_comparisons) == {"idn_alice", "idn_bob"}

    def test_not_recognized(self, matcher, descriptors):
        """Test that an unknown face is rejected as NOT_RECOGNIZED."""
        gallery = {"idn_alice": [descriptors[0]], "idn_bob": [descriptors[1]]}
        result = matcher.identify(descriptors[5], gallery)

        assert not result.is_identified
        assert result.rejection == RejectionReason.NOT_RECOGNIZED

    def test_ambiguous_match_gap(self, matcher):
        """
        Test the gap check against the runner-up identity.

        Alice scores 0.91 and Bob 0.89: both clear the 0.6 threshold but the
        0.02 lead is below the 0.05 minimum gap.
        """
        query = np.array([1.0, 0.0, 0.0])
        alice = np.array([0.91, np.sqrt(1 - 0.91 ** 2), 0.0])
        bob = np.array([0.89, 0.0, np.sqrt(1 - 0.89 ** 2)])

        result = matcher.identify(query, {"idn_alice": [alice], "idn_bob": [bob]})

        assert result.identity_id is None
        assert result.rejection == RejectionReason.AMBIGUOUS_MATCH
        assert result.margin == pytest.approx(0.02, abs=1e-6)
        assert result.comparison.identity_id == "idn_alice"

    def test_gap_measured_between_identities(self, matcher):
        """Test that a close second sample of the same identity is not ambiguous."""
        query = np.array([1.0, 0.0, 0.0])
        alice = [np.array([0.95, np.sqrt(1 - 0.95 ** 2), 0.0]), np.array([0.94, 0.0, np.sqrt(1 - 0.94 ** 2)])]
        bob = [np.array([0.2, np.sqrt(1 - 0.2 ** 2), 0.0])]

        result = matcher.identify(query, {"idn_alice": alice, "idn_bob": bob})

        assert result.identity_id == "idn_alice"
        assert result.margin == pytest.approx(0.75, abs=1e-6)

    def test_single_identity_has_no_margin(self, matcher, descriptors):
        """Test that the gap check is skipped with one identity."""
        result = matcher.identify(descriptors[0], {"idn_alice": [descriptors[0]]})

        assert result.identity_id == "idn_alice"
        assert result.margin is None

    def test_empty_gallery_raises(self, matcher, descriptors):
        """Test that identification without identities is an error."""
        with pytest.raises(NoIdentitiesEnrolledError):
            matcher.identify(descriptors[0], {})

    def test_comparison_budget(self, descriptors):
        """Test that the comparison budget limits the identities scanned."""
        matcher = IdentityMatcher(MatcherOptions(max_comparisons=5))
        gallery = {f"idn_{i}": [descriptors[i]] for i in range(4)}

        result = matcher.identify(descriptors[3], gallery)

        assert result.comparisons_made == 1
        assert list(result.all_comparisons) == ["idn_0"]

    def test_dimension_mismatch_propagates(self, matcher):
        """Test that a gallery of another dimension is a data error."""
        with pytest.raises(DimensionMismatchError):
            matcher.identify(np.ones(128), {"idn_a": [np.ones(64)]})


# ============================================================
# Adaptive Threshold Tests
# ============================================================

class TestAdaptiveThreshold:
    """Tests for per-identity thresholds."""

    def test_unknown_identity_uses_base(self, matcher):
        """Test the base threshold for identities without statistics."""
        assert matcher.threshold_for("idn_new") == pytest.approx(0.6)

    def test_successful_identity_relaxes(self, matcher, descriptors):
        """Test that a >90% success rate lowers the threshold after 10 comparisons."""
        for _ in range(10):
            matcher.compare(descriptors[0], descriptors[0], identity_id="idn_a")
        assert matcher.threshold_for("idn_a") == pytest.approx(0.55)

    def test_failing_identity_tightens(self, matcher, descriptors):
        """Test that a <70% success rate raises the threshold."""
        for _ in range(10):
            matcher.compare(descriptors[0], descriptors[1], identity_id="idn_a")
        assert matcher.threshold_for("idn_a") == pytest.approx(0.65)

    def test_threshold_clamped(self, matcher, descriptors):
        """Test that repeated nudges never leave [0.3, 0.95]."""
        for _ in range(200):
            matcher.compare(descriptors[0], descriptors[0], identity_id="idn_low")
            matcher.compare(descriptors[0], descriptors[1], identity_id="idn_high")

        assert matcher.threshold_for("idn_low") == pytest.approx(MIN_THRESHOLD)
        assert matcher.threshold_for("idn_high") == pytest.approx(MAX_THRESHOLD)

    def test_recalibration_from_variability(self, matcher, descriptors):
        """Test that spread-out enrollment samples relax the threshold."""
        same = matcher.update_adaptive_threshold("idn_same", [descriptors[0]] * 3)
        spread = matcher.update_adaptive_threshold("idn_spread", descriptors[:3])

        assert same == pytest.approx(0.6)
        assert MIN_THRESHOLD <= spread < same
        assert matcher.threshold_for("idn_spread") == pytest.approx(spread)

    def test_disabled_adaptation(self, descriptors):
        """Test that fast options keep the base threshold."""
        matcher = IdentityMatcher(MatcherOptions.fast())
        for _ in range(20):
            matcher.compare(descriptors[0], descriptors[0], identity_id="idn_a")
        assert matcher.threshold_for("idn_a") == pytest.approx(0.5)

    def test_reset_statistics(self, matcher, descriptors):
        """Test that reset_statistics() forgets adapted thresholds."""
        for _ in range(10):
            matcher.compare(descriptors[0], descriptors[0], identity_id="idn_a")
        matcher.reset_statistics("idn_a")

        assert matcher.get_statistics("idn_a") is None
        assert matcher.threshold_for("idn_a") == pytest.approx(0.6)


# ============================================================
# Options Tests
# ============================================================

class TestMatcherOptions:
    """Tests for the matcher presets and validation."""

    def test_strict_preset(self):
        """Test the strict preset values."""
        options = MatcherOptions.strict()
        assert options.metric == DistanceMetric.COMBINED
        assert options.base_threshold == 0.8
        assert options.max_comparisons == 500
        assert options.min_gap == 0.1

    def test_threshold_out_of_range_rejected(self):
        """Test that thresholds outside [0.3, 0.95] are invalid."""
        with pytest.raises(ValueError):
            MatcherOptions(base_threshold=0.99)
