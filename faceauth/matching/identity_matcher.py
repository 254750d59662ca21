"""
Identity Matcher: 1:N descriptor identification with adaptive thresholds.

Compares a query descriptor against the descriptors of every enrolled
identity and accepts the best identity only if
  (a) its best similarity clears that identity's threshold with enough
      confidence, and
  (b) it beats the runner-up identity by at least a minimum gap.

Each identity has its own threshold, starting at the configured base value.
It is nudged every few comparisons from the identity's success rate
(frequent matches relax it, frequent misses tighten it) and can be
recalibrated from the spread of the identity's own descriptors. Thresholds
always stay within [0.3, 0.95].

Usage:
    from faceauth.matching import IdentityMatcher, MatcherOptions

    matcher = IdentityMatcher(MatcherOptions.default())
    result = matcher.identify(query, {"idn_1a2b3c4d": [d1, d2, d3]})
    if result.identity_id:
        print(f"Welcome back {result.identity_id} ({result.comparison.confidence:.2f})")
    else:
        print(f"Rejected: {result.rejection}")
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from faceauth.errors import NoIdentitiesEnrolledError, RejectionReason
from faceauth.matching.metrics import (
    DistanceMetric,
    as_descriptor,
    compute_distance,
    distance_to_similarity,
)

logger = logging.getLogger(__name__)


MIN_THRESHOLD = 0.3
MAX_THRESHOLD = 0.95

# Moving-average factor for per-identity similarity
STATISTICS_ALPHA = 0.1

# Threshold relaxation per unit of mean intra-identity cosine distance
VARIABILITY_FACTOR = 0.2


def clamp_threshold(value: float) -> float:
    return float(min(MAX_THRESHOLD, max(MIN_THRESHOLD, value)))


class MatcherOptions(BaseModel):
    """Tuning for IdentityMatcher."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    metric: DistanceMetric = Field(DistanceMetric.COSINE, description="Distance metric")
    base_threshold: float = Field(0.6, ge=MIN_THRESHOLD, le=MAX_THRESHOLD, description="Initial per-identity threshold")
    adaptive_threshold: bool = Field(True, description="Use per-identity adaptive thresholds")
    confidence_weighting: bool = Field(True, description="Scale confidence by the margin over threshold")
    max_comparisons: int = Field(1000, ge=1, description="Comparison budget per identification")
    min_gap: float = Field(0.05, ge=0.0, le=1.0, description="Required lead over the runner-up identity")
    min_confidence: float = Field(0.5, ge=0.0, le=1.0, description="Confidence needed for a match")
    adaptation_interval: int = Field(10, ge=1, description="Comparisons between threshold nudges")
    adaptation_step: float = Field(0.05, ge=0.0, le=0.5, description="Size of one threshold nudge")

    @classmethod
    def default(cls) -> "MatcherOptions":
        return cls()

    @classmethod
    def strict(cls) -> "MatcherOptions":
        return cls(metric=DistanceMetric.COMBINED, base_threshold=0.8, max_comparisons=500, min_gap=0.1)

    @classmethod
    def fast(cls) -> "MatcherOptions":
        return cls(
            base_threshold=0.5,
            adaptive_threshold=False,
            confidence_weighting=False,
            max_comparisons=100,
            min_gap=0.03,
        )


@dataclass(frozen=True)
class ComparisonResult:
    """
    Outcome of comparing two descriptors.

    Attributes:
        distance: Metric distance (0 = identical).
        similarity: Similarity derived from the distance.
        is_match: similarity >= threshold and confidence >= min_confidence.
        confidence: How far above threshold the similarity sits, in [0, 1].
        metric: Metric used.
        threshold: Threshold the similarity was held against.
        identity_id: Identity the candidate belongs to, if known.
    """

    distance: float
    similarity: float
    is_match: bool
    confidence: float
    metric: DistanceMetric
    threshold: float
    identity_id: Optional[str] = None


@dataclass(frozen=True)
class IdentificationResult:
    """
    Outcome of a 1:N identification.

    Attributes:
        identity_id: Accepted identity, or None if rejected.
        comparison: Best comparison of the accepted identity (or of the best
                    candidate when rejected as ambiguous / not a match).
        all_comparisons: Best comparison per identity examined.
        rejection: None on success, else why the best candidate was refused.
        margin: Best similarity minus runner-up similarity (None with fewer
                than two identities).
        comparisons_made: Number of descriptor comparisons performed.
    """

    identity_id: Optional[str]
    comparison: Optional[ComparisonResult]
    all_comparisons: Dict[str, ComparisonResult] = field(default_factory=dict)
    rejection: Optional[RejectionReason] = None
    margin: Optional[float] = None
    comparisons_made: int = 0

    @property
    def is_identified(self) -> bool:
        return self.identity_id is not None


@dataclass
class IdentityStatistics:
    """Running counters for one identity."""

    adaptive_threshold: float
    total_comparisons: int = 0
    successful_matches: int = 0
    average_similarity: float = 0.0
    last_updated: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_comparisons == 0:
            return 0.0
        return self.successful_matches / self.total_comparisons


class IdentityMatcher:
    """
    1:N descriptor matcher with per-identity adaptive thresholds.

    Statistics are guarded by a lock; the matcher may be shared by sessions
    running on different threads.
    """

    def __init__(self, options: Optional[MatcherOptions] = None):
        self.options = options or MatcherOptions()
        self._stats: Dict[str, IdentityStatistics] = {}
        self._lock = threading.Lock()

    def threshold_for(self, identity_id: Optional[str] = None) -> float:
        """Current threshold of an identity (base threshold if unknown)."""
        if identity_id is None or not self.options.adaptive_threshold:
            return self.options.base_threshold
        with self._lock:
            stats = self._stats.get(identity_id)
            return stats.adaptive_threshold if stats else self.options.base_threshold

    def compare(self, query, candidate, identity_id: Optional[str] = None) -> ComparisonResult:
        """
        Compare two descriptors.

        Args:
            query: Query descriptor.
            candidate: Stored descriptor.
            identity_id: Identity owning the candidate. When given, the
                         identity's threshold is used and its statistics
                         are updated.

        Returns:
            ComparisonResult.

        Raises:
            EmptyDescriptorError: If either descriptor is empty.
            DimensionMismatchError: If the descriptor lengths differ.
        """
        metric = self.options.metric
        distance = compute_distance(query, candidate, metric)
        similarity = distance_to_similarity(distance, metric)
        threshold = self.threshold_for(identity_id)
        confidence = self._confidence(similarity, threshold)
        is_match = similarity >= threshold and confidence >= self.options.min_confidence

        if identity_id is not None:
            self._record(identity_id, similarity, is_match)

        return ComparisonResult(
            distance=distance,
            similarity=similarity,
            is_match=is_match,
            confidence=confidence,
            metric=metric,
            threshold=threshold,
            identity_id=identity_id,
        )

    def _confidence(self, similarity: float, threshold: float) -> float:
        if not self.options.confidence_weighting:
            return float(similarity)
        if threshold >= 1.0:
            return 1.0 if similarity >= threshold else 0.5
        margin = max(0.0, similarity - threshold) / (1.0 - threshold)
        return float(min(1.0, 0.5 + margin * 0.5))

    def identify(self, query, gallery: Mapping[str, Sequence]) -> IdentificationResult:
        """
        Identify a query descriptor among enrolled identities.

        Args:
            query: Query descriptor.
            gallery: identity id -> list of that identity's descriptors.

        Returns:
            IdentificationResult. identity_id is None when no identity
            qualifies (NOT_RECOGNIZED) or when the best two are too close
            (AMBIGUOUS_MATCH).

        Raises:
            NoIdentitiesEnrolledError: If the gallery is empty.
            EmptyDescriptorError / DimensionMismatchError: On bad descriptors.
        """
        if not gallery:
            raise NoIdentitiesEnrolledError("No identities to identify against")

        query = as_descriptor(query)
        budget = self.options.max_comparisons
        max_identities = min(len(gallery), max(1, budget // 5))

        all_comparisons: Dict[str, ComparisonResult] = {}
        comparisons_made = 0

        for identity_id in list(gallery)[:max_identities]:
            if comparisons_made >= budget:
                break

            best: Optional[ComparisonResult] = None
            for descriptor in gallery[identity_id]:
                if comparisons_made >= budget:
                    break
                comparison = self.compare(query, descriptor, identity_id)
                comparisons_made += 1
                if best is None or comparison.similarity > best.similarity:
                    best = comparison

            if best is not None:
                all_comparisons[identity_id] = best

        if not all_comparisons:
            return IdentificationResult(
                identity_id=None,
                comparison=None,
                rejection=RejectionReason.NOT_RECOGNIZED,
                comparisons_made=comparisons_made,
            )

        ranked = sorted(all_comparisons.items(), key=lambda item: item[1].similarity, reverse=True)
        best_id, best = ranked[0]
        margin = best.similarity - ranked[1][1].similarity if len(ranked) > 1 else None

        rejection = None
        if not best.is_match:
            rejection = RejectionReason.NOT_RECOGNIZED
        elif margin is not None and margin < self.options.min_gap:
            rejection = RejectionReason.AMBIGUOUS_MATCH

        if rejection is not None:
            logger.info(
                f"Identification rejected ({rejection.value}): best={best_id} "
                f"similarity={best.similarity:.3f}"
                + (f", margin={margin:.3f}" if margin is not None else "")
            )
        else:
            logger.info(f"Identified {best_id}: similarity={best.similarity:.3f}, confidence={best.confidence:.3f}")

        return IdentificationResult(
            identity_id=None if rejection else best_id,
            comparison=best,
            all_comparisons=all_comparisons,
            rejection=rejection,
            margin=margin,
            comparisons_made=comparisons_made,
        )

    def update_adaptive_threshold(self, identity_id: str, descriptors: Sequence) -> float:
        """
        Recalibrate an identity's threshold from a batch of its descriptors.

        Higher spread between the identity's own descriptors relaxes the
        threshold: base - 0.2 * mean pairwise cosine distance, clamped.

        Returns:
            The new threshold.
        """
        variability = self._internal_variability(descriptors)
        threshold = clamp_threshold(self.options.base_threshold - variability * VARIABILITY_FACTOR)

        with self._lock:
            stats = self._stats.get(identity_id)
            if stats is None:
                stats = IdentityStatistics(adaptive_threshold=threshold)
                self._stats[identity_id] = stats
            stats.adaptive_threshold = threshold
            stats.last_updated = time.time()

        logger.debug(f"Threshold for {identity_id} recalibrated to {threshold:.3f} (variability={variability:.4f})")
        return threshold

    @staticmethod
    def _internal_variability(descriptors: Sequence) -> float:
        vectors: List[np.ndarray] = [as_descriptor(d) for d in descriptors]
        if len(vectors) < 2:
            return 0.0

        total = 0.0
        pairs = 0
        for i in range(len(vectors)):
            for j in range(i + 1, len(vectors)):
                total += compute_distance(vectors[i], vectors[j], DistanceMetric.COSINE)
                pairs += 1
        return total / pairs

    def _record(self, identity_id: str, similarity: float, is_match: bool) -> None:
        with self._lock:
            stats = self._stats.get(identity_id)
            if stats is None:
                stats = IdentityStatistics(adaptive_threshold=self.options.base_threshold)
                self._stats[identity_id] = stats

            stats.total_comparisons += 1
            if is_match:
                stats.successful_matches += 1

            if stats.total_comparisons == 1:
                stats.average_similarity = similarity
            else:
                stats.average_similarity = (
                    (1.0 - STATISTICS_ALPHA) * stats.average_similarity + STATISTICS_ALPHA * similarity
                )
            stats.last_updated = time.time()

            if self.options.adaptive_threshold and stats.total_comparisons % self.options.adaptation_interval == 0:
                self._adapt(identity_id, stats)

    def _adapt(self, identity_id: str, stats: IdentityStatistics) -> None:
        rate = stats.success_rate
        previous = stats.adaptive_threshold

        if rate > 0.9:
            stats.adaptive_threshold = clamp_threshold(previous - self.options.adaptation_step)
        elif rate < 0.7:
            stats.adaptive_threshold = clamp_threshold(previous + self.options.adaptation_step)

        if stats.adaptive_threshold != previous:
            logger.debug(
                f"Adaptive threshold for {identity_id}: {previous:.3f} -> "
                f"{stats.adaptive_threshold:.3f} (success rate {rate:.2f})"
            )

    def get_statistics(self, identity_id: Optional[str] = None):
        """
        Snapshot of per-identity statistics.

        Args:
            identity_id: One identity, or None for all of them.

        Returns:
            IdentityStatistics copy (None if unknown), or a dict of copies.
        """
        with self._lock:
            if identity_id is not None:
                stats = self._stats.get(identity_id)
                return replace(stats) if stats else None
            return {key: replace(value) for key, value in self._stats.items()}

    def reset_statistics(self, identity_id: Optional[str] = None) -> None:
        """Forget statistics (and adapted thresholds) of one or all identities."""
        with self._lock:
            if identity_id is None:
                self._stats.clear()
            else:
                self._stats.pop(identity_id, None)
