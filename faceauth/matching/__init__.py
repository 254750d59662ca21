"""
Matching Module for Face Authentication

Descriptor comparison and 1:N identification.

Components:
    - metrics: Distance metrics and distance-to-similarity mapping
    - identity_matcher: Adaptive-threshold 1:N matcher with gap validation

Usage:
    from faceauth.matching import IdentityMatcher, MatcherOptions, DistanceMetric
"""

from faceauth.matching.metrics import (
    DistanceMetric,
    compute_distance,
    distance_to_similarity,
    normalize,
)

from faceauth.matching.identity_matcher import (
    ComparisonResult,
    IdentificationResult,
    IdentityMatcher,
    IdentityStatistics,
    MatcherOptions,
)

__all__ = [
    # Metrics
    "DistanceMetric",
    "compute_distance",
    "distance_to_similarity",
    "normalize",
    # Matcher
    "ComparisonResult",
    "IdentificationResult",
    "IdentityMatcher",
    "IdentityStatistics",
    "MatcherOptions",
]
