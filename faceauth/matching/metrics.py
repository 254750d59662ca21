"""
Distance metrics for descriptor comparison.

All metrics operate on L2-normalized vectors. Cosine and combined distances
map to similarity linearly (1 - d); euclidean and manhattan distances are
unbounded above and map through exp(-d).
"""

from enum import Enum

import numpy as np

from faceauth.errors import DimensionMismatchError, EmptyDescriptorError

# Weights of the combined metric
COMBINED_COSINE_WEIGHT = 0.7
COMBINED_EUCLIDEAN_WEIGHT = 0.3


class DistanceMetric(str, Enum):
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    MANHATTAN = "manhattan"
    COMBINED = "combined"


def as_descriptor(vector) -> np.ndarray:
    """Flatten to a float64 vector, rejecting empty input."""
    arr = np.asarray(vector, dtype=np.float64).ravel()
    if arr.size == 0:
        raise EmptyDescriptorError()
    return arr


def check_dimensions(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(expected=a.shape[0], actual=b.shape[0])


def normalize(vector: np.ndarray) -> np.ndarray:
    """
    L2-normalize a vector.

    A vector whose norm is at or below machine epsilon is returned unchanged.
    """
    norm = float(np.linalg.norm(vector))
    if norm <= np.finfo(np.float64).eps:
        return vector
    return vector / norm


def compute_distance(a: np.ndarray, b: np.ndarray, metric: DistanceMetric) -> float:
    """
    Distance between two descriptors.

    Args:
        a: First descriptor.
        b: Second descriptor, same length as a.
        metric: Metric to use.

    Returns:
        Non-negative distance.

    Raises:
        EmptyDescriptorError: If either vector is empty.
        DimensionMismatchError: If the lengths differ.
    """
    a = as_descriptor(a)
    b = as_descriptor(b)
    check_dimensions(a, b)

    a = normalize(a)
    b = normalize(b)

    if metric == DistanceMetric.COSINE:
        return _cosine_distance(a, b)
    if metric == DistanceMetric.EUCLIDEAN:
        return float(np.linalg.norm(a - b))
    if metric == DistanceMetric.MANHATTAN:
        return float(np.sum(np.abs(a - b)))
    if metric == DistanceMetric.COMBINED:
        euclidean = float(np.linalg.norm(a - b)) / np.sqrt(a.shape[0])
        return COMBINED_COSINE_WEIGHT * _cosine_distance(a, b) + COMBINED_EUCLIDEAN_WEIGHT * euclidean

    raise ValueError(f"Unknown metric: {metric}")


def _cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(1.0 - np.dot(a, b))


def distance_to_similarity(distance: float, metric: DistanceMetric) -> float:
    """Map a distance to a similarity that decreases monotonically with it."""
    if metric in (DistanceMetric.COSINE, DistanceMetric.COMBINED):
        return float(1.0 - distance)
    return float(np.exp(-distance))
