"""
Liveness Fusion Module

Estimates whether the face in front of the camera belongs to a live person
rather than a photo, screen or mask, by fusing several independent signals:

1. Depth: real faces have depth relief. The face region of the depth map is
   turned into a point cloud; its depth spread and PCA eigenvalue ratio are
   low for planar inputs (photos, screens), even when the plane is tilted.
2. Texture: printed and displayed faces lose fine texture. Grey-level entropy
   and Laplacian sharpness of the face crop.
3. Motion: a live face moves a little between frames; no motion at all, or a
   jump, is suspicious.
4. Blink: a change of the eye aspect ratio between frames.
5. Face quality: size, exposure and contrast of the face crop.

A signal that cannot be computed (no depth map, no previous frame) is left
out and the remaining weights are renormalized. With no signal at all the
face is reported as not live with zero confidence.

Usage:
    from faceauth.liveness import LivenessFusion, LivenessSignals

    fusion = LivenessFusion()
    result = fusion.update(LivenessSignals(frame, face))
    if not result.is_live:
        print("Presentation attack suspected")
    fusion.reset()  # at the end of the session
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from faceauth.face_tracker import eye_aspect_ratio
from faceauth.frame import FaceRegion, Frame
from faceauth.quality_gate import compute_sharpness, to_gray

logger = logging.getLogger(__name__)


class LivenessMethod(str, Enum):
    DEPTH = "depth"
    TEXTURE = "texture"
    MOTION = "motion"
    BLINK = "blink"
    FACE_QUALITY = "face_quality"


# Prior weight of each method, renormalized over the methods that contribute
METHOD_WEIGHTS = {
    LivenessMethod.DEPTH: 0.35,
    LivenessMethod.TEXTURE: 0.25,
    LivenessMethod.MOTION: 0.20,
    LivenessMethod.BLINK: 0.15,
    LivenessMethod.FACE_QUALITY: 0.05,
}

# Approximate physical width of a face, used to scale the depth point cloud
FACE_WIDTH_METRES = 0.15

MIN_DEPTH_SAMPLES = 10


class LivenessOptions(BaseModel):
    """Tuning for LivenessFusion."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled_methods: Tuple[LivenessMethod, ...] = Field(
        tuple(LivenessMethod), description="Methods allowed to contribute"
    )
    threshold: float = Field(0.75, ge=0.0, le=1.0, description="Fused confidence needed for is_live")
    blink_delta: float = Field(0.15, gt=0.0, description="Eye aspect ratio change counted as a blink")
    min_depth_std: float = Field(0.01, gt=0.0, description="Depth spread (m) of a real face")
    min_eigenvalue_ratio: float = Field(0.05, gt=0.0, description="PCA ratio below which input is planar")
    required: bool = Field(True, description="Reject frames that are not live")

    @classmethod
    def default(cls) -> "LivenessOptions":
        return cls()

    @classmethod
    def simulator(cls) -> "LivenessOptions":
        """For environments without depth or motion, e.g. replayed footage."""
        return cls(
            enabled_methods=(LivenessMethod.TEXTURE, LivenessMethod.FACE_QUALITY),
            threshold=0.5,
            required=False,
        )


@dataclass(frozen=True, eq=False)
class LivenessSignals:
    """Everything a liveness evaluation looks at for one frame."""

    frame: Frame
    face: FaceRegion

    @property
    def center(self) -> Tuple[float, float]:
        return self.face.center

    def face_gray(self) -> np.ndarray:
        return to_gray(self.face.crop(self.frame))


@dataclass(frozen=True)
class LivenessResult:
    """
    Fused liveness decision.

    Attributes:
        is_live: True if confidence meets the configured threshold.
        confidence: Weighted average over contributing methods (0.0 to 1.0).
        methods: Methods that actually contributed.
        scores: Per-method confidence, for the contributing methods only.
    """

    is_live: bool
    confidence: float
    methods: Tuple[LivenessMethod, ...] = ()
    scores: Dict[LivenessMethod, float] = field(default_factory=dict)


class LivenessFusion:
    """
    Weighted fusion of liveness signals.

    Holds the previous frame's signals between update() calls; one instance
    belongs to one session.
    """

    def __init__(self, options: Optional[LivenessOptions] = None):
        self.options = options or LivenessOptions()
        self._previous: Optional[LivenessSignals] = None

    def assess(
        self,
        current: LivenessSignals,
        previous: Optional[LivenessSignals] = None,
    ) -> LivenessResult:
        """
        Evaluate liveness for one frame.

        Args:
            current: Signals of the frame under evaluation.
            previous: Signals of the preceding frame, if any. Motion and
                      blink detection need it.

        Returns:
            LivenessResult.
        """
        detectors = {
            LivenessMethod.DEPTH: lambda: self._depth_score(current),
            LivenessMethod.TEXTURE: lambda: self._texture_score(current),
            LivenessMethod.MOTION: lambda: self._motion_score(current, previous),
            LivenessMethod.BLINK: lambda: self._blink_score(current, previous),
            LivenessMethod.FACE_QUALITY: lambda: self._face_quality_score(current),
        }

        scores: Dict[LivenessMethod, float] = {}
        for method in LivenessMethod:
            if method not in self.options.enabled_methods:
                continue
            score = detectors[method]()
            if score is not None:
                scores[method] = float(np.clip(score, 0.0, 1.0))

        if not scores:
            return LivenessResult(is_live=False, confidence=0.0)

        total_weight = sum(METHOD_WEIGHTS[m] for m in scores)
        confidence = sum(METHOD_WEIGHTS[m] * s for m, s in scores.items()) / total_weight

        result = LivenessResult(
            is_live=confidence >= self.options.threshold,
            confidence=float(confidence),
            methods=tuple(scores),
            scores=scores,
        )

        logger.debug(
            f"Liveness: confidence={result.confidence:.3f}, live={result.is_live}, "
            f"methods={[m.value for m in result.methods]}"
        )
        return result

    def update(self, current: LivenessSignals) -> LivenessResult:
        """Assess against the stored previous signals, then remember current."""
        result = self.assess(current, self._previous)
        self._previous = current
        return result

    def reset(self) -> None:
        """Forget the previous frame so no continuity leaks into the next session."""
        self._previous = None

    def _depth_score(self, signals: LivenessSignals) -> Optional[float]:
        frame = signals.frame
        if not frame.has_depth:
            return None

        depth = np.asarray(frame.depth, dtype=np.float64)
        x1, y1, x2, y2 = signals.face.to_pixels(depth.shape[1], depth.shape[0])
        crop = depth[y1:y2, x1:x2]
        if crop.size == 0:
            return None

        ys, xs = np.nonzero(np.isfinite(crop) & (crop > 0))
        if len(ys) < MIN_DEPTH_SAMPLES:
            return None

        z = crop[ys, xs]
        depth_std = float(np.std(z))

        # Scale pixel coordinates to metres so the PCA compares like with like
        scale = FACE_WIDTH_METRES / max(crop.shape[1], 1)
        point_cloud = np.stack([xs * scale, ys * scale, z], axis=1)
        eigenvalue_ratio = self._compute_eigenvalue_ratio(point_cloud)

        depth_part = min(depth_std / self.options.min_depth_std, 1.0)
        planarity_part = min(eigenvalue_ratio / self.options.min_eigenvalue_ratio, 1.0)
        return 0.5 * depth_part + 0.5 * planarity_part

    @staticmethod
    def _compute_eigenvalue_ratio(point_cloud: np.ndarray) -> float:
        """
        Ratio of smallest to largest PCA eigenvalue of a point cloud.

        Close to 0 for planar inputs.
        """
        centered = point_cloud - point_cloud.mean(axis=0)
        eigenvalues = np.sort(np.linalg.eigvalsh(np.cov(centered.T)))

        largest = eigenvalues[-1]
        if largest < 1e-12:
            return 0.0
        return float(max(eigenvalues[0], 0.0) / largest)

    def _texture_score(self, signals: LivenessSignals) -> Optional[float]:
        gray = signals.face_gray()
        if gray.size == 0:
            return None

        histogram = np.bincount(gray.ravel(), minlength=256).astype(np.float64)
        probabilities = histogram[histogram > 0] / gray.size
        entropy = float(-np.sum(probabilities * np.log2(probabilities)))
        complexity = min(entropy / 8.0, 1.0)

        return complexity * 0.6 + compute_sharpness(gray) * 0.4

    @staticmethod
    def _motion_score(
        current: LivenessSignals, previous: Optional[LivenessSignals]
    ) -> Optional[float]:
        if previous is None:
            return None

        (cx, cy), (px, py) = current.center, previous.center
        movement = float(np.hypot(cx - px, cy - py))

        if movement < 0.001:
            return 0.3  # perfectly still: photo on a stand
        if movement > 0.1:
            return 0.4  # jump: swapped or waved photo
        return 0.8

    def _blink_score(
        self, current: LivenessSignals, previous: Optional[LivenessSignals]
    ) -> Optional[float]:
        if previous is None:
            return None

        cur = current.face.landmarks
        prev = previous.face.landmarks
        if cur is None or prev is None or not cur.has_eyes or not prev.has_eyes:
            return 0.5

        left_change = abs(eye_aspect_ratio(cur.left_eye) - eye_aspect_ratio(prev.left_eye))
        right_change = abs(eye_aspect_ratio(cur.right_eye) - eye_aspect_ratio(prev.right_eye))
        left_blink = left_change > self.options.blink_delta
        right_blink = right_change > self.options.blink_delta

        if left_blink and right_blink:
            return 0.95
        if left_blink or right_blink:
            return 0.75
        return 0.3

    @staticmethod
    def _face_quality_score(signals: LivenessSignals) -> Optional[float]:
        gray = signals.face_gray()
        if gray.size == 0:
            return None

        size = min(signals.face.area * 4.0, 1.0)
        brightness = float(gray.mean()) / 255.0
        contrast = min(float(gray.std()) / 64.0, 1.0)

        return size * 0.4 + (1.0 - abs(brightness - 0.5) * 2.0) * 0.3 + contrast * 0.3
