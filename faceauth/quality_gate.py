"""
Frame Quality Gate Module

Scores every incoming frame for usability before any expensive work is done
on it, and throttles the pipeline so that only one frame is in flight at a
time.

Quality is a weighted blend of five features, each in [0, 1]:
1. Brightness: mean luminance
2. Sharpness: variance of the Laplacian (edge energy), /500
3. Contrast: luminance standard deviation, /64
4. Face size: face area relative to the frame, x4 (25% of the frame = 1.0)
5. Stability: jitter of the face's horizontal centre over the last frames

A frame is acceptable only if every feature clears its floor and the overall
score clears the configured minimum. Analysis failures never propagate: the
frame is simply reported as unacceptable.

Usage:
    from faceauth.quality_gate import FrameQualityGate

    gate = FrameQualityGate()
    quality = gate.evaluate(frame, face_region)
    if quality.is_acceptable:
        frame = gate.enhance(frame, quality)
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import cv2
import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from faceauth.frame import FaceRegion, Frame

logger = logging.getLogger(__name__)


# Weights of each feature in the overall score
QUALITY_WEIGHTS = {
    "brightness": 0.2,
    "sharpness": 0.3,
    "contrast": 0.2,
    "face_size": 0.2,
    "stability": 0.1,
}

# Every feature must strictly exceed its floor
QUALITY_FLOORS = {
    "brightness": 0.3,
    "sharpness": 0.4,
    "contrast": 0.3,
    "face_size": 0.15,
}

# Below these values the frame is enhanced before extraction
ENHANCEMENT_TRIGGERS = {
    "brightness": 0.4,
    "contrast": 0.4,
    "sharpness": 0.5,
}

SHARPNESS_SCALE = 500.0
CONTRAST_SCALE = 64.0


class QualityGateOptions(BaseModel):
    """Tuning for FrameQualityGate."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_overall: float = Field(0.4, ge=0.0, le=1.0, description="Minimum overall score")
    stability_window: int = Field(5, ge=1, le=30, description="Face centres kept for stability")
    enhancement_enabled: bool = Field(True, description="Enhance dark/flat/blurry frames")

    @classmethod
    def default(cls) -> "QualityGateOptions":
        return cls()

    @classmethod
    def strict(cls) -> "QualityGateOptions":
        return cls(min_overall=0.6)


class ProcessorOptions(BaseModel):
    """Frame admission: ring buffer size, sampling interval, time budget."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    buffer_size: int = Field(5, ge=1, le=30, description="Recent frames kept in the ring buffer")
    processing_interval: int = Field(3, ge=1, le=30, description="Process every Nth admitted frame")
    max_processing_time: float = Field(0.1, gt=0.0, description="Seconds before a frame counts as slow")

    @classmethod
    def balanced(cls) -> "ProcessorOptions":
        return cls()

    @classmethod
    def battery(cls) -> "ProcessorOptions":
        return cls(buffer_size=3, processing_interval=5)

    @classmethod
    def speed(cls) -> "ProcessorOptions":
        return cls(buffer_size=10, processing_interval=1)


@dataclass(frozen=True)
class FrameQuality:
    """
    Quality snapshot of a single frame.

    Attributes:
        brightness: Mean luminance (0 = black, 1 = white).
        sharpness: Normalized Laplacian variance.
        contrast: Normalized luminance standard deviation.
        face_size: Relative face area (0 without a face).
        stability: Horizontal steadiness of the face over recent frames.
        overall: Weighted combination of the five features.
        is_acceptable: True if all floors and the overall minimum are cleared.
        enhancements: Enhancement operations the frame would benefit from.
    """

    brightness: float
    sharpness: float
    contrast: float
    face_size: float
    stability: float
    overall: float
    is_acceptable: bool
    enhancements: Tuple[str, ...] = ()

    @classmethod
    def from_scores(
        cls,
        brightness: float,
        sharpness: float,
        contrast: float,
        face_size: float,
        stability: float,
        min_overall: float = 0.4,
    ) -> "FrameQuality":
        """Combine raw feature scores into a FrameQuality."""
        scores = {
            "brightness": float(np.clip(brightness, 0.0, 1.0)),
            "sharpness": float(np.clip(sharpness, 0.0, 1.0)),
            "contrast": float(np.clip(contrast, 0.0, 1.0)),
            "face_size": float(np.clip(face_size, 0.0, 1.0)),
            "stability": float(np.clip(stability, 0.0, 1.0)),
        }

        overall = sum(QUALITY_WEIGHTS[name] * value for name, value in scores.items())
        floors_ok = all(scores[name] > floor for name, floor in QUALITY_FLOORS.items())
        enhancements = tuple(
            name for name, trigger in ENHANCEMENT_TRIGGERS.items() if scores[name] < trigger
        )

        return cls(
            overall=float(overall),
            is_acceptable=bool(floors_ok and overall > min_overall),
            enhancements=enhancements,
            **scores,
        )

    @classmethod
    def unacceptable(cls) -> "FrameQuality":
        """Quality reported when the frame could not be analysed."""
        return cls(
            brightness=0.0,
            sharpness=0.0,
            contrast=0.0,
            face_size=0.0,
            stability=0.0,
            overall=0.0,
            is_acceptable=False,
        )


class QualityFeedback(str, Enum):
    """User-facing hint derived from a FrameQuality."""

    MORE_LIGHT = "more_light"
    MOVE_CLOSER = "move_closer"
    MOVE_BACK = "move_back"
    HOLD_STILL = "hold_still"
    BLURRY = "blurry"
    GOOD = "good"
    ADJUST = "adjust"


def feedback(quality: FrameQuality) -> QualityFeedback:
    """
    Pick the single most important hint for a frame. First match wins.

    Args:
        quality: Quality of the frame.

    Returns:
        QualityFeedback value.
    """
    if quality.brightness < 0.3:
        return QualityFeedback.MORE_LIGHT
    if quality.face_size < 0.15:
        return QualityFeedback.MOVE_CLOSER
    if quality.face_size > 0.8:
        return QualityFeedback.MOVE_BACK
    if quality.stability < 0.4:
        return QualityFeedback.HOLD_STILL
    if quality.sharpness < 0.4:
        return QualityFeedback.BLURRY
    if quality.is_acceptable:
        return QualityFeedback.GOOD
    return QualityFeedback.ADJUST


def to_gray(image: np.ndarray) -> np.ndarray:
    """Convert a BGR or grayscale image to a single-channel uint8 image."""
    if image.ndim == 2:
        gray = image
    elif image.ndim == 3 and image.shape[2] == 1:
        gray = image[:, :, 0]
    else:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

    if gray.dtype != np.uint8:
        gray = np.clip(gray, 0, 255).astype(np.uint8)
    return gray


def compute_sharpness(gray: np.ndarray) -> float:
    """Laplacian variance scaled into [0, 1]."""
    laplacian = cv2.Laplacian(gray, cv2.CV_64F)
    return float(min(laplacian.var() / SHARPNESS_SCALE, 1.0))


class FrameQualityGate:
    """
    Per-session frame quality scorer.

    The gate keeps the recent face centres needed for the stability feature,
    so one instance belongs to one session and must be reset between
    sessions.
    """

    def __init__(self, options: Optional[QualityGateOptions] = None):
        self.options = options or QualityGateOptions()
        self._centers: deque = deque(maxlen=self.options.stability_window)

    def evaluate(self, frame: Frame, face: Optional[FaceRegion] = None) -> FrameQuality:
        """
        Score a frame.

        Args:
            frame: Frame to analyse.
            face: Primary face region in this frame, if one was detected.

        Returns:
            FrameQuality. Unacceptable (all zeros) if analysis fails.
        """
        try:
            gray = to_gray(frame.image)
            if gray.size == 0:
                raise ValueError("empty image")

            brightness = float(gray.mean()) / 255.0
            sharpness = compute_sharpness(gray)
            contrast = min(float(gray.std()) / CONTRAST_SCALE, 1.0)
            face_size = min(face.area * 4.0, 1.0) if face is not None else 0.0
            stability = self._compute_stability(face)
        except Exception as e:
            logger.debug(f"Frame {frame.index} quality analysis failed: {e}")
            return FrameQuality.unacceptable()

        quality = FrameQuality.from_scores(
            brightness=brightness,
            sharpness=sharpness,
            contrast=contrast,
            face_size=face_size,
            stability=stability,
            min_overall=self.options.min_overall,
        )

        logger.debug(
            f"Frame {frame.index} quality: overall={quality.overall:.3f}, "
            f"acceptable={quality.is_acceptable}"
        )
        return quality

    def _compute_stability(self, face: Optional[FaceRegion]) -> float:
        """
        Steadiness of the face's horizontal centre.

        Returns 0 without a face and 0.5 while only one sample is known.
        """
        if face is None:
            return 0.0

        self._centers.append(face.center[0])
        if len(self._centers) < 2:
            return 0.5

        variance = float(np.var(np.asarray(self._centers, dtype=np.float64)))
        return max(0.0, 1.0 - variance * 10.0)

    def enhance(self, frame: Frame, quality: FrameQuality) -> Frame:
        """
        Apply the enhancements a frame needs before extraction.

        Acceptance is never recomputed on the enhanced image.

        Args:
            frame: Original frame.
            quality: Its quality, as returned by evaluate().

        Returns:
            A new Frame with the enhanced image, or the original frame if
            nothing needed enhancing.
        """
        if not self.options.enhancement_enabled or not quality.enhancements:
            return frame

        image = frame.image
        if "brightness" in quality.enhancements:
            image = cv2.convertScaleAbs(image, alpha=1.0, beta=0.2 * 255)
        if "contrast" in quality.enhancements:
            mean = float(image.mean())
            image = cv2.convertScaleAbs(image, alpha=1.2, beta=-0.2 * mean)
        if "sharpness" in quality.enhancements:
            blurred = cv2.GaussianBlur(image, (0, 0), 3)
            image = cv2.addWeighted(image, 1.5, blurred, -0.5, 0)

        logger.debug(f"Frame {frame.index} enhanced: {', '.join(quality.enhancements)}")
        return frame.with_image(image)

    def reset(self) -> None:
        """Forget the stability history."""
        self._centers.clear()


@dataclass(frozen=True)
class PerformanceStats:
    """Throughput counters for the frame pipeline."""

    total_frames: int
    average_processing_time: float
    dropped_frames: int
    drop_rate: float
    skipped_frames: int = 0
    slow_frames: int = 0


class FrameThrottle:
    """
    Single-flight admission and frame-interval sampling.

    At most one frame is processed at a time; frames arriving while another
    is in flight are dropped and counted, never queued.
    """

    def __init__(self, options: Optional[ProcessorOptions] = None):
        self.options = options or ProcessorOptions()
        self._lock = threading.Lock()
        self._busy = False
        self._seen = 0
        self._processed = 0
        self._dropped = 0
        self._skipped = 0
        self._slow = 0
        self._total_time = 0.0

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    def should_sample(self) -> bool:
        """True for every processing_interval-th frame offered."""
        with self._lock:
            sampled = self._seen % self.options.processing_interval == 0
            self._seen += 1
            if not sampled:
                self._skipped += 1
            return sampled

    def try_acquire(self) -> bool:
        """Claim the single processing slot. Counts a drop if it is taken."""
        with self._lock:
            if self._busy:
                self._dropped += 1
                return False
            self._busy = True
            return True

    def release(self, elapsed: Optional[float] = None) -> None:
        """Free the processing slot, recording how long the frame took."""
        with self._lock:
            self._busy = False
            if elapsed is None:
                return
            self._processed += 1
            self._total_time += elapsed
            if elapsed > self.options.max_processing_time:
                self._slow += 1
                logger.debug(f"Slow frame: {elapsed * 1000:.1f} ms")

    def reset(self) -> None:
        """Clear the slot and sampling phase (counters are kept)."""
        with self._lock:
            self._busy = False
            self._seen = 0

    def stats(self) -> PerformanceStats:
        with self._lock:
            attempted = self._processed + self._dropped
            return PerformanceStats(
                total_frames=self._processed,
                average_processing_time=self._total_time / self._processed if self._processed else 0.0,
                dropped_frames=self._dropped,
                drop_rate=self._dropped / attempted if attempted else 0.0,
                skipped_frames=self._skipped,
                slow_frames=self._slow,
            )

    def reset_stats(self) -> None:
        with self._lock:
            self._processed = 0
            self._dropped = 0
            self._skipped = 0
            self._slow = 0
            self._total_time = 0.0
