"""
Frame and face-region data types shared by every pipeline stage.

A Frame is produced by the capture source and never modified afterwards;
stages that need a different image (enhancement, cropping) create new
arrays. Face regions use normalized coordinates with a top-left origin so
that detectors working at different resolutions can be mixed freely.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np


@dataclass(frozen=True, eq=False)
class Frame:
    """
    One captured camera frame.

    Attributes:
        image: BGR (H, W, 3) or grayscale (H, W) uint8 image.
        timestamp: Monotonic capture time in seconds.
        depth: Optional (H, W) float depth map in metres, aligned with image.
               Pixels without a depth reading are 0 or NaN.
        index: Capture order, assigned by the capture source.
    """

    image: np.ndarray
    timestamp: float
    depth: Optional[np.ndarray] = None
    index: int = 0

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def has_depth(self) -> bool:
        return self.depth is not None and self.depth.size > 0

    def with_image(self, image: np.ndarray) -> "Frame":
        """Return a copy of this frame carrying a different image."""
        return Frame(image=image, timestamp=self.timestamp, depth=self.depth, index=self.index)


@dataclass(frozen=True, eq=False)
class FaceLandmarks:
    """
    Landmarks needed by the liveness and tracking stages.

    Eye contours hold six normalized (x, y) points ordered p0..p5 as used by
    the eye-aspect-ratio formula: p0/p3 are the eye corners, (p1, p5) and
    (p2, p4) the upper/lower lid pairs.
    """

    left_eye: Optional[np.ndarray] = None   # (6, 2)
    right_eye: Optional[np.ndarray] = None  # (6, 2)
    points: Optional[np.ndarray] = None     # (N, 2) all detector landmarks

    @property
    def has_eyes(self) -> bool:
        return (
            self.left_eye is not None and len(self.left_eye) >= 6
            and self.right_eye is not None and len(self.right_eye) >= 6
        )


@dataclass(frozen=True)
class FaceRegion:
    """
    A face found by the detector.

    Attributes:
        bbox: Normalized (x, y, width, height), top-left origin, in [0, 1].
        confidence: Detector confidence (0.0 to 1.0).
        landmarks: Optional landmark set.
        head_pose: Optional (yaw, pitch, roll) in degrees.
    """

    bbox: Tuple[float, float, float, float]
    confidence: float = 1.0
    landmarks: Optional[FaceLandmarks] = None
    head_pose: Optional[Tuple[float, float, float]] = None

    @property
    def center(self) -> Tuple[float, float]:
        x, y, w, h = self.bbox
        return (x + w / 2.0, y + h / 2.0)

    @property
    def area(self) -> float:
        return float(self.bbox[2] * self.bbox[3])

    def to_pixels(self, width: int, height: int, padding: float = 0.0) -> Tuple[int, int, int, int]:
        """
        Convert to a pixel box (x1, y1, x2, y2) clamped to the image.

        Args:
            width: Image width in pixels.
            height: Image height in pixels.
            padding: Extra margin as a fraction of the face size on each side.
        """
        x, y, w, h = self.bbox
        pad_x = w * padding
        pad_y = h * padding

        x1 = max(0, int((x - pad_x) * width))
        y1 = max(0, int((y - pad_y) * height))
        x2 = min(width, int(round((x + w + pad_x) * width)))
        y2 = min(height, int(round((y + h + pad_y) * height)))

        return (x1, y1, x2, y2)

    def crop(self, frame: Frame, padding: float = 0.0) -> np.ndarray:
        """Cut the (optionally padded) face out of a frame's image."""
        x1, y1, x2, y2 = self.to_pixels(frame.width, frame.height, padding)
        return frame.image[y1:y2, x1:x2]


@dataclass(frozen=True, eq=False)
class Extraction:
    """Descriptor returned by the embedding extractor."""

    descriptor: np.ndarray
    confidence: float = 1.0
    details: dict = field(default_factory=dict)
