"""
Face Tracker Module

Associates per-frame face detections into tracked faces that persist across
frames, decides when a tracked face has been held still long enough to be
considered stable, scores its suitability for authentication, and produces a
single guidance hint per update.

Association is greedy nearest-centre matching under a distance threshold in
normalized coordinates. A tracked face keeps a ring buffer of its recent
centres sized to the stability window; it is stable once the window is full
and the positional variance falls below the stability threshold.

Usage:
    from faceauth.face_tracker import FaceTracker

    tracker = FaceTracker()
    update = tracker.track(detections, frame_quality)
    if update.primary and update.primary.is_stable:
        ...
    print(update.guidance.message)
"""

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from faceauth.frame import FaceRegion, FaceLandmarks
from faceauth.quality_gate import FrameQuality

logger = logging.getLogger(__name__)


FACE_QUALITY_WEIGHTS = {
    "size": 0.2,
    "position": 0.15,
    "angle": 0.2,
    "lighting": 0.15,
    "sharpness": 0.15,
    "expression": 0.05,
    "eyes_open": 0.1,
}

# Eye aspect ratio of a comfortably open eye
OPEN_EYE_RATIO = 0.3

# Head rotation (degrees) at which the angle score reaches 0
MAX_HEAD_ANGLE = 45.0


class TrackerOptions(BaseModel):
    """Tuning for FaceTracker."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_tracked_faces: int = Field(1, ge=1, le=10, description="Tracked-face capacity")
    tracking_distance: float = Field(0.1, gt=0.0, le=1.0, description="Max centre distance for association")
    stability_frames: int = Field(5, ge=1, le=30, description="Samples in the stability window")
    quality_update_interval: int = Field(3, ge=1, description="Recompute face quality every N updates")
    target_area: Tuple[float, float, float, float] = Field(
        (0.25, 0.1, 0.5, 0.6), description="Normalized (x, y, w, h) where the face should sit"
    )
    lost_face_timeout: float = Field(1.0, gt=0.0, description="Seconds an unmatched face survives")
    stability_variance: float = Field(0.001, gt=0.0, description="Max positional variance when stable")

    @classmethod
    def default(cls) -> "TrackerOptions":
        return cls()

    @classmethod
    def strict(cls) -> "TrackerOptions":
        return cls(
            tracking_distance=0.05,
            stability_frames=10,
            quality_update_interval=1,
            target_area=(0.3, 0.15, 0.4, 0.5),
        )

    @classmethod
    def relaxed(cls) -> "TrackerOptions":
        return cls(max_tracked_faces=3, tracking_distance=0.2, stability_frames=3, quality_update_interval=5)


@dataclass(frozen=True)
class FaceQuality:
    """
    Suitability of a tracked face for authentication, per aspect in [0, 1].
    """

    size: float
    position: float
    angle: float
    lighting: float
    sharpness: float
    expression: float
    eyes_open: float

    @property
    def overall(self) -> float:
        return float(sum(weight * getattr(self, name) for name, weight in FACE_QUALITY_WEIGHTS.items()))

    @property
    def is_good_for_auth(self) -> bool:
        return (
            self.size > 0.3
            and self.position > 0.6
            and self.angle > 0.7
            and self.lighting > 0.4
            and self.sharpness > 0.5
            and self.eyes_open > 0.8
            and self.overall > 0.6
        )


def eye_aspect_ratio(eye: np.ndarray) -> float:
    """
    Eye aspect ratio over six contour points p0..p5.

    EAR = (|p1 - p5| + |p2 - p4|) / (2 * |p0 - p3|). Returns 0 for a
    degenerate contour.
    """
    eye = np.asarray(eye, dtype=np.float64)
    horizontal = np.linalg.norm(eye[0] - eye[3])
    if horizontal < 1e-9:
        return 0.0
    vertical = np.linalg.norm(eye[1] - eye[5]) + np.linalg.norm(eye[2] - eye[4])
    return float(vertical / (2.0 * horizontal))


def _area_center(area: Tuple[float, float, float, float]) -> Tuple[float, float]:
    x, y, w, h = area
    return (x + w / 2.0, y + h / 2.0)


def compute_face_quality(
    region: FaceRegion,
    target_area: Tuple[float, float, float, float],
    frame_quality: Optional[FrameQuality] = None,
) -> FaceQuality:
    """
    Score a detected face.

    Args:
        region: The detection.
        target_area: Normalized area where the face should sit.
        frame_quality: Quality of the frame the face came from, used for
                       lighting and sharpness when available.

    Returns:
        FaceQuality snapshot.
    """
    size = min(region.area * 4.0, 1.0)

    cx, cy = region.center
    tx, ty = _area_center(target_area)
    distance = float(np.hypot(cx - tx, cy - ty))
    position = max(0.0, 1.0 - distance * 2.0)

    if region.head_pose is not None:
        yaw, pitch, _ = region.head_pose
        angle = float(np.clip(1.0 - max(abs(yaw), abs(pitch)) / MAX_HEAD_ANGLE, 0.0, 1.0))
    else:
        angle = 0.8

    if frame_quality is not None:
        lighting = max(0.0, 1.0 - 2.0 * abs(frame_quality.brightness - 0.5))
        sharpness = frame_quality.sharpness
    else:
        lighting = 0.7
        sharpness = 0.8

    landmarks: Optional[FaceLandmarks] = region.landmarks
    if landmarks is not None and landmarks.has_eyes:
        ratio = (eye_aspect_ratio(landmarks.left_eye) + eye_aspect_ratio(landmarks.right_eye)) / 2.0
        eyes_open = min(ratio / OPEN_EYE_RATIO, 1.0)
    else:
        eyes_open = 0.9

    return FaceQuality(
        size=size,
        position=position,
        angle=angle,
        lighting=lighting,
        sharpness=sharpness,
        expression=0.9,
        eyes_open=eyes_open,
    )


@dataclass
class TrackedFace:
    """
    A face followed across frames within one session.

    Attributes:
        face_id: Session-unique identifier.
        region: Latest detection.
        quality: Latest quality snapshot (refreshed every few updates).
        history: Recent face centres, sized to the stability window.
        is_stable: True once the history window is full and still.
        confidence: Latest detector confidence.
        first_seen: Timestamp of the first detection.
        last_seen: Timestamp of the latest detection.
    """

    face_id: str
    region: FaceRegion
    quality: FaceQuality
    history: deque
    is_stable: bool = False
    confidence: float = 1.0
    first_seen: float = 0.0
    last_seen: float = 0.0
    updates_since_quality: int = field(default=0, repr=False)

    @property
    def landmarks(self) -> Optional[FaceLandmarks]:
        return self.region.landmarks


class GuidanceKind(str, Enum):
    NO_FACE = "no_face"
    OPEN_EYES = "open_eyes"
    MORE_LIGHT = "more_light"
    MOVE_CLOSER = "move_closer"
    MOVE_FARTHER = "move_farther"
    LOOK_STRAIGHT = "look_straight"
    HOLD_STILL = "hold_still"
    MOVE_LEFT = "move_left"
    MOVE_RIGHT = "move_right"
    MOVE_UP = "move_up"
    MOVE_DOWN = "move_down"
    PERFECT = "perfect"
    ADJUST = "adjust"
    ENROLLING = "enrolling"


GUIDANCE_MESSAGES = {
    GuidanceKind.NO_FACE: "Keep your face in view",
    GuidanceKind.OPEN_EYES: "Open your eyes",
    GuidanceKind.MORE_LIGHT: "More light needed",
    GuidanceKind.MOVE_CLOSER: "Move closer",
    GuidanceKind.MOVE_FARTHER: "Move back a little",
    GuidanceKind.LOOK_STRAIGHT: "Look straight at the camera",
    GuidanceKind.HOLD_STILL: "Hold still",
    GuidanceKind.MOVE_LEFT: "Move to the left",
    GuidanceKind.MOVE_RIGHT: "Move to the right",
    GuidanceKind.MOVE_UP: "Move up a little",
    GuidanceKind.MOVE_DOWN: "Move down a little",
    GuidanceKind.PERFECT: "Perfect, hold that position",
    GuidanceKind.ADJUST: "Adjust your position",
    GuidanceKind.ENROLLING: "New face, starting registration",
}


@dataclass(frozen=True)
class Guidance:
    kind: GuidanceKind
    message: str
    confidence: float = 1.0

    @classmethod
    def of(cls, kind: GuidanceKind, confidence: float = 1.0) -> "Guidance":
        return cls(kind=kind, message=GUIDANCE_MESSAGES[kind], confidence=float(confidence))


def generate_guidance(
    face: Optional[TrackedFace],
    target_area: Tuple[float, float, float, float] = TrackerOptions().target_area,
) -> Guidance:
    """
    Pick exactly one guidance hint for a tracked face. First match wins.

    Horizontal hints assume a mirrored preview: a face right of the target
    is told to move left. Vertical offsets use the top-left origin, so a face
    below the target is told to move up.
    """
    if face is None:
        return Guidance.of(GuidanceKind.NO_FACE)

    quality = face.quality

    if quality.eyes_open < 0.5:
        return Guidance.of(GuidanceKind.OPEN_EYES, 1.0 - quality.eyes_open)
    if quality.lighting < 0.4:
        return Guidance.of(GuidanceKind.MORE_LIGHT, quality.lighting)
    if quality.size < 0.2:
        return Guidance.of(GuidanceKind.MOVE_CLOSER, quality.size)
    if quality.size > 0.8:
        return Guidance.of(GuidanceKind.MOVE_FARTHER, quality.size)
    if quality.angle < 0.6:
        return Guidance.of(GuidanceKind.LOOK_STRAIGHT, quality.angle)
    if not face.is_stable:
        return Guidance.of(GuidanceKind.HOLD_STILL, 0.5)

    cx, cy = face.region.center
    tx, ty = _area_center(target_area)
    dx = cx - tx
    dy = cy - ty

    if abs(dx) > 0.1:
        kind = GuidanceKind.MOVE_LEFT if dx > 0 else GuidanceKind.MOVE_RIGHT
        return Guidance.of(kind, abs(dx))
    if abs(dy) > 0.1:
        kind = GuidanceKind.MOVE_UP if dy > 0 else GuidanceKind.MOVE_DOWN
        return Guidance.of(kind, abs(dy))

    if quality.is_good_for_auth and face.is_stable:
        return Guidance.of(GuidanceKind.PERFECT, quality.overall)

    return Guidance.of(GuidanceKind.ADJUST, quality.overall)


def _rank_primary(faces: Iterable[TrackedFace]) -> Optional[TrackedFace]:
    faces = list(faces)
    if not faces:
        return None
    return max(faces, key=lambda f: (f.is_stable, f.quality.overall))


@dataclass
class TrackingUpdate:
    """Result of one FaceTracker.track() call."""

    new: List[TrackedFace]
    updated: List[TrackedFace]
    lost: List[str]
    guidance: Guidance
    primary: Optional[TrackedFace]


class FaceTracker:
    """
    Keeps the tracked-face table of one session.

    Not shared across sessions; call reset() when a session ends.
    """

    def __init__(self, options: Optional[TrackerOptions] = None):
        self.options = options or TrackerOptions()
        self._faces: Dict[str, TrackedFace] = {}

    @property
    def faces(self) -> List[TrackedFace]:
        return list(self._faces.values())

    def track(
        self,
        detections: Sequence[FaceRegion],
        frame_quality: Optional[FrameQuality] = None,
        timestamp: Optional[float] = None,
    ) -> TrackingUpdate:
        """
        Fold one frame's detections into the tracked-face table.

        Args:
            detections: Faces found in the frame.
            frame_quality: Quality of the frame, for lighting/sharpness.
            timestamp: Frame timestamp; defaults to time.monotonic().

        Returns:
            TrackingUpdate with new, updated and lost faces, the primary
            face and one guidance hint.
        """
        now = time.monotonic() if timestamp is None else timestamp
        matched: set = set()
        new: List[TrackedFace] = []
        updated: List[TrackedFace] = []

        for detection in detections:
            face_id = self._find_match(detection, exclude=matched)
            if face_id is not None:
                face = self._faces[face_id]
                self._update_face(face, detection, frame_quality, now)
                updated.append(face)
            else:
                face = self._create_face(detection, frame_quality, now)
                self._faces[face.face_id] = face
                new.append(face)
            matched.add(face.face_id)

        lost = self._remove_unmatched(matched, now)
        lost.extend(self._enforce_capacity())

        new = [face for face in new if face.face_id in self._faces]
        updated = [face for face in updated if face.face_id in self._faces]

        # Only faces seen in this frame may be primary; the crop comes from this frame
        primary = _rank_primary(new + updated)
        guidance = generate_guidance(primary, self.options.target_area)

        if lost:
            logger.debug(f"Lost tracked faces: {lost}")

        return TrackingUpdate(new=new, updated=updated, lost=lost, guidance=guidance, primary=primary)

    def primary_face(self) -> Optional[TrackedFace]:
        """Stable faces first, then highest overall quality."""
        return _rank_primary(self._faces.values())

    def reset(self) -> None:
        self._faces.clear()

    def _find_match(self, detection: FaceRegion, exclude: set) -> Optional[str]:
        cx, cy = detection.center
        best_id = None
        best_distance = None

        for face_id, face in self._faces.items():
            if face_id in exclude:
                continue
            fx, fy = face.region.center
            distance = float(np.hypot(cx - fx, cy - fy))
            if distance <= self.options.tracking_distance and (best_distance is None or distance < best_distance):
                best_id = face_id
                best_distance = distance

        return best_id

    def _create_face(
        self, detection: FaceRegion, frame_quality: Optional[FrameQuality], now: float
    ) -> TrackedFace:
        history: deque = deque(maxlen=self.options.stability_frames)
        history.append(detection.center)

        face = TrackedFace(
            face_id=uuid.uuid4().hex,
            region=detection,
            quality=compute_face_quality(detection, self.options.target_area, frame_quality),
            history=history,
            confidence=detection.confidence,
            first_seen=now,
            last_seen=now,
        )
        face.is_stable = self._is_stable(face.history)
        return face

    def _update_face(
        self,
        face: TrackedFace,
        detection: FaceRegion,
        frame_quality: Optional[FrameQuality],
        now: float,
    ) -> None:
        face.region = detection
        face.confidence = detection.confidence
        face.last_seen = now
        face.history.append(detection.center)
        face.is_stable = self._is_stable(face.history)

        face.updates_since_quality += 1
        if face.updates_since_quality >= self.options.quality_update_interval:
            face.quality = compute_face_quality(detection, self.options.target_area, frame_quality)
            face.updates_since_quality = 0

    def _is_stable(self, history: deque) -> bool:
        if len(history) < self.options.stability_frames:
            return False
        centers = np.asarray(history, dtype=np.float64)
        deviations = centers - centers.mean(axis=0)
        variance = float(np.mean(np.sum(deviations ** 2, axis=1)))
        return variance < self.options.stability_variance

    def _remove_unmatched(self, matched: set, now: float) -> List[str]:
        lost = []
        for face_id in list(self._faces):
            if face_id in matched:
                continue
            face = self._faces[face_id]
            if self.options.max_tracked_faces == 1 or now - face.last_seen > self.options.lost_face_timeout:
                del self._faces[face_id]
                lost.append(face_id)
        return lost

    def _enforce_capacity(self) -> List[str]:
        if len(self._faces) <= self.options.max_tracked_faces:
            return []

        ranked = sorted(self._faces.values(), key=lambda f: f.quality.overall, reverse=True)
        keep = {face.face_id for face in ranked[: self.options.max_tracked_faces]}
        evicted = [face_id for face_id in self._faces if face_id not in keep]
        for face_id in evicted:
            del self._faces[face_id]
        return evicted
