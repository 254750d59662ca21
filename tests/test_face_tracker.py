"""
Tests for the Face Tracker Module

These tests verify that:
1. Detections are associated to tracked faces by nearest centre
2. Faces become stable once held still for the stability window
3. Lost faces and over-capacity faces are removed
4. Face quality follows size, pose, lighting and eye openness
5. Exactly one guidance hint is produced, following the documented ladder
"""

import numpy as np
import pytest

from faceauth.face_tracker import (
    FaceTracker,
    GuidanceKind,
    TrackerOptions,
    compute_face_quality,
    eye_aspect_ratio,
    generate_guidance,
)
from faceauth.frame import FaceLandmarks, FaceRegion
from faceauth.quality_gate import FrameQuality


# ============================================================
# Helpers
# ============================================================

def region_at(cx: float, cy: float, w: float = 0.3, h: float = 0.4, **kwargs) -> FaceRegion:
    """Face region centred on (cx, cy)."""
    return FaceRegion(bbox=(cx - w / 2, cy - h / 2, w, h), **kwargs)


def make_eye(cx: float, cy: float, ratio: float) -> np.ndarray:
    """Six-point eye contour with the given eye aspect ratio."""
    half_height = ratio * 0.03
    return np.array(
        [
            [cx - 0.03, cy],
            [cx - 0.01, cy - half_height],
            [cx + 0.01, cy - half_height],
            [cx + 0.03, cy],
            [cx + 0.01, cy + half_height],
            [cx - 0.01, cy + half_height],
        ],
        dtype=np.float32,
    )


def landmarks_with_ratio(ratio: float) -> FaceLandmarks:
    return FaceLandmarks(left_eye=make_eye(0.55, 0.35, ratio), right_eye=make_eye(0.45, 0.35, ratio))


# Centre of the default target area (0.25, 0.1, 0.5, 0.6)
TARGET = (0.5, 0.4)


@pytest.fixture
def tracker():
    return FaceTracker()


# ============================================================
# Eye aspect ratio / face quality
# ============================================================

class TestFaceQuality:
    """Tests for eye_aspect_ratio() and compute_face_quality()."""

    def test_eye_aspect_ratio(self):
        """Test EAR = (|p1-p5| + |p2-p4|) / (2 |p0-p3|)."""
        eye = np.array([[0, 0], [1, 1], [2, 1], [3, 0], [2, -1], [1, -1]], dtype=np.float32)
        assert eye_aspect_ratio(eye) == pytest.approx(4.0 / 6.0)

    def test_eye_aspect_ratio_degenerate(self):
        """Test that a zero-width contour gives 0 instead of dividing by zero."""
        assert eye_aspect_ratio(np.zeros((6, 2))) == 0.0

    def test_helper_eye_ratio(self):
        """Test the synthetic eye helper used below."""
        assert eye_aspect_ratio(make_eye(0.5, 0.5, 0.3)) == pytest.approx(0.3, abs=1e-5)

    def test_defaults_without_extras(self):
        """Test the fallback scores without pose, frame quality or landmarks."""
        quality = compute_face_quality(region_at(*TARGET), TrackerOptions().target_area)

        assert quality.angle == pytest.approx(0.8)
        assert quality.lighting == pytest.approx(0.7)
        assert quality.sharpness == pytest.approx(0.8)
        assert quality.eyes_open == pytest.approx(0.9)
        assert quality.position == pytest.approx(1.0)
        assert quality.size == pytest.approx(0.48)

    def test_head_pose_lowers_angle(self):
        """Test that a turned head lowers the angle score."""
        region = region_at(*TARGET, head_pose=(30.0, 5.0, 0.0))
        quality = compute_face_quality(region, TrackerOptions().target_area)
        assert quality.angle == pytest.approx(1.0 - 30.0 / 45.0)

    def test_frame_quality_used_for_lighting(self):
        """Test that lighting and sharpness come from the frame quality."""
        frame_quality = FrameQuality.from_scores(0.1, 0.6, 0.5, 0.5, 1.0)
        quality = compute_face_quality(region_at(*TARGET), TrackerOptions().target_area, frame_quality)

        assert quality.lighting == pytest.approx(0.2)
        assert quality.sharpness == pytest.approx(0.6)

    def test_closed_eyes(self):
        """Test that closed eyes score 0 for eyes_open."""
        region = region_at(*TARGET, landmarks=landmarks_with_ratio(0.0))
        quality = compute_face_quality(region, TrackerOptions().target_area)
        assert quality.eyes_open == 0.0

    def test_good_for_auth(self):
        """Test that a centred, frontal, well-sized face is good for auth."""
        quality = compute_face_quality(region_at(*TARGET), TrackerOptions().target_area)
        assert quality.is_good_for_auth
        assert quality.overall > 0.6


# ============================================================
# Tracking
# ============================================================

class TestFaceTracker:
    """Tests for FaceTracker.track()."""

    def test_new_face(self, tracker):
        """Test that an unseen detection creates a tracked face."""
        update = tracker.track([region_at(*TARGET)], timestamp=0.0)

        assert len(update.new) == 1
        assert update.updated == []
        assert update.primary is update.new[0]
        assert not update.primary.is_stable

    def test_association_keeps_identity(self, tracker):
        """Test that a nearby detection updates the same tracked face."""
        first = tracker.track([region_at(0.5, 0.4)], timestamp=0.0).new[0]
        update = tracker.track([region_at(0.52, 0.41)], timestamp=0.1)

        assert update.new == []
        assert update.updated[0].face_id == first.face_id
        assert update.updated[0].last_seen == pytest.approx(0.1)

    def test_far_detection_replaces_face(self, tracker):
        """Test that a jump beyond tracking_distance loses the old face."""
        first = tracker.track([region_at(0.3, 0.4)], timestamp=0.0).new[0]
        update = tracker.track([region_at(0.7, 0.4)], timestamp=0.1)

        assert len(update.new) == 1
        assert update.lost == [first.face_id]
        assert len(tracker.faces) == 1

    def test_becomes_stable(self, tracker):
        """Test stability after stability_frames still detections."""
        for i in range(4):
            update = tracker.track([region_at(*TARGET)], timestamp=i * 0.1)
            assert not update.primary.is_stable

        update = tracker.track([region_at(*TARGET)], timestamp=0.5)
        assert update.primary.is_stable

    def test_moving_face_not_stable(self, tracker):
        """Test that a drifting face does not become stable."""
        for i in range(8):
            update = tracker.track([region_at(0.4 + 0.08 * (i % 2), 0.4)], timestamp=i * 0.1)
        assert not update.primary.is_stable

    def test_no_detection_removes_single_face(self, tracker):
        """Test that a missed frame drops the face with max_tracked_faces=1."""
        tracker.track([region_at(*TARGET)], timestamp=0.0)
        update = tracker.track([], timestamp=0.1)

        assert len(update.lost) == 1
        assert update.primary is None
        assert update.guidance.kind == GuidanceKind.NO_FACE

    def test_lost_face_timeout(self):
        """Test that with several slots an unmatched face survives for a while."""
        tracker = FaceTracker(TrackerOptions(max_tracked_faces=3, lost_face_timeout=1.0))
        tracker.track([region_at(*TARGET)], timestamp=0.0)

        assert tracker.track([], timestamp=0.5).lost == []
        assert len(tracker.track([], timestamp=2.0).lost) == 1
        assert tracker.faces == []

    def test_capacity_keeps_best_faces(self):
        """Test that over-capacity faces are evicted by quality."""
        tracker = FaceTracker(TrackerOptions(max_tracked_faces=2))
        detections = [
            region_at(0.5, 0.4),
            region_at(0.15, 0.4, w=0.2, h=0.2),
            region_at(0.85, 0.4, w=0.1, h=0.1),
        ]
        update = tracker.track(detections, timestamp=0.0)

        assert len(tracker.faces) == 2
        assert len(update.lost) == 1
        assert len(update.new) == 2
        smallest_center = detections[2].center
        assert all(face.region.center != smallest_center for face in tracker.faces)

    def test_each_face_matched_once(self):
        """Test that two detections never update the same tracked face."""
        tracker = FaceTracker(TrackerOptions(max_tracked_faces=3))
        tracker.track([region_at(0.5, 0.4)], timestamp=0.0)
        update = tracker.track([region_at(0.5, 0.4), region_at(0.52, 0.4)], timestamp=0.1)

        assert len(update.updated) == 1
        assert len(update.new) == 1

    def test_primary_is_seen_this_frame(self):
        """Test that a stable but unmatched face cannot outrank a fresh detection."""
        tracker = FaceTracker(TrackerOptions.relaxed())
        for i in range(3):
            update = tracker.track([FaceRegion(bbox=(0.1, 0.2, 0.3, 0.4))], timestamp=i * 0.1)
        assert update.primary.is_stable

        fresh = FaceRegion(bbox=(0.55, 0.2, 0.3, 0.4))
        update = tracker.track([fresh], timestamp=0.3)

        assert len(tracker.faces) == 2
        assert update.primary is update.new[0]
        assert update.primary.region is fresh

    def test_no_primary_without_detection(self):
        """Test that a surviving but unmatched face is not primary."""
        tracker = FaceTracker(TrackerOptions(max_tracked_faces=3, lost_face_timeout=5.0))
        tracker.track([region_at(*TARGET)], timestamp=0.0)
        update = tracker.track([], timestamp=0.1)

        assert update.lost == []
        assert len(tracker.faces) == 1
        assert update.primary is None
        assert update.guidance.kind == GuidanceKind.NO_FACE

    def test_quality_update_interval(self):
        """Test that quality is only refreshed every N updates."""
        tracker = FaceTracker(TrackerOptions(quality_update_interval=3))
        tracker.track([region_at(*TARGET)], timestamp=0.0)
        initial = tracker.faces[0].quality

        dark = FrameQuality.from_scores(0.1, 0.9, 0.9, 0.5, 1.0)
        tracker.track([region_at(*TARGET)], frame_quality=dark, timestamp=0.1)
        assert tracker.faces[0].quality == initial

        tracker.track([region_at(*TARGET)], frame_quality=dark, timestamp=0.2)
        tracker.track([region_at(*TARGET)], frame_quality=dark, timestamp=0.3)
        assert tracker.faces[0].quality.lighting == pytest.approx(0.2)

    def test_reset(self, tracker):
        """Test that reset() forgets every face."""
        tracker.track([region_at(*TARGET)], timestamp=0.0)
        tracker.reset()
        assert tracker.faces == []
        assert tracker.primary_face() is None


# ============================================================
# Guidance
# ============================================================

class TestGuidance:
    """Tests for the guidance ladder."""

    def _stable(self, tracker, region):
        for i in range(5):
            update = tracker.track([region], timestamp=i * 0.1)
        return update

    def test_no_face(self):
        """Test guidance without a tracked face."""
        guidance = generate_guidance(None)
        assert guidance.kind == GuidanceKind.NO_FACE
        assert guidance.message

    def test_open_eyes_first(self, tracker):
        """Test that closed eyes win over everything else."""
        region = region_at(*TARGET, w=0.1, h=0.1, landmarks=landmarks_with_ratio(0.0))
        assert tracker.track([region], timestamp=0.0).guidance.kind == GuidanceKind.OPEN_EYES

    def test_more_light(self, tracker):
        """Test that a dark frame asks for more light."""
        dark = FrameQuality.from_scores(0.05, 0.9, 0.9, 0.5, 1.0)
        update = tracker.track([region_at(*TARGET)], frame_quality=dark, timestamp=0.0)
        assert update.guidance.kind == GuidanceKind.MORE_LIGHT

    def test_move_closer(self, tracker):
        """Test that a small face is asked to move closer."""
        update = tracker.track([region_at(*TARGET, w=0.1, h=0.1)], timestamp=0.0)
        assert update.guidance.kind == GuidanceKind.MOVE_CLOSER

    def test_move_farther(self, tracker):
        """Test that a face filling the frame is asked to move back."""
        update = tracker.track([region_at(*TARGET, w=0.8, h=0.8)], timestamp=0.0)
        assert update.guidance.kind == GuidanceKind.MOVE_FARTHER

    def test_look_straight(self, tracker):
        """Test that a turned head is asked to look at the camera."""
        update = tracker.track([region_at(*TARGET, head_pose=(35.0, 0.0, 0.0))], timestamp=0.0)
        assert update.guidance.kind == GuidanceKind.LOOK_STRAIGHT

    def test_hold_still_until_stable(self, tracker):
        """Test that a new face is asked to hold still."""
        update = tracker.track([region_at(*TARGET)], timestamp=0.0)
        assert update.guidance.kind == GuidanceKind.HOLD_STILL

    def test_perfect(self, tracker):
        """Test that a stable, centred, good face is perfect."""
        update = self._stable(tracker, region_at(*TARGET))
        assert update.guidance.kind == GuidanceKind.PERFECT

    def test_mirrored_horizontal_hint(self, tracker):
        """Test that a face right of the target is told to move left."""
        update = self._stable(tracker, region_at(0.7, 0.4))
        assert update.guidance.kind == GuidanceKind.MOVE_LEFT

    def test_face_left_of_target(self, tracker):
        """Test that a face left of the target is told to move right."""
        update = self._stable(tracker, region_at(0.3, 0.4))
        assert update.guidance.kind == GuidanceKind.MOVE_RIGHT

    def test_face_below_target_moves_up(self, tracker):
        """Test the vertical hint with a top-left origin."""
        update = self._stable(tracker, region_at(0.5, 0.6))
        assert update.guidance.kind == GuidanceKind.MOVE_UP

    def test_face_above_target_moves_down(self, tracker):
        """Test the opposite vertical hint."""
        update = self._stable(tracker, region_at(0.5, 0.25))
        assert update.guidance.kind == GuidanceKind.MOVE_DOWN
