"""
Tests for the Liveness Fusion Module

These tests verify that:
1. Flat (planar) depth maps score lower than curved (3D) faces
2. Motion and blink need a previous frame
3. Missing signals are left out and weights renormalized
4. With no contributing signal the face is not live
5. update() keeps history between frames and reset() forgets it
"""

import numpy as np
import pytest

from faceauth.frame import FaceLandmarks, FaceRegion, Frame
from faceauth.liveness import (
    LivenessFusion,
    LivenessMethod,
    LivenessOptions,
    LivenessSignals,
)


# ============================================================
# Helpers
# ============================================================

FACE_BBOX = (0.3, 0.2, 0.4, 0.5)


def make_eye(cx: float, cy: float, ratio: float) -> np.ndarray:
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


def make_signals(
    image: np.ndarray,
    bbox=FACE_BBOX,
    depth: np.ndarray = None,
    left_ratio: float = None,
    right_ratio: float = None,
) -> LivenessSignals:
    landmarks = None
    if left_ratio is not None and right_ratio is not None:
        landmarks = FaceLandmarks(left_eye=make_eye(0.55, 0.35, left_ratio), right_eye=make_eye(0.45, 0.35, right_ratio))
    frame = Frame(image=image, timestamp=0.0, depth=depth)
    return LivenessSignals(frame=frame, face=FaceRegion(bbox=bbox, landmarks=landmarks))


def only(*methods) -> LivenessFusion:
    return LivenessFusion(LivenessOptions(enabled_methods=tuple(methods)))


@pytest.fixture
def image():
    rng = np.random.default_rng(3)
    return rng.integers(0, 256, (100, 100, 3), dtype=np.uint8)


@pytest.fixture
def dome_depth():
    """Depth map whose face region bulges towards the camera like a face."""
    depth = np.full((100, 100), 0.6)
    v, u = np.meshgrid(np.linspace(-1, 1, 50), np.linspace(-1, 1, 40), indexing="ij")
    depth[20:70, 30:70] = 0.6 - 0.1 * (1.0 - np.clip(u ** 2 + v ** 2, 0.0, 1.0))
    return depth


# ============================================================
# Depth
# ============================================================

class TestDepth:
    """Tests for the depth method."""

    def test_flat_depth_scores_zero(self, image):
        """
        Test that a perfectly flat depth map scores 0.

        This simulates a photo held up to a depth camera.
        """
        result = only(LivenessMethod.DEPTH).assess(make_signals(image, depth=np.full((100, 100), 0.5)))

        assert result.scores[LivenessMethod.DEPTH] == pytest.approx(0.0)
        assert not result.is_live

    def test_curved_depth_scores_high(self, image, dome_depth):
        """Test that a face-like dome passes the depth check."""
        result = only(LivenessMethod.DEPTH).assess(make_signals(image, depth=dome_depth))
        assert result.scores[LivenessMethod.DEPTH] > 0.8

    def test_tilted_plane_scores_below_dome(self, image, dome_depth):
        """Test that a tilted photo has depth spread but stays planar."""
        tilted = np.tile(np.linspace(0.4, 0.7, 100), (100, 1))
        fusion = only(LivenessMethod.DEPTH)

        tilted_score = fusion.assess(make_signals(image, depth=tilted)).scores[LivenessMethod.DEPTH]
        dome_score = fusion.assess(make_signals(image, depth=dome_depth)).scores[LivenessMethod.DEPTH]

        assert tilted_score < dome_score
        assert tilted_score <= 0.55

    def test_no_depth_map_skips_method(self, image):
        """Test that depth is left out without a depth map."""
        result = LivenessFusion().assess(make_signals(image))
        assert LivenessMethod.DEPTH not in result.methods

    def test_too_few_depth_samples_skips_method(self, image):
        """Test that a depth map without valid face pixels is ignored."""
        result = LivenessFusion().assess(make_signals(image, depth=np.zeros((100, 100))))
        assert LivenessMethod.DEPTH not in result.methods


# ============================================================
# Motion and blink
# ============================================================

class TestMotionAndBlink:
    """Tests for the frame-to-frame methods."""

    def test_need_previous_frame(self, image):
        """Test that motion and blink are skipped on the first frame."""
        result = LivenessFusion().assess(make_signals(image))
        assert LivenessMethod.MOTION not in result.methods
        assert LivenessMethod.BLINK not in result.methods

    @pytest.mark.parametrize(
        "shift, expected",
        [(0.0, 0.3), (0.05, 0.8), (0.2, 0.4)],
    )
    def test_motion_bands(self, image, shift, expected):
        """Test the still / natural / jump motion bands."""
        x, y, w, h = FACE_BBOX
        previous = make_signals(image)
        current = make_signals(image, bbox=(x - shift, y, w, h))

        result = only(LivenessMethod.MOTION).assess(current, previous)
        assert result.scores[LivenessMethod.MOTION] == pytest.approx(expected)

    def test_blink_both_eyes(self, image):
        """Test that both eyes changing counts as a blink."""
        previous = make_signals(image, left_ratio=0.3, right_ratio=0.3)
        current = make_signals(image, left_ratio=0.05, right_ratio=0.05)

        result = only(LivenessMethod.BLINK).assess(current, previous)
        assert result.scores[LivenessMethod.BLINK] == pytest.approx(0.95)

    def test_blink_one_eye(self, image):
        """Test that one eye changing counts as a partial blink."""
        previous = make_signals(image, left_ratio=0.3, right_ratio=0.3)
        current = make_signals(image, left_ratio=0.05, right_ratio=0.3)

        result = only(LivenessMethod.BLINK).assess(current, previous)
        assert result.scores[LivenessMethod.BLINK] == pytest.approx(0.75)

    def test_no_blink(self, image):
        """Test that unchanged eyes score low."""
        previous = make_signals(image, left_ratio=0.3, right_ratio=0.3)
        current = make_signals(image, left_ratio=0.3, right_ratio=0.3)

        result = only(LivenessMethod.BLINK).assess(current, previous)
        assert result.scores[LivenessMethod.BLINK] == pytest.approx(0.3)

    def test_blink_without_landmarks_is_neutral(self, image):
        """Test that missing eye landmarks give a neutral 0.5."""
        result = only(LivenessMethod.BLINK).assess(make_signals(image), make_signals(image))
        assert result.scores[LivenessMethod.BLINK] == pytest.approx(0.5)


# ============================================================
# Fusion
# ============================================================

class TestFusion:
    """Tests for the weighted fusion and the session history."""

    def test_zero_methods_not_live(self, image):
        """Test that no contributing signal means not live with zero confidence."""
        result = only(LivenessMethod.DEPTH).assess(make_signals(image))

        assert not result.is_live
        assert result.confidence == 0.0
        assert result.methods == ()

    def test_weights_renormalized(self, image):
        """Test that confidence is the weighted mean over contributing methods."""
        result = LivenessFusion().assess(make_signals(image))

        assert set(result.methods) == {LivenessMethod.TEXTURE, LivenessMethod.FACE_QUALITY}
        expected = (
            0.25 * result.scores[LivenessMethod.TEXTURE]
            + 0.05 * result.scores[LivenessMethod.FACE_QUALITY]
        ) / 0.30
        assert result.confidence == pytest.approx(expected)

    def test_scores_in_unit_range(self, image, dome_depth):
        """Test that every score is within [0, 1]."""
        fusion = LivenessFusion()
        fusion.update(make_signals(image, depth=dome_depth))
        result = fusion.update(make_signals(image, depth=dome_depth))

        assert all(0.0 <= s <= 1.0 for s in result.scores.values())
        assert 0.0 <= result.confidence <= 1.0

    def test_threshold(self, image):
        """Test that is_live follows the configured threshold."""
        signals = make_signals(image)
        assert LivenessFusion(LivenessOptions(threshold=0.0)).assess(signals).is_live
        assert not LivenessFusion(LivenessOptions(threshold=1.0)).assess(signals).is_live

    def test_update_uses_previous_frame(self, image):
        """Test that the second update() includes motion."""
        fusion = LivenessFusion()
        first = fusion.update(make_signals(image))
        second = fusion.update(make_signals(image))

        assert LivenessMethod.MOTION not in first.methods
        assert LivenessMethod.MOTION in second.methods

    def test_reset_forgets_previous_frame(self, image):
        """Test that reset() prevents continuity across sessions."""
        fusion = LivenessFusion()
        fusion.update(make_signals(image))
        fusion.reset()

        assert LivenessMethod.MOTION not in fusion.update(make_signals(image)).methods

    def test_simulator_preset(self):
        """Test the simulator preset for footage without depth or motion."""
        options = LivenessOptions.simulator()
        assert set(options.enabled_methods) == {LivenessMethod.TEXTURE, LivenessMethod.FACE_QUALITY}
        assert options.threshold == 0.5
        assert not options.required
