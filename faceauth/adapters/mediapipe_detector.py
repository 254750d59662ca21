"""
Face detector backed by MediaPipe Face Landmarker.

Detects faces with the MediaPipe Tasks API (478 landmarks per face) and
converts each one into a FaceRegion: normalized bounding box, the two
six-point eye contours used for eye-aspect-ratio checks, and the head pose
estimated with cv2.solvePnP.

Note: MediaPipe 0.10.x uses the Tasks API (mp.tasks.vision.FaceLandmarker)
instead of the legacy Solutions API (mp.solutions.face_mesh).

Usage:
    from faceauth.adapters.mediapipe_detector import MediaPipeFaceDetector

    detector = MediaPipeFaceDetector({"num_faces": 2})
    regions = detector.detect(frame)
"""

import logging
import urllib.request
from typing import Any, Dict, List, Optional, Tuple

import cv2
import mediapipe as mp
import numpy as np
from mediapipe.tasks import python as mp_tasks
from mediapipe.tasks.python import vision

from faceauth.errors import ConfigurationError, MalformedFrameError
from faceauth.frame import FaceLandmarks, FaceRegion, Frame
from faceauth.interfaces import FaceDetector, check_image

logger = logging.getLogger(__name__)


# Key landmark indices for head pose estimation
POSE_LANDMARKS = {
    "nose_tip": 1,
    "chin": 152,
    "left_eye_outer": 263,
    "right_eye_outer": 33,
    "left_mouth": 287,
    "right_mouth": 57,
}

# 3D model points of the landmarks above in a canonical face (millimetres,
# centred at the nose tip)
MODEL_POINTS_3D = np.array(
    [
        [0.0, 0.0, 0.0],  # Nose tip
        [0.0, -63.6, -12.5],  # Chin
        [-43.3, 32.7, -26.0],  # Left eye outer corner
        [43.3, 32.7, -26.0],  # Right eye outer corner
        [-28.9, -28.9, -24.1],  # Left mouth corner
        [28.9, -28.9, -24.1],  # Right mouth corner
    ],
    dtype=np.float64,
)

# Eye contours in eye-aspect-ratio order: corner, upper, upper, corner, lower, lower
LEFT_EYE = [362, 385, 387, 263, 373, 380]
RIGHT_EYE = [33, 160, 158, 133, 153, 144]

MODEL_URL = "https://storage.googleapis.com/mediapipe-models/face_landmarker/face_landmarker/float16/1/face_landmarker.task"
MODEL_FILENAME = "face_landmarker.task"


def get_model_path() -> str:
    """
    Path to the face landmarker model, downloaded into storage/models on
    first use.
    """
    from faceauth.config import get_project_root

    model_dir = get_project_root() / "storage" / "models"
    model_dir.mkdir(parents=True, exist_ok=True)

    model_path = model_dir / MODEL_FILENAME
    if not model_path.exists():
        logger.info(f"Downloading MediaPipe face landmarker model to {model_path}")
        urllib.request.urlretrieve(MODEL_URL, str(model_path))
        logger.info("Download complete")

    return str(model_path)


class MediaPipeFaceDetector(FaceDetector):
    """
    FaceDetector using MediaPipe Face Landmarker in IMAGE mode.

    Args:
        config: Optional dictionary with:
            - min_detection_confidence: Minimum confidence (default 0.5)
            - num_faces: Faces reported per frame (default 2, so that
                         frames with several people can be rejected)
            - model_path: Landmarker .task file (downloaded if omitted)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        min_confidence = config.get("min_detection_confidence", 0.5)
        self.num_faces = config.get("num_faces", 2)

        model_path = config.get("model_path") or get_model_path()
        options = vision.FaceLandmarkerOptions(
            base_options=mp_tasks.BaseOptions(model_asset_path=model_path),
            running_mode=vision.RunningMode.IMAGE,
            num_faces=self.num_faces,
            min_face_detection_confidence=min_confidence,
            min_face_presence_confidence=min_confidence,
            output_face_blendshapes=False,
            output_facial_transformation_matrixes=False,
        )

        try:
            self.landmarker = vision.FaceLandmarker.create_from_options(options)
        except (RuntimeError, ValueError) as e:
            raise ConfigurationError(f"Cannot load face landmarker from {model_path}: {e}") from e

        logger.info(f"MediaPipeFaceDetector ready (num_faces={self.num_faces})")

    def detect(self, frame: Frame) -> List[FaceRegion]:
        check_image(frame)
        image = frame.image
        if image.ndim == 2:
            rgb = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
        elif image.shape[2] == 3:
            rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        else:
            raise MalformedFrameError(f"Unsupported channel count {image.shape[2]}")

        results = self.landmarker.detect(mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(rgb)))
        if not results.face_landmarks:
            return []

        h, w = image.shape[:2]
        return [self._to_region(face_landmarks, w, h) for face_landmarks in results.face_landmarks]

    def _to_region(self, face_landmarks, width: int, height: int) -> FaceRegion:
        points = np.array([[lm.x, lm.y] for lm in face_landmarks], dtype=np.float32)
        pixels = points * np.array([width, height], dtype=np.float32)

        x_min, y_min = np.clip(points.min(axis=0), 0.0, 1.0)
        x_max, y_max = np.clip(points.max(axis=0), 0.0, 1.0)

        return FaceRegion(
            bbox=(float(x_min), float(y_min), float(x_max - x_min), float(y_max - y_min)),
            confidence=self._estimate_confidence(pixels, width, height),
            landmarks=FaceLandmarks(left_eye=points[LEFT_EYE], right_eye=points[RIGHT_EYE], points=points),
            head_pose=self._calculate_head_pose(pixels, width, height),
        )

    @staticmethod
    def _calculate_head_pose(pixels: np.ndarray, width: int, height: int) -> Optional[Tuple[float, float, float]]:
        """
        Head pose (yaw, pitch, roll) in degrees via Perspective-n-Point.

        The camera is approximated with the focal length equal to the image
        width, the principal point at the image centre and no distortion.
        """
        image_points = np.array([pixels[index] for index in POSE_LANDMARKS.values()], dtype=np.float64)

        camera_matrix = np.array(
            [[width, 0, width / 2], [0, width, height / 2], [0, 0, 1]],
            dtype=np.float64,
        )
        success, rotation_vec, translation_vec = cv2.solvePnP(
            MODEL_POINTS_3D,
            image_points,
            camera_matrix,
            np.zeros((4, 1)),
            flags=cv2.SOLVEPNP_ITERATIVE,
        )
        if not success:
            return None

        rotation_mat, _ = cv2.Rodrigues(rotation_vec)
        _, _, _, _, _, _, euler_angles = cv2.decomposeProjectionMatrix(np.hstack((rotation_mat, translation_vec)))

        pitch = float(euler_angles[0][0])
        yaw = float(euler_angles[1][0])
        roll = float(euler_angles[2][0])
        return (yaw, pitch, roll)

    @staticmethod
    def _estimate_confidence(pixels: np.ndarray, width: int, height: int) -> float:
        """
        Rough confidence: lower when landmarks leave the image or the face
        is very small.
        """
        margin = 5
        in_bounds = bool(
            np.all(pixels[:, 0] >= margin)
            and np.all(pixels[:, 0] <= width - margin)
            and np.all(pixels[:, 1] >= margin)
            and np.all(pixels[:, 1] <= height - margin)
        )

        face_w = np.ptp(pixels[:, 0])
        face_h = np.ptp(pixels[:, 1])
        size_ratio = (face_w * face_h) / (width * height)

        confidence = 0.95 if in_bounds else 0.7
        if size_ratio < 0.01:
            confidence *= 0.5
        elif size_ratio < 0.05:
            confidence *= 0.8

        return float(min(1.0, max(0.0, confidence)))

    def close(self) -> None:
        """Release MediaPipe resources."""
        if hasattr(self, "landmarker"):
            self.landmarker.close()
