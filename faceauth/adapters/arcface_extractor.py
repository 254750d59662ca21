"""
Identity descriptor extractor using ArcFace (insightface buffalo_l).

Produces L2-normalized 512-dimensional embeddings from face crops. The
bundle's SCRFD detector realigns the face inside the crop; tight crops that
SCRFD misses are retried with padding and, if enabled, fed straight to the
ArcFace recognition model.

Usage:
    from faceauth.adapters.arcface_extractor import ArcFaceExtractor

    extractor = ArcFaceExtractor({"device": "cpu"})
    extraction = extractor.extract(face_crop_bgr)  # extraction.descriptor: (512,)
"""

import logging
import threading
from typing import Optional

import cv2
import numpy as np
from insightface.app import FaceAnalysis

from faceauth.errors import ConfigurationError, ExtractionError
from faceauth.frame import Extraction
from faceauth.interfaces import EmbeddingExtractor

logger = logging.getLogger(__name__)

ARCFACE_INPUT_SIZE = (112, 112)


class ArcFaceExtractor(EmbeddingExtractor):
    """
    EmbeddingExtractor backed by insightface FaceAnalysis.

    Args:
        config: Dictionary with keys:
            - model: Model bundle name ("buffalo_l" or "buffalo_sc")
            - embedding_dim: Expected embedding dimension (default 512)
            - device: "cuda" or "cpu"
            - pad_ratio: Padding added before the retry (default 0.5)
            - direct_fallback: Run ArcFace without detection as a last
                               resort (default True)
    """

    def __init__(self, config: Optional[dict] = None):
        if config is None:
            config = {}

        self.model_name = config.get("model", "buffalo_l")
        self.embedding_dim = config.get("embedding_dim", 512)
        self.device = config.get("device", "cpu")
        self.pad_ratio = config.get("pad_ratio", 0.5)
        self.direct_fallback = config.get("direct_fallback", True)

        self._model: Optional[FaceAnalysis] = None
        self._load_lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def load_model(self) -> None:
        """Load the model bundle. Called lazily by extract()."""
        with self._load_lock:
            if self._model is not None:
                return

            if self.device == "cuda":
                providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
            else:
                providers = ["CPUExecutionProvider"]

            try:
                model = FaceAnalysis(name=self.model_name, providers=providers)
                # det_size controls the internal face detection input size
                model.prepare(ctx_id=0 if self.device == "cuda" else -1, det_size=(640, 640))
            except (RuntimeError, ValueError, AssertionError) as e:
                raise ConfigurationError(f"Cannot load insightface model '{self.model_name}': {e}") from e

            self._model = model
            logger.info(f"ArcFaceExtractor loaded (model={self.model_name}, device={self.device})")

    def extract(self, face_image: np.ndarray) -> Extraction:
        if face_image is None or face_image.size == 0:
            raise ExtractionError("Empty face image")
        if not self.is_loaded:
            self.load_model()

        if face_image.ndim == 2:
            face_image = cv2.cvtColor(face_image, cv2.COLOR_GRAY2BGR)

        # insightface expects BGR input (same as OpenCV)
        faces = self._model.get(face_image)
        method = "detected"

        if not faces:
            logger.debug("insightface detected no face, trying with padded input")
            faces = self._model.get(self._pad_image(face_image, ratio=self.pad_ratio))
            method = "padded"

        if faces:
            best_face = max(faces, key=lambda f: f.det_score)
            embedding = np.asarray(best_face.normed_embedding, dtype=np.float32)
            confidence = float(best_face.det_score)
        elif self.direct_fallback:
            embedding = self._direct_arcface_embed(face_image)
            confidence = 0.5
            method = "direct"
        else:
            raise ExtractionError("No face found in crop")

        if embedding.shape[0] != self.embedding_dim:
            raise ExtractionError(f"Model returned {embedding.shape[0]}-dim embedding, expected {self.embedding_dim}")

        return Extraction(
            descriptor=embedding,
            confidence=confidence,
            details={"backend": "insightface", "model": self.model_name, "method": method},
        )

    def _direct_arcface_embed(self, face_image: np.ndarray) -> np.ndarray:
        """
        Run the ArcFace recognition model on the whole crop, bypassing SCRFD.

        Valid when the input is already a tight face crop.
        """
        rec_model = next(
            (m for m in self._model.models.values() if getattr(m, "taskname", None) == "recognition"),
            None,
        )
        if rec_model is None:
            raise ExtractionError("No recognition model in the insightface bundle")

        aligned = cv2.resize(face_image, ARCFACE_INPUT_SIZE, interpolation=cv2.INTER_AREA)
        # (1, 3, 112, 112), normalized to [-1, 1]
        blob = cv2.dnn.blobFromImage(aligned, 1.0 / 127.5, ARCFACE_INPUT_SIZE, (127.5, 127.5, 127.5), swapRB=True)

        input_name = rec_model.session.get_inputs()[0].name
        output_name = rec_model.session.get_outputs()[0].name
        embedding = rec_model.session.run([output_name], {input_name: blob})[0].flatten()

        norm = np.linalg.norm(embedding)
        if norm < 1e-8:
            raise ExtractionError("Recognition model returned a zero embedding")
        return (embedding / norm).astype(np.float32)

    @staticmethod
    def _pad_image(image: np.ndarray, ratio: float = 0.2) -> np.ndarray:
        """Pad with the mean colour so SCRFD can find faces in tight crops."""
        h, w = image.shape[:2]
        pad_h = int(h * ratio)
        pad_w = int(w * ratio)

        mean_color = image.mean(axis=(0, 1)).astype(np.uint8)
        padded = np.full((h + 2 * pad_h, w + 2 * pad_w, 3), mean_color, dtype=np.uint8)
        padded[pad_h:pad_h + h, pad_w:pad_w + w] = image
        return padded
