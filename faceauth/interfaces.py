"""
Collaborator Interfaces Module

This module defines the abstract interfaces for the platform services the
session orchestrator consumes: the camera, the face detector and the
descriptor extractor. (Storage and encryption live in identity_store.py and
crypto.py.)

The pipeline touches them in this order:
1. CaptureSource - delivers Frames to a callback from its own thread
2. FaceDetector - finds face regions (+ landmarks) in a Frame
3. EmbeddingExtractor - turns a cropped face into a fixed-length descriptor

Stub implementations are provided for tests and for development on machines
without a camera or the model weights.

Usage:
    from faceauth.interfaces import StubCaptureSource, StubFaceDetector, StubEmbeddingExtractor

    detector = StubFaceDetector(regions=[FaceRegion(bbox=(0.3, 0.2, 0.4, 0.5))])
    faces = detector.detect(frame)
"""

import itertools
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from faceauth.errors import MalformedFrameError
from faceauth.frame import Extraction, FaceRegion, Frame

FrameCallback = Callable[[Frame], None]


class CaptureSource(ABC):
    """
    Abstract camera (and optional depth sensor).

    Frames are delivered in capture order with increasing timestamps by
    calling the on_frame callback, usually from a capture thread.
    """

    @abstractmethod
    def configure(self) -> None:
        """
        Prepare the device.

        Raises:
            CaptureError: Device missing or busy.
            CapturePermissionError: Access denied.
        """
        pass

    @abstractmethod
    def start(self, on_frame: FrameCallback) -> None:
        """Begin delivering frames to on_frame."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop delivering frames. Safe to call when not running."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass


class FaceDetector(ABC):
    """
    Abstract face detector.

    Returns zero or more face regions with normalized coordinates. Must be a
    pure function of its input.
    """

    @abstractmethod
    def detect(self, frame: Frame) -> List[FaceRegion]:
        """
        Detect faces in a frame.

        Args:
            frame: Captured frame.

        Returns:
            List of FaceRegion (empty when no face is visible).

        Raises:
            MalformedFrameError: If the frame cannot be interpreted.
        """
        pass


class EmbeddingExtractor(ABC):
    """
    Abstract descriptor extractor.

    Every descriptor produced by one extractor has the same length.
    """

    @abstractmethod
    def extract(self, face_image: np.ndarray) -> Extraction:
        """
        Compute a descriptor for a cropped face.

        Args:
            face_image: BGR face crop, shape (H, W, 3).

        Returns:
            Extraction with the descriptor and a confidence.

        Raises:
            ExtractionError: No usable face in the crop.
        """
        pass


def check_image(frame: Frame) -> None:
    """
    Reject frames a detector cannot work with.

    Raises:
        MalformedFrameError: Missing image, wrong rank or empty.
    """
    image = frame.image
    if image is None or not isinstance(image, np.ndarray):
        raise MalformedFrameError("Frame carries no image array")
    if image.ndim not in (2, 3) or image.size == 0:
        raise MalformedFrameError(f"Unsupported image shape {getattr(image, 'shape', None)}")


# ============================================================================
# Stub Implementations
# ============================================================================


class StubCaptureSource(CaptureSource):
    """
    Capture source driven by the caller.

    Frames are pushed with emit() (or emit_image()) instead of coming from a
    device, which makes session tests deterministic.

    Args:
        configure_error: Exception raised by configure(), to simulate a
                         missing or forbidden camera.
    """

    def __init__(self, configure_error: Optional[Exception] = None):
        self.configure_error = configure_error
        self.configured = False
        self._callback: Optional[FrameCallback] = None
        self._running = False
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def configure(self) -> None:
        if self.configure_error is not None:
            raise self.configure_error
        self.configured = True

    def start(self, on_frame: FrameCallback) -> None:
        with self._lock:
            self._callback = on_frame
            self._running = True

    def stop(self) -> None:
        with self._lock:
            self._callback = None
            self._running = False

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def emit(self, frame: Frame) -> bool:
        """Deliver a frame. Returns False if the source is stopped."""
        with self._lock:
            callback = self._callback if self._running else None
        if callback is None:
            return False
        callback(frame)
        return True

    def emit_image(self, image: np.ndarray, depth: Optional[np.ndarray] = None) -> bool:
        """Wrap an image in a Frame with the next index and deliver it."""
        frame = Frame(image=image, timestamp=time.monotonic(), depth=depth, index=next(self._counter))
        return self.emit(frame)


class StubFaceDetector(FaceDetector):
    """
    Detector returning configured regions.

    Args:
        regions: Regions returned for every frame, or a callable computing
                 them from the frame.
        error: Exception raised by every detect() call.
        delay: Seconds to block per call, to exercise timeouts.
    """

    def __init__(
        self,
        regions: Union[Sequence[FaceRegion], Callable[[Frame], List[FaceRegion]], None] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.regions = regions
        self.error = error
        self.delay = delay
        self.calls = 0

    def detect(self, frame: Frame) -> List[FaceRegion]:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        check_image(frame)
        if self.regions is None:
            return []
        if callable(self.regions):
            return list(self.regions(frame))
        return list(self.regions)


class StubEmbeddingExtractor(EmbeddingExtractor):
    """
    Extractor returning configured descriptors.

    Args:
        descriptors: One descriptor returned for every call, or a sequence
                     cycled through call by call. If None, a fixed random
                     unit vector of `dimension` is used.
        error: Exception raised by every extract() call.
        delay: Seconds to block per call, to exercise timeouts.
        confidence: Reported extraction confidence.
        dimension: Length of the default descriptor.
        seed: Seed of the default descriptor.
    """

    def __init__(
        self,
        descriptors=None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        confidence: float = 0.99,
        dimension: int = 512,
        seed: int = 42,
    ):
        if descriptors is None:
            rng = np.random.default_rng(seed)
            vector = rng.standard_normal(dimension).astype(np.float32)
            descriptors = [vector / np.linalg.norm(vector)]
        else:
            first = np.asarray(descriptors[0])
            if first.ndim == 0:
                descriptors = [descriptors]

        self._descriptors = [np.asarray(d, dtype=np.float32) for d in descriptors]
        self._cycle = itertools.cycle(self._descriptors)
        self.error = error
        self.delay = delay
        self.confidence = confidence
        self.calls = 0

    def extract(self, face_image: np.ndarray) -> Extraction:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        descriptor = next(self._cycle)
        return Extraction(
            descriptor=descriptor.copy(),
            confidence=self.confidence,
            details={"backend": "stub", "input_shape": tuple(face_image.shape)},
        )
