"""
Webcam capture source backed by OpenCV.

Opens a cv2.VideoCapture device and reads frames on a background thread,
handing each one to the orchestrator's submit_frame callback.

Usage:
    from faceauth.adapters.opencv_capture import OpenCVCaptureSource, CaptureConfig

    capture = OpenCVCaptureSource(CaptureConfig(device_id=0, width=1280, height=720))
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import cv2

from faceauth.errors import CaptureError
from faceauth.frame import Frame
from faceauth.interfaces import CaptureSource, FrameCallback

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Configuration for webcam capture."""
    width: int = 640
    height: int = 480
    fps: int = 30
    device_id: int = 0
    # Consecutive failed reads before the loop gives up
    max_read_failures: int = 30


class OpenCVCaptureSource(CaptureSource):
    """
    Threaded webcam reader.

    Frames are delivered from the capture thread; the callback must be
    thread-safe (SessionOrchestrator.submit_frame is).
    """

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self._cap: Optional[cv2.VideoCapture] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._counter = itertools.count()

    def configure(self) -> None:
        """
        Open the webcam device.

        Raises:
            CaptureError: If the device cannot be opened.
        """
        with self._lock:
            if self._cap is not None:
                self._cap.release()

            cap = cv2.VideoCapture(self.config.device_id)
            if not cap.isOpened():
                cap.release()
                raise CaptureError(f"Failed to open camera {self.config.device_id}")

            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
            cap.set(cv2.CAP_PROP_FPS, self.config.fps)
            self._cap = cap

        logger.info(f"Opened camera {self.config.device_id} at {self.config.width}x{self.config.height}")

    def start(self, on_frame: FrameCallback) -> None:
        if self._cap is None:
            raise CaptureError("Camera not configured")
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, args=(on_frame,), name="faceauth-capture", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def close(self) -> None:
        """Stop reading and release the device."""
        self.stop()
        with self._lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None
                logger.info("Camera closed")

    def _run(self, on_frame: FrameCallback) -> None:
        failures = 0
        while not self._stop_event.is_set():
            with self._lock:
                cap = self._cap
                ok, image = cap.read() if cap is not None else (False, None)

            if not ok or image is None:
                failures += 1
                if failures >= self.config.max_read_failures:
                    logger.error(f"Camera {self.config.device_id} stopped delivering frames")
                    break
                time.sleep(1.0 / max(self.config.fps, 1))
                continue

            failures = 0
            on_frame(Frame(image=image, timestamp=time.monotonic(), index=next(self._counter)))
