"""
Ring buffer of the most recent frames.

The capture thread appends every frame it delivers, including frames the
single-flight gate later drops, so the buffer always reflects what the camera
saw most recently. The processing side flags frames in which a face was
detected, which lets callers fetch the best recent face frame without
re-running the pipeline.
"""

import threading
from collections import deque
from typing import List, Optional

from faceauth.frame import Frame


class FrameBuffer:
    """
    Bounded, thread-safe circular buffer of frames.

    Args:
        capacity: Number of frames kept. The oldest frame is evicted first.
    """

    def __init__(self, capacity: int = 5):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._entries: deque = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, frame: Frame, has_face: bool = False) -> None:
        with self._lock:
            self._entries.append([frame, has_face])

    def mark_face(self, frame: Frame, has_face: bool = True) -> bool:
        """
        Flag a buffered frame as containing a detected face.

        Frames are matched by identity; indices from different sources or
        sessions may repeat.

        Returns:
            False if the frame has already been evicted.
        """
        with self._lock:
            for entry in self._entries:
                if entry[0] is frame:
                    entry[1] = has_face
                    return True
        return False

    def best_recent(self) -> Optional[Frame]:
        """Most recent frame flagged as containing a face, or None."""
        with self._lock:
            for frame, has_face in reversed(self._entries):
                if has_face:
                    return frame
        return None

    def latest(self) -> Optional[Frame]:
        with self._lock:
            return self._entries[-1][0] if self._entries else None

    def frames(self) -> List[Frame]:
        """Snapshot of buffered frames, oldest first."""
        with self._lock:
            return [entry[0] for entry in self._entries]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
