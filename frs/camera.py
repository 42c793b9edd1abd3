import threading
from typing import Optional

import cv2
import numpy as np

from .camera_capture import open_camera_capture
from .config import FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH
from .exceptions import CameraError


class CameraStream:
    """A webcam handle that can be opened once and stopped once.

    Reads and release share a lock, so stopping the stream waits for an
    in-flight read instead of tearing the capture down underneath it.
    """

    def __init__(self, camera_index: int = 0):
        self.camera_index = camera_index
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: str | None = None
        self._lock = threading.Lock()

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.cap is not None

    def open(self) -> None:
        cap, backend_name = open_camera_capture(self.camera_index)

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
        cap.set(cv2.CAP_PROP_FPS, FRAME_FPS)
        cv2.setUseOptimized(True)

        with self._lock:
            if self.cap is not None:
                self.cap.release()
            self.cap = cap
            self.backend_name = backend_name

    def read(self) -> np.ndarray:
        with self._lock:
            if self.cap is None:
                raise CameraError("Webcam stream is not active.")
            success, frame = self.cap.read()

        if not success or frame is None:
            raise CameraError("Failed to read frame from webcam.")
        return frame

    def close(self) -> None:
        with self._lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None
