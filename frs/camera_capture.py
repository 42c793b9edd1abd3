import os
import time
from typing import List, NamedTuple, Optional, Tuple

import cv2

from .exceptions import CameraError

# Name accepted in FRS_CAMERA_BACKEND_ORDER -> OpenCV constant attribute.
KNOWN_BACKENDS = {
    "auto": "CAP_ANY",
    "v4l2": "CAP_V4L2",
    "dshow": "CAP_DSHOW",
    "msmf": "CAP_MSMF",
    "avfoundation": "CAP_AVFOUNDATION",
}
_ALIASES = {"any": "auto", "directshow": "dshow", "mediafoundation": "msmf"}


class CaptureBackend(NamedTuple):
    name: str
    api: Optional[int]


def _default_order() -> List[str]:
    if os.name == "nt":
        return ["dshow", "msmf", "auto"]
    return ["auto", "v4l2", "avfoundation"]


def backend_order(raw: Optional[str] = None) -> List[str]:
    """Backend names to try, from ``FRS_CAMERA_BACKEND_ORDER`` or the platform default."""
    raw = os.getenv("FRS_CAMERA_BACKEND_ORDER", "") if raw is None else raw
    names: List[str] = []
    for item in raw.split(","):
        key = item.strip().lower()
        key = _ALIASES.get(key, key)
        if key in KNOWN_BACKENDS and key not in names:
            names.append(key)
    names = names or _default_order()
    if "auto" not in names:
        names.append("auto")
    return names


def capture_backends(raw: Optional[str] = None) -> List[CaptureBackend]:
    candidates: List[CaptureBackend] = []
    seen = set()
    for name in backend_order(raw):
        api = getattr(cv2, KNOWN_BACKENDS[name], None)
        if api is None and name != "auto":
            continue
        if api in seen:
            continue
        seen.add(api)
        candidates.append(CaptureBackend(name, api))
    return candidates


def _delivers_frames(cap: cv2.VideoCapture, reads: int) -> bool:
    # Devices without permission often report opened=True and then return nothing.
    for _ in range(max(1, reads)):
        ok, frame = cap.read()
        if ok and frame is not None:
            return True
        time.sleep(0.03)
    return False


def open_camera_capture(camera_index: int, probe_reads: int = 6) -> Tuple[cv2.VideoCapture, str]:
    """Open the first backend that actually delivers frames for ``camera_index``."""
    attempted = []
    for backend in capture_backends():
        attempted.append(backend.name)
        cap = cv2.VideoCapture(camera_index) if backend.api is None else cv2.VideoCapture(camera_index, backend.api)
        if cap.isOpened() and _delivers_frames(cap, probe_reads):
            return cap, backend.name
        cap.release()

    raise CameraError(
        f"Could not access webcam {camera_index}. Check camera permissions. "
        f"Tried backends: {', '.join(attempted) or 'default'}."
    )
