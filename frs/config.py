import os
from pathlib import Path

import torch


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _path_env(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip()).expanduser()


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = _path_env("FRS_DATA_DIR", BASE_DIR / "data")
LOG_DIR = _path_env("FRS_LOG_DIR", BASE_DIR / "logs")
LOG_LEVEL = os.getenv("FRS_LOG_LEVEL", "INFO").upper()
MODELS_DIR = _path_env("FRS_MODELS_DIR", BASE_DIR / "models")

# Client-side configuration slot (the app's "local storage").
LOCAL_STORAGE_PATH = _path_env("FRS_LOCAL_STORAGE_PATH", DATA_DIR / "local_storage.json")
CONFIG_STORAGE_KEY = "supabase-config"
SUPABASE_HOST_SUFFIX = os.getenv("FRS_SUPABASE_HOST_SUFFIX", ".supabase.co")
FACES_TABLE = os.getenv("FRS_FACES_TABLE", "faces")
STORE_REQUEST_TIMEOUT_SECONDS = _float_env("FRS_STORE_TIMEOUT_SECONDS", 15.0)

# Webcam settings
CAMERA_INDEX = _int_env("FRS_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("FRS_FRAME_WIDTH", 1280)
FRAME_HEIGHT = _int_env("FRS_FRAME_HEIGHT", 720)
FRAME_FPS = _int_env("FRS_FRAME_FPS", 30)
JPEG_QUALITY = _int_env("FRS_JPEG_QUALITY", 78)

# Vision engine settings
FACE_DETECTION_THRESHOLD = _float_env("FRS_FACE_DETECTION_THRESHOLD", 0.5)
MIN_FACE_SIZE = _int_env("FRS_MIN_FACE_SIZE", 40)
EMBEDDING_DIM = 512
DETECTOR_MODEL_SELECTION = _int_env("FRS_DETECTOR_MODEL_SELECTION", 0)
RECOGNITION_WEIGHTS_FILE = MODELS_DIR / "face_recognition_resnet18.pth"

# Recognition settings
# Euclidean distance on L2-normalized embeddings; 0.6 is cosine similarity 0.82.
DISTANCE_THRESHOLD = _float_env("FRS_DISTANCE_THRESHOLD", 0.6)
RECOGNITION_INTERVAL_SECONDS = _float_env("FRS_RECOGNITION_INTERVAL_SECONDS", 0.1)
UNKNOWN_LABEL = "unknown"
MATCHED_COLOR = (129, 185, 16)  # #10b981 in BGR
UNKNOWN_COLOR = (68, 68, 239)  # #ef4444 in BGR

# Web settings
NOTIFICATION_HISTORY = _int_env("FRS_NOTIFICATION_HISTORY", 50)
LOAD_MODELS_ON_STARTUP = _bool_env("FRS_LOAD_MODELS_ON_STARTUP", True)

# Runtime settings
DEVICE = "cuda" if torch.cuda.is_available() else "cpu"
