from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import (
    DETECTOR_MODEL_SELECTION,
    DEVICE,
    FACE_DETECTION_THRESHOLD,
    MIN_FACE_SIZE,
    RECOGNITION_WEIGHTS_FILE,
)
from .exceptions import FaceEngineError, ModelLoadError
from .logger import setup_logger

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None


@dataclass
class Detection:
    box: np.ndarray
    embedding: np.ndarray
    score: float = 1.0
    landmarks: np.ndarray = field(default_factory=lambda: np.empty((0, 2), dtype=np.float32))


def euclidean_distances(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Distance from ``query`` to every row of ``matrix``."""
    matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float32))
    query = np.asarray(query, dtype=np.float32).reshape(1, -1)
    return np.linalg.norm(matrix - query, axis=1)


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(euclidean_distances(np.asarray(b), np.asarray(a))[0])


class FaceEngine:
    """Face detector, landmarker and embedder behind one call.

    Models are not loaded by the constructor; call :meth:`load` once at
    startup. Embeddings are L2-normalized 512-D ResNet-18 features, so the
    Euclidean distance between two of them lies in ``[0, 2]``.
    """

    def __init__(
        self,
        device: str = DEVICE,
        detection_threshold: float = FACE_DETECTION_THRESHOLD,
        min_face_size: int = MIN_FACE_SIZE,
        recognition_weights: Path = RECOGNITION_WEIGHTS_FILE,
    ):
        self.device = torch.device(device)
        self.detection_threshold = detection_threshold
        self.min_face_size = min_face_size
        self.recognition_weights = Path(recognition_weights)
        self.logger = setup_logger(self.__class__.__name__)

        self.detector = None
        self.landmarker = None
        self.embedder = None
        self.mean: Optional[torch.Tensor] = None
        self.std: Optional[torch.Tensor] = None

    @property
    def ready(self) -> bool:
        return self.detector is not None and self.landmarker is not None and self.embedder is not None

    def load(self) -> None:
        if self.ready:
            return
        if mp is None:
            raise ModelLoadError("mediapipe is required. Install the project dependencies.")

        if self.device.type == "cuda":
            torch.backends.cudnn.benchmark = True

        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=DETECTOR_MODEL_SELECTION,
                min_detection_confidence=self.detection_threshold,
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to load face detector: {exc}") from exc

        try:
            self.landmarker = mp.solutions.face_mesh.FaceMesh(
                static_image_mode=True,
                max_num_faces=1,
                refine_landmarks=False,
                min_detection_confidence=0.3,
            )
        except Exception as exc:
            self.close()
            raise ModelLoadError(f"Failed to load face landmark model: {exc}") from exc

        try:
            self.embedder = self._load_embedder()
            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
        except Exception as exc:
            self.close()
            raise ModelLoadError(f"Failed to load face recognition model: {exc}") from exc

        self.logger.info("Face models loaded on %s", self.device)

    def _load_embedder(self) -> torch.nn.Module:
        if self.recognition_weights.exists():
            backbone = models.resnet18(weights=None)
            backbone.fc = torch.nn.Identity()
            state = torch.load(self.recognition_weights, map_location=self.device)
            backbone.load_state_dict(state, strict=False)
            self.logger.info("Loaded recognition weights from %s", self.recognition_weights)
        else:
            backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
            backbone.fc = torch.nn.Identity()
        return backbone.eval().to(self.device)

    def close(self) -> None:
        for component in (self.detector, self.landmarker):
            if component is not None:
                component.close()
        self.detector = None
        self.landmarker = None
        self.embedder = None

    @staticmethod
    def distance(a: np.ndarray, b: np.ndarray) -> float:
        return euclidean_distance(a, b)

    @staticmethod
    def distances(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        return euclidean_distances(matrix, query)

    def detect_all(self, frame: np.ndarray) -> List[Detection]:
        if not self.ready:
            raise ModelLoadError("Face models are not loaded.")

        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            result = self.detector.process(rgb)
        except Exception as exc:
            raise FaceEngineError(f"Face detection failed: {exc}") from exc

        if not result.detections:
            return []

        h, w = frame.shape[:2]
        crops = []
        found = []

        for det in result.detections:
            score = float(det.score[0]) if det.score else 0.0
            if score < self.detection_threshold:
                continue

            rel = det.location_data.relative_bounding_box
            x1 = max(0, int(rel.xmin * w))
            y1 = max(0, int(rel.ymin * h))
            x2 = min(w, x1 + int(rel.width * w))
            y2 = min(h, y1 + int(rel.height * h))

            if (x2 - x1) < self.min_face_size or (y2 - y1) < self.min_face_size:
                continue

            crop, stable_box = self._extract_stable_crop(rgb, x1, y1, x2, y2)
            if crop.size == 0:
                continue

            keypoints = np.array(
                [[kp.x * w, kp.y * h] for kp in det.location_data.relative_keypoints],
                dtype=np.float32,
            ).reshape(-1, 2)
            landmarks = self._landmarks(crop, stable_box)
            crops.append(crop)
            found.append((np.array([x1, y1, x2, y2], dtype=np.float32), score, landmarks if landmarks.size else keypoints))

        if not crops:
            return []

        embeddings = self._embed(crops)
        return [
            Detection(box=box, embedding=embeddings[i], score=score, landmarks=landmarks)
            for i, (box, score, landmarks) in enumerate(found)
        ]

    def detect_single(self, frame: np.ndarray) -> Optional[Detection]:
        detections = self.detect_all(frame)
        if not detections:
            return None
        return max(detections, key=lambda d: d.score)

    def _landmarks(self, crop: np.ndarray, crop_box: np.ndarray) -> np.ndarray:
        try:
            result = self.landmarker.process(np.ascontiguousarray(crop))
        except Exception as exc:
            raise FaceEngineError(f"Landmark estimation failed: {exc}") from exc

        if not result.multi_face_landmarks:
            return np.empty((0, 2), dtype=np.float32)

        ch, cw = crop.shape[:2]
        points = result.multi_face_landmarks[0].landmark
        rel = np.array([[p.x, p.y] for p in points], dtype=np.float32)
        return rel * np.array([cw, ch], dtype=np.float32) + crop_box[:2]

    def _embed(self, crops: List[np.ndarray]) -> List[np.ndarray]:
        try:
            tensor_batch = self._to_tensor_batch(crops)
            with torch.inference_mode():
                if self.device.type == "cuda":
                    with torch.autocast(device_type="cuda", dtype=torch.float16):
                        raw = self.embedder(tensor_batch)
                else:
                    raw = self.embedder(tensor_batch)

                normed = f.normalize(raw.float(), p=2, dim=1)
                emb = normed.detach().cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise FaceEngineError(f"Embedding generation failed: {exc}") from exc

        return [emb[i] for i in range(emb.shape[0])]

    def _to_tensor_batch(self, face_crops: List[np.ndarray]) -> torch.Tensor:
        processed = []
        for crop in face_crops:
            resized = cv2.resize(crop, (224, 224), interpolation=cv2.INTER_AREA if min(crop.shape[:2]) >= 224 else cv2.INTER_CUBIC)
            tensor = torch.from_numpy(np.ascontiguousarray(resized)).permute(2, 0, 1).float() / 255.0
            processed.append(tensor)

        batch = torch.stack(processed, dim=0).to(self.device)
        return (batch - self.mean) / self.std

    @staticmethod
    def _extract_stable_crop(
        rgb: np.ndarray,
        x1: int,
        y1: int,
        x2: int,
        y2: int,
    ) -> tuple[np.ndarray, np.ndarray]:
        h, w = rgb.shape[:2]
        side = int(max(max(1, x2 - x1), max(1, y2 - y1)) * 1.05)
        cx = int((x1 + x2) * 0.5)
        cy = int((y1 + y2) * 0.5)

        sx1 = max(0, cx - side // 2)
        sy1 = max(0, cy - side // 2)
        sx2 = min(w, sx1 + side)
        sy2 = min(h, sy1 + side)

        if sx2 <= sx1 or sy2 <= sy1:
            return np.empty((0, 0, 3), dtype=rgb.dtype), np.array([x1, y1, x2, y2], dtype=np.float32)

        return rgb[sy1:sy2, sx1:sx2], np.array([sx1, sy1, sx2, sy2], dtype=np.float32)
