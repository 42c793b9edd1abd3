import math
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np

from .config import DISTANCE_THRESHOLD, UNKNOWN_LABEL
from .database import RegisteredFace
from .face_engine import euclidean_distances

DistanceFn = Callable[[np.ndarray, np.ndarray], np.ndarray]


@dataclass(frozen=True)
class MatchResult:
    label: str
    distance: float

    @property
    def matched(self) -> bool:
        return self.label != UNKNOWN_LABEL


class Classifier:
    """Nearest-neighbour labeller over a fixed set of registered faces.

    Ties go to the face that comes first in the registered list.
    """

    def __init__(self, labels: Sequence[str], matrix: np.ndarray, threshold: float, distance: DistanceFn):
        self.labels = list(labels)
        self.matrix = matrix
        self.threshold = threshold
        self._distance = distance

    def match(self, embedding: np.ndarray) -> MatchResult:
        if not self.labels:
            return MatchResult(UNKNOWN_LABEL, math.inf)

        distances = np.asarray(self._distance(self.matrix, embedding), dtype=np.float64)
        idx = int(np.argmin(distances))
        best = float(distances[idx])
        if best <= self.threshold:
            return MatchResult(self.labels[idx], best)
        return MatchResult(UNKNOWN_LABEL, best)


class FaceMatcher:
    @staticmethod
    def build(
        registered_faces: Sequence[RegisteredFace],
        threshold: float = DISTANCE_THRESHOLD,
        distance: DistanceFn = euclidean_distances,
    ) -> Classifier:
        if not registered_faces:
            return Classifier([], np.empty((0, 0), dtype=np.float32), threshold, distance)

        matrix = np.vstack([face.descriptor for face in registered_faces]).astype(np.float32)
        return Classifier([face.name for face in registered_faces], matrix, threshold, distance)
