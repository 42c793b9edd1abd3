from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import cv2
import numpy as np

from .config import MATCHED_COLOR, UNKNOWN_COLOR


@dataclass(frozen=True)
class Annotation:
    box: Tuple[int, int, int, int]
    label: str
    matched: bool

    @property
    def color(self) -> Tuple[int, int, int]:
        return MATCHED_COLOR if self.matched else UNKNOWN_COLOR


@dataclass(frozen=True)
class OverlayLayer:
    """A finished BGRA drawing and the annotations it contains."""

    canvas: np.ndarray
    annotations: Tuple[Annotation, ...] = ()

    @property
    def size(self) -> Tuple[int, int]:
        height, width = self.canvas.shape[:2]
        return width, height


def _blank(width: int, height: int) -> np.ndarray:
    return np.zeros((int(height), int(width), 4), dtype=np.uint8)


class OverlaySurface:
    """Transparent layer drawn on top of the live video.

    Each render draws into a fresh canvas and then replaces ``layer`` in one
    assignment, so readers on other threads see either the previous drawing
    or the new one, never a partial one.
    """

    def __init__(self):
        self.layer = OverlayLayer(_blank(0, 0))

    @property
    def width(self) -> int:
        return self.layer.size[0]

    @property
    def height(self) -> int:
        return self.layer.size[1]

    @property
    def annotations(self) -> List[Annotation]:
        return list(self.layer.annotations)

    def clear(self) -> None:
        self.layer = OverlayLayer(_blank(self.width, self.height))

    def render(self, width: int, height: int, items: Iterable[Tuple[np.ndarray, str, bool]]) -> OverlayLayer:
        canvas = _blank(width, height)
        annotations = tuple(self._draw(canvas, box, label, matched) for box, label, matched in items)
        self.layer = OverlayLayer(canvas, annotations)
        return self.layer

    @staticmethod
    def _draw(canvas: np.ndarray, box: np.ndarray, label: str, matched: bool) -> Annotation:
        x1, y1, x2, y2 = [int(v) for v in box]
        annotation = Annotation(box=(x1, y1, x2, y2), label=label, matched=matched)
        color = (*annotation.color, 255)

        cv2.rectangle(canvas, (x1, y1), (x2, y2), color, 2)
        cv2.putText(
            canvas,
            label,
            (x1, max(16, y1 - 10)),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.6,
            color,
            2,
            cv2.LINE_AA,
        )
        return annotation

    @staticmethod
    def compose(frame: Optional[np.ndarray], layer: OverlayLayer) -> Optional[np.ndarray]:
        if frame is None:
            return None
        if layer.canvas.shape[:2] != frame.shape[:2] or not layer.annotations:
            return frame

        alpha = layer.canvas[..., 3:4].astype(np.float32) / 255.0
        blended = frame.astype(np.float32) * (1.0 - alpha) + layer.canvas[..., :3].astype(np.float32) * alpha
        return blended.astype(np.uint8)
