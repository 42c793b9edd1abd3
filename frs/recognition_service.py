import asyncio
import enum
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .camera import CameraStream
from .config import CAMERA_INDEX, DISTANCE_THRESHOLD, RECOGNITION_INTERVAL_SECONDS
from .database import RegisteredFace
from .exceptions import CameraError, ModelLoadError, RecognitionUnavailable
from .face_engine import Detection, FaceEngine
from .logger import setup_logger
from .matcher import FaceMatcher, MatchResult
from .overlay import OverlayLayer, OverlaySurface
from .registry import FaceRegistry


class LoopState(str, enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    STOPPING = "stopping"


class RecognitionLoop:
    """Periodic detect, match and draw cycle over a live camera.

    The loop owns its camera and its asyncio task. Every transition back to
    IDLE cancels the task and releases the camera before returning, and bumps
    ``generation`` so work that was already in flight is thrown away.
    """

    def __init__(
        self,
        registry: FaceRegistry,
        engine: FaceEngine,
        threshold: float = DISTANCE_THRESHOLD,
        interval: float = RECOGNITION_INTERVAL_SECONDS,
        camera_factory: Callable[[int], CameraStream] = CameraStream,
        camera_index: int = CAMERA_INDEX,
    ):
        self.registry = registry
        self.engine = engine
        self.threshold = threshold
        self.interval = interval
        self.camera_factory = camera_factory
        self.camera_index = camera_index
        self.logger = setup_logger(self.__class__.__name__)

        self.state = LoopState.IDLE
        self.generation = 0
        self.camera: Optional[CameraStream] = None
        self.overlay = OverlaySurface()
        self.recognized_names: List[str] = []
        self.last_results: List[Tuple[Detection, MatchResult]] = []
        self._published: Optional[Tuple[np.ndarray, OverlayLayer]] = None
        self.tick_count = 0
        self._task: Optional[asyncio.Task] = None
        self._opening = False
        self._unsubscribe = registry.subscribe(self._on_registry_changed)

    @property
    def is_active(self) -> bool:
        return self.state is LoopState.ACTIVE

    @property
    def can_start(self) -> bool:
        return self.engine.ready and len(self.registry) > 0

    async def start(self) -> None:
        if self.state is not LoopState.IDLE or self._opening:
            return
        if not self.engine.ready:
            raise ModelLoadError("Face detection models are not loaded yet.")
        if not self.registry.snapshot():
            raise RecognitionUnavailable("Register some faces first to enable recognition.")

        camera = self.camera_factory(self.camera_index)
        generation = self.generation
        self._opening = True
        try:
            await asyncio.to_thread(camera.open)
        except CameraError:
            self.logger.exception("Could not open camera for recognition")
            raise
        finally:
            self._opening = False

        if generation != self.generation:
            camera.close()
            self.logger.info("Recognition start abandoned; stop requested while opening camera")
            return
        if not self.registry.snapshot():
            camera.close()
            raise RecognitionUnavailable("Register some faces first to enable recognition.")

        self.camera = camera
        self.generation += 1
        self.state = LoopState.ACTIVE
        self._task = asyncio.create_task(self._run(self.generation), name="recognition-loop")
        self.logger.info("Recognition started with %d registered faces", len(self.registry))

    @property
    def last_frame(self) -> Optional[np.ndarray]:
        published = self._published
        return published[0] if published is not None else None

    def stop(self, reason: str = "requested") -> None:
        if self.state is LoopState.IDLE:
            if self._opening:
                # start() is still waiting on the camera; it checks this and backs out.
                self.generation += 1
                self.logger.info("Recognition stop requested while camera is opening (%s)", reason)
            return

        self.state = LoopState.STOPPING
        self.generation += 1

        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self.camera is not None:
            self.camera.close()
            self.camera = None

        self.recognized_names = []
        self.last_results = []
        self._published = None
        self.overlay.clear()
        self.state = LoopState.IDLE
        self.logger.info("Recognition stopped (%s)", reason)

    def close(self) -> None:
        self.stop(reason="teardown")
        self._unsubscribe()

    def _on_registry_changed(self, faces: Sequence[RegisteredFace]) -> None:
        if not faces and self.state is LoopState.ACTIVE:
            self.stop(reason="no registered faces")

    async def _run(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        while generation == self.generation:
            started = loop.time()
            try:
                await self.tick(generation)
            except Exception:
                self.logger.exception("Recognition tick failed")
            await asyncio.sleep(max(0.0, self.interval - (loop.time() - started)))

    async def tick(self, generation: int) -> None:
        camera = self.camera
        faces = self.registry.snapshot()
        if camera is None or not faces:
            return

        try:
            frame = await asyncio.to_thread(camera.read)
        except CameraError as exc:
            self.logger.warning("Frame capture failed: %s", exc)
            return
        if generation != self.generation:
            return
        if frame is None or frame.ndim < 2 or frame.shape[0] == 0 or frame.shape[1] == 0:
            return

        try:
            detections = await asyncio.to_thread(self.engine.detect_all, frame)
        except Exception:
            self.logger.exception("Error in face detection")
            detections = []
        if generation != self.generation:
            return

        classifier = FaceMatcher.build(faces, self.threshold, distance=self.engine.distances)
        results = [(det, classifier.match(det.embedding)) for det in detections]

        height, width = frame.shape[:2]
        layer = self.overlay.render(
            width,
            height,
            [(det.box, result.label if result.matched else "Unknown", result.matched) for det, result in results],
        )

        self.recognized_names = [result.label for _, result in results if result.matched]
        self.last_results = results
        self._published = (frame, layer)
        self.tick_count += 1

    def composed_frame(self) -> Optional[np.ndarray]:
        published = self._published
        if published is None:
            return None
        frame, layer = published
        return OverlaySurface.compose(frame, layer)
