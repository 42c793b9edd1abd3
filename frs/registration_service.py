import asyncio
from typing import Callable, Optional

import numpy as np

from .camera import CameraStream
from .client_factory import ClientProvider
from .config import CAMERA_INDEX
from .exceptions import ModelLoadError, NoFaceDetected, RegistrationError, StoreReadFailed
from .face_engine import FaceEngine
from .logger import setup_logger
from .registry import FaceRegistry


class RegistrationFlow:
    """Single-shot face registration from a webcam.

    ``name`` mirrors the name input of the form: it is kept when a capture
    fails so the user can simply retry, and cleared after a successful save.
    """

    def __init__(
        self,
        provider: ClientProvider,
        registry: FaceRegistry,
        engine: FaceEngine,
        camera_factory: Callable[[int], CameraStream] = CameraStream,
        camera_index: int = CAMERA_INDEX,
    ):
        self.provider = provider
        self.registry = registry
        self.engine = engine
        self.camera_factory = camera_factory
        self.camera_index = camera_index
        self.camera: Optional[CameraStream] = None
        self.name = ""
        self.logger = setup_logger(self.__class__.__name__)

    @property
    def is_active(self) -> bool:
        return self.camera is not None and self.camera.is_open

    async def start_camera(self) -> None:
        if self.is_active:
            return
        if not self.engine.ready:
            raise ModelLoadError("Face detection models are not loaded yet.")

        camera = self.camera_factory(self.camera_index)
        await asyncio.to_thread(camera.open)
        self.camera = camera
        self.logger.info("Registration camera started on index %s", self.camera_index)

    def stop_camera(self) -> None:
        if self.camera is not None:
            self.camera.close()
            self.camera = None
            self.logger.info("Registration camera stopped")

    def read_preview(self) -> Optional[np.ndarray]:
        camera = self.camera
        if camera is None or not camera.is_open:
            return None
        return camera.read()

    async def capture(self, name: Optional[str] = None) -> Optional[str]:
        if name is not None:
            self.name = name

        clean_name = self.name.strip()
        if not self.is_active or not clean_name:
            raise RegistrationError("Please enter a name and ensure webcam is active.")
        if not self.engine.ready:
            raise ModelLoadError("Face detection models are not loaded yet.")

        frame = await asyncio.to_thread(self.camera.read)
        detection = await asyncio.to_thread(self.engine.detect_single, frame)
        if detection is None:
            raise NoFaceDetected("No face detected. Please ensure your face is clearly visible in the camera.")

        client = self.provider.get_client()
        face_id = await asyncio.to_thread(client.insert_face, clean_name, detection.embedding)
        self.logger.info("Face registered for %s (id=%s)", clean_name, face_id)
        self.name = ""

        try:
            await self.registry.refresh()
        except StoreReadFailed as exc:
            self.logger.warning("Face saved but registered set could not be reloaded: %s", exc)
        return face_id
