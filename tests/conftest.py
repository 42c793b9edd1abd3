import os
import tempfile
import threading

os.environ.setdefault("FRS_LOG_DIR", tempfile.mkdtemp(prefix="frs-logs-"))

import numpy as np
import pytest

from frs.client_factory import ClientProvider
from frs.config_store import ConfigStore, SupabaseConfig
from frs.database import FaceProfile, RegisteredFace
from frs.exceptions import CameraError, StoreDeleteFailed, StoreReadFailed, StoreWriteFailed
from frs.face_engine import Detection, euclidean_distances
from frs.registry import FaceRegistry

DIM = 4


def vec(*values) -> np.ndarray:
    out = np.zeros(DIM, dtype=np.float32)
    out[: len(values)] = values
    return out


def make_face(name: str, descriptor: np.ndarray, face_id: str = None) -> RegisteredFace:
    return RegisteredFace(
        id=face_id or f"id-{name.lower()}",
        name=name,
        descriptor=np.asarray(descriptor, dtype=np.float32),
        created_at="2024-05-01T10:00:00+00:00",
    )


def make_detection(embedding: np.ndarray, box=(10, 20, 110, 140), score: float = 0.9) -> Detection:
    return Detection(box=np.array(box, dtype=np.float32), embedding=np.asarray(embedding, dtype=np.float32), score=score)


class FakeCamera:
    def __init__(self, camera_index: int = 0, fail_open: bool = False, shape=(480, 640, 3)):
        self.camera_index = camera_index
        self.fail_open = fail_open
        self.shape = shape
        self.opened = False
        self.stopped = False
        self.reads = 0

    @property
    def is_open(self) -> bool:
        return self.opened and not self.stopped

    def open(self) -> None:
        if self.fail_open:
            raise CameraError("Could not access webcam. Check camera permissions.")
        self.opened = True

    def read(self) -> np.ndarray:
        if not self.is_open:
            raise CameraError("Webcam stream is not active.")
        self.reads += 1
        return np.zeros(self.shape, dtype=np.uint8)

    def close(self) -> None:
        self.stopped = True


class CameraFactory:
    """Hands out FakeCamera instances and remembers them."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.cameras = []

    def __call__(self, camera_index: int) -> FakeCamera:
        camera = FakeCamera(camera_index, **self.kwargs)
        self.cameras.append(camera)
        return camera


class FakeEngine:
    distances = staticmethod(euclidean_distances)

    def __init__(self, detections=None, ready: bool = True):
        self.detections = list(detections or [])
        self.ready = ready
        self.calls = 0
        self.active_calls = 0
        self.max_active_calls = 0
        self.errors = []
        self.delay = 0.0
        self.gate = None
        self._lock = threading.Lock()

    def load(self) -> None:
        self.ready = True

    def close(self) -> None:
        self.ready = False

    def detect_all(self, frame):
        with self._lock:
            self.calls += 1
            self.active_calls += 1
            self.max_active_calls = max(self.max_active_calls, self.active_calls)
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if self.delay:
                threading.Event().wait(self.delay)
            if self.errors:
                raise self.errors.pop(0)
            return list(self.detections)
        finally:
            with self._lock:
                self.active_calls -= 1

    def detect_single(self, frame):
        found = self.detect_all(frame)
        return max(found, key=lambda d: d.score) if found else None


class FakeStore:
    def __init__(self, faces=None):
        self.faces = list(faces or [])
        self.inserted = []
        self.deleted = []
        self.closed = False
        self.fail_read = False
        self.fail_write = False
        self.fail_delete = False

    def close(self) -> None:
        self.closed = True

    def list_faces(self):
        if self.fail_read:
            raise StoreReadFailed("Could not load registered faces: boom")
        return list(self.faces)

    def list_profiles(self):
        if self.fail_read:
            raise StoreReadFailed("Could not load registered faces: boom")
        ordered = sorted(self.faces, key=lambda f: f.created_at, reverse=True)
        return [FaceProfile(id=f.id, name=f.name, created_at=f.created_at) for f in ordered]

    def insert_face(self, name, descriptor):
        if self.fail_write:
            raise StoreWriteFailed(f"Could not register face for {name}: boom")
        face = make_face(name, descriptor, face_id=f"id-{len(self.inserted) + 1}")
        self.inserted.append(face)
        self.faces.append(face)
        return face.id

    def delete_face(self, face_id):
        if self.fail_delete:
            raise StoreDeleteFailed(f"Could not delete face {face_id}: boom")
        self.deleted.append(face_id)
        self.faces = [f for f in self.faces if f.id != face_id]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def config_store(tmp_path):
    return ConfigStore(tmp_path / "local_storage.json")


@pytest.fixture
def provider(config_store, store):
    config_store.save(SupabaseConfig(url="https://demo.supabase.co", anon_key="anon"))
    return ClientProvider(config_store, client_factory=lambda cfg: store)


@pytest.fixture
def registry(provider):
    return FaceRegistry(provider)
