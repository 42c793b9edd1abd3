import asyncio
import math
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

import cv2
import numpy as np
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from .admin_service import ManageService
from .camera import CameraStream
from .client_factory import ClientProvider
from .config import DEVICE, JPEG_QUALITY, LOAD_MODELS_ON_STARTUP, SUPABASE_HOST_SUFFIX
from .config_store import SETUP_SQL, ConfigStore
from .exceptions import (
    CameraError,
    FaceEngineError,
    FaceRecognitionError,
    InvalidConfiguration,
    ModelLoadError,
    NoFaceDetected,
    RecognitionUnavailable,
    RegistrationError,
    StoreDeleteFailed,
    StoreError,
    StoreReadFailed,
    StoreWriteFailed,
)
from .face_engine import FaceEngine
from .logger import setup_logger
from .notifications import NotificationCenter
from .recognition_service import RecognitionLoop
from .registration_service import RegistrationFlow
from .registry import FaceRegistry

WEB_DIR = Path(__file__).resolve().parent / "web"
TEMPLATES_DIR = WEB_DIR / "templates"
STATIC_DIR = WEB_DIR / "static"
logger = setup_logger("web_app")

# Most specific classes first; the first isinstance match wins.
ERROR_RESPONSES = (
    (NoFaceDetected, 422, "No face detected"),
    (RegistrationError, 400, "Missing information"),
    (CameraError, 503, "Webcam Error"),
    (ModelLoadError, 503, "Error loading models"),
    (RecognitionUnavailable, 409, "Recognition unavailable"),
    (StoreReadFailed, 502, "Error loading faces"),
    (StoreWriteFailed, 502, "Registration failed"),
    (StoreDeleteFailed, 502, "Error deleting face"),
    (StoreError, 502, "Database error"),
    (InvalidConfiguration, 400, "Invalid configuration"),
    (FaceEngineError, 500, "Face detection failed"),
)


class ConfigBody(BaseModel):
    url: str
    anon_key: str


class RegisterBody(BaseModel):
    name: str


class NotConfigured(FaceRecognitionError):
    """Raised when a data endpoint is used before the database is configured."""


@dataclass
class AppServices:
    engine: FaceEngine
    provider: ClientProvider
    registry: FaceRegistry
    registration: RegistrationFlow
    recognition: RecognitionLoop
    manage: ManageService
    notifications: NotificationCenter
    model_error: Optional[str] = None


def build_services(
    engine: Optional[FaceEngine] = None,
    provider: Optional[ClientProvider] = None,
    camera_factory: Callable[[int], CameraStream] = CameraStream,
    camera_index: Optional[int] = None,
) -> AppServices:
    engine = engine or FaceEngine(device=DEVICE)
    provider = provider or ClientProvider(ConfigStore())
    registry = FaceRegistry(provider)
    camera_kwargs = {"camera_factory": camera_factory}
    if camera_index is not None:
        camera_kwargs["camera_index"] = int(camera_index)

    return AppServices(
        engine=engine,
        provider=provider,
        registry=registry,
        registration=RegistrationFlow(provider, registry, engine, **camera_kwargs),
        recognition=RecognitionLoop(registry, engine, **camera_kwargs),
        manage=ManageService(provider, registry),
        notifications=NotificationCenter(),
    )


def _mjpeg_frame_generator(
    frame_source: Callable[[], Optional[np.ndarray]],
    is_active: Callable[[], bool],
) -> Iterator[bytes]:
    while is_active():
        try:
            frame = frame_source()
        except CameraError:
            return
        if frame is None:
            time.sleep(0.03)
            continue
        ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), JPEG_QUALITY])
        if not ok:
            continue
        yield (
            b"--frame\r\n"
            b"Content-Type: image/jpeg\r\n\r\n" + encoded.tobytes() + b"\r\n"
        )
        time.sleep(0.03)


def _finite(value: float) -> Optional[float]:
    return None if math.isinf(value) or math.isnan(value) else round(value, 4)


def create_web_app(services: Optional[AppServices] = None, load_models: bool = LOAD_MODELS_ON_STARTUP) -> FastAPI:
    services = services or build_services()
    notifications = services.notifications

    async def _refresh_registry() -> None:
        try:
            await services.registry.refresh()
        except StoreReadFailed as exc:
            logger.error("Error loading registered faces: %s", exc)
            notifications.error("Error loading faces", "Could not load registered faces.")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if load_models:
            try:
                await asyncio.to_thread(services.engine.load)
                notifications.push("Models loaded", "Face detection models are ready!")
            except ModelLoadError as exc:
                services.model_error = str(exc)
                logger.error("Error loading models: %s", exc)
                notifications.error("Error loading models", "Please check if model files are available.")
        if services.provider.configured:
            await _refresh_registry()
        yield
        services.recognition.close()
        services.registration.stop_camera()
        services.provider.invalidate()

    app = FastAPI(title="Real-time Face Recognition", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    @app.exception_handler(FaceRecognitionError)
    async def _handle_error(request: Request, exc: FaceRecognitionError):
        status, title = 500, "Unexpected error"
        if isinstance(exc, NotConfigured):
            status, title = 409, "Database not configured"
        for error_type, error_status, error_title in ERROR_RESPONSES:
            if isinstance(exc, error_type):
                status, title = error_status, error_title
                break
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        notifications.error(title, str(exc))
        return JSONResponse({"ok": False, "title": title, "error": str(exc)}, status_code=status)

    def _require_configured() -> None:
        if not services.provider.configured:
            raise NotConfigured("Configure your Supabase database to get started.")

    @app.get("/", response_class=HTMLResponse)
    def index(request: Request):
        return templates.TemplateResponse(
            request,
            "index.html",
            {"configured": services.provider.configured, "host_suffix": SUPABASE_HOST_SUFFIX},
        )

    @app.get("/api/status")
    def status():
        return {
            "configured": services.provider.configured,
            "models_loaded": services.engine.ready,
            "model_error": services.model_error,
            "registered_faces": len(services.registry),
            "registration_active": services.registration.is_active,
            "recognition_state": services.recognition.state.value,
            "can_start_recognition": services.recognition.can_start,
            "client_generation": services.provider.generation,
        }

    @app.get("/api/config")
    def get_config():
        stored = services.provider.config_store.load()
        return {
            "configured": stored is not None,
            "url": stored.url if stored else "",
            "host_suffix": SUPABASE_HOST_SUFFIX,
        }

    @app.post("/api/config")
    async def save_config(payload: ConfigBody):
        config = services.provider.save_config(payload.url, payload.anon_key)
        services.recognition.stop(reason="configuration changed")
        notifications.push("Configuration Saved", "Your Supabase configuration has been saved successfully!")
        await _refresh_registry()
        return {"ok": True, "url": config.url, "reload": True}

    @app.get("/api/config/setup-sql")
    def setup_sql():
        return {"sql": SETUP_SQL}

    @app.post("/api/register/camera/start")
    async def start_registration_camera():
        _require_configured()
        await services.registration.start_camera()
        return {"ok": True, "active": True}

    @app.post("/api/register/camera/stop")
    def stop_registration_camera():
        services.registration.stop_camera()
        return {"ok": True, "active": False}

    @app.get("/api/register/stream")
    def registration_stream():
        return StreamingResponse(
            _mjpeg_frame_generator(services.registration.read_preview, lambda: services.registration.is_active),
            media_type="multipart/x-mixed-replace; boundary=frame",
        )

    @app.post("/api/register")
    async def register_face(payload: RegisterBody):
        _require_configured()
        face_id = await services.registration.capture(payload.name)
        name = payload.name.strip()
        notifications.push("Face registered successfully", f"Face for {name} has been saved!")
        return {"ok": True, "id": face_id, "name": name, "registered_faces": len(services.registry)}

    @app.post("/api/recognize/start")
    async def start_recognition():
        _require_configured()
        await services.recognition.start()
        return {"ok": True, "state": services.recognition.state.value}

    @app.post("/api/recognize/stop")
    def stop_recognition():
        services.recognition.stop()
        return {"ok": True, "state": services.recognition.state.value}

    @app.post("/api/recognize/refresh")
    async def refresh_faces():
        _require_configured()
        await services.registry.refresh()
        return {"ok": True, "registered_faces": len(services.registry)}

    @app.get("/api/recognize/state")
    def recognition_state():
        loop = services.recognition
        return {
            "state": loop.state.value,
            "recognized_names": list(loop.recognized_names),
            "registered_faces": len(services.registry),
            "can_start": loop.can_start,
            "detections": [
                {"label": result.label, "distance": _finite(result.distance), "box": [int(v) for v in det.box]}
                for det, result in loop.last_results
            ],
        }

    @app.get("/api/recognize/stream")
    def recognition_stream():
        return StreamingResponse(
            _mjpeg_frame_generator(services.recognition.composed_frame, lambda: services.recognition.is_active),
            media_type="multipart/x-mixed-replace; boundary=frame",
        )

    @app.get("/api/faces")
    async def list_faces():
        _require_configured()
        profiles = await services.manage.list_profiles()
        return [{"id": p.id, "name": p.name, "created_at": p.created_at} for p in profiles]

    @app.delete("/api/faces/{face_id}")
    async def delete_face(face_id: str, name: str = ""):
        _require_configured()
        await services.manage.delete_face(face_id)
        notifications.push("Face deleted", f"{name or face_id}'s face has been removed.")
        return {"ok": True, "registered_faces": len(services.registry)}

    @app.get("/api/notifications")
    def list_notifications(after: int = 0):
        return notifications.since(after)

    return app
