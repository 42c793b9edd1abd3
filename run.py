import argparse
import asyncio
import sys

import uvicorn

from frs.admin_service import ManageService
from frs.client_factory import ClientProvider
from frs.config import CAMERA_INDEX, DEVICE, DISTANCE_THRESHOLD, RECOGNITION_INTERVAL_SECONDS
from frs.config_store import SETUP_SQL, ConfigStore
from frs.exceptions import FaceRecognitionError
from frs.face_engine import FaceEngine
from frs.logger import setup_logger
from frs.recognition_service import RecognitionLoop
from frs.registration_service import RegistrationFlow
from frs.registry import FaceRegistry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Real-time Face Recognition")
    subparsers = parser.add_subparsers(dest="command", required=True)

    web = subparsers.add_parser("web", help="Launch the web app with register, recognize and manage tabs")
    web.add_argument("--host", default="127.0.0.1", help="Host interface")
    web.add_argument("--port", type=int, default=8000, help="Port")
    web.add_argument("--camera", type=int, default=None, help="Camera index override")

    configure = subparsers.add_parser("configure", help="Save Supabase project URL and anonymous key")
    configure.add_argument("--url", required=True, help="https://your-project.supabase.co")
    configure.add_argument("--key", required=True, dest="anon_key", help="Anonymous (public) key")

    subparsers.add_parser("setup-sql", help="Print the SQL that creates the faces table")

    register = subparsers.add_parser("register", help="Capture one face from the webcam and save it")
    register.add_argument("--name", required=True, help="Person's name")
    register.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")

    recognize = subparsers.add_parser("recognize", help="Print recognized names from the webcam")
    recognize.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
    recognize.add_argument(
        "--threshold",
        type=float,
        default=DISTANCE_THRESHOLD,
        help="Maximum embedding distance accepted as a match",
    )
    recognize.add_argument("--seconds", type=float, default=0.0, help="Stop after N seconds (0 = until Ctrl+C)")

    list_cmd = subparsers.add_parser("list-faces", help="List registered faces, newest first")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    delete = subparsers.add_parser("delete-face", help="Delete a registered face by id")
    delete.add_argument("--id", required=True, dest="face_id", help="Face id")

    return parser


async def _register(provider: ClientProvider, name: str, camera_index: int) -> str:
    engine = FaceEngine(device=DEVICE)
    await asyncio.to_thread(engine.load)
    registry = FaceRegistry(provider)
    flow = RegistrationFlow(provider, registry, engine, camera_index=camera_index)
    await flow.start_camera()
    try:
        return await flow.capture(name)
    finally:
        flow.stop_camera()
        engine.close()


async def _recognize(provider: ClientProvider, camera_index: int, threshold: float, seconds: float) -> None:
    engine = FaceEngine(device=DEVICE)
    await asyncio.to_thread(engine.load)
    registry = FaceRegistry(provider)
    await registry.refresh()
    loop = RecognitionLoop(registry, engine, threshold=threshold, camera_index=camera_index)
    await loop.start()

    elapsed = 0.0
    last_names: list[str] = []
    try:
        while loop.is_active and (seconds <= 0 or elapsed < seconds):
            await asyncio.sleep(RECOGNITION_INTERVAL_SECONDS)
            elapsed += RECOGNITION_INTERVAL_SECONDS
            if loop.recognized_names != last_names:
                last_names = list(loop.recognized_names)
                print("Recognized: " + (", ".join(last_names) if last_names else "-"))
    finally:
        loop.close()
        engine.close()


async def _list_faces(provider: ClientProvider, limit: int) -> int:
    manage = ManageService(provider, FaceRegistry(provider))
    profiles = await manage.list_profiles()
    if not profiles:
        print("No faces registered yet.")
        return 0

    print(f"{'Id':<38} {'Registered':<26} {'Name'}")
    print("-" * 80)
    for profile in profiles[:limit]:
        print(f"{profile.id:<38} {profile.created_at:<26} {profile.name}")
    return 0


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")
    provider = ClientProvider(ConfigStore())

    try:
        if args.command == "web":
            from frs.web_app import build_services, create_web_app

            app = create_web_app(build_services(provider=provider, camera_index=args.camera))
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        if args.command == "configure":
            config = provider.save_config(args.url, args.anon_key)
            print(f"Configuration saved for {config.url}.")
            return 0

        if args.command == "setup-sql":
            print(SETUP_SQL)
            return 0

        if not provider.configured:
            print("Database is not configured. Run: run.py configure --url ... --key ...")
            return 1

        if args.command == "register":
            face_id = asyncio.run(_register(provider, args.name, args.camera))
            print(f"Face for {args.name.strip()} has been saved (id={face_id}).")
            return 0

        if args.command == "recognize":
            asyncio.run(_recognize(provider, args.camera, args.threshold, args.seconds))
            print("Recognition stopped.")
            return 0

        if args.command == "list-faces":
            return asyncio.run(_list_faces(provider, args.limit))

        if args.command == "delete-face":
            manage = ManageService(provider, FaceRegistry(provider))
            asyncio.run(manage.delete_face(args.face_id))
            print(f"Face {args.face_id} deleted.")
            return 0

    except FaceRecognitionError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
