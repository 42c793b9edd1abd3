import asyncio
from typing import List

from .client_factory import ClientProvider
from .database import FaceProfile
from .exceptions import StoreDeleteFailed, StoreReadFailed
from .logger import setup_logger
from .registry import FaceRegistry


class ManageService:
    def __init__(self, provider: ClientProvider, registry: FaceRegistry):
        self.provider = provider
        self.registry = registry
        self.logger = setup_logger(self.__class__.__name__)

    async def list_profiles(self) -> List[FaceProfile]:
        client = self.provider.get_client()
        return await asyncio.to_thread(client.list_profiles)

    async def delete_face(self, face_id: str) -> None:
        face_id = face_id.strip()
        if not face_id:
            raise StoreDeleteFailed("Face id cannot be empty.")

        client = self.provider.get_client()
        await asyncio.to_thread(client.delete_face, face_id)
        self.logger.info("Face %s deleted", face_id)

        try:
            await self.registry.refresh()
        except StoreReadFailed as exc:
            self.logger.warning("Face deleted but registered set could not be reloaded: %s", exc)
