import asyncio
from typing import Callable, Iterable, List, Tuple

from .client_factory import ClientProvider
from .database import RegisteredFace
from .logger import setup_logger

Listener = Callable[[Tuple[RegisteredFace, ...]], None]


class FaceRegistry:
    """The registered set shared by the recognition loop and the manage view.

    Readers get immutable snapshots. Replacing the set swaps the whole tuple
    and then tells every subscriber, so nobody observes a half-updated list.
    """

    def __init__(self, provider: ClientProvider):
        self.provider = provider
        self._faces: Tuple[RegisteredFace, ...] = ()
        self._listeners: List[Listener] = []
        self.logger = setup_logger(self.__class__.__name__)

    def __len__(self) -> int:
        return len(self._faces)

    def snapshot(self) -> Tuple[RegisteredFace, ...]:
        return self._faces

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def replace(self, faces: Iterable[RegisteredFace]) -> None:
        self._faces = tuple(faces)
        for listener in list(self._listeners):
            try:
                listener(self._faces)
            except Exception:
                self.logger.exception("Registry listener failed")

    async def refresh(self) -> Tuple[RegisteredFace, ...]:
        client = self.provider.get_client()
        faces = await asyncio.to_thread(client.list_faces)
        self.replace(faces)
        self.logger.info("Loaded %d registered faces", len(faces))
        return self._faces
