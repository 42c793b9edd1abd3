from typing import Callable, Optional

from .config_store import DEFAULT_CONFIG, ConfigStore, SupabaseConfig, validate_config
from .database import FaceStore
from .logger import setup_logger


class ClientProvider:
    """Builds the descriptor store client lazily and keeps one per configuration.

    ``generation`` counts configuration changes. The cached client always
    belongs to the current generation; :meth:`invalidate` closes it so the
    next :meth:`get_client` call rebuilds from the persisted settings.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        client_factory: Optional[Callable[[SupabaseConfig], FaceStore]] = None,
    ):
        self.config_store = config_store
        self.client_factory = client_factory or (lambda cfg: FaceStore(cfg.url, cfg.anon_key))
        self.generation = 0
        self._client: Optional[FaceStore] = None
        self.logger = setup_logger(self.__class__.__name__)

    @property
    def configured(self) -> bool:
        return self.config_store.has_config()

    def current_config(self) -> SupabaseConfig:
        return self.config_store.load() or DEFAULT_CONFIG

    def get_client(self) -> FaceStore:
        if self._client is None:
            config = self.current_config()
            self._client = self.client_factory(config)
            self.logger.info("Database client created for %s (generation %d)", config.url, self.generation)
        return self._client

    def invalidate(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
        self.generation += 1

    def save_config(self, url: str, anon_key: str) -> SupabaseConfig:
        config = validate_config(url, anon_key)
        self.config_store.save(config)
        self.invalidate()
        self.logger.info("Database configuration saved for %s", config.url)
        return config
