import json
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ValidationError, field_validator

from .config import CONFIG_STORAGE_KEY, LOCAL_STORAGE_PATH, SUPABASE_HOST_SUFFIX
from .exceptions import InvalidConfiguration
from .logger import setup_logger

logger = setup_logger("config_store")

SETUP_SQL = """CREATE TABLE faces (
  id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
  name TEXT NOT NULL,
  descriptor JSONB NOT NULL,
  image_url TEXT,
  created_at TIMESTAMPTZ DEFAULT NOW(),
  updated_at TIMESTAMPTZ DEFAULT NOW()
);

ALTER TABLE faces ENABLE ROW LEVEL SECURITY;

CREATE POLICY "Anyone can manage faces" ON faces
FOR ALL USING (true) WITH CHECK (true);"""


class SupabaseConfig(BaseModel):
    url: str
    anon_key: str


# Placeholder used until the user saves real project details.
DEFAULT_CONFIG = SupabaseConfig(url="https://YOUR_SUPABASE_ID.supabase.co", anon_key="YOUR_ANON_KEY")


class _ConfigForm(SupabaseConfig):
    @field_validator("url", "anon_key")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Please enter both the Supabase URL and the anonymous key.")
        return value


def validate_config(url: str, anon_key: str, host_suffix: str = SUPABASE_HOST_SUFFIX) -> SupabaseConfig:
    """Check form input and return the trimmed configuration.

    Raises :class:`InvalidConfiguration` for blank fields, URLs that do not
    parse as absolute http(s) addresses, and hosts outside ``host_suffix``.
    """
    try:
        form = _ConfigForm(url=url, anon_key=anon_key)
    except ValidationError as exc:
        raise InvalidConfiguration(exc.errors()[0]["msg"].removeprefix("Value error, ")) from exc

    try:
        parsed = urlparse(form.url)
        hostname = parsed.hostname
    except ValueError as exc:
        raise InvalidConfiguration("Please enter a valid Supabase URL.") from exc
    if parsed.scheme not in {"http", "https"} or not hostname:
        raise InvalidConfiguration("Please enter a valid Supabase URL.")
    if not hostname.endswith(host_suffix):
        raise InvalidConfiguration(f"URL should be in format: https://your-project{host_suffix}")

    return SupabaseConfig(url=form.url, anon_key=form.anon_key)


class ConfigStore:
    """A JSON file of named slots; the database settings live in one slot."""

    def __init__(self, path: Path = LOCAL_STORAGE_PATH, key: str = CONFIG_STORAGE_KEY):
        self.path = Path(path)
        self.key = key

    def _read_slots(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            slots = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Error reading configuration from %s: %s", self.path, exc)
            return {}
        return slots if isinstance(slots, dict) else {}

    def load(self) -> Optional[SupabaseConfig]:
        raw = self._read_slots().get(self.key)
        if raw is None:
            return None
        try:
            return SupabaseConfig.model_validate_json(raw) if isinstance(raw, str) else SupabaseConfig.model_validate(raw)
        except ValidationError as exc:
            logger.error("Stored configuration is unreadable: %s", exc)
            return None

    def save(self, config: SupabaseConfig) -> None:
        slots = self._read_slots()
        slots[self.key] = config.model_dump_json()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(slots, indent=2), encoding="utf-8")

    def has_config(self) -> bool:
        return self.load() is not None
