from dataclasses import dataclass
from numbers import Real
from typing import Any, List, Optional

import numpy as np
import requests

from .config import EMBEDDING_DIM, FACES_TABLE, STORE_REQUEST_TIMEOUT_SECONDS
from .exceptions import StoreDeleteFailed, StoreReadFailed, StoreWriteFailed
from .logger import setup_logger

logger = setup_logger("database")


@dataclass(frozen=True)
class RegisteredFace:
    id: str
    name: str
    descriptor: np.ndarray
    created_at: str
    image_url: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class FaceProfile:
    id: str
    name: str
    created_at: str


def sanitize_descriptor(raw: Any, dim: int = EMBEDDING_DIM) -> np.ndarray:
    """Coerce a stored descriptor into a float32 vector of length ``dim``.

    Non-numeric entries become 0.0. Anything that is not a sequence of the
    expected length becomes all zeros.
    """
    if not isinstance(raw, (list, tuple, np.ndarray)) or len(raw) != dim:
        logger.warning("Malformed descriptor replaced with zeros (expected %d values)", dim)
        return np.zeros(dim, dtype=np.float32)

    values = [
        float(value) if isinstance(value, Real) and not isinstance(value, bool) and np.isfinite(value) else 0.0
        for value in raw
    ]
    return np.asarray(values, dtype=np.float32)


class FaceStore:
    """Client for the ``faces`` table behind a Supabase PostgREST endpoint."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        table: str = FACES_TABLE,
        timeout: float = STORE_REQUEST_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.url = url.rstrip("/")
        self.table = table
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "apikey": anon_key,
                "Authorization": f"Bearer {anon_key}",
                "Content-Type": "application/json",
            }
        )
        self.closed = False

    @property
    def endpoint(self) -> str:
        return f"{self.url}/rest/v1/{self.table}"

    def close(self) -> None:
        self.session.close()
        self.closed = True

    def list_faces(self) -> List[RegisteredFace]:
        try:
            resp = self.session.get(self.endpoint, params={"select": "*"}, timeout=self.timeout)
            resp.raise_for_status()
            rows = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise StoreReadFailed(f"Could not load registered faces: {exc}") from exc

        return [
            RegisteredFace(
                id=str(row["id"]),
                name=str(row.get("name", "")),
                descriptor=sanitize_descriptor(row.get("descriptor")),
                created_at=str(row.get("created_at", "")),
                image_url=row.get("image_url"),
                updated_at=row.get("updated_at"),
            )
            for row in rows or []
        ]

    def list_profiles(self) -> List[FaceProfile]:
        params = {"select": "id,name,created_at", "order": "created_at.desc"}
        try:
            resp = self.session.get(self.endpoint, params=params, timeout=self.timeout)
            resp.raise_for_status()
            rows = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise StoreReadFailed(f"Could not load registered faces: {exc}") from exc

        return [
            FaceProfile(id=str(row["id"]), name=str(row.get("name", "")), created_at=str(row.get("created_at", "")))
            for row in rows or []
        ]

    def insert_face(self, name: str, descriptor: np.ndarray) -> Optional[str]:
        payload = {
            "name": name,
            "descriptor": [float(v) for v in np.asarray(descriptor, dtype=np.float32).ravel()],
        }
        try:
            resp = self.session.post(
                self.endpoint,
                json=payload,
                headers={"Prefer": "return=representation"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            rows = resp.json() if resp.content else []
        except (requests.RequestException, ValueError) as exc:
            raise StoreWriteFailed(f"Could not register face for {name}: {exc}") from exc

        if rows:
            return str(rows[0].get("id"))
        return None

    def delete_face(self, face_id: str) -> None:
        try:
            resp = self.session.delete(self.endpoint, params={"id": f"eq.{face_id}"}, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise StoreDeleteFailed(f"Could not delete face {face_id}: {exc}") from exc
