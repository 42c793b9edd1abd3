import time
from collections import deque
from dataclasses import asdict, dataclass, field
from itertools import count
from typing import Deque, List

from .config import NOTIFICATION_HISTORY


@dataclass(frozen=True)
class Notification:
    id: int
    title: str
    description: str
    variant: str = "default"
    created_at: float = field(default_factory=time.time)


class NotificationCenter:
    """Recent toast messages for the UI; old ones fall off the end."""

    def __init__(self, max_items: int = NOTIFICATION_HISTORY):
        self._items: Deque[Notification] = deque(maxlen=max(1, max_items))
        self._ids = count(1)

    def push(self, title: str, description: str, variant: str = "default") -> Notification:
        item = Notification(id=next(self._ids), title=title, description=description, variant=variant)
        self._items.append(item)
        return item

    def error(self, title: str, description: str) -> Notification:
        return self.push(title, description, variant="destructive")

    def since(self, last_id: int = 0) -> List[dict]:
        return [asdict(item) for item in self._items if item.id > last_id]
