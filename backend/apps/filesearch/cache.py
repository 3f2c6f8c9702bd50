"""
In-process cache of File Search store handles, keyed by agent id.

Saves a database round trip on every chat message.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 60 * 60  # 1 hour


@dataclass(frozen=True)
class StoreHandle:
    """A provisioned retrieval store for one agent."""
    id: str
    agent_id: str
    store_id: str  # external File Search store name
    name: str
    description: Optional[str]
    created_at: datetime

    @classmethod
    def from_model(cls, store) -> 'StoreHandle':
        return cls(
            id=str(store.id),
            agent_id=store.agent_id,
            store_id=store.store_id,
            name=store.name,
            description=store.description,
            created_at=store.created_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "storeId": self.store_id,
            "name": self.name,
            "description": self.description,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class CachedStore:
    handle: StoreHandle
    cached_at: float


class FileSearchStoreCache:
    """
    Thread-safe store handle cache with TTL.

    Entries older than the TTL are treated as absent and evicted on read.
    """

    def __init__(self, ttl: float = DEFAULT_CACHE_TTL, clock: Callable[[], float] = time.time):
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CachedStore] = {}
        self._lock = threading.RLock()

    def get(self, agent_id: str) -> Optional[StoreHandle]:
        with self._lock:
            entry = self._entries.get(agent_id)
            if entry is None:
                return None

            if self._clock() - entry.cached_at >= self._ttl:
                del self._entries[agent_id]
                return None

            return entry.handle

    def set(self, handle: StoreHandle) -> None:
        with self._lock:
            self._entries[handle.agent_id] = CachedStore(handle=handle, cached_at=self._clock())

    def clear(self, agent_id: str) -> None:
        """Clear the cache entry for an agent."""
        with self._lock:
            self._entries.pop(agent_id, None)

    def clear_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "entries": list(self._entries.keys()),
            }
