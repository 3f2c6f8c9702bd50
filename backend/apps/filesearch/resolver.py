"""
Store resolution: agent id -> File Search store handle.

Lookup order is cache, then database, then provisioning a new external
store. Provisioning for a given agent is single-flight within the process,
and the unique constraint on agent_id settles races between processes.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from django.conf import settings
from django.db import DatabaseError, IntegrityError

from apps.authn.audit import audit_store_deleted, audit_store_provisioned
from .cache import FileSearchStoreCache, StoreHandle
from .client import FileSearchClient, FileSearchError
from .models import FileSearchStore

logger = logging.getLogger(__name__)


class StoreResolutionError(Exception):
    """Raised when a store cannot be loaded, provisioned or persisted."""

    def __init__(self, message: str, agent_id: Optional[str] = None):
        super().__init__(message)
        self.agent_id = agent_id


def store_display_name(agent_id: str) -> str:
    return f"{agent_id}-store"


def store_description(agent_id: str) -> str:
    return f"File Search store for {agent_id} agent"


class StoreRepository:
    """Persistence of store handles through the Django ORM."""

    async def get_by_agent_id(self, agent_id: str) -> Optional[StoreHandle]:
        store = await FileSearchStore.objects.filter(agent_id=agent_id).afirst()
        return StoreHandle.from_model(store) if store else None

    async def insert(self, agent_id: str, store_id: str, name: str, description: Optional[str]) -> StoreHandle:
        store = await FileSearchStore.objects.acreate(
            agent_id=agent_id,
            store_id=store_id,
            name=name,
            description=description,
        )
        return StoreHandle.from_model(store)

    async def list_all(self) -> List[StoreHandle]:
        return [StoreHandle.from_model(store) async for store in FileSearchStore.objects.all()]

    async def delete_by_store_id(self, store_id: str) -> Optional[StoreHandle]:
        store = await FileSearchStore.objects.filter(store_id=store_id).afirst()
        if store is None:
            return None
        handle = StoreHandle.from_model(store)
        await store.adelete()
        return handle


class StoreResolver:
    """Resolve, list and delete File Search stores for agents."""

    def __init__(
        self,
        cache: Optional[FileSearchStoreCache] = None,
        repository: Optional[StoreRepository] = None,
        client: Optional[FileSearchClient] = None,
    ):
        self.cache = cache or FileSearchStoreCache(
            ttl=getattr(settings, 'FILE_SEARCH_CACHE_TTL', 3600)
        )
        self.repository = repository or StoreRepository()
        self._client = client
        # One lock per agent id; the set of agents is small and static
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def client(self) -> FileSearchClient:
        if self._client is None:
            self._client = FileSearchClient()
        return self._client

    async def resolve(self, agent_id: str) -> StoreHandle:
        """
        Get the File Search store for an agent, creating it if needed.

        Repeated calls return the same handle without provisioning twice.

        Raises:
            StoreResolutionError: If loading, provisioning or persisting fails
        """
        cached = self.cache.get(agent_id)
        if cached:
            logger.debug(f"File Search store found in cache: agent={agent_id}, store={cached.store_id}")
            return cached

        lock = self._locks.setdefault(agent_id, asyncio.Lock())
        async with lock:
            # A concurrent call may have finished while we waited
            cached = self.cache.get(agent_id)
            if cached:
                return cached

            handle = await self._load(agent_id)
            if handle:
                logger.debug(f"File Search store cached from database: agent={agent_id}, store={handle.store_id}")
            else:
                handle = await self._provision(agent_id)

            self.cache.set(handle)
            return handle

    async def _load(self, agent_id: str) -> Optional[StoreHandle]:
        try:
            return await self.repository.get_by_agent_id(agent_id)
        except DatabaseError as e:
            logger.error(f"Error loading File Search store for {agent_id}: {e}")
            raise StoreResolutionError(f"Could not load File Search store for {agent_id}", agent_id) from e

    async def _provision(self, agent_id: str) -> StoreHandle:
        name = store_display_name(agent_id)

        try:
            store_id = await self.client.create_store(name)
        except FileSearchError as e:
            logger.error(f"Error creating File Search store for {agent_id}: {e}")
            raise StoreResolutionError(f"Could not create File Search store for {agent_id}", agent_id) from e

        try:
            handle = await self.repository.insert(agent_id, store_id, name, store_description(agent_id))
        except IntegrityError:
            # Another process registered a store for this agent first
            logger.warning(f"File Search store for {agent_id} created concurrently, discarding {store_id}")
            await self._discard_external_store(store_id)
            existing = await self._load(agent_id)
            if existing is None:
                raise StoreResolutionError(f"Could not persist File Search store for {agent_id}", agent_id)
            return existing
        except DatabaseError as e:
            logger.error(f"Error saving File Search store for {agent_id}: {e}")
            await self._discard_external_store(store_id)
            raise StoreResolutionError(f"Could not persist File Search store for {agent_id}", agent_id) from e

        audit_store_provisioned(agent_id, store_id)
        logger.info(f"Provisioned File Search store for {agent_id}: {store_id}")
        return handle

    async def _discard_external_store(self, store_id: str) -> None:
        try:
            await self.client.delete_store(store_id)
        except FileSearchError as e:
            logger.warning(f"Could not delete orphaned File Search store {store_id}: {e}")

    async def list_stores(self) -> List[StoreHandle]:
        return await self.repository.list_all()

    async def delete(self, store_id: str) -> bool:
        """
        Delete an external store, its database row and the cached handle.

        Returns:
            True if a stored handle was removed
        """
        try:
            await self.client.delete_store(store_id)
            handle = await self.repository.delete_by_store_id(store_id)
        except (FileSearchError, DatabaseError) as e:
            logger.error(f"Error deleting File Search store {store_id}: {e}")
            raise StoreResolutionError(f"Could not delete File Search store {store_id}") from e

        if handle is None:
            return False

        self.cache.clear(handle.agent_id)
        audit_store_deleted(handle.agent_id, store_id)
        return True


# Global singleton instance
_resolver: Optional[StoreResolver] = None


def get_resolver() -> StoreResolver:
    """Get the process-wide store resolver."""
    global _resolver
    if _resolver is None:
        _resolver = StoreResolver()
    return _resolver


def reset_resolver():
    """Drop the process-wide resolver. Useful for testing."""
    global _resolver
    _resolver = None
