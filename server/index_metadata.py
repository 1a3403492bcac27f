import logging
import pickle
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from storage_backend import EQ, SORT_KEY, Condition, IndexSlot, StorageBackend
from store_errors import BackendCallError, ConfigurationError

logger = logging.getLogger(__name__)

METADATA_COLLECTION = "_metadata_"
INDEXES_ATTR = "indexes"

_SLOTS_KEY = "slots"

DEFAULT_TTL_SECONDS = 600

Loader = Callable[[], Awaitable[Any]]


class MetadataCache(ABC):
    """
    Process-lifetime cache of derived table metadata.

    Values are derived deterministically from the backend, so two concurrent
    loads of the same key simply store the same value twice.
    """

    @abstractmethod
    async def get_or_load(self, key: str, loader: Loader) -> Any:
        pass

    @abstractmethod
    def invalidate(self, key: Optional[str] = None):
        pass


class MemoryMetadataCache(MetadataCache):
    def __init__(self):
        self._values: Dict[str, Any] = {}

    async def get_or_load(self, key: str, loader: Loader) -> Any:
        if key in self._values:
            return self._values[key]
        value = await loader()
        self._values[key] = value
        return value

    def invalidate(self, key: Optional[str] = None):
        if key is None:
            self._values.clear()
        else:
            self._values.pop(key, None)


class RedisMetadataCache(MetadataCache):
    """
    Shares loaded metadata between processes through redis. Once a value has
    been seen by this process it is pinned locally and redis is not asked again.
    """
    def __init__(self, host: str = "localhost", port: int = 6379, db: int = 0,
                 namespace: str = "docstore", ttl_seconds: Optional[int] = DEFAULT_TTL_SECONDS, **kwargs):
        import redis.asyncio as redis
        self.client = redis.Redis(host=host, port=port, db=db, decode_responses=False, **kwargs)
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self._local: Dict[str, Any] = {}

    def _redis_key(self, key: str) -> str:
        return f"{self.namespace}:meta:{key}"

    async def get_or_load(self, key: str, loader: Loader) -> Any:
        if key in self._local:
            return self._local[key]

        data = await self.client.get(self._redis_key(key))
        if data is not None:
            value = pickle.loads(data)
        else:
            value = await loader()
            # An empty mapping may only mean the metadata record is not written yet
            if value:
                await self.client.set(self._redis_key(key), pickle.dumps(value), ex=self.ttl_seconds)

        self._local[key] = value
        return value

    def invalidate(self, key: Optional[str] = None):
        # Local only; the shared copy stays valid for other processes
        if key is None:
            self._local.clear()
        else:
            self._local.pop(key, None)

    async def close(self):
        await self.client.aclose()


def get_metadata_cache(cache_type: str = "memory", **kwargs) -> MetadataCache:
    if cache_type == "memory":
        return MemoryMetadataCache()
    elif cache_type == "redis":
        return RedisMetadataCache(**kwargs)
    else:
        raise ValueError(f"Unknown cache type: {cache_type}")


class IndexMetadata:
    """
    Physical slots of the table and, per collection, the logical fields bound
    to them. A collection's mapping is a record in the metadata collection:

        {"id": "users", "indexes": ["name", "key"]}   # name -> slot 1, key -> slot 2
    """
    def __init__(
        self,
        backend: StorageBackend,
        cache: Optional[MetadataCache] = None,
        metadata_collection: str = METADATA_COLLECTION,
    ):
        self.backend = backend
        self.cache = cache or MemoryMetadataCache()
        self.metadata_collection = metadata_collection

    async def _load_slots(self) -> List[IndexSlot]:
        try:
            slots = await self.backend.describe_table()
        except BackendCallError as e:
            raise ConfigurationError(f"Table description unavailable: {e}") from e
        if not slots:
            # Only loaded for collections with a non-empty mapping
            raise ConfigurationError("Table declares no index slots; was it created with create_table()?")
        if len(slots) > self.backend.limits.max_index_slots:
            raise ConfigurationError(
                f"Table declares {len(slots)} index slots, backend supports {self.backend.limits.max_index_slots}"
            )
        return sorted(slots, key=lambda s: s.index_name)

    async def get_physical_slots(self) -> List[IndexSlot]:
        return await self.cache.get_or_load(_SLOTS_KEY, self._load_slots)

    async def _load_mapping(self, collection: str) -> List[str]:
        result = await self.backend.query(
            self.metadata_collection,
            key_condition=Condition(SORT_KEY, EQ, collection),
        )
        if not result.items:
            logger.debug("No index metadata for collection '%s'", collection)
            return []

        indexes = result.items[0].get(INDEXES_ATTR) or []
        if not isinstance(indexes, list) or not all(isinstance(f, str) and f for f in indexes):
            raise ConfigurationError(
                f"Malformed '{INDEXES_ATTR}' in metadata for '{collection}': {indexes!r}"
            )
        return list(indexes)

    async def get_index_mapping(self, collection: str) -> List[str]:
        if collection == self.metadata_collection:
            return []
        return await self.cache.get_or_load(f"mapping:{collection}", lambda: self._load_mapping(collection))

    async def get_bindings(self, collection: str) -> List[Tuple[str, IndexSlot]]:
        """Logical field -> physical slot pairs, by position."""
        mapping = await self.get_index_mapping(collection)
        if not mapping:
            return []
        slots = await self.get_physical_slots()
        if len(mapping) > len(slots):
            logger.warning(
                "Collection '%s' maps %d fields but the table has %d slots; ignoring %s",
                collection, len(mapping), len(slots), mapping[len(slots):],
            )
        return list(zip(mapping, slots))
