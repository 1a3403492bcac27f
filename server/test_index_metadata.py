import unittest
import uuid

from index_metadata import (
    DEFAULT_TTL_SECONDS, IndexMetadata, MemoryMetadataCache, RedisMetadataCache, get_metadata_cache,
)
from storage_backend import InMemoryBackend, IndexSlot
from store_errors import BackendCallError, ConfigurationError


class BrokenDescribeBackend(InMemoryBackend):
    async def describe_table(self):
        raise BackendCallError("table not found", operation="describe_table")


class TestIndexMetadata(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = InMemoryBackend()
        self.metadata = IndexMetadata(self.backend)
        await self.backend.batch_put("_metadata_", [
            {"id": "users", "indexes": ["name", "key"]},
            {"id": "groups", "indexes": ["name"]},
            {"id": "broken", "indexes": "name"},
        ])

    async def test_physical_slots_sorted_by_index_name(self):
        backend = InMemoryBackend(slot_fields=("_3", "_1", "_2"))
        slots = await IndexMetadata(backend).get_physical_slots()
        self.assertEqual([s.field for s in slots], ["_1", "_2", "_3"])

    async def test_bindings(self):
        bindings = await self.metadata.get_bindings("users")
        self.assertEqual(bindings, [
            ("name", IndexSlot("_1", "_-_1-index")),
            ("key", IndexSlot("_2", "_-_2-index")),
        ])

    async def test_unmapped_collection(self):
        self.assertEqual(await self.metadata.get_index_mapping("nothing"), [])
        self.assertEqual(await self.metadata.get_bindings("nothing"), [])

    async def test_metadata_collection_has_no_indexes(self):
        self.assertEqual(await self.metadata.get_index_mapping("_metadata_"), [])

    async def test_malformed_mapping(self):
        with self.assertRaises(ConfigurationError):
            await self.metadata.get_index_mapping("broken")

    async def test_too_many_slots(self):
        backend = InMemoryBackend(slot_fields=("_1", "_2", "_3", "_4", "_5", "_6"))
        with self.assertRaises(ConfigurationError):
            await IndexMetadata(backend).get_physical_slots()

    async def test_describe_failure(self):
        with self.assertRaises(ConfigurationError):
            await IndexMetadata(BrokenDescribeBackend()).get_physical_slots()

    async def test_table_without_slots(self):
        backend = InMemoryBackend(slot_fields=())
        await backend.batch_put("_metadata_", [{"id": "users", "indexes": ["name"]}])
        metadata = IndexMetadata(backend)
        with self.assertRaises(ConfigurationError):
            await metadata.get_bindings("users")
        # Collections without indexes never need the slots
        self.assertEqual(await metadata.get_bindings("plain"), [])

    async def test_extra_mapped_fields_are_ignored(self):
        backend = InMemoryBackend(slot_fields=("_1", "_2"))
        await backend.batch_put("_metadata_", [{"id": "wide", "indexes": ["a", "b", "c"]}])
        with self.assertLogs("index_metadata", level="WARNING"):
            bindings = await IndexMetadata(backend).get_bindings("wide")
        self.assertEqual([f for f, _ in bindings], ["a", "b"])

    async def test_mapping_is_cached_until_invalidated(self):
        self.assertEqual(await self.metadata.get_index_mapping("groups"), ["name"])
        await self.backend.batch_put("_metadata_", [{"id": "groups", "indexes": ["name", "age"]}])
        self.assertEqual(await self.metadata.get_index_mapping("groups"), ["name"])

        self.metadata.cache.invalidate("mapping:groups")
        self.assertEqual(await self.metadata.get_index_mapping("groups"), ["name", "age"])


class TestMetadataCache(unittest.IsolatedAsyncioTestCase):
    async def test_memory_cache_loads_once(self):
        calls = []

        async def loader():
            calls.append(1)
            return ["name"]

        cache = MemoryMetadataCache()
        self.assertEqual(await cache.get_or_load("k", loader), ["name"])
        self.assertEqual(await cache.get_or_load("k", loader), ["name"])
        self.assertEqual(len(calls), 1)

        cache.invalidate()
        await cache.get_or_load("k", loader)
        self.assertEqual(len(calls), 2)

    def test_factory(self):
        self.assertIsInstance(get_metadata_cache("memory"), MemoryMetadataCache)
        with self.assertRaises(ValueError):
            get_metadata_cache("memcached")

    async def test_redis_cache(self):
        namespace = f"docstore-test-{uuid.uuid4().hex}"
        first = RedisMetadataCache(namespace=namespace, socket_connect_timeout=1)
        try:
            await first.client.ping()
        except Exception as e:
            await first.close()
            self.skipTest(f"Redis not available: {e}")

        second = RedisMetadataCache(namespace=namespace, socket_connect_timeout=1)
        try:
            calls = []

            async def loader():
                calls.append(1)
                return [IndexSlot("_1", "_-_1-index")]

            self.assertEqual(await first.get_or_load("slots", loader), [IndexSlot("_1", "_-_1-index")])
            # Another process sees the shared value without loading
            self.assertEqual(await second.get_or_load("slots", loader), [IndexSlot("_1", "_-_1-index")])
            self.assertEqual(len(calls), 1)

            ttl = await first.client.ttl(first._redis_key("slots"))
            self.assertTrue(0 < ttl <= DEFAULT_TTL_SECONDS)

            async def empty_loader():
                return []

            # Not shared: the metadata record may simply not exist yet
            self.assertEqual(await first.get_or_load("mapping:memos", empty_loader), [])
            self.assertIsNone(await first.client.get(first._redis_key("mapping:memos")))
            self.assertEqual(await second.get_or_load("mapping:memos", loader), [IndexSlot("_1", "_-_1-index")])
        finally:
            await first.client.delete(first._redis_key("slots"), first._redis_key("mapping:memos"))
            await first.close()
            await second.close()


if __name__ == "__main__":
    unittest.main()
