import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from index_metadata import (
    METADATA_COLLECTION, IndexMetadata, MetadataCache, RedisMetadataCache, get_metadata_cache,
)
from query_planner import QueryPlan, QueryPlanner, parse_filter
from record_adapter import (
    ID_FIELD, chunked, dedupe, field_changes, prepare_for_write, record_id,
    strip_control_fields, to_record,
)
from storage_backend import SELECT_ALL, SELECT_COUNT, StorageBackend, get_storage_backend
from store_config import StoreConfig
from store_errors import BackendCallError, LogicalInputError

logger = logging.getLogger(__name__)


def _ids_of(keys: Iterable[Any]) -> List[str]:
    """Ids given either as strings or as {"id": ...} mappings."""
    ids = []
    for k in keys:
        rid = k.get(ID_FIELD) if isinstance(k, Mapping) else k
        if not isinstance(rid, str) or not rid:
            raise LogicalInputError(f"Invalid id {rid!r}")
        ids.append(rid)
    return ids


class DocumentStore:
    """
    Collections of schemaless records on a table that only offers a partition
    key, an `id` sort key and a handful of begins-with range indexes.

    Indexed fields per collection come from records in the metadata collection:

        await store.batch_write("_metadata_", [{"id": "memos", "indexes": ["name", "age"]}])
        await store.batch_write("memos", [{"id": "1", "name": "hello", "age": 20}])
        await store.query("memos", filter={"name%": "he"}, sort=("age", "ASC"))
    """
    def __init__(
        self,
        backend: StorageBackend,
        page_limit: Optional[int] = None,
        metadata_cache: Optional[MetadataCache] = None,
        metadata_collection: str = METADATA_COLLECTION,
    ):
        self.backend = backend
        self.metadata = IndexMetadata(backend, metadata_cache, metadata_collection)
        self.planner = QueryPlanner(self.metadata, page_limit)

    @classmethod
    def from_config(cls, config: StoreConfig) -> "DocumentStore":
        if config.backend == "mongo":
            backend = get_storage_backend(
                "mongo",
                connection_string=config.mongo_url,
                database_name=config.mongo_database,
                table_name=config.table_name,
            )
        elif config.backend == "dynamodb":
            backend = get_storage_backend(
                "dynamodb",
                table_name=config.table_name,
                region_name=config.aws_region,
                endpoint_url=config.dynamodb_endpoint_url,
            )
        else:
            backend = get_storage_backend("memory")

        if config.metadata_cache == "redis":
            cache = get_metadata_cache(
                "redis",
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                namespace=f"docstore:{config.table_name}",
            )
        else:
            cache = get_metadata_cache("memory")

        return cls(backend, config.page_limit, cache, config.metadata_collection)

    @property
    def partition_key(self) -> str:
        return self.backend.partition_key

    async def _strip(self, collection: str, records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        bindings = await self.metadata.get_bindings(collection)
        return strip_control_fields(records, bindings, self.partition_key)

    async def _run(self, plan: QueryPlan, select: str = SELECT_ALL):
        return await self.backend.query(
            plan.collection,
            key_condition=plan.key_condition,
            index_name=plan.index_name,
            filters=plan.filters,
            forward=plan.forward,
            limit=plan.limit,
            select=select,
        )

    def _id_set(self, filter: Optional[Mapping[str, Any]]) -> Optional[List[str]]:
        """The ids of a filter that only asks for a set of ids, else None."""
        entries = parse_filter(filter, self.partition_key)
        id_sets = [e for e in entries if e.field == ID_FIELD and e.is_set]
        if not id_sets:
            return None
        if len(entries) > 1:
            raise LogicalInputError("A set of ids cannot be combined with other filters")
        return _ids_of(id_sets[0].value)

    async def read(self, collection: str, id: str) -> Optional[Dict[str, Any]]:
        _ids_of([id])
        items = await self.query(collection, filter={ID_FIELD: id})
        return items[0] if items else None

    async def query(
        self,
        collection: str,
        filter: Optional[Mapping[str, Any]] = None,
        sort: Any = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ids = self._id_set(filter)
        if ids is not None:
            found = {r[ID_FIELD]: r for r in await self.batch_get(collection, ids)}
            return [found[i] for i in dedupe(ids) if i in found]

        plan = await self.planner.plan(collection, filter, sort, limit)
        result = await self._run(plan)
        return await self._strip(collection, result.items)

    async def count(
        self,
        collection: str,
        filter: Optional[Mapping[str, Any]] = None,
        sort: Any = None,
    ) -> int:
        ids = self._id_set(filter)
        if ids is not None:
            return len(await self.batch_get(collection, ids))

        plan = await self.planner.plan(collection, filter, sort, count=True)
        result = await self._run(plan, select=SELECT_COUNT)
        return result.count

    async def update(
        self,
        collection: str,
        record: Any,
        previous: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Writes the record's fields onto the stored one. Fields that are None or ""
        (or that were in `previous` and are gone now) are removed.
        """
        record = to_record(record)
        rid = record_id(record)
        bindings = await self.metadata.get_bindings(collection)
        puts, removes = field_changes(collection, record, bindings, previous, self.partition_key)
        stored = await self.backend.put_or_update(collection, rid, puts, removes)
        return strip_control_fields([stored], bindings, self.partition_key)[0]

    async def delete(self, collection: str, id: str) -> Optional[Dict[str, Any]]:
        _ids_of([id])
        deleted = await self.backend.delete_point(collection, id)
        if deleted is None:
            return None
        return (await self._strip(collection, [deleted]))[0]

    async def delete_all(self, collection: str) -> int:
        page = self.planner.page_limit or self.backend.limits.batch_get_size
        deleted = 0
        while True:
            result = await self.backend.query(collection, limit=page)
            if not result.items:
                return deleted
            for item in result.items:
                await self.backend.delete_point(collection, item[ID_FIELD])
                deleted += 1
            logger.debug("delete_all %s: %d deleted", collection, deleted)

    async def batch_write(self, collection: str, records: Iterable[Any]):
        items = dedupe((to_record(r) for r in records), key=record_id)
        bindings = await self.metadata.get_bindings(collection)
        physical = [prepare_for_write(collection, r, bindings, self.partition_key) for r in items]

        chunks = list(chunked(physical, self.backend.limits.batch_write_size))
        for i, chunk in enumerate(chunks):
            logger.debug("batch_write %s %d/%d", collection, i + 1, len(chunks))
            try:
                await self.backend.batch_put(collection, chunk)
            except BackendCallError as e:
                raise BackendCallError(str(e), operation="batch_write", chunk_index=i) from e

    async def batch_get(self, collection: str, ids: Iterable[Any]) -> List[Dict[str, Any]]:
        unique = dedupe(_ids_of(ids))
        chunks = list(chunked(unique, self.backend.limits.batch_get_size))
        results: List[Dict[str, Any]] = []
        for i, chunk in enumerate(chunks):
            logger.debug("batch_get %s %d/%d", collection, i + 1, len(chunks))
            try:
                results.extend(await self.backend.batch_get(collection, chunk))
            except BackendCallError as e:
                raise BackendCallError(str(e), operation="batch_get", chunk_index=i) from e
        return await self._strip(collection, results)

    async def create_table(self):
        await self.backend.create_table()

    async def drop_table(self):
        await self.backend.drop_table()
        self.metadata.cache.invalidate()

    async def close(self):
        await self.backend.close()
        if isinstance(self.metadata.cache, RedisMetadataCache):
            await self.metadata.cache.close()
