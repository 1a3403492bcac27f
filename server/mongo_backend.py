import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, ReplaceOne, ReturnDocument
from pymongo.errors import PyMongoError

from storage_backend import (
    BEGINS_WITH, DEFAULT_SLOT_FIELDS, EQ, IN, SELECT_ALL, SELECT_COUNT, SORT_KEY,
    BackendLimits, Condition, IndexSlot, QueryResult, StorageBackend, index_name_for,
)
from store_errors import BackendCallError

logger = logging.getLogger(__name__)

_NO_ID = {"_id": False}
_MAX_CHAR = chr(0x10FFFF)


def _prefix_upper_bound(prefix: str) -> Optional[str]:
    """Smallest string greater than every string starting with prefix."""
    chars = list(prefix)
    while chars:
        last = chars.pop()
        if last != _MAX_CHAR:
            return "".join(chars) + chr(ord(last) + 1)
    return None


def _condition_to_mongo(c: Condition) -> Dict[str, Any]:
    if c.op == EQ:
        return {c.field: c.value}
    if c.op == IN:
        return {c.field: {"$in": list(c.value)}}
    if c.op == BEGINS_WITH:
        # Range instead of $regex: composite keys contain NUL characters
        bounds: Dict[str, Any] = {"$gte": c.value}
        upper = _prefix_upper_bound(c.value)
        if upper is not None:
            bounds["$lt"] = upper
        return {c.field: bounds}
    raise ValueError(f"Unknown operator {c.op}")


class MongoBackend(StorageBackend):
    """
    One MongoDB collection plays the role of the table: documents carry the
    partition field, the id and the slot fields, and each slot gets a compound
    (partition, slot) index.
    """
    def __init__(
        self,
        connection_string: str = "mongodb://localhost:27017/",
        database_name: str = "docstore",
        table_name: str = "documents",
        slot_fields: Tuple[str, ...] = DEFAULT_SLOT_FIELDS,
        limits: Optional[BackendLimits] = None,
        client: Optional[AsyncMongoClient] = None,
    ):
        self.client = client or AsyncMongoClient(connection_string)
        self.db = self.client[database_name]
        self.table_name = table_name
        self.collection = self.db[table_name]
        self.slot_fields = tuple(slot_fields)
        self.limits = limits or BackendLimits()
        self._index_fields: Optional[Dict[str, str]] = None

    def _key(self, partition: str, id: str) -> Dict[str, Any]:
        return {self.partition_key: partition, SORT_KEY: id}

    async def describe_table(self) -> List[IndexSlot]:
        try:
            # index_information() gives {} for a missing collection
            if not await self.db.list_collection_names(filter={"name": self.table_name}):
                raise BackendCallError(
                    f"Collection '{self.table_name}' does not exist; call create_table() first",
                    operation="describe_table",
                )
            info = await self.collection.index_information()
        except PyMongoError as e:
            raise BackendCallError(f"MongoDB describe error: {e}", operation="describe_table") from e

        slots = []
        for name, spec in info.items():
            keys = [k for k, _ in spec["key"]]
            if len(keys) == 2 and keys[0] == self.partition_key and keys[1] != SORT_KEY:
                slots.append(IndexSlot(keys[1], name))
        return sorted(slots, key=lambda s: s.index_name)

    async def _range_field(self, index_name: Optional[str]) -> str:
        if index_name is None:
            return SORT_KEY
        if self._index_fields is None or index_name not in self._index_fields:
            self._index_fields = {s.index_name: s.field for s in await self.describe_table()}
        if index_name in self._index_fields:
            return self._index_fields[index_name]
        raise BackendCallError(f"Unknown index {index_name}", operation="query")

    async def query(
        self,
        partition: str,
        key_condition: Optional[Condition] = None,
        index_name: Optional[str] = None,
        filters: Optional[List[Condition]] = None,
        forward: bool = False,
        limit: Optional[int] = None,
        select: str = SELECT_ALL,
    ) -> QueryResult:
        range_field = await self._range_field(index_name)

        clauses: List[Dict[str, Any]] = [{self.partition_key: partition}]
        if key_condition is not None:
            clauses.append(_condition_to_mongo(key_condition))
        else:
            clauses.append({range_field: {"$exists": True}})
        for c in filters or []:
            clauses.append(_condition_to_mongo(c))
        query = {"$and": clauses}

        try:
            if select == SELECT_COUNT:
                kwargs = {"limit": limit} if limit else {}
                count = await self.collection.count_documents(query, **kwargs)
                return QueryResult(items=[], count=count)

            cursor = self.collection.find(query, _NO_ID).sort(range_field, ASCENDING if forward else DESCENDING)
            if limit:
                cursor = cursor.limit(limit)
            items = [doc async for doc in cursor]
        except PyMongoError as e:
            raise BackendCallError(f"MongoDB query error: {e}", operation="query") from e
        return QueryResult(items=items, count=len(items))

    async def put_or_update(self, partition: str, id: str, puts: Dict[str, Any], removes: List[str]) -> Dict[str, Any]:
        # $set is never empty: re-setting the id is a no-op on existing documents
        update: Dict[str, Any] = {"$set": {**puts, SORT_KEY: id}}
        if removes:
            update["$unset"] = {k: "" for k in removes}
        try:
            return await self.collection.find_one_and_update(
                self._key(partition, id),
                update,
                projection=_NO_ID,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise BackendCallError(f"MongoDB update error: {e}", operation="put_or_update") from e

    async def delete_point(self, partition: str, id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.collection.find_one_and_delete(self._key(partition, id), projection=_NO_ID)
        except PyMongoError as e:
            raise BackendCallError(f"MongoDB delete error: {e}", operation="delete_point") from e

    async def batch_put(self, partition: str, records: List[Dict[str, Any]]):
        operations = []
        for r in records:
            doc = dict(r)
            doc[self.partition_key] = partition
            operations.append(ReplaceOne(self._key(partition, doc[SORT_KEY]), doc, upsert=True))
        if not operations:
            return
        try:
            await self.collection.bulk_write(operations, ordered=True)
        except PyMongoError as e:
            raise BackendCallError(f"MongoDB batch write error: {e}", operation="batch_put") from e

    async def batch_get(self, partition: str, ids: List[str]) -> List[Dict[str, Any]]:
        query = {self.partition_key: partition, SORT_KEY: {"$in": list(ids)}}
        try:
            return [doc async for doc in self.collection.find(query, _NO_ID)]
        except PyMongoError as e:
            raise BackendCallError(f"MongoDB batch get error: {e}", operation="batch_get") from e

    async def create_table(self):
        try:
            await self.collection.create_index(
                [(self.partition_key, ASCENDING), (SORT_KEY, ASCENDING)],
                name=f"{self.partition_key}-{SORT_KEY}-primary",
                unique=True,
            )
            for f in self.slot_fields:
                await self.collection.create_index(
                    [(self.partition_key, ASCENDING), (f, ASCENDING)],
                    name=index_name_for(f, self.partition_key),
                )
        except PyMongoError as e:
            raise BackendCallError(f"MongoDB create error: {e}", operation="create_table") from e

    async def drop_table(self):
        try:
            await self.collection.drop()
        except PyMongoError as e:
            raise BackendCallError(f"MongoDB drop error: {e}", operation="drop_table") from e
        self._index_fields = None

    async def close(self):
        await self.client.close()
