import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from record_adapter import get_path
from store_errors import BackendCallError

logger = logging.getLogger(__name__)

PARTITION_KEY = "_"
SORT_KEY = "id"
DEFAULT_SLOT_FIELDS = ("_1", "_2", "_3", "_4", "_5")


def index_name_for(slot_field: str, partition_key: str = PARTITION_KEY) -> str:
    return f"{partition_key}-{slot_field}-index"


@dataclass(frozen=True)
class BackendLimits:
    """Capabilities the adapter has to respect; other engines substitute theirs."""
    max_index_slots: int = 5
    batch_write_size: int = 25
    batch_get_size: int = 100


@dataclass(frozen=True)
class IndexSlot:
    field: str       # physical range attribute, e.g. "_1"
    index_name: str  # backend index ranging over it


EQ = "EQ"
BEGINS_WITH = "BEGINS_WITH"
IN = "IN"


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any

    def matches(self, record: Dict[str, Any]) -> bool:
        actual = get_path(record, self.field)
        if actual is None:
            return False
        if self.op == EQ:
            return actual == self.value
        if self.op == BEGINS_WITH:
            return isinstance(actual, str) and actual.startswith(self.value)
        if self.op == IN:
            return actual in self.value
        raise ValueError(f"Unknown operator {self.op}")


SELECT_ALL = "ALL"
SELECT_COUNT = "COUNT"


@dataclass
class QueryResult:
    items: List[Dict[str, Any]] = field(default_factory=list)
    count: int = 0


class StorageBackend(ABC):
    """
    A table with one partition key, the `id` sort key and a few range-sortable
    secondary indexes, each supporting equality and begins-with conditions.
    """
    partition_key: str = PARTITION_KEY
    limits: BackendLimits = BackendLimits()

    @abstractmethod
    async def describe_table(self) -> List[IndexSlot]:
        pass

    @abstractmethod
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
        pass

    @abstractmethod
    async def put_or_update(self, partition: str, id: str, puts: Dict[str, Any], removes: List[str]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def delete_point(self, partition: str, id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def batch_put(self, partition: str, records: List[Dict[str, Any]]):
        pass

    @abstractmethod
    async def batch_get(self, partition: str, ids: List[str]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_table(self):
        pass

    @abstractmethod
    async def drop_table(self):
        pass

    @abstractmethod
    async def close(self):
        pass


class InMemoryBackend(StorageBackend):
    def __init__(
        self,
        slot_fields: Tuple[str, ...] = DEFAULT_SLOT_FIELDS,
        limits: Optional[BackendLimits] = None,
    ):
        self.slot_fields = tuple(slot_fields)
        self.limits = limits or BackendLimits()
        # Storage: (partition, id) -> record
        self._storage: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def describe_table(self) -> List[IndexSlot]:
        slots = [IndexSlot(f, index_name_for(f, self.partition_key)) for f in self.slot_fields]
        return sorted(slots, key=lambda s: s.index_name)

    def _range_field(self, index_name: Optional[str]) -> str:
        if index_name is None:
            return SORT_KEY
        for f in self.slot_fields:
            if index_name_for(f, self.partition_key) == index_name:
                return f
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
        range_field = self._range_field(index_name)
        if key_condition is not None and key_condition.field != range_field:
            raise BackendCallError(
                f"Key condition on '{key_condition.field}' does not match range key '{range_field}'",
                operation="query",
            )

        # Sparse index: only records carrying the range attribute are in it
        candidates = [
            r for (p, _), r in self._storage.items()
            if p == partition and range_field in r
        ]
        candidates.sort(key=lambda r: r[range_field], reverse=not forward)

        results = []
        for r in candidates:
            if key_condition is not None and not key_condition.matches(r):
                continue
            if filters and not all(c.matches(r) for c in filters):
                continue
            results.append(r)
            if limit is not None and len(results) >= limit:
                break

        if select == SELECT_COUNT:
            return QueryResult(items=[], count=len(results))
        return QueryResult(items=copy.deepcopy(results), count=len(results))

    async def put_or_update(self, partition: str, id: str, puts: Dict[str, Any], removes: List[str]) -> Dict[str, Any]:
        key = (partition, id)
        item = self._storage.get(key) or {self.partition_key: partition, SORT_KEY: id}
        item.update(copy.deepcopy(puts))
        for k in removes:
            item.pop(k, None)
        self._storage[key] = item
        return copy.deepcopy(item)

    async def delete_point(self, partition: str, id: str) -> Optional[Dict[str, Any]]:
        return self._storage.pop((partition, id), None)

    async def batch_put(self, partition: str, records: List[Dict[str, Any]]):
        if len(records) > self.limits.batch_write_size:
            raise BackendCallError(
                f"Batch of {len(records)} exceeds the write limit of {self.limits.batch_write_size}",
                operation="batch_put",
            )
        for r in records:
            item = copy.deepcopy(r)
            item[self.partition_key] = partition
            self._storage[(partition, item[SORT_KEY])] = item

    async def batch_get(self, partition: str, ids: List[str]) -> List[Dict[str, Any]]:
        if len(ids) > self.limits.batch_get_size:
            raise BackendCallError(
                f"Batch of {len(ids)} exceeds the get limit of {self.limits.batch_get_size}",
                operation="batch_get",
            )
        results = []
        for id in ids:
            item = self._storage.get((partition, id))
            if item is not None:
                results.append(copy.deepcopy(item))
        return results

    async def create_table(self):
        pass

    async def drop_table(self):
        self._storage.clear()

    async def close(self):
        pass


def get_storage_backend(backend_type: str = "memory", **kwargs) -> StorageBackend:
    if backend_type == "memory":
        return InMemoryBackend(**kwargs)
    elif backend_type == "mongo":
        from mongo_backend import MongoBackend
        return MongoBackend(**kwargs)
    elif backend_type == "dynamodb":
        from dynamodb_backend import DynamoDBBackend
        return DynamoDBBackend(**kwargs)
    else:
        raise ValueError(f"Unknown backend type: {backend_type}")
