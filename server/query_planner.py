"""
Chooses how a logical filter/sort request runs against the physical table.

The backend can range over one key per query: the primary `id`, or one slot
index. Planning picks that key and turns the filter entry on it into a range
condition on the encoded composite key. Every entry, that one included, is
also a residual condition the backend evaluates on raw values after narrowing.

Priority: `id` equality (point lookup) > the index on the sort field > the
index on the first indexed filter field, in filter declaration order.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from index_metadata import IndexMetadata
from key_codec import encode_prefix, split_prefix_marker, to_index_string
from storage_backend import BEGINS_WITH, EQ, IN, PARTITION_KEY, SORT_KEY, Condition, IndexSlot
from store_errors import LogicalInputError

logger = logging.getLogger(__name__)

ASC = "ASC"
DESC = "DESC"

_SET_TYPES = (list, tuple, set, frozenset)


@dataclass(frozen=True)
class SortSpec:
    field: str
    direction: str = ASC

    @property
    def ascending(self) -> bool:
        return self.direction == ASC


@dataclass(frozen=True)
class FilterEntry:
    field: str
    value: Any
    prefix: bool = False

    @property
    def is_set(self) -> bool:
        return isinstance(self.value, list)

    def residual(self) -> Condition:
        if self.is_set:
            return Condition(self.field, IN, self.value)
        return Condition(self.field, BEGINS_WITH if self.prefix else EQ, self.value)


@dataclass(frozen=True)
class QueryRequest:
    entries: Tuple[FilterEntry, ...] = ()
    sort: Optional[SortSpec] = None
    limit: Optional[int] = None


@dataclass
class QueryPlan:
    collection: str
    key_condition: Optional[Condition] = None
    index_name: Optional[str] = None
    filters: List[Condition] = field(default_factory=list)
    forward: bool = False
    limit: Optional[int] = None
    point_lookup: bool = False


def _is_empty_filter_value(value: Any) -> bool:
    if value is None or value == "":
        return True
    return isinstance(value, _SET_TYPES) and len(value) == 0


def parse_filter(filter: Optional[Mapping[str, Any]], partition_key: str = PARTITION_KEY) -> Tuple[FilterEntry, ...]:
    if not filter:
        return ()
    if not isinstance(filter, Mapping):
        raise LogicalInputError(f"Filter must be a mapping, got {type(filter).__name__}")

    entries = []
    for key, value in filter.items():
        if not isinstance(key, str):
            raise LogicalInputError(f"Filter keys must be strings, got {key!r}")
        if _is_empty_filter_value(value):
            continue
        name, prefix = split_prefix_marker(key)
        if not name:
            raise LogicalInputError(f"Filter key {key!r} names no field")
        if name == partition_key:
            raise LogicalInputError(f"Cannot filter on the partition key '{partition_key}'")
        if isinstance(value, _SET_TYPES):
            if prefix:
                raise LogicalInputError(f"Prefix filter '{key}' cannot take a set of values")
            value = list(value)
        elif prefix and not isinstance(value, str):
            raise LogicalInputError(f"Prefix filter '{key}' needs a string, got {type(value).__name__}")
        entries.append(FilterEntry(name, value, prefix))
    return tuple(entries)


def parse_sort(sort: Any) -> Optional[SortSpec]:
    """
    Accepts ("name", "ASC"), [("name", "ASC")] or a SortSpec.
    Only one sort field is supported.
    """
    if not sort:
        return None
    if isinstance(sort, SortSpec):
        pair: Sequence[Any] = (sort.field, sort.direction)
    elif isinstance(sort, str):
        pair = (sort, ASC)
    elif isinstance(sort, (list, tuple)) and isinstance(sort[0], str):
        pair = sort
    elif isinstance(sort, (list, tuple)):
        if len(sort) > 1:
            raise LogicalInputError("Sorting on more than one field is not supported")
        pair = sort[0]
    else:
        raise LogicalInputError(f"Unsupported sort spec {sort!r}")

    if not isinstance(pair, (list, tuple)) or len(pair) != 2:
        raise LogicalInputError(f"Sort must be a (field, direction) pair, got {pair!r}")
    name, direction = pair
    if not isinstance(name, str) or not name:
        raise LogicalInputError(f"Invalid sort field {name!r}")
    if split_prefix_marker(name)[1]:
        raise LogicalInputError(f"Sort field '{name}' cannot carry a prefix marker")
    direction = str(direction).upper()
    if direction not in (ASC, DESC):
        raise LogicalInputError(f"Sort direction must be {ASC} or {DESC}, got {pair[1]!r}")
    return SortSpec(name, direction)


def parse_request(
    filter: Optional[Mapping[str, Any]] = None,
    sort: Any = None,
    limit: Optional[int] = None,
    partition_key: str = PARTITION_KEY,
) -> QueryRequest:
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0):
        raise LogicalInputError(f"Limit must be a positive integer, got {limit!r}")
    sort_spec = parse_sort(sort)
    if sort_spec is not None and sort_spec.field == partition_key:
        raise LogicalInputError(f"Cannot sort on the partition key '{partition_key}'")
    return QueryRequest(parse_filter(filter, partition_key), sort_spec, limit)


def _effective_limit(requested: Optional[int], page_limit: Optional[int]) -> Optional[int]:
    if requested is None:
        return page_limit
    if page_limit is None:
        return requested
    return min(requested, page_limit)


def _plan_id_lookup(collection: str, request: QueryRequest, page_limit: Optional[int]) -> QueryPlan:
    id_entries = [e for e in request.entries if e.field == SORT_KEY]
    if len(id_entries) > 1:
        raise LogicalInputError("Conflicting conditions on 'id'")
    entry = id_entries[0]
    if entry.is_set:
        raise LogicalInputError("A set of ids cannot be planned as a query; use batch_get")
    if not isinstance(entry.value, str):
        raise LogicalInputError(f"'id' must be a string, got {type(entry.value).__name__}")

    residual = [e.residual() for e in request.entries if e is not entry]
    forward = request.sort.ascending if request.sort else False

    if entry.prefix:
        if request.sort and request.sort.field != SORT_KEY:
            raise LogicalInputError(
                f"An 'id' prefix filter cannot be combined with a sort on '{request.sort.field}'"
            )
        return QueryPlan(
            collection,
            key_condition=Condition(SORT_KEY, BEGINS_WITH, entry.value),
            filters=residual,
            forward=forward,
            limit=_effective_limit(request.limit, page_limit),
        )

    return QueryPlan(
        collection,
        key_condition=Condition(SORT_KEY, EQ, entry.value),
        filters=residual,
        forward=forward,
        limit=None,
        point_lookup=True,
    )


def build_plan(
    collection: str,
    bindings: Sequence[Tuple[str, IndexSlot]],
    request: QueryRequest,
    count: bool = False,
    page_limit: Optional[int] = None,
) -> QueryPlan:
    if any(e.field == SORT_KEY for e in request.entries):
        plan = _plan_id_lookup(collection, request, page_limit)
        if count:
            plan.limit = None
        return plan

    slots: Dict[str, IndexSlot] = dict(bindings)
    sort = request.sort

    candidate: Optional[str] = None
    if sort is not None and sort.field == SORT_KEY:
        pass  # primary table order is the id order
    elif sort is not None and sort.field in slots:
        candidate = sort.field
    else:
        if sort is not None:
            logger.debug("Sort field '%s' of '%s' is not indexed; order is backend-defined", sort.field, collection)
        candidate = next(
            (e.field for e in request.entries if e.field in slots and not e.is_set),
            None,
        )

    plan = QueryPlan(
        collection,
        forward=sort.ascending if sort else False,
        limit=None if count else _effective_limit(request.limit, page_limit),
    )

    key_entry: Optional[FilterEntry] = None
    if candidate is not None:
        slot = slots[candidate]
        plan.index_name = slot.index_name
        key_entry = next((e for e in request.entries if e.field == candidate and not e.is_set), None)
        if key_entry is not None:
            encoded = to_index_string(key_entry.value) if key_entry.prefix else encode_prefix(key_entry.value)
            plan.key_condition = Condition(slot.field, BEGINS_WITH, encoded)

    # The key condition only narrows: encoded keys round numbers and share one
    # string space across types, so every entry is also checked on its raw value.
    plan.filters = [e.residual() for e in request.entries]
    return plan


class QueryPlanner:
    def __init__(self, metadata: IndexMetadata, page_limit: Optional[int] = None):
        self.metadata = metadata
        self.page_limit = page_limit

    async def plan(
        self,
        collection: str,
        filter: Optional[Mapping[str, Any]] = None,
        sort: Any = None,
        limit: Optional[int] = None,
        count: bool = False,
    ) -> QueryPlan:
        # Validate before touching the backend
        request = parse_request(filter, sort, limit, self.metadata.backend.partition_key)
        bindings = await self.metadata.get_bindings(collection)
        plan = build_plan(collection, bindings, request, count=count, page_limit=self.page_limit)
        logger.debug("Plan for %s: %s", collection, plan)
        return plan
