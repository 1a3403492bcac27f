import dataclasses
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from key_codec import encode_key
from store_errors import LogicalInputError

ID_FIELD = "id"

T = TypeVar('T')

# (logical field, slot) pairs as produced by IndexMetadata.get_bindings;
# slots only need a `.field` attribute here.
Bindings = Sequence[Tuple[str, Any]]


def is_empty(value: Any) -> bool:
    return value is None or value == ""


def get_path(record: Dict[str, Any], path: str) -> Any:
    """Value at a dotted path ('user.name'), or None if any step is missing."""
    if path in record:
        return record[path]
    current: Any = record
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


def to_record(obj: Any) -> Dict[str, Any]:
    """
    Converts a caller object into a plain record dict.
    Dicts pass through; dataclasses and pydantic models are dumped,
    skipping private and empty attributes.
    """
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump(exclude_none=True)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            f.name: getattr(obj, f.name)
            for f in dataclasses.fields(obj)
            if not f.name.startswith("_") and not is_empty(getattr(obj, f.name))
        }
    if hasattr(obj, "__dict__"):
        return {k: v for k, v in vars(obj).items() if not k.startswith("_") and not is_empty(v)}
    raise LogicalInputError(f"Cannot store a {type(obj).__name__} as a record")


def record_id(record: Dict[str, Any]) -> str:
    rid = record.get(ID_FIELD)
    if not isinstance(rid, str) or not rid:
        raise LogicalInputError(f"Record requires a non-empty string '{ID_FIELD}', got {rid!r}")
    return rid


def prepare_for_write(
    collection: str,
    record: Dict[str, Any],
    bindings: Bindings,
    partition_key: str = "_",
) -> Dict[str, Any]:
    """
    Physical form of a record: slot values computed for every bound field,
    empty fields dropped, partition key attached.
    """
    rid = record_id(record)
    if partition_key in record:
        raise LogicalInputError(f"Field '{partition_key}' is reserved for the partition key")

    physical: Dict[str, Any] = {partition_key: collection}
    for k, v in record.items():
        if not is_empty(v):
            physical[k] = v

    for logical, slot in bindings:
        if slot.field in record:
            raise LogicalInputError(
                f"Field '{slot.field}' is reserved for the index on '{logical}' in '{collection}'"
            )
        value = get_path(record, logical)
        if not is_empty(value):
            physical[slot.field] = encode_key(value, rid)

    return physical


def field_changes(
    collection: str,
    record: Dict[str, Any],
    bindings: Bindings,
    previous: Optional[Dict[str, Any]] = None,
    partition_key: str = "_",
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Splits an update into (puts, removes).

    Updates on the backend are additive, so a field that went away has to be
    removed explicitly: empty fields on the record, bound slots whose value is
    now empty, and fields of `previous` missing from the record.
    """
    physical = prepare_for_write(collection, record, bindings, partition_key)
    keys = (partition_key, ID_FIELD)
    puts = {k: v for k, v in physical.items() if k not in keys}

    removes: List[str] = []

    def remove(field: str):
        if field not in keys and field not in puts and field not in removes:
            removes.append(field)

    for k, v in record.items():
        if is_empty(v):
            remove(k)
    for _, slot in bindings:
        remove(slot.field)
    if previous:
        for k in previous:
            remove(k)

    return puts, removes


def strip_control_fields(
    records: Iterable[Dict[str, Any]],
    bindings: Bindings,
    partition_key: str = "_",
) -> List[Dict[str, Any]]:
    """
    Removes the partition key and the collection's bound slot fields.
    A slot-named field that is not bound for the collection is user data and stays.
    """
    control = {partition_key} | {slot.field for _, slot in bindings}
    return [{k: v for k, v in r.items() if k not in control} for r in records]


def dedupe(items: Iterable[T], key=lambda x: x) -> List[T]:
    """First occurrence wins, input order kept."""
    seen = set()
    result = []
    for item in items:
        k = key(item)
        if k not in seen:
            seen.add(k)
            result.append(item)
    return result


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for i in range(0, len(items), size):
        yield list(items[i:i + size])
