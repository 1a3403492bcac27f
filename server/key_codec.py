"""
Order-preserving string encodings for index slot values.

Slots on the storage backend are string-typed range keys, so every indexed
value is turned into a string whose lexicographic order matches the order of
the original values, then suffixed with the record id:

    encode_key("world", "42")  -> "world" + KEY_SEPARATOR + "42"
    encode_key(-2.5, "7")      -> "0127499999999" + KEY_SEPARATOR + "7"
"""
import math
import numbers
from decimal import Context, Decimal, ROUND_HALF_EVEN
from typing import Any, Tuple

from store_errors import ConfigurationError, LogicalInputError

# Sorts before every character of an encoded value, so keys of "AAA" come
# before keys of "AAAAA" and all ids of one value stay contiguous.
KEY_SEPARATOR = "\x00"

# Trailing marker on a filter key requesting begins-with matching.
PREFIX_MARKER = "%"

MIN_EXPONENT = -12
MAX_EXPONENT = 12
SIGNIFICANT_DIGITS = 10

NEGATIVE_MARK = "0"
ZERO_MARK = "1"
POSITIVE_MARK = "2"

_EXPONENT_WIDTH = len(str(MAX_EXPONENT - MIN_EXPONENT))
_CONTEXT = Context(prec=SIGNIFICANT_DIGITS, rounding=ROUND_HALF_EVEN)
_NINES_COMPLEMENT = str.maketrans("0123456789", "9876543210")


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _to_decimal(n: Any) -> Decimal:
    if isinstance(n, Decimal):
        return n
    if isinstance(n, int):
        return Decimal(n)
    f = float(n)
    if math.isnan(f) or math.isinf(f):
        raise ConfigurationError(f"Cannot encode non-finite number {n!r}")
    # repr gives the shortest string that round-trips, e.g. 0.1 -> "0.1"
    return Decimal(repr(f))


def encode_number(n: Any) -> str:
    """
    Encodes a real number as a fixed-width decimal string.

    For a < b within the supported range, encode_number(a) <= encode_number(b);
    the order is strict for values that fit in SIGNIFICANT_DIGITS digits.
    Finer digits are rounded, so equal encodings do not imply equal values.
    Layout: sign class digit, exponent field, mantissa digits. Negative
    numbers store the exponent distance from MAX_EXPONENT and the nine's
    complement of the mantissa, so larger magnitudes sort first.
    """
    if not _is_number(n):
        raise TypeError(f"encode_number expects a real number, got {type(n).__name__}")

    d = _to_decimal(n)
    if not d.is_finite():
        raise ConfigurationError(f"Cannot encode non-finite number {n!r}")
    if d.is_zero():
        return ZERO_MARK + "0" * (_EXPONENT_WIDTH + SIGNIFICANT_DIGITS)

    d = _CONTEXT.plus(d)
    exponent = d.adjusted()
    if exponent < MIN_EXPONENT or exponent > MAX_EXPONENT:
        raise ConfigurationError(
            f"{n!r} is outside the encodable range "
            f"(exponent must be within {MIN_EXPONENT}..{MAX_EXPONENT})"
        )

    mantissa = "".join(str(digit) for digit in d.as_tuple().digits)
    mantissa = mantissa.rstrip("0").ljust(SIGNIFICANT_DIGITS, "0")

    if d.is_signed():
        exp_field = f"{MAX_EXPONENT - exponent:0{_EXPONENT_WIDTH}d}"
        return NEGATIVE_MARK + exp_field + mantissa.translate(_NINES_COMPLEMENT)

    exp_field = f"{exponent - MIN_EXPONENT:0{_EXPONENT_WIDTH}d}"
    return POSITIVE_MARK + exp_field + mantissa


def to_index_string(value: Any) -> str:
    """String form of a field value as stored in (and matched against) a slot."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_number(value):
        return encode_number(value)
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        raise LogicalInputError(f"Cannot index a {type(value).__name__} value")
    s = value if isinstance(value, str) else str(value)
    if KEY_SEPARATOR in s:
        raise LogicalInputError("Indexed values cannot contain the key separator character")
    return s


def encode_key(value: Any, record_id: str) -> str:
    """Composite range key: encoded value, separator, record id."""
    return to_index_string(value) + KEY_SEPARATOR + record_id


def encode_prefix(value: Any) -> str:
    """
    Begins-with condition matching exactly `value` on a composite key.

    A bare to_index_string(value) would also match longer values
    ("world" vs "worldAAA"); the separator pins the value boundary.
    """
    return to_index_string(value) + KEY_SEPARATOR


def decode_key(key: str) -> Tuple[str, str]:
    """Splits a composite key into (encoded value, record id)."""
    encoded, sep, record_id = key.partition(KEY_SEPARATOR)
    if not sep:
        raise ValueError(f"Not a composite key: {key!r}")
    return encoded, record_id


def split_prefix_marker(filter_key: str) -> Tuple[str, bool]:
    """'name%' -> ('name', True); 'name' -> ('name', False)"""
    if filter_key.endswith(PREFIX_MARKER):
        return filter_key[: -len(PREFIX_MARKER)], True
    return filter_key, False
