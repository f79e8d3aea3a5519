"""
Record and key encoding.

Records are stored as JSON text. `datetime` and `date` values are tagged so
that they come back as the same type:

    {"dateTime": {"$date": "2024-05-01T08:30:00"}, "day": {"$day": "2024-05-01"}}

A user object that would read as a tag (a single `$date`, `$day` or `$esc`
key) is wrapped as `{"$esc": {...}}` on write and unwrapped on read, so every
record comes back exactly as it was written.

Snapshot files use plain JSON instead, with dates rendered as ISO strings;
`coerce_temporal_fields` turns them back into `datetime` on import.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Mapping

from larder.core.db.models import CollectionSchema, Record
from larder.core.errors import InvalidKeyError, ReadError

DATE_TAG = "$date"
DAY_TAG = "$day"
ESCAPE_TAG = "$esc"
_TAGS = frozenset((DATE_TAG, DAY_TAG, ESCAPE_TAG))

# SQLite INTEGER is a signed 64-bit value.
MIN_INT_KEY = -(2**63)
MAX_INT_KEY = 2**63 - 1

Key = int | float | str | datetime | date


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def _check_int_range(key: int) -> int:
    if not MIN_INT_KEY <= key <= MAX_INT_KEY:
        raise InvalidKeyError(f"Integer key out of 64-bit range: {key!r}")
    return key


def encode_key(key: Any) -> int | float | str:
    """
    Convert a key to the value stored in the `pk` column.

    Numbers and strings are stored as-is; dates as ISO strings so they sort
    chronologically within the same timezone convention.
    """
    # bool is an int subclass but never a valid key.
    if isinstance(key, bool) or key is None:
        raise InvalidKeyError(f"Invalid key: {key!r}")
    if isinstance(key, int):
        return _check_int_range(key)
    if isinstance(key, (float, str)):
        return key
    if isinstance(key, (datetime, date)):
        return key.isoformat()
    raise InvalidKeyError(f"Unsupported key type: {type(key).__name__}")


def encode_auto_key(key: Any) -> int:
    if isinstance(key, bool) or not isinstance(key, int):
        raise InvalidKeyError(f"Auto-increment keys must be integers, got {key!r}")
    return _check_int_range(key)


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------


def _tag(value: Any) -> Any:
    if isinstance(value, datetime):
        return {DATE_TAG: value.isoformat()}
    if isinstance(value, date):
        return {DAY_TAG: value.isoformat()}
    if isinstance(value, Mapping):
        tagged = {key: _tag(item) for key, item in value.items()}
        if len(tagged) == 1 and next(iter(tagged)) in _TAGS:
            return {ESCAPE_TAG: tagged}
        return tagged
    if isinstance(value, (list, tuple)):
        return [_tag(item) for item in value]
    return value


def _untag(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1:
            tag, payload = next(iter(value.items()))
            if tag == DATE_TAG and isinstance(payload, str):
                return datetime.fromisoformat(payload)
            if tag == DAY_TAG and isinstance(payload, str):
                return date.fromisoformat(payload)
            if tag == ESCAPE_TAG and isinstance(payload, dict):
                # The wrapped object itself is user data, only its values are tagged.
                return {key: _untag(item) for key, item in payload.items()}
        return {key: _untag(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_untag(item) for item in value]
    return value


def _not_storable(value: Any) -> Any:
    raise TypeError(f"Object of type {type(value).__name__} is not storable")


def dumps_stored(value: Any) -> str:
    return json.dumps(
        _tag(value), default=_not_storable, separators=(",", ":"), ensure_ascii=False
    )


def loads_stored(text: str) -> Any:
    return _untag(json.loads(text))


def encode_record(
    schema: CollectionSchema,
    record: Mapping[str, Any],
    key: Any = None,
) -> tuple[int | float | str | None, str]:
    """
    Prepare a record for storage.

    Returns `(pk, data)`. `pk` is None only for an AUTO_INCREMENT collection
    when neither `key` nor the record's key field is set, meaning the engine
    assigns one.

    An explicit `key` wins over the record's own key field.
    """
    if not isinstance(record, Mapping):
        raise TypeError(f"Records must be mappings, got {type(record).__name__}")

    data = dict(record)
    if key is None:
        key = data.get(schema.key_field)

    if schema.auto_increment:
        # The key lives in the pk column only; it is re-attached on read.
        data.pop(schema.key_field, None)
        pk = None if key is None else encode_auto_key(key)
    else:
        if key is None:
            raise InvalidKeyError(
                f"Record for {schema.name!r} has no value at key field {schema.key_field!r}"
            )
        pk = encode_key(key)
        data[schema.key_field] = key

    return pk, dumps_stored(data)


def decode_record(schema: CollectionSchema, pk: Any, data: str) -> Record:
    try:
        record: Record = loads_stored(data)
    except ValueError as exc:
        raise ReadError(f"Stored record {pk!r} in {schema.name!r} is corrupt: {exc}") from exc
    if schema.auto_increment:
        record[schema.key_field] = pk
    return record


def encode_index_value(value: Any) -> str:
    """JSON form of a lookup value, compared through `json_extract(?, '$')`."""
    return dumps_stored(value)


# ---------------------------------------------------------------------------
# Snapshot documents
# ---------------------------------------------------------------------------


def _snapshot_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps_snapshot(snapshot: Mapping[str, list[Record]], indent: int | None = None) -> str:
    return json.dumps(snapshot, default=_snapshot_default, indent=indent, ensure_ascii=False)


def coerce_temporal_fields(schema: CollectionSchema, record: Mapping[str, Any]) -> Record:
    """
    Return a copy of `record` with the collection's temporal fields parsed.

    Strings are parsed with `datetime.fromisoformat` (which accepts a trailing
    "Z"). Values that are already `datetime`, or are absent/empty, are left
    alone. Raises ValueError for a string that is not a date-time.
    """
    coerced = dict(record)
    for name in schema.temporal_fields:
        value = coerced.get(name)
        if isinstance(value, str) and value:
            coerced[name] = datetime.fromisoformat(value)
    return coerced
