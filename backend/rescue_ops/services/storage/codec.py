"""
Snapshot Codec

Converts frozen domain dataclasses to JSON-safe dicts and back, driven
by their type hints. Used for the ``payload`` column of every snapshot
table.

Supported field types: str/int/bool/float, str Enums, aware datetimes
(ISO 8601), Optional[...], Tuple[X, ...], FrozenSet[X], List[X],
Dict[str, Any] and nested dataclasses.
"""
import dataclasses
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Type, TypeVar, Union, get_args, get_origin, get_type_hints

T = TypeVar("T")


@lru_cache(maxsize=None)
def _hints(cls: type) -> Dict[str, Any]:
    return get_type_hints(cls)


def to_payload(obj: Any) -> Any:
    """Encode a dataclass snapshot (or any supported value) as JSON-safe data."""
    if obj is None or isinstance(obj, (bool, int, float)):
        return obj
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, str):
        return obj
    if isinstance(obj, datetime):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            f.name: to_payload(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
            if not callable(getattr(obj, f.name))
        }
    if isinstance(obj, frozenset):
        return sorted((to_payload(v) for v in obj), key=str)
    if isinstance(obj, (list, tuple)):
        return [to_payload(v) for v in obj]
    if isinstance(obj, dict):
        return {str(k): to_payload(v) for k, v in obj.items()}
    raise TypeError(f"Cannot encode value of type {type(obj).__name__}")


def _decode(tp: Any, value: Any) -> Any:
    if tp is Any:
        return value

    origin = get_origin(tp)
    if origin is Union:
        if value is None:
            return None
        inner = [a for a in get_args(tp) if a is not type(None)]
        return _decode(inner[0], value)

    if value is None:
        return None

    if origin is tuple:
        args = get_args(tp)
        return tuple(_decode(args[0], v) for v in value)
    if origin is frozenset:
        return frozenset(_decode(get_args(tp)[0], v) for v in value)
    if origin is list:
        return [_decode(get_args(tp)[0], v) for v in value]
    if origin is dict:
        _, value_type = get_args(tp)
        return {k: _decode(value_type, v) for k, v in value.items()}

    if isinstance(tp, type):
        if issubclass(tp, Enum):
            return tp(value)
        if issubclass(tp, datetime):
            return datetime.fromisoformat(value)
        if dataclasses.is_dataclass(tp):
            return from_payload(tp, value)
    return value


def from_payload(cls: Type[T], data: Dict[str, Any]) -> T:
    """Rebuild a dataclass snapshot from ``to_payload`` output."""
    hints = _hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name in data:
            kwargs[f.name] = _decode(hints[f.name], data[f.name])
    return cls(**kwargs)
