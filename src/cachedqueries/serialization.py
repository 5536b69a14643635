"""Reference-preserving JSON codec for cached values.

Cached results are object graphs (entities with relationships pointing at
each other). Plain JSON would duplicate shared objects and loop forever on
cycles, so containers and objects are numbered on first sight and written as
references afterwards:

    {"$id": 1, "$type": "app.models:Order", "lines": {"$id": 2, "$values": [
        {"$id": 3, "$type": "app.models:OrderLine", "order": {"$ref": 1}}
    ]}}

Object fields holding None are dropped on the wire. Values that JSON cannot
represent faithfully (datetimes, UUIDs, Decimals, bytes, tuples, sets, Enums)
are tagged with ``$type`` so they decode to the same Python type.
"""

from __future__ import annotations

import base64
import dataclasses
import importlib
from collections.abc import Callable
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

import orjson
from pydantic import BaseModel

from cachedqueries.errors import CachedQueriesError

ID = "$id"
REF = "$ref"
TYPE = "$type"
VALUES = "$values"
VALUE = "$value"
ENTRIES = "$entries"

InstanceFactory = Callable[[type], Any]
AttributeSetter = Callable[[Any, str, Any], None]


class SerializationError(CachedQueriesError, ValueError):
    """Raised when a value cannot be encoded or a payload cannot be decoded."""


def qualified_name(cls: type) -> str:
    """Return the ``module:qualname`` reference used for ``$type``."""
    return f"{cls.__module__}:{cls.__qualname__}"


def default_instance_factory(cls: type) -> Any:
    """Create a blank instance without running ``__init__``."""
    if issubclass(cls, BaseModel):
        return cls.model_construct()
    return cls.__new__(cls)


# Scalars tagged by builtin type name: (python type, to wire, from wire)
_SCALARS: dict[str, tuple[type, Callable[[Any], Any], Callable[[Any], Any]]] = {
    "datetime": (datetime, datetime.isoformat, datetime.fromisoformat),
    "date": (date, date.isoformat, date.fromisoformat),
    "time": (time, time.isoformat, time.fromisoformat),
    "uuid": (UUID, str, UUID),
    "decimal": (Decimal, str, Decimal),
    "bytes": (
        bytes,
        lambda raw: base64.b64encode(raw).decode("ascii"),
        lambda text: base64.b64decode(text),
    ),
}

_SEQUENCES: dict[str, type] = {"tuple": tuple, "set": set, "frozenset": frozenset}


class _Encoder:
    def __init__(self) -> None:
        self._ids: dict[int, int] = {}

    def encode(self, value: Any) -> Any:
        if isinstance(value, Enum):
            return {TYPE: qualified_name(type(value)), VALUE: self.encode(value.value)}
        if value is None or isinstance(value, (bool, int, float, str)):
            return value

        # datetime before date: datetime is a date subclass
        for name, (scalar_type, to_wire, _) in _SCALARS.items():
            if isinstance(value, scalar_type):
                return {TYPE: name, VALUE: to_wire(value)}

        if isinstance(value, (tuple, set, frozenset)):
            return {TYPE: _sequence_name(value), VALUES: [self.encode(item) for item in value]}

        ref = self._ids.get(id(value))
        if ref is not None:
            return {REF: ref}
        ref = len(self._ids) + 1
        self._ids[id(value)] = ref

        if isinstance(value, list):
            return {ID: ref, VALUES: [self.encode(item) for item in value]}
        if isinstance(value, dict):
            return self._encode_dict(ref, value)
        return self._encode_object(ref, value)

    def _encode_dict(self, ref: int, value: dict[Any, Any]) -> dict[str, Any]:
        if all(isinstance(key, str) and not key.startswith("$") for key in value):
            encoded: dict[str, Any] = {ID: ref}
            for key, item in value.items():
                encoded[key] = self.encode(item)
            return encoded
        return {
            ID: ref,
            TYPE: "dict",
            ENTRIES: [[self.encode(key), self.encode(item)] for key, item in value.items()],
        }

    def _encode_object(self, ref: int, value: Any) -> dict[str, Any]:
        encoded: dict[str, Any] = {ID: ref, TYPE: qualified_name(type(value))}
        for name, field_value in _object_fields(value):
            if field_value is None:
                continue
            encoded[name] = self.encode(field_value)
        return encoded


def _sequence_name(value: Any) -> str:
    for name, seq_type in _SEQUENCES.items():
        if isinstance(value, seq_type):
            return name
    raise SerializationError(f"Unsupported sequence type {type(value).__name__}")


def _object_fields(value: Any) -> list[tuple[str, Any]]:
    if dataclasses.is_dataclass(value):
        return [(f.name, getattr(value, f.name)) for f in dataclasses.fields(value)]
    if isinstance(value, BaseModel):
        return [(name, getattr(value, name)) for name in type(value).model_fields]
    if hasattr(value, "__dict__"):
        # Skips private state such as SQLAlchemy's _sa_instance_state
        return [(name, item) for name, item in vars(value).items() if not name.startswith("_")]
    raise SerializationError(f"Cannot serialize object of type {type(value).__name__}")


class _Decoder:
    def __init__(
        self,
        factory: InstanceFactory,
        setter: AttributeSetter,
        resolve: Callable[[str], type],
    ) -> None:
        self._factory = factory
        self._setter = setter
        self._resolve = resolve
        self._refs: dict[int, Any] = {}

    def decode(self, node: Any) -> Any:
        if isinstance(node, list):
            return [self.decode(item) for item in node]
        if not isinstance(node, dict):
            return node

        if REF in node:
            try:
                return self._refs[node[REF]]
            except KeyError:
                raise SerializationError(f"Unknown reference {node[REF]!r}") from None

        type_name = node.get(TYPE)
        if type_name is None:
            if VALUES in node:
                items: list[Any] = []
                self._register(node, items)
                items.extend(self.decode(item) for item in node[VALUES])
                return items
            mapping: dict[str, Any] = {}
            self._register(node, mapping)
            for key, item in node.items():
                if key != ID:
                    mapping[key] = self.decode(item)
            return mapping

        if type_name in _SCALARS:
            return _SCALARS[type_name][2](node[VALUE])
        if type_name in _SEQUENCES:
            return _SEQUENCES[type_name](self.decode(item) for item in node[VALUES])
        if type_name == "dict":
            entries: dict[Any, Any] = {}
            self._register(node, entries)
            for key, item in node[ENTRIES]:
                entries[self.decode(key)] = self.decode(item)
            return entries

        cls = self._resolve(type_name)
        if VALUE in node:
            return cls(self.decode(node[VALUE]))
        return self._decode_object(cls, node)

    def _decode_object(self, cls: type, node: dict[str, Any]) -> Any:
        instance = self._factory(cls)
        self._register(node, instance)
        present: set[str] = set()
        for key, item in node.items():
            if key in (ID, TYPE):
                continue
            self._setter(instance, key, self.decode(item))
            present.add(key)

        if dataclasses.is_dataclass(cls):
            for f in dataclasses.fields(cls):
                if f.name not in present:
                    object.__setattr__(instance, f.name, _field_default(f))
        elif isinstance(instance, BaseModel):
            for name in type(instance).model_fields:
                if name not in instance.__dict__:
                    object.__setattr__(instance, name, None)
            instance.__pydantic_fields_set__.update(present)
        return instance

    def _register(self, node: dict[str, Any], value: Any) -> None:
        ref = node.get(ID)
        if ref is not None:
            self._refs[ref] = value


def _field_default(f: dataclasses.Field[Any]) -> Any:
    if f.default is not dataclasses.MISSING:
        return f.default
    if f.default_factory is not dataclasses.MISSING:
        return f.default_factory()
    return None


class ReferenceCodec:
    """Encodes object graphs to JSON bytes and back, preserving shared references.

    Args:
        instance_factory: Creates a blank instance of a class during decoding.
            The SQLAlchemy integration supplies one that attaches ORM state.
        attribute_setter: Assigns a decoded field on an instance. Defaults
            to ``object.__setattr__``, which also fills frozen dataclasses.
    """

    def __init__(
        self,
        instance_factory: InstanceFactory | None = None,
        attribute_setter: AttributeSetter | None = None,
    ):
        self.instance_factory = instance_factory or default_instance_factory
        self.attribute_setter = attribute_setter or object.__setattr__
        self._types: dict[str, type] = {}

    def dumps(self, value: Any) -> bytes:
        """Serialize ``value`` to JSON bytes."""
        try:
            return orjson.dumps(_Encoder().encode(value))
        except (TypeError, orjson.JSONEncodeError) as e:
            raise SerializationError(str(e)) from e

    def loads(self, data: bytes | str) -> Any:
        """Deserialize bytes produced by ``dumps``."""
        try:
            parsed = orjson.loads(data)
        except orjson.JSONDecodeError as e:
            raise SerializationError(str(e)) from e
        decoder = _Decoder(self.instance_factory, self.attribute_setter, self.resolve_type)
        return decoder.decode(parsed)

    def resolve_type(self, name: str) -> type:
        """Resolve a ``module:qualname`` reference to a class."""
        cached = self._types.get(name)
        if cached is not None:
            return cached

        module_name, _, qualname = name.partition(":")
        if not module_name or not qualname or "<locals>" in qualname:
            raise SerializationError(f"Cannot resolve type {name!r}")
        try:
            target: Any = importlib.import_module(module_name)
            for part in qualname.split("."):
                target = getattr(target, part)
        except (ImportError, AttributeError) as e:
            raise SerializationError(f"Cannot resolve type {name!r}: {e}") from e
        if not isinstance(target, type):
            raise SerializationError(f"{name!r} is not a class")

        self._types[name] = target
        return target
