"""Runtime schema model for dynamic protobuf messages.

These dataclasses describe message, enum and service shapes as loaded
from descriptors at runtime. They are built once by the registry and
never mutated, so they can be shared freely between calls.
"""

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum, auto
from typing import Any

from dataclasses_json import DataClassJsonMixin

from .wire import WireType, make_tag

__all__ = [
    "Cardinality",
    "EnumSchema",
    "FieldSchema",
    "FieldType",
    "MessageSchema",
    "MethodSchema",
    "SchemaError",
    "ServiceSchema",
    "json_name_of",
    "summarize",
]


class SchemaError(RuntimeError):
    """Raised when a schema is internally inconsistent."""


class FieldType(IntEnum):
    """Field types, numbered as in ``FieldDescriptorProto.Type``."""

    DOUBLE = 1
    FLOAT = 2
    INT64 = 3
    UINT64 = 4
    INT32 = 5
    FIXED64 = 6
    FIXED32 = 7
    BOOL = 8
    STRING = 9
    GROUP = 10
    MESSAGE = 11
    BYTES = 12
    UINT32 = 13
    ENUM = 14
    SFIXED32 = 15
    SFIXED64 = 16
    SINT32 = 17
    SINT64 = 18


class Cardinality(StrEnum):
    """How many values a field carries and how they are laid out."""

    SINGULAR = auto()
    REPEATED = auto()  # one tag per element
    PACKED = auto()  # one length-delimited run
    MAP = auto()  # repeated key/value entry messages


VARINT_TYPES = frozenset(
    [
        FieldType.INT32,
        FieldType.INT64,
        FieldType.UINT32,
        FieldType.UINT64,
        FieldType.SINT32,
        FieldType.SINT64,
        FieldType.BOOL,
        FieldType.ENUM,
    ]
)

FIXED64_TYPES = frozenset([FieldType.DOUBLE, FieldType.FIXED64, FieldType.SFIXED64])
FIXED32_TYPES = frozenset([FieldType.FLOAT, FieldType.FIXED32, FieldType.SFIXED32])

# Types that may use packed encoding when repeated
PACKABLE_TYPES = VARINT_TYPES | FIXED64_TYPES | FIXED32_TYPES

# Types allowed as map keys
MAP_KEY_TYPES = (VARINT_TYPES - {FieldType.ENUM}) | {
    FieldType.FIXED32,
    FieldType.FIXED64,
    FieldType.SFIXED32,
    FieldType.SFIXED64,
    FieldType.STRING,
}


def wire_type_for(field_type: FieldType) -> WireType:
    """Wire type of a single unpacked value of field_type."""
    if field_type in VARINT_TYPES:
        return WireType.VARINT
    if field_type in FIXED64_TYPES:
        return WireType.FIXED64
    if field_type in FIXED32_TYPES:
        return WireType.FIXED32
    if field_type == FieldType.GROUP:
        return WireType.START_GROUP
    return WireType.LENGTH_DELIMITED


def json_name_of(name: str) -> str:
    """lowerCamel name protobuf derives when ``json_name`` is not set."""
    out = []
    capitalize = False
    for ch in name:
        if ch == "_":
            capitalize = True
        elif capitalize:
            out.append(ch.upper())
            capitalize = False
        else:
            out.append(ch)
    return "".join(out)


@dataclass(frozen=True, slots=True)
class FieldSchema:
    """One field of a message type.

    ``type_name`` is the fully-qualified name (no leading dot) of the
    message, group or enum type for those field types. Map fields carry
    the synthetic entry's key (#1) and value (#2) fields.
    """

    number: int
    name: str
    json_name: str
    type: FieldType
    cardinality: Cardinality = Cardinality.SINGULAR
    type_name: str | None = None
    oneof: str | None = None
    map_key: "FieldSchema | None" = None
    map_value: "FieldSchema | None" = None

    @property
    def is_map(self) -> bool:
        return self.cardinality == Cardinality.MAP

    @property
    def is_repeated(self) -> bool:
        return self.cardinality != Cardinality.SINGULAR

    @property
    def is_packed(self) -> bool:
        return self.cardinality == Cardinality.PACKED

    @property
    def is_message(self) -> bool:
        return self.type in (FieldType.MESSAGE, FieldType.GROUP)

    @property
    def wire_type(self) -> WireType:
        if self.is_packed:
            return WireType.LENGTH_DELIMITED
        return wire_type_for(self.type)

    @property
    def tag(self) -> int:
        return make_tag(self.number, self.wire_type)

    @property
    def alternate_tag(self) -> int | None:
        """Tag of the other repeated encoding, accepted when decoding."""
        if self.cardinality == Cardinality.PACKED:
            return make_tag(self.number, wire_type_for(self.type))
        if self.cardinality == Cardinality.REPEATED and self.type in PACKABLE_TYPES:
            return make_tag(self.number, WireType.LENGTH_DELIMITED)
        return None

    def key(self, json_names: bool = False) -> str:
        """External name of this field under the selected naming mode."""
        return self.json_name if json_names else self.name


@dataclass(frozen=True, slots=True)
class MessageSchema:
    """Ordered fields of a message type with tag and name indices."""

    full_name: str
    fields: tuple[FieldSchema, ...]
    syntax: str = "proto3"
    map_entry: bool = False
    _by_tag: dict[int, FieldSchema] = field(init=False, repr=False, compare=False)
    _by_name: dict[str, FieldSchema] = field(init=False, repr=False, compare=False)
    _by_json_name: dict[str, FieldSchema] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_tag: dict[int, FieldSchema] = {}
        by_name: dict[str, FieldSchema] = {}
        by_json_name: dict[str, FieldSchema] = {}
        numbers: set[int] = set()

        for f in self.fields:
            if f.number in numbers:
                raise SchemaError(f"Duplicate field number {f.number} in `{self.full_name}`")
            numbers.add(f.number)
            if f.name in by_name:
                raise SchemaError(f"Duplicate field name `{f.name}` in `{self.full_name}`")
            by_name[f.name] = f
            if f.json_name in by_json_name:
                raise SchemaError(f"Duplicate JSON name `{f.json_name}` in `{self.full_name}`")
            by_json_name[f.json_name] = f

            by_tag[f.tag] = f
            if f.alternate_tag is not None:
                by_tag[f.alternate_tag] = f

        object.__setattr__(self, "_by_tag", by_tag)
        object.__setattr__(self, "_by_name", by_name)
        object.__setattr__(self, "_by_json_name", by_json_name)

    @property
    def name(self) -> str:
        return self.full_name.rpartition(".")[2]

    def field_by_tag(self, tag: int) -> FieldSchema | None:
        return self._by_tag.get(tag)

    def field_by_name(self, name: str, json_names: bool = False) -> FieldSchema | None:
        return (self._by_json_name if json_names else self._by_name).get(name)

    def field_by_number(self, number: int) -> FieldSchema | None:
        for f in self.fields:
            if f.number == number:
                return f
        return None

    def oneof_members(self, oneof: str) -> tuple[FieldSchema, ...]:
        return tuple(f for f in self.fields if f.oneof == oneof)


@dataclass(frozen=True, slots=True)
class EnumSchema:
    """Enum type: member names and numbers in declaration order."""

    full_name: str
    values: tuple[tuple[str, int], ...]
    _by_number: dict[int, str] = field(init=False, repr=False, compare=False)
    _by_name: dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_number: dict[int, str] = {}
        for name, number in self.values:
            # With allow_alias the first declared name wins
            by_number.setdefault(number, name)
        object.__setattr__(self, "_by_number", by_number)
        object.__setattr__(self, "_by_name", dict(self.values))

    def name_of(self, number: int) -> str | None:
        return self._by_number.get(number)

    def number_of(self, name: str) -> int | None:
        return self._by_name.get(name)

    @property
    def default_name(self) -> str | None:
        """Name of the zero value, falling back to the first member (proto2)."""
        if 0 in self._by_number:
            return self._by_number[0]
        return self.values[0][0] if self.values else None

    @property
    def default_number(self) -> int:
        if 0 in self._by_number or not self.values:
            return 0
        return self.values[0][1]


@dataclass(frozen=True)
class MethodSchema(DataClassJsonMixin):
    """A service method with its fully-qualified message type names."""

    name: str
    service: str
    input_type: str
    output_type: str
    client_streaming: bool = False
    server_streaming: bool = False

    @property
    def path(self) -> str:
        """gRPC request path, ``/package.Service/Method``."""
        return f"/{self.service}/{self.name}"

    @property
    def kind(self) -> str:
        if self.client_streaming and self.server_streaming:
            return "duplex_streaming"
        if self.client_streaming:
            return "client_streaming"
        if self.server_streaming:
            return "server_streaming"
        return "unary"


@dataclass(frozen=True)
class ServiceSchema(DataClassJsonMixin):
    """A service and its methods keyed by method name."""

    full_name: str
    methods: dict[str, MethodSchema]
    file: str | None = None

    def find_method(self, name: str) -> MethodSchema | None:
        return self.methods.get(name)


def summarize(services: list[ServiceSchema]) -> list[dict[str, Any]]:
    """JSON-ready listing of services and methods."""
    return [s.to_dict() for s in services]
