"""Dynamic protobuf message codec.

Decodes wire bytes into plain mappings and encodes mappings back into
wire bytes, driven entirely by ``MessageSchema`` objects loaded at
runtime. No generated message classes are involved.

``compute_size`` and ``write_to`` mirror each other exactly: nested
messages are length-prefixed, so the prefix is computed before the
nested bytes are written.
"""

import math
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from .types import (
    PACKABLE_TYPES,
    EnumSchema,
    FieldSchema,
    FieldType,
    MessageSchema,
    SchemaError,
)
from .wire import (
    CodecError,
    DecodeError,
    EncodeError,
    WireReader,
    WireType,
    WireWriter,
    end_group_tag,
    tag_wire_type,
    to_signed,
    to_unsigned,
    varint_size,
    zigzag_decode,
    zigzag_encode,
)

__all__ = [
    "Codec",
    "CodecError",
    "CodecOptions",
    "DecodeError",
    "EncodeError",
    "MessageCodec",
    "SchemaLookup",
]

# struct format and size for fixed-width types
FIXED_FORMATS: dict[FieldType, tuple[str, int]] = {
    FieldType.DOUBLE: ("<d", 8),
    FieldType.FLOAT: ("<f", 4),
    FieldType.FIXED64: ("<Q", 8),
    FieldType.SFIXED64: ("<q", 8),
    FieldType.FIXED32: ("<I", 4),
    FieldType.SFIXED32: ("<i", 4),
}

# Inclusive value ranges for integer types
INT_RANGES: dict[FieldType, tuple[int, int]] = {
    FieldType.INT32: (-(2**31), 2**31 - 1),
    FieldType.SINT32: (-(2**31), 2**31 - 1),
    FieldType.SFIXED32: (-(2**31), 2**31 - 1),
    FieldType.ENUM: (-(2**31), 2**31 - 1),
    FieldType.INT64: (-(2**63), 2**63 - 1),
    FieldType.SINT64: (-(2**63), 2**63 - 1),
    FieldType.SFIXED64: (-(2**63), 2**63 - 1),
    FieldType.UINT32: (0, 2**32 - 1),
    FieldType.FIXED32: (0, 2**32 - 1),
    FieldType.UINT64: (0, 2**64 - 1),
    FieldType.FIXED64: (0, 2**64 - 1),
}

# Largest finite float32
FLOAT_MAX = 3.4028234663852886e38


@dataclass(frozen=True)
class CodecOptions:
    """Per-session codec settings.

    Attributes:
        json_names: Use JSON (lowerCamel) field names instead of declared
            names, for both encode lookups and decoded keys.
        numbered_enums: Decode enums as numbers instead of member names.
        message_factory: Constructor for decoded message containers.
    """

    json_names: bool = False
    numbered_enums: bool = False
    message_factory: Callable[[], MutableMapping[str, Any]] = dict


class SchemaLookup(Protocol):
    """Anything that resolves fully-qualified type names to schemas."""

    def find_message(self, full_name: str) -> MessageSchema | None: ...

    def find_enum(self, full_name: str) -> EnumSchema | None: ...


class Codec:
    """Encode and decode dynamic values for any message in a schema set.

    A codec holds no per-call state and can be shared between threads.
    """

    def __init__(self, schemas: SchemaLookup, options: CodecOptions | None = None) -> None:
        self.schemas = schemas
        self.options = options or CodecOptions()

    def message_codec(self, schema: MessageSchema | str) -> "MessageCodec":
        """Bind this codec to one message type."""
        if isinstance(schema, str):
            schema = self._message_schema(schema)
        return MessageCodec(self, schema)

    # Decoding

    def decode(self, data: bytes | bytearray | memoryview, schema: MessageSchema) -> MutableMapping[str, Any]:
        """Decode a complete message body."""
        return self.read_from(WireReader(data), schema)

    def read_from(self, reader: WireReader, schema: MessageSchema) -> MutableMapping[str, Any]:
        """Decode fields from reader until its read limit."""
        return self._read_message(reader, schema, end_tag=None)

    def _read_message(
        self, reader: WireReader, schema: MessageSchema, end_tag: int | None
    ) -> MutableMapping[str, Any]:
        json_names = self.options.json_names
        result = self.options.message_factory()

        while True:
            tag = reader.read_tag()
            if tag == 0:
                if end_tag is not None:
                    raise DecodeError(f"Missing end-group tag for `{schema.full_name}`")
                break
            if tag == end_tag:
                break

            field = schema.field_by_tag(tag)
            if field is None:
                raise DecodeError(
                    f"Invalid tag 0x{tag:08x} received when decoding message `{schema.full_name}`"
                )

            key = field.key(json_names)
            if field.is_map:
                if key not in result:
                    result[key] = {}
                self._read_map_run(reader, field, tag, result[key])
            elif field.is_repeated:
                if key not in result:
                    result[key] = []
                self._read_repeated_run(reader, field, tag, result[key])
            else:
                if field.oneof is not None:
                    for member in schema.oneof_members(field.oneof):
                        if member is not field:
                            result.pop(member.key(json_names), None)
                result[key] = self._read_value(reader, field, tag)

        return result

    def _read_repeated_run(self, reader: WireReader, field: FieldSchema, tag: int, values: list) -> None:
        while True:
            if tag_wire_type(tag) == WireType.LENGTH_DELIMITED and field.type in PACKABLE_TYPES:
                old_end = reader.push_limit(reader.read_length())
                while not reader.at_limit:
                    values.append(self._read_scalar(reader, field))
                reader.pop_limit(old_end)
            else:
                values.append(self._read_value(reader, field, tag))

            if reader.peek_tag() != tag:
                break
            reader.drop_peeked()

    def _read_map_run(self, reader: WireReader, field: FieldSchema, tag: int, target: dict) -> None:
        key_field = field.map_key
        value_field = field.map_value
        assert key_field is not None and value_field is not None

        while True:
            old_end = reader.push_limit(reader.read_length())
            key = self.default_value(key_field)
            value = self.default_value(value_field)

            while (entry_tag := reader.read_tag()) != 0:
                if entry_tag == key_field.tag:
                    key = self._read_value(reader, key_field, entry_tag)
                elif entry_tag == value_field.tag:
                    value = self._read_value(reader, value_field, entry_tag)
                else:
                    raise DecodeError(
                        f"Invalid tag 0x{entry_tag:08x} in map entry `{field.type_name}`"
                    )
            reader.pop_limit(old_end)
            target[key] = value

            if reader.peek_tag() != tag:
                break
            reader.drop_peeked()

    def _read_value(self, reader: WireReader, field: FieldSchema, tag: int) -> Any:
        if field.type == FieldType.MESSAGE:
            schema = self._message_schema(field.type_name)
            old_end = reader.push_limit(reader.read_length())
            value = self._read_message(reader, schema, end_tag=None)
            reader.pop_limit(old_end)
            return value
        if field.type == FieldType.GROUP:
            schema = self._message_schema(field.type_name)
            return self._read_message(reader, schema, end_tag=end_group_tag(tag))
        return self._read_scalar(reader, field)

    def _read_scalar(self, reader: WireReader, field: FieldSchema) -> Any:
        t = field.type
        if t in FIXED_FORMATS:
            return reader.read_fixed(*FIXED_FORMATS[t])
        if t == FieldType.STRING:
            raw = reader.read_bytes()
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeError(f"Field `{field.name}` is not valid UTF-8") from e
        if t == FieldType.BYTES:
            return reader.read_bytes()

        raw_int = reader.read_varint()
        if t == FieldType.INT32:
            return to_signed(raw_int, 32)
        if t == FieldType.INT64:
            return to_signed(raw_int, 64)
        if t == FieldType.UINT32:
            return to_unsigned(raw_int, 32)
        if t == FieldType.UINT64:
            return raw_int
        if t == FieldType.SINT32:
            return zigzag_decode(to_unsigned(raw_int, 32))
        if t == FieldType.SINT64:
            return zigzag_decode(raw_int)
        if t == FieldType.BOOL:
            return raw_int != 0
        if t == FieldType.ENUM:
            return self._enum_output(field, to_signed(raw_int, 32))
        raise DecodeError(f"Unsupported field type {t!r} for field `{field.name}`")

    def _enum_output(self, field: FieldSchema, number: int) -> int | str:
        if self.options.numbered_enums:
            return number
        enum = self._enum_schema(field.type_name)
        name = enum.name_of(number)
        if name is None:
            raise DecodeError(f"Unknown value {number} for enum `{enum.full_name}`")
        return name

    def default_value(self, field: FieldSchema) -> Any:
        """Zero value of a field's type, as decode would represent it."""
        t = field.type
        if t == FieldType.STRING:
            return ""
        if t == FieldType.BYTES:
            return b""
        if t == FieldType.BOOL:
            return False
        if t in (FieldType.DOUBLE, FieldType.FLOAT):
            return 0.0
        if t in (FieldType.MESSAGE, FieldType.GROUP):
            return self.options.message_factory()
        if t == FieldType.ENUM:
            enum = self._enum_schema(field.type_name)
            if self.options.numbered_enums:
                return enum.default_number
            return enum.default_name
        return 0

    # Encoding

    def encode(self, value: Mapping[str, Any], schema: MessageSchema) -> bytes:
        """Encode a dynamic value into wire bytes."""
        writer = WireWriter()
        self.write_to(value, schema, writer)
        return writer.getvalue()

    def compute_size(self, value: Mapping[str, Any], schema: MessageSchema) -> int:
        """Exact number of bytes ``write_to`` produces for value."""
        size = 0
        for field, item in self._present_fields(value, schema):
            size += self._field_size(field, item)
        return size

    def write_to(self, value: Mapping[str, Any], schema: MessageSchema, writer: WireWriter) -> None:
        for field, item in self._present_fields(value, schema):
            self._write_field(field, item, writer)

    def _present_fields(self, value: Mapping[str, Any], schema: MessageSchema):
        if not isinstance(value, Mapping):
            raise EncodeError(
                f"Message `{schema.full_name}` expects a mapping instead of {type(value).__name__}"
            )

        json_names = self.options.json_names
        oneofs: dict[str, str] = {}
        for key, item in value.items():
            field = schema.field_by_name(key, json_names)
            if field is None:
                raise EncodeError(f"Field `{key}` not found in message type `{schema.full_name}`")
            if item is None:
                continue
            if field.oneof is not None:
                if field.oneof in oneofs:
                    raise EncodeError(
                        f"Fields `{oneofs[field.oneof]}` and `{key}` are both members of oneof "
                        f"`{field.oneof}` in `{schema.full_name}`"
                    )
                oneofs[field.oneof] = key
            yield field, item

    def _field_size(self, field: FieldSchema, item: Any) -> int:
        tag_size = varint_size(field.tag)

        if field.is_map:
            size = 0
            for key, value, key_present, value_present in self._map_entries(field, item):
                entry_size = self._entry_size(field, key, value, key_present, value_present)
                size += tag_size + varint_size(entry_size) + entry_size
            return size

        if field.is_repeated:
            values = [self._coerce(field, v) for v in self._repeated_items(field, item)]
            if not values:
                return 0
            if field.is_packed:
                payload = sum(self._value_size(field, v) for v in values)
                return tag_size + varint_size(payload) + payload
            return sum(tag_size + self._value_size(field, v) for v in values)

        return tag_size + self._value_size(field, self._coerce(field, item))

    def _write_field(self, field: FieldSchema, item: Any, writer: WireWriter) -> None:
        tag = field.tag

        if field.is_map:
            key_field = field.map_key
            value_field = field.map_value
            for key, value, key_present, value_present in self._map_entries(field, item):
                writer.write_tag(tag)
                writer.write_length(self._entry_size(field, key, value, key_present, value_present))
                if key_present:
                    writer.write_tag(key_field.tag)
                    self._write_value(key_field, key, writer)
                if value_present:
                    writer.write_tag(value_field.tag)
                    self._write_value(value_field, value, writer)
            return

        if field.is_repeated:
            values = [self._coerce(field, v) for v in self._repeated_items(field, item)]
            if not values:
                return
            if field.is_packed:
                writer.write_tag(tag)
                writer.write_length(sum(self._value_size(field, v) for v in values))
                for v in values:
                    self._write_scalar(field, v, writer)
            else:
                for v in values:
                    writer.write_tag(tag)
                    self._write_value(field, v, writer)
            return

        writer.write_tag(tag)
        self._write_value(field, self._coerce(field, item), writer)

    def _map_entries(self, field: FieldSchema, item: Any):
        if not isinstance(item, Mapping):
            raise EncodeError(
                f"Map field `{field.name}` is expecting a mapping type instead of {type(item).__name__}"
            )
        key_field = field.map_key
        value_field = field.map_value
        for key, value in item.items():
            key = self._coerce(key_field, key)
            value = self._coerce(value_field, value)
            yield key, value, not self._is_default(key_field, key), not self._is_default(value_field, value)

    def _entry_size(self, field: FieldSchema, key: Any, value: Any, key_present: bool, value_present: bool) -> int:
        size = 0
        if key_present:
            size += varint_size(field.map_key.tag) + self._value_size(field.map_key, key)
        if value_present:
            size += varint_size(field.map_value.tag) + self._value_size(field.map_value, value)
        return size

    def _repeated_items(self, field: FieldSchema, item: Any) -> list | tuple:
        if isinstance(item, (str, bytes, bytearray, Mapping)) or not isinstance(item, (list, tuple)):
            raise EncodeError(
                f"Repeated field `{field.name}` is expecting a list instead of {type(item).__name__}"
            )
        return item

    def _value_size(self, field: FieldSchema, value: Any) -> int:
        """Size of one coerced value, without its tag."""
        t = field.type
        if t == FieldType.MESSAGE:
            size = self.compute_size(value, self._message_schema(field.type_name))
            return varint_size(size) + size
        if t == FieldType.GROUP:
            size = self.compute_size(value, self._message_schema(field.type_name))
            return size + varint_size(end_group_tag(field.tag))
        if t in FIXED_FORMATS:
            return FIXED_FORMATS[t][1]
        if t in (FieldType.STRING, FieldType.BYTES):
            return varint_size(len(value)) + len(value)
        if t == FieldType.BOOL:
            return 1
        if t == FieldType.SINT32:
            return varint_size(zigzag_encode(value, 32))
        if t == FieldType.SINT64:
            return varint_size(zigzag_encode(value, 64))
        return varint_size(value)

    def _write_value(self, field: FieldSchema, value: Any, writer: WireWriter) -> None:
        """Write one coerced value, without its tag."""
        t = field.type
        if t == FieldType.MESSAGE:
            schema = self._message_schema(field.type_name)
            writer.write_length(self.compute_size(value, schema))
            self.write_to(value, schema, writer)
        elif t == FieldType.GROUP:
            schema = self._message_schema(field.type_name)
            self.write_to(value, schema, writer)
            writer.write_tag(end_group_tag(field.tag))
        else:
            self._write_scalar(field, value, writer)

    def _write_scalar(self, field: FieldSchema, value: Any, writer: WireWriter) -> None:
        t = field.type
        if t in FIXED_FORMATS:
            writer.write_fixed(FIXED_FORMATS[t][0], value)
        elif t in (FieldType.STRING, FieldType.BYTES):
            writer.write_bytes(value)
        elif t == FieldType.BOOL:
            writer.write_varint(1 if value else 0)
        elif t == FieldType.SINT32:
            writer.write_varint(zigzag_encode(value, 32))
        elif t == FieldType.SINT64:
            writer.write_varint(zigzag_encode(value, 64))
        else:
            writer.write_varint(value)

    def _coerce(self, field: FieldSchema, value: Any) -> Any:
        """Validate a dynamic value and convert it to its wire-ready form.

        Strings become UTF-8 bytes, enum names become numbers, and
        integers are range checked. Messages are passed through.
        """
        t = field.type
        if t in (FieldType.MESSAGE, FieldType.GROUP):
            if not isinstance(value, Mapping):
                raise EncodeError(
                    f"Field `{field.name}` is expecting a mapping for `{field.type_name}` "
                    f"instead of {type(value).__name__}"
                )
            return value
        if t == FieldType.STRING:
            if not isinstance(value, str):
                raise EncodeError(f"Field `{field.name}` is expecting a str instead of {type(value).__name__}")
            try:
                return value.encode("utf-8")
            except UnicodeEncodeError as e:
                raise EncodeError(f"Field `{field.name}` holds a string that is not valid UTF-8: {e}") from e
        if t == FieldType.BYTES:
            if not isinstance(value, (bytes, bytearray, memoryview)):
                raise EncodeError(f"Field `{field.name}` is expecting bytes instead of {type(value).__name__}")
            return bytes(value)
        if t == FieldType.BOOL:
            if not isinstance(value, int):
                raise EncodeError(f"Field `{field.name}` is expecting a bool instead of {type(value).__name__}")
            return bool(value)
        if t in (FieldType.DOUBLE, FieldType.FLOAT):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise EncodeError(f"Field `{field.name}` is expecting a float instead of {type(value).__name__}")
            try:
                value = float(value)
            except OverflowError as e:
                raise EncodeError(f"Value {value} is out of range for {t.name.lower()} field `{field.name}`") from e
            if t == FieldType.FLOAT and math.isfinite(value) and abs(value) > FLOAT_MAX:
                raise EncodeError(f"Value {value} is out of range for float field `{field.name}`")
            return value
        if t == FieldType.ENUM:
            value = self._enum_input(field, value)

        if isinstance(value, bool) or not isinstance(value, int):
            raise EncodeError(f"Field `{field.name}` is expecting an int instead of {type(value).__name__}")
        low, high = INT_RANGES[t]
        if not low <= value <= high:
            raise EncodeError(f"Value {value} is out of range for {t.name.lower()} field `{field.name}`")
        return value

    def _enum_input(self, field: FieldSchema, value: Any) -> Any:
        if isinstance(value, Enum):
            value = value.name
        if isinstance(value, str):
            enum = self._enum_schema(field.type_name)
            number = enum.number_of(value)
            if number is None:
                raise EncodeError(f"Unknown name `{value}` for enum `{enum.full_name}`")
            return number
        return value

    @staticmethod
    def _is_default(field: FieldSchema, value: Any) -> bool:
        if field.type in (FieldType.MESSAGE, FieldType.GROUP):
            return False
        if field.type in (FieldType.STRING, FieldType.BYTES):
            return len(value) == 0
        if field.type in (FieldType.DOUBLE, FieldType.FLOAT):
            # -0.0 is distinct from the default
            return value == 0 and math.copysign(1.0, value) > 0
        return value == 0

    def _message_schema(self, full_name: str | None) -> MessageSchema:
        schema = self.schemas.find_message(full_name) if full_name else None
        if schema is None:
            raise SchemaError(f"Cannot find message type `{full_name}`")
        return schema

    def _enum_schema(self, full_name: str | None) -> EnumSchema:
        enum = self.schemas.find_enum(full_name) if full_name else None
        if enum is None:
            raise SchemaError(f"Cannot find enum type `{full_name}`")
        return enum


class MessageCodec:
    """A ``Codec`` bound to one message type: the marshaller pair for it."""

    def __init__(self, codec: Codec, schema: MessageSchema) -> None:
        self.codec = codec
        self.schema = schema

    def __repr__(self) -> str:
        return f"MessageCodec({self.schema.full_name!r})"

    def decode(self, data: bytes | bytearray | memoryview) -> MutableMapping[str, Any]:
        return self.codec.decode(data, self.schema)

    def encode(self, value: Mapping[str, Any]) -> bytes:
        return self.codec.encode(value, self.schema)

    def compute_size(self, value: Mapping[str, Any]) -> int:
        return self.codec.compute_size(value, self.schema)
