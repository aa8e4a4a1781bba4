"""Translate between JSON-compatible data and dynamic values.

JSON has no bytes, no non-string object keys and no NaN, so these follow
the protobuf JSON mapping for those cases: bytes are base64 strings, map
keys are strings, and non-finite floats are ``"NaN"``, ``"Infinity"`` and
``"-Infinity"``. 64-bit integers are accepted as strings on input.
"""

import base64
import binascii
import math
from collections.abc import Mapping
from typing import Any

from ..proto.any import ANY_TYPE_NAME, TYPE_KEY, type_name_of
from ..proto.codec import Codec
from ..proto.types import FieldSchema, FieldType, MessageSchema
from ..proto.wire import EncodeError

_FLOAT_NAMES = {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}

_INT_TYPES = frozenset(
    [
        FieldType.INT32,
        FieldType.INT64,
        FieldType.UINT32,
        FieldType.UINT64,
        FieldType.SINT32,
        FieldType.SINT64,
        FieldType.FIXED32,
        FieldType.FIXED64,
        FieldType.SFIXED32,
        FieldType.SFIXED64,
    ]
)


def from_json_value(data: Any, schema: MessageSchema, codec: Codec) -> Any:
    """Convert parsed JSON for a message of schema into a dynamic value."""
    if not isinstance(data, Mapping):
        return data
    schema = _any_target(data, schema, codec)

    out: dict[str, Any] = {}
    for key, item in data.items():
        field = schema.field_by_name(key, codec.options.json_names)
        if field is None or item is None:
            # Left for the codec to report
            out[key] = item
        elif field.is_map:
            if isinstance(item, Mapping):
                out[key] = {
                    _key_from_json(field.map_key, k): _scalar_from_json(field.map_value, v, codec)
                    for k, v in item.items()
                }
            else:
                out[key] = item
        elif field.is_repeated and isinstance(item, list):
            out[key] = [_scalar_from_json(field, v, codec) for v in item]
        else:
            out[key] = _scalar_from_json(field, item, codec)
    return out


def to_json_value(value: Any, schema: MessageSchema, codec: Codec) -> Any:
    """Convert a decoded dynamic value into JSON-compatible data."""
    if not isinstance(value, Mapping):
        return value
    schema = _any_target(value, schema, codec)

    out: dict[str, Any] = {}
    for key, item in value.items():
        field = schema.field_by_name(key, codec.options.json_names)
        if field is None:
            out[key] = item
        elif field.is_map:
            out[key] = {_key_to_json(k): _scalar_to_json(field.map_value, v, codec) for k, v in item.items()}
        elif field.is_repeated:
            out[key] = [_scalar_to_json(field, v, codec) for v in item]
        else:
            out[key] = _scalar_to_json(field, item, codec)
    return out


def _any_target(data: Mapping[str, Any], schema: MessageSchema, codec: Codec) -> MessageSchema:
    """Schema of the content of an expanded ``Any``, else schema itself."""
    if schema.full_name != ANY_TYPE_NAME or TYPE_KEY not in data:
        return schema
    return codec.schemas.find_message(type_name_of(data[TYPE_KEY])) or schema


def _scalar_from_json(field: FieldSchema, value: Any, codec: Codec) -> Any:
    t = field.type
    if t in (FieldType.MESSAGE, FieldType.GROUP):
        nested = codec.schemas.find_message(field.type_name)
        return from_json_value(value, nested, codec) if nested else value
    if t == FieldType.BYTES and isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error:
            try:
                return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
            except binascii.Error as e:
                raise EncodeError(f"Field `{field.name}` is not valid base64") from e
    if t in (FieldType.DOUBLE, FieldType.FLOAT) and isinstance(value, str):
        if value in _FLOAT_NAMES:
            return _FLOAT_NAMES[value]
        return _parse(field, value, float)
    if t in _INT_TYPES:
        if isinstance(value, str):
            return _parse(field, value, int)
        if isinstance(value, float) and value.is_integer():
            return int(value)
    return value


def _scalar_to_json(field: FieldSchema, value: Any, codec: Codec) -> Any:
    t = field.type
    if t in (FieldType.MESSAGE, FieldType.GROUP):
        nested = codec.schemas.find_message(field.type_name)
        return to_json_value(value, nested, codec) if nested else value
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return "NaN"
        return "Infinity" if value > 0 else "-Infinity"
    return value


def _key_from_json(field: FieldSchema, key: str) -> Any:
    if field.type == FieldType.BOOL:
        if key not in ("true", "false"):
            raise EncodeError(f"Map key `{key}` is not a bool")
        return key == "true"
    if field.type in _INT_TYPES:
        return _parse(field, key, int)
    return key


def _key_to_json(key: Any) -> str:
    if isinstance(key, bool):
        return "true" if key else "false"
    return str(key)


def _parse(field: FieldSchema, text: str, kind: type) -> Any:
    try:
        return kind(text)
    except ValueError as e:
        raise EncodeError(f"Field `{field.name}` cannot be parsed from {text!r}") from e
