"""The ``@type`` convention for ``google.protobuf.Any``.

The codec treats ``Any`` as the ordinary two-field message it is on the
wire: ``{"type_url": str, "value": bytes}``. At the API boundary the
packed bytes are easier to work with expanded::

    {"@type": "type.googleapis.com/pkg.Inner", "field": 1}

``pack_any_fields`` turns the expanded form into the wire form before
encoding and ``unpack_any_fields`` does the reverse after decoding.
Values in the wire form pass through ``pack_any_fields`` unchanged.
"""

from collections.abc import Callable, Mapping
from typing import Any

from .codec import Codec
from .types import FieldSchema, MessageSchema
from .wire import EncodeError

ANY_TYPE_NAME = "google.protobuf.Any"
TYPE_URL_PREFIX = "type.googleapis.com/"
TYPE_KEY = "@type"


def type_url_of(type_name: str) -> str:
    return f"{TYPE_URL_PREFIX}{type_name.lstrip('.')}"


def type_name_of(type_url: str) -> str:
    """Message name of a type URL: everything after the last ``/``."""
    return type_url.rpartition("/")[2]


def with_any(value: Mapping[str, Any], type_name: str) -> dict[str, Any]:
    """Mark value as the content of an ``Any`` holding type_name."""
    return {TYPE_KEY: type_url_of(type_name), **value}


def pack_any_fields(value: Any, schema: MessageSchema, codec: Codec) -> Any:
    """Return a copy of value with every expanded ``Any`` packed to bytes.

    Raises ``EncodeError`` when an ``@type`` names a message the codec
    cannot find.
    """
    if schema.full_name == ANY_TYPE_NAME:
        return _pack_any(value, codec)
    if not isinstance(value, Mapping):
        # Left for the codec to reject
        return value

    json_names = codec.options.json_names
    out: dict[str, Any] = {}
    for key, item in value.items():
        field = schema.field_by_name(key, json_names)
        if field is None or item is None:
            out[key] = item
        else:
            out[key] = _walk(field, item, codec, pack_any_fields)
    return out


def unpack_any_fields(value: Any, schema: MessageSchema, codec: Codec) -> Any:
    """Return a copy of decoded value with every ``Any`` expanded.

    An ``Any`` whose type URL is not in the codec's schemas stays packed.
    """
    if schema.full_name == ANY_TYPE_NAME:
        return _unpack_any(value, codec)

    json_names = codec.options.json_names
    out = codec.options.message_factory()
    for key, item in value.items():
        field = schema.field_by_name(key, json_names)
        out[key] = item if field is None else _walk(field, item, codec, unpack_any_fields)
    return out


def _walk(
    field: FieldSchema,
    item: Any,
    codec: Codec,
    fn: Callable[[Any, MessageSchema, Codec], Any],
) -> Any:
    """Apply fn to every message held by one field value."""
    if field.is_map:
        value_field = field.map_value
        if value_field is None or not value_field.is_message or not isinstance(item, Mapping):
            return item
        schema = codec.schemas.find_message(value_field.type_name)
        if schema is None:
            return item
        return {k: fn(v, schema, codec) for k, v in item.items()}

    if not field.is_message:
        return item
    schema = codec.schemas.find_message(field.type_name)
    if schema is None:
        return item
    if field.is_repeated:
        if not isinstance(item, (list, tuple)):
            return item
        return [fn(v, schema, codec) for v in item]
    return fn(item, schema, codec)


def _any_keys(codec: Codec) -> tuple[str, str]:
    return ("typeUrl" if codec.options.json_names else "type_url"), "value"


def _pack_any(value: Any, codec: Codec) -> Any:
    if not isinstance(value, Mapping) or TYPE_KEY not in value:
        return value

    type_url = value[TYPE_KEY]
    schema = codec.schemas.find_message(type_name_of(type_url))
    if schema is None:
        raise EncodeError(f"Unable to find the message type `{type_url}` for an Any value")

    inner = {k: v for k, v in value.items() if k != TYPE_KEY}
    inner = pack_any_fields(inner, schema, codec)
    url_key, value_key = _any_keys(codec)
    return {url_key: type_url, value_key: codec.encode(inner, schema)}


def _unpack_any(value: Any, codec: Codec) -> Any:
    url_key, value_key = _any_keys(codec)
    if not isinstance(value, Mapping) or not value.get(url_key):
        return value

    type_url = value[url_key]
    schema = codec.schemas.find_message(type_name_of(type_url))
    if schema is None:
        return value

    inner = codec.decode(value.get(value_key, b""), schema)
    out = codec.options.message_factory()
    out[TYPE_KEY] = type_url
    out.update(unpack_any_fields(inner, schema, codec))
    return out
