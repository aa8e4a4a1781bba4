"""gRPC client for services known only through runtime schemas."""

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping, MutableMapping, Sequence
from typing import Any

import grpc

from ..proto.any import pack_any_fields, unpack_any_fields
from ..proto.codec import Codec, CodecOptions
from ..proto.registry import NotFoundError, SchemaRegistry
from ..proto.types import MethodSchema
from .reflection import registry_from_reflection

_log = logging.getLogger(__name__)

Metadata = Sequence[tuple[str, str | bytes]]


class CallError(RuntimeError):
    """Raised when a method is called with the wrong call style."""


def parse_method_path(path: str) -> tuple[str, str]:
    """Split ``pkg.Service/Method`` (or ``pkg.Service.Method``) into its parts."""
    path = path.lstrip("/")
    if "/" in path:
        service, _, method = path.rpartition("/")
    else:
        service, _, method = path.rpartition(".")
    if not service or not method:
        raise ValueError(f"Invalid method path {path!r}, expecting `package.Service/Method`")
    return service, method


class DynamicClient:
    """Call any method in a registry over a grpcio channel.

    Requests and responses are dynamic values. With ``expand_any`` set,
    ``google.protobuf.Any`` values use the ``@type`` form on both sides.

    Example:
        registry = SchemaRegistry.from_descriptor_set(data)
        client = DynamicClient(grpc.insecure_channel("localhost:50051"), registry)
        reply = client.unary_call("greet.Greeter", "SayHello", {"name": "World"})
    """

    def __init__(
        self,
        channel: grpc.Channel,
        registry: SchemaRegistry,
        options: CodecOptions | None = None,
        *,
        expand_any: bool = True,
    ) -> None:
        self.channel = channel
        self.registry = registry
        self.options = options or CodecOptions()
        self.expand_any = expand_any
        self._codec = Codec(registry, self.options)
        self._marshallers: dict[str, tuple[Callable, Callable]] = {}

    @classmethod
    def from_reflection(
        cls,
        channel: grpc.Channel,
        options: CodecOptions | None = None,
        *,
        timeout: float | None = None,
        expand_any: bool = True,
    ) -> "DynamicClient":
        """Create a client whose registry comes from the server's reflection service."""
        return cls(channel, registry_from_reflection(channel, timeout=timeout), options, expand_any=expand_any)

    @property
    def files(self):
        """File descriptor protos of the registry, in dependency order."""
        return self.registry.files

    def method(self, service: str, method: str) -> MethodSchema:
        schema = self.registry.find_method(service, method)
        if schema is None:
            if self.registry.find_service(service) is None:
                raise NotFoundError(f"Unable to find the service `{service}`")
            raise NotFoundError(f"Unable to find the method `{method}` in service `{service}`")
        return schema

    def marshallers(self, service: str, method: str) -> tuple[Callable, Callable]:
        """Return the ``(request_serializer, response_deserializer)`` pair for a method."""
        schema = self.method(service, method)
        if schema.path in self._marshallers:
            return self._marshallers[schema.path]

        encode, decode = self.registry.method_codecs(service, method, self.options)
        serializer, deserializer = encode, decode
        if self.expand_any:
            request_schema = self.registry.find_message(schema.input_type)
            response_schema = self.registry.find_message(schema.output_type)

            def serializer(value: Mapping[str, Any]) -> bytes:
                return encode(pack_any_fields(value, request_schema, self._codec))

            def deserializer(data: bytes) -> MutableMapping[str, Any]:
                return unpack_any_fields(decode(data), response_schema, self._codec)

        self._marshallers[schema.path] = (serializer, deserializer)
        return serializer, deserializer

    def _prepare(self, service: str, method: str, kind: str) -> tuple[MethodSchema, Callable, Callable]:
        schema = self.method(service, method)
        if schema.kind != kind:
            raise CallError(f"`{schema.path}` is a {schema.kind} method, not {kind}")
        serializer, deserializer = self.marshallers(service, method)
        _log.debug("Calling %s (%s)", schema.path, kind)
        return schema, serializer, deserializer

    def unary_call(
        self,
        service: str,
        method: str,
        request: Mapping[str, Any],
        *,
        timeout: float | None = None,
        metadata: Metadata | None = None,
    ) -> MutableMapping[str, Any]:
        schema, serializer, deserializer = self._prepare(service, method, "unary")
        call = self.channel.unary_unary(
            schema.path, request_serializer=serializer, response_deserializer=deserializer
        )
        return call(request, timeout=timeout, metadata=metadata)

    def server_streaming_call(
        self,
        service: str,
        method: str,
        request: Mapping[str, Any],
        *,
        timeout: float | None = None,
        metadata: Metadata | None = None,
    ) -> Iterator[MutableMapping[str, Any]]:
        schema, serializer, deserializer = self._prepare(service, method, "server_streaming")
        call = self.channel.unary_stream(
            schema.path, request_serializer=serializer, response_deserializer=deserializer
        )
        return call(request, timeout=timeout, metadata=metadata)

    def client_streaming_call(
        self,
        service: str,
        method: str,
        requests: Iterable[Mapping[str, Any]],
        *,
        timeout: float | None = None,
        metadata: Metadata | None = None,
    ) -> MutableMapping[str, Any]:
        schema, serializer, deserializer = self._prepare(service, method, "client_streaming")
        call = self.channel.stream_unary(
            schema.path, request_serializer=serializer, response_deserializer=deserializer
        )
        return call(iter(requests), timeout=timeout, metadata=metadata)

    def duplex_streaming_call(
        self,
        service: str,
        method: str,
        requests: Iterable[Mapping[str, Any]],
        *,
        timeout: float | None = None,
        metadata: Metadata | None = None,
    ) -> Iterator[MutableMapping[str, Any]]:
        schema, serializer, deserializer = self._prepare(service, method, "duplex_streaming")
        call = self.channel.stream_stream(
            schema.path, request_serializer=serializer, response_deserializer=deserializer
        )
        return call(iter(requests), timeout=timeout, metadata=metadata)

    def call(
        self,
        service: str,
        method: str,
        requests: Iterable[Mapping[str, Any]],
        *,
        timeout: float | None = None,
        metadata: Metadata | None = None,
    ) -> Iterator[MutableMapping[str, Any]]:
        """Call a method of any kind and yield its responses.

        Unary and server-streaming methods are called once per request.
        Client-streaming and duplex methods receive all requests on a
        single call.
        """
        kind = self.method(service, method).kind
        kwargs = {"timeout": timeout, "metadata": metadata}

        if kind == "unary":
            for request in requests:
                yield self.unary_call(service, method, request, **kwargs)
        elif kind == "server_streaming":
            for request in requests:
                yield from self.server_streaming_call(service, method, request, **kwargs)
        elif kind == "client_streaming":
            yield self.client_streaming_call(service, method, requests, **kwargs)
        else:
            yield from self.duplex_streaming_call(service, method, requests, **kwargs)
