"""Schema registry built from protobuf file descriptors.

Files may arrive in any order (reflection does not sort them), so they are
first put in dependency order, then loaded into a ``DescriptorPool`` and
indexed into the runtime schema model from ``types``.
"""

import logging
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from typing import Any, TypeVar

from google.protobuf import descriptor_pb2, descriptor_pool
from google.protobuf.descriptor import FileDescriptor
from google.protobuf.message import DecodeError as ProtobufDecodeError

from .codec import Codec, CodecOptions
from .types import (
    PACKABLE_TYPES,
    Cardinality,
    EnumSchema,
    FieldSchema,
    FieldType,
    MessageSchema,
    MethodSchema,
    SchemaError,
    ServiceSchema,
    json_name_of,
)

_log = logging.getLogger(__name__)

T = TypeVar("T")

FileProto = descriptor_pb2.FileDescriptorProto
Label = descriptor_pb2.FieldDescriptorProto


class RegistryError(SchemaError):
    """Raised when a set of files cannot be turned into a registry."""


class NotFoundError(LookupError):
    """Raised when a service, method or message is not in the registry."""


def order_units(units: Iterable[T], name: Callable[[T], str], dependencies: Callable[[T], Iterable[str]]) -> list[T]:
    """Return units so that every unit comes after all of its dependencies.

    Any valid order is accepted; among several ready units the first one
    in input order is taken.
    """
    remaining = list(units)
    resolved: set[str] = set()
    ordered: list[T] = []

    while remaining:
        for i, unit in enumerate(remaining):
            if all(dep in resolved for dep in dependencies(unit)):
                break
        else:
            stuck = ", ".join(name(u) for u in remaining)
            raise RegistryError(
                f"Invalid proto dependencies. Unable to resolve remaining protos [{stuck}] "
                "that don't have all their dependencies available."
            )
        ordered.append(remaining.pop(i))
        resolved.add(name(unit))

    return ordered


class SchemaRegistry:
    """Messages, enums and services of a set of protobuf files.

    The ``find_*`` lookups return ``None`` when a name is unknown.
    ``method_codecs`` raises ``NotFoundError`` instead, for callers that
    want to fail with a message.
    """

    def __init__(self, files: Iterable[FileProto]) -> None:
        unique: dict[str, FileProto] = {}
        for fdp in files:
            unique.setdefault(fdp.name, fdp)

        self.files: list[FileProto] = order_units(
            unique.values(), name=lambda f: f.name, dependencies=lambda f: f.dependency
        )
        self.pool = descriptor_pool.DescriptorPool()

        self._messages: dict[str, MessageSchema] = {}
        self._enums: dict[str, EnumSchema] = {}
        self._services: dict[str, ServiceSchema] = {}
        # Source protos, for printing
        self._protos: dict[str, tuple[FileProto, Any]] = {}
        self._kinds: dict[str, str] = {}

        for fdp in self.files:
            _log.debug("Loading %s", fdp.name)
            try:
                self.pool.AddSerializedFile(fdp.SerializeToString())
            except (TypeError, KeyError, ValueError) as e:
                raise RegistryError(f"Unable to load `{fdp.name}` into the descriptor pool: {e}") from e
            self._collect_names(fdp)

        for fdp in self.files:
            self._index_file(fdp)

        _log.debug(
            "Indexed %d files: %d services, %d messages, %d enums",
            len(self.files),
            len(self._services),
            len(self._messages),
            len(self._enums),
        )

    @classmethod
    def from_file_protos(cls, protos: Iterable[FileProto]) -> "SchemaRegistry":
        return cls(protos)

    @classmethod
    def from_file_descriptors(cls, descriptors: Iterable[FileDescriptor]) -> "SchemaRegistry":
        """Build from loaded descriptors, pulling in their imports too."""
        protos: list[FileProto] = []
        seen: set[str] = set()
        pending = list(descriptors)
        while pending:
            fd = pending.pop()
            if fd.name in seen:
                continue
            seen.add(fd.name)
            fdp = FileProto()
            fd.CopyToProto(fdp)
            protos.append(fdp)
            pending.extend(fd.dependencies)
        return cls(protos)

    @classmethod
    def from_serialized(cls, blobs: Iterable[bytes]) -> "SchemaRegistry":
        """Build from serialized ``FileDescriptorProto`` blobs."""
        protos = []
        for blob in blobs:
            try:
                protos.append(FileProto.FromString(blob))
            except ProtobufDecodeError as e:
                raise RegistryError(f"Invalid file descriptor: {e}") from e
        return cls(protos)

    @classmethod
    def from_descriptor_set(cls, data: bytes) -> "SchemaRegistry":
        """Build from serialized ``FileDescriptorSet`` bytes (``protoc --descriptor_set_out``)."""
        try:
            fds = descriptor_pb2.FileDescriptorSet.FromString(data)
        except ProtobufDecodeError as e:
            raise RegistryError(f"Invalid file descriptor set: {e}") from e
        return cls(fds.file)

    # Lookups

    @property
    def services(self) -> list[ServiceSchema]:
        return list(self._services.values())

    @property
    def message_names(self) -> list[str]:
        return list(self._messages)

    def find_service(self, full_name: str) -> ServiceSchema | None:
        return self._services.get(full_name)

    def find_method(self, service: str, method: str) -> MethodSchema | None:
        svc = self._services.get(service)
        return svc.find_method(method) if svc else None

    def find_message(self, full_name: str) -> MessageSchema | None:
        return self._messages.get(full_name.lstrip("."))

    def find_enum(self, full_name: str) -> EnumSchema | None:
        return self._enums.get(full_name.lstrip("."))

    def find_file(self, name: str) -> FileProto | None:
        for fdp in self.files:
            if fdp.name == name:
                return fdp
        return None

    def find_proto(self, symbol: str) -> tuple[FileProto, Any] | None:
        """Return the defining file and descriptor proto of a service, message or enum."""
        return self._protos.get(symbol.lstrip("."))

    def codec(self, options: CodecOptions | None = None) -> Codec:
        return Codec(self, options)

    def method_codecs(
        self, service: str, method: str, options: CodecOptions | None = None
    ) -> tuple[Callable[[Mapping[str, Any]], bytes], Callable[[bytes], MutableMapping[str, Any]]]:
        """Return the ``(encode_request, decode_response)`` pair for a method."""
        if service not in self._services:
            raise NotFoundError(f"Unable to find the service `{service}`")
        schema = self.find_method(service, method)
        if schema is None:
            raise NotFoundError(f"Unable to find the method `{method}` in service `{service}`")

        codec = self.codec(options)
        request = self.find_message(schema.input_type)
        if request is None:
            raise NotFoundError(f"Unable to find the input type `{schema.input_type}` of `{schema.path}`")
        response = self.find_message(schema.output_type)
        if response is None:
            raise NotFoundError(f"Unable to find the output type `{schema.output_type}` of `{schema.path}`")

        return codec.message_codec(request).encode, codec.message_codec(response).decode

    # Indexing

    def _collect_names(self, fdp: FileProto) -> None:
        package = fdp.package

        def visit(desc: descriptor_pb2.DescriptorProto, scope: str) -> None:
            full_name = _join(scope, desc.name)
            self._kinds[full_name] = "message"
            self._protos[full_name] = (fdp, desc)
            for nested in desc.nested_type:
                visit(nested, full_name)
            for enum in desc.enum_type:
                self._kinds[_join(full_name, enum.name)] = "enum"
                self._protos[_join(full_name, enum.name)] = (fdp, enum)

        for desc in fdp.message_type:
            visit(desc, package)
        for enum in fdp.enum_type:
            self._kinds[_join(package, enum.name)] = "enum"
            self._protos[_join(package, enum.name)] = (fdp, enum)
        for svc in fdp.service:
            self._protos[_join(package, svc.name)] = (fdp, svc)

    def _index_file(self, fdp: FileProto) -> None:
        package = fdp.package
        syntax = fdp.syntax or "proto2"

        for desc in fdp.message_type:
            self._index_message(desc, package, syntax)
        for enum in fdp.enum_type:
            self._index_enum(enum, package)

        for svc in fdp.service:
            full_name = _join(package, svc.name)
            methods = {
                m.name: MethodSchema(
                    name=m.name,
                    service=full_name,
                    input_type=self.resolve(m.input_type, package),
                    output_type=self.resolve(m.output_type, package),
                    client_streaming=m.client_streaming,
                    server_streaming=m.server_streaming,
                )
                for m in svc.method
            }
            self._services[full_name] = ServiceSchema(full_name=full_name, methods=methods, file=fdp.name)

    def _index_message(self, desc: descriptor_pb2.DescriptorProto, scope: str, syntax: str) -> None:
        full_name = _join(scope, desc.name)

        for nested in desc.nested_type:
            self._index_message(nested, full_name, syntax)
        for enum in desc.enum_type:
            self._index_enum(enum, full_name)

        map_entries = {_join(full_name, n.name): n for n in desc.nested_type if n.options.map_entry}
        fields = []
        for fd in desc.field:
            fields.append(self._field_schema(desc, fd, full_name, syntax, map_entries))

        try:
            self._messages[full_name] = MessageSchema(
                full_name=full_name,
                fields=tuple(fields),
                syntax=syntax,
                map_entry=desc.options.map_entry,
            )
        except SchemaError as e:
            raise RegistryError(str(e)) from e

    def _index_enum(self, enum: descriptor_pb2.EnumDescriptorProto, scope: str) -> None:
        full_name = _join(scope, enum.name)
        self._enums[full_name] = EnumSchema(
            full_name=full_name, values=tuple((v.name, v.number) for v in enum.value)
        )

    def _field_schema(
        self,
        desc: descriptor_pb2.DescriptorProto,
        fd: descriptor_pb2.FieldDescriptorProto,
        scope: str,
        syntax: str,
        map_entries: dict[str, descriptor_pb2.DescriptorProto],
    ) -> FieldSchema:
        type_name = self.resolve(fd.type_name, scope) if fd.type_name else None
        if fd.type:
            field_type = FieldType(fd.type)
        elif type_name is not None:
            # Hand-built descriptors may leave the type for the pool to infer
            field_type = FieldType.ENUM if self._kinds[type_name] == "enum" else FieldType.MESSAGE
        else:
            raise RegistryError(f"Field `{fd.name}` of `{scope}` has no type")

        oneof = None
        if fd.HasField("oneof_index") and not fd.proto3_optional:
            oneof = desc.oneof_decl[fd.oneof_index].name

        cardinality = Cardinality.SINGULAR
        map_key = map_value = None
        if fd.label == Label.LABEL_REPEATED:
            if type_name in map_entries:
                cardinality = Cardinality.MAP
                entry = map_entries[type_name]
                entry_fields = {
                    f.number: self._field_schema(entry, f, type_name, syntax, {}) for f in entry.field
                }
                map_key, map_value = entry_fields.get(1), entry_fields.get(2)
                if map_key is None or map_value is None:
                    raise RegistryError(f"Map entry `{type_name}` needs a key and a value field")
            elif field_type in PACKABLE_TYPES and _is_packed(fd, syntax):
                cardinality = Cardinality.PACKED
            else:
                cardinality = Cardinality.REPEATED

        return FieldSchema(
            number=fd.number,
            name=fd.name,
            json_name=fd.json_name if fd.HasField("json_name") else json_name_of(fd.name),
            type=field_type,
            cardinality=cardinality,
            type_name=type_name,
            oneof=oneof,
            map_key=map_key,
            map_value=map_value,
        )

    def resolve(self, type_name: str, scope: str) -> str:
        """Resolve a type reference made from within scope to a full name.

        A leading dot means the name is already fully qualified. Otherwise
        the innermost enclosing scope that defines the name wins.
        """
        if type_name.startswith("."):
            full_name = type_name[1:]
            if full_name not in self._kinds:
                raise RegistryError(f"Unable to resolve type `{type_name}` referenced from `{scope}`")
            return full_name

        parts = scope.split(".") if scope else []
        for i in range(len(parts), -1, -1):
            candidate = _join(".".join(parts[:i]), type_name)
            if candidate in self._kinds:
                return candidate
        raise RegistryError(f"Unable to resolve type `{type_name}` referenced from `{scope}`")


def _join(scope: str, name: str) -> str:
    return f"{scope}.{name}" if scope else name


def _is_packed(fd: descriptor_pb2.FieldDescriptorProto, syntax: str) -> bool:
    if fd.options.HasField("packed"):
        return fd.options.packed
    return syntax != "proto2"
