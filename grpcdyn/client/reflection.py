"""Fetch file descriptors from a server's reflection service."""

import logging
from collections.abc import Iterator

import grpc
from google.protobuf import descriptor_pb2
from grpc_reflection.v1alpha import reflection_pb2, reflection_pb2_grpc

from ..proto.registry import SchemaRegistry

_log = logging.getLogger(__name__)

# Served by the reflection service itself, never called dynamically
REFLECTION_SERVICES = frozenset(
    ["grpc.reflection.v1alpha.ServerReflection", "grpc.reflection.v1.ServerReflection"]
)


class ReflectionError(RuntimeError):
    """Raised when the reflection service reports an error."""


class ReflectionFetcher:
    """Issue reflection requests over one channel."""

    def __init__(
        self,
        channel: grpc.Channel | None = None,
        *,
        timeout: float | None = None,
        stub: reflection_pb2_grpc.ServerReflectionStub | None = None,
    ) -> None:
        if stub is None:
            if channel is None:
                raise ValueError("Either a channel or a reflection stub is required")
            stub = reflection_pb2_grpc.ServerReflectionStub(channel)
        self.stub = stub
        self.timeout = timeout

    def _request(self, **kwargs) -> Iterator[reflection_pb2.ServerReflectionResponse]:
        request = reflection_pb2.ServerReflectionRequest(**kwargs)
        for response in self.stub.ServerReflectionInfo(iter([request]), timeout=self.timeout):
            if response.HasField("error_response"):
                err = response.error_response
                raise ReflectionError(f"Reflection failed for {kwargs}: {err.error_message} ({err.error_code})")
            yield response

    def list_services(self) -> list[str]:
        services = []
        for response in self._request(list_services=""):
            services.extend(s.name for s in response.list_services_response.service)
        return services

    def file_containing_symbol(self, symbol: str) -> list[bytes]:
        blobs = []
        for response in self._request(file_containing_symbol=symbol):
            blobs.extend(response.file_descriptor_response.file_descriptor_proto)
        return blobs

    def file_by_filename(self, filename: str) -> list[bytes]:
        blobs = []
        for response in self._request(file_by_filename=filename):
            blobs.extend(response.file_descriptor_response.file_descriptor_proto)
        return blobs

    def fetch_all(self) -> list[bytes]:
        """Fetch the files of every listed service, plus missing imports.

        The result may contain the same file more than once and is in no
        particular order; the registry dedupes and sorts it.
        """
        blobs: list[bytes] = []
        for service in self.list_services():
            if service in REFLECTION_SERVICES:
                continue
            _log.debug("Fetching descriptors for %s", service)
            blobs.extend(self.file_containing_symbol(service))

        # Servers usually send the transitive imports, but are not required to
        names = {descriptor_pb2.FileDescriptorProto.FromString(b).name: b for b in blobs}
        missing = _missing_imports(names)
        while missing:
            filename = missing.pop()
            _log.debug("Fetching missing import %s", filename)
            for blob in self.file_by_filename(filename):
                fdp = descriptor_pb2.FileDescriptorProto.FromString(blob)
                if fdp.name not in names:
                    names[fdp.name] = blob
                    blobs.append(blob)
            if filename not in names:
                raise ReflectionError(f"Server did not return the imported file `{filename}`")
            missing = _missing_imports(names)

        _log.debug("Fetched %d descriptor blobs", len(blobs))
        return blobs


def _missing_imports(files: dict[str, bytes]) -> set[str]:
    missing = set()
    for blob in files.values():
        for dep in descriptor_pb2.FileDescriptorProto.FromString(blob).dependency:
            if dep not in files:
                missing.add(dep)
    return missing


def fetch_file_descriptors(
    channel: grpc.Channel | None = None,
    *,
    timeout: float | None = None,
    stub: reflection_pb2_grpc.ServerReflectionStub | None = None,
) -> list[bytes]:
    """Return raw ``FileDescriptorProto`` blobs for every service on the server."""
    return ReflectionFetcher(channel, timeout=timeout, stub=stub).fetch_all()


def registry_from_reflection(
    channel: grpc.Channel | None = None,
    *,
    timeout: float | None = None,
    stub: reflection_pb2_grpc.ServerReflectionStub | None = None,
) -> SchemaRegistry:
    """Build a schema registry from a server's reflection service."""
    return SchemaRegistry.from_serialized(fetch_file_descriptors(channel, timeout=timeout, stub=stub))
