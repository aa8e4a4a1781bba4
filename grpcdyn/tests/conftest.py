"""Unit tests configuration file."""

import pytest
from google.protobuf import any_pb2, descriptor_pb2
from grpc_reflection.v1alpha import reflection_pb2

from grpcdyn.proto.registry import SchemaRegistry

F = descriptor_pb2.FieldDescriptorProto


def pytest_configure(config):
    """Disable verbose output when running tests."""
    terminal = config.pluginmanager.getplugin("terminal")
    if terminal:
        terminal.TerminalReporter.showfspath = False


def field(name, number, type_, label=F.LABEL_OPTIONAL, type_name=None, **kwargs):
    fd = F(name=name, number=number, type=type_, label=label, **kwargs)
    if type_name:
        fd.type_name = type_name
    return fd


def repeated(name, number, type_, type_name=None, **kwargs):
    return field(name, number, type_, F.LABEL_REPEATED, type_name, **kwargs)


def map_entry(name, key_type, value_type, value_type_name=None):
    return descriptor_pb2.DescriptorProto(
        name=name,
        field=[field("key", 1, key_type), field("value", 2, value_type, type_name=value_type_name)],
        options=descriptor_pb2.MessageOptions(map_entry=True),
    )


def message(name, *fields, **kwargs):
    return descriptor_pb2.DescriptorProto(name=name, field=list(fields), **kwargs)


# Map key types and packable scalars covered by test.Wide
WIDE_KEY_TYPES = ["int64", "uint32", "uint64", "sint32", "sint64", "fixed32", "fixed64", "sfixed32", "sfixed64"]
WIDE_PACKED_TYPES = ["bool", "float", *WIDE_KEY_TYPES]


def build_wide_message():
    fields = []
    entries = []
    for number, name in enumerate(WIDE_KEY_TYPES, start=1):
        entry = f"{name.capitalize()}KeysEntry"
        fields.append(repeated(f"{name}_keys", number, F.TYPE_MESSAGE, type_name=f".test.Wide.{entry}"))
        entries.append(map_entry(entry, getattr(F, f"TYPE_{name.upper()}"), F.TYPE_STRING))
    for number, name in enumerate(WIDE_PACKED_TYPES, start=20):
        fields.append(repeated(f"{name}_values", number, getattr(F, f"TYPE_{name.upper()}")))
    fields.append(repeated("ratios", 40, F.TYPE_MESSAGE, type_name=".test.Wide.RatiosEntry"))
    entries.append(map_entry("RatiosEntry", F.TYPE_STRING, F.TYPE_DOUBLE))
    return message("Wide", *fields, nested_type=entries)


def build_test_file():
    fdp = descriptor_pb2.FileDescriptorProto(
        name="test/test.proto",
        package="test",
        syntax="proto3",
        dependency=["google/protobuf/any.proto"],
    )
    fdp.enum_type.append(
        descriptor_pb2.EnumDescriptorProto(
            name="Color",
            value=[
                descriptor_pb2.EnumValueDescriptorProto(name="RED", number=0),
                descriptor_pb2.EnumValueDescriptorProto(name="GREEN", number=1),
                descriptor_pb2.EnumValueDescriptorProto(name="BLUE", number=2),
            ],
        )
    )
    fdp.message_type.extend(
        [
            message("Value", field("value", 1, F.TYPE_INT32)),
            message("Empty"),
            message(
                "Scalars",
                field("double_value", 1, F.TYPE_DOUBLE),
                field("float_value", 2, F.TYPE_FLOAT),
                field("int64_value", 3, F.TYPE_INT64),
                field("uint64_value", 4, F.TYPE_UINT64),
                field("int32_value", 5, F.TYPE_INT32),
                field("fixed64_value", 6, F.TYPE_FIXED64),
                field("fixed32_value", 7, F.TYPE_FIXED32),
                field("bool_value", 8, F.TYPE_BOOL),
                field("string_value", 9, F.TYPE_STRING),
                field("bytes_value", 12, F.TYPE_BYTES),
                field("uint32_value", 13, F.TYPE_UINT32),
                field("color", 14, F.TYPE_ENUM, type_name=".test.Color"),
                field("sfixed32_value", 15, F.TYPE_SFIXED32),
                field("sfixed64_value", 16, F.TYPE_SFIXED64),
                field("sint32_value", 17, F.TYPE_SINT32),
                field("sint64_value", 18, F.TYPE_SINT64),
            ),
            message(
                "Repeated",
                repeated("packed_ints", 1, F.TYPE_INT32),
                repeated("unpacked_ints", 2, F.TYPE_INT32, options=descriptor_pb2.FieldOptions(packed=False)),
                repeated("names", 3, F.TYPE_STRING),
                repeated("values", 4, F.TYPE_MESSAGE, type_name=".test.Value"),
                repeated("colors", 5, F.TYPE_ENUM, type_name=".test.Color"),
                repeated("doubles", 6, F.TYPE_DOUBLE),
            ),
            message(
                "Maps",
                repeated("labels", 1, F.TYPE_MESSAGE, type_name=".test.Maps.LabelsEntry"),
                repeated("by_id", 2, F.TYPE_MESSAGE, type_name=".test.Maps.ByIdEntry"),
                repeated("flags", 3, F.TYPE_MESSAGE, type_name=".test.Maps.FlagsEntry"),
                nested_type=[
                    map_entry("LabelsEntry", F.TYPE_STRING, F.TYPE_STRING),
                    map_entry("ByIdEntry", F.TYPE_INT32, F.TYPE_MESSAGE, ".test.Value"),
                    map_entry("FlagsEntry", F.TYPE_BOOL, F.TYPE_ENUM, ".test.Color"),
                ],
            ),
            message(
                "Choice",
                field("name", 1, F.TYPE_STRING, oneof_index=0),
                field("number", 2, F.TYPE_INT32, oneof_index=0),
                field("value", 3, F.TYPE_MESSAGE, type_name=".test.Value", oneof_index=0),
                oneof_decl=[descriptor_pb2.OneofDescriptorProto(name="pick")],
            ),
            message(
                "Outer",
                field("inner", 1, F.TYPE_MESSAGE, type_name=".test.Outer.Inner"),
                repeated("inners", 2, F.TYPE_MESSAGE, type_name=".test.Outer.Inner"),
                nested_type=[message("Inner", field("x", 1, F.TYPE_INT32))],
            ),
            message(
                "Holder",
                field("item", 1, F.TYPE_MESSAGE, type_name=".google.protobuf.Any"),
                repeated("items", 2, F.TYPE_MESSAGE, type_name=".google.protobuf.Any"),
            ),
            build_wide_message(),
        ]
    )
    fdp.service.append(
        descriptor_pb2.ServiceDescriptorProto(
            name="Echo",
            method=[
                descriptor_pb2.MethodDescriptorProto(
                    name="Unary", input_type=".test.Value", output_type=".test.Value"
                ),
                descriptor_pb2.MethodDescriptorProto(
                    name="ServerStream",
                    input_type=".test.Value",
                    output_type=".test.Value",
                    server_streaming=True,
                ),
                descriptor_pb2.MethodDescriptorProto(
                    name="ClientStream",
                    input_type=".test.Value",
                    output_type=".test.Value",
                    client_streaming=True,
                ),
                descriptor_pb2.MethodDescriptorProto(
                    name="Duplex",
                    input_type=".test.Value",
                    output_type=".test.Value",
                    client_streaming=True,
                    server_streaming=True,
                ),
                descriptor_pb2.MethodDescriptorProto(
                    name="Wrap", input_type=".test.Holder", output_type=".test.Holder"
                ),
            ],
        )
    )
    return fdp


def build_legacy_file():
    fdp = descriptor_pb2.FileDescriptorProto(name="test/legacy.proto", package="legacy", syntax="proto2")
    fdp.message_type.append(
        message(
            "Legacy",
            field("id", 1, F.TYPE_INT32),
            repeated("plain", 2, F.TYPE_INT32),
            repeated("packed", 3, F.TYPE_INT32, options=descriptor_pb2.FieldOptions(packed=True)),
            field("result", 4, F.TYPE_GROUP, type_name=".legacy.Legacy.Result"),
            field("count", 6, F.TYPE_SINT64, label=F.LABEL_REQUIRED),
            nested_type=[message("Result", field("url", 5, F.TYPE_STRING))],
        )
    )
    return fdp


def build_any_file():
    fdp = descriptor_pb2.FileDescriptorProto()
    any_pb2.DESCRIPTOR.CopyToProto(fdp)
    return fdp


@pytest.fixture
def test_file():
    return build_test_file()


@pytest.fixture
def legacy_file():
    return build_legacy_file()


@pytest.fixture
def any_file():
    return build_any_file()


@pytest.fixture
def registry(test_file, legacy_file, any_file):
    return SchemaRegistry.from_file_protos([test_file, legacy_file, any_file])


@pytest.fixture
def codec(registry):
    return registry.codec()


@pytest.fixture
def descriptor_set(tmp_path, test_file, legacy_file, any_file):
    path = tmp_path / "test.pb"
    fds = descriptor_pb2.FileDescriptorSet(file=[any_file, test_file, legacy_file])
    path.write_bytes(fds.SerializeToString())
    return str(path)


class FakeChannel:
    """Channel whose server echoes every request back as the response.

    Requests go through the real serializer and responses through the
    real deserializer, so the marshaller pair is exercised end to end.
    """

    def __init__(self):
        self.calls = []

    def _record(self, kind, path, metadata):
        self.calls.append((kind, path, metadata))

    def unary_unary(self, path, request_serializer, response_deserializer):
        def call(request, timeout=None, metadata=None):
            self._record("unary_unary", path, metadata)
            return response_deserializer(request_serializer(request))

        return call

    def unary_stream(self, path, request_serializer, response_deserializer):
        def call(request, timeout=None, metadata=None):
            self._record("unary_stream", path, metadata)
            data = request_serializer(request)
            return iter([response_deserializer(data), response_deserializer(data)])

        return call

    def stream_unary(self, path, request_serializer, response_deserializer):
        def call(request_iterator, timeout=None, metadata=None):
            self._record("stream_unary", path, metadata)
            blobs = [request_serializer(r) for r in request_iterator]
            return response_deserializer(blobs[-1])

        return call

    def stream_stream(self, path, request_serializer, response_deserializer):
        def call(request_iterator, timeout=None, metadata=None):
            self._record("stream_stream", path, metadata)
            return (response_deserializer(request_serializer(r)) for r in request_iterator)

        return call


@pytest.fixture
def channel():
    return FakeChannel()


class FakeReflectionStub:
    """Reflection stub answering from a fixed set of files."""

    def __init__(self, services, files, *, send_imports=False):
        self.services = services
        self.files = {f.name: f for f in files}
        self.send_imports = send_imports
        self.requests = []

    def ServerReflectionInfo(self, request_iterator, timeout=None):
        for request in request_iterator:
            self.requests.append(request)
            yield self._answer(request)

    def _answer(self, request):
        kind = request.WhichOneof("message_request")
        if kind == "list_services":
            return reflection_pb2.ServerReflectionResponse(
                list_services_response=reflection_pb2.ListServiceResponse(
                    service=[reflection_pb2.ServiceResponse(name=s) for s in self.services]
                )
            )

        if kind == "file_containing_symbol":
            symbol = request.file_containing_symbol
            names = [f.name for f in self.files.values() if any(symbol == f"{f.package}.{s.name}" for s in f.service)]
        else:
            names = [request.file_by_filename] if request.file_by_filename in self.files else []

        if not names:
            return reflection_pb2.ServerReflectionResponse(
                error_response=reflection_pb2.ErrorResponse(error_code=5, error_message="not found")
            )
        if self.send_imports:
            names += [dep for name in names for dep in self.files[name].dependency]
        return reflection_pb2.ServerReflectionResponse(
            file_descriptor_response=reflection_pb2.FileDescriptorResponse(
                file_descriptor_proto=[self.files[n].SerializeToString() for n in names]
            )
        )


@pytest.fixture
def make_reflection_stub():
    return FakeReflectionStub


@pytest.fixture
def reflection_stub(make_reflection_stub, test_file, any_file):
    return make_reflection_stub(
        ["test.Echo", "grpc.reflection.v1alpha.ServerReflection"], [test_file, any_file]
    )
