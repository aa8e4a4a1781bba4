"""Render file descriptors back to ``.proto`` source text.

Descriptor protos are turned into small view dicts here and laid out by
the ``proto.j2`` template. Type references are written relative to the
scope they appear in unless ``fully_qualified`` is set.
"""

from dataclasses import dataclass
from typing import Any

from google.protobuf import descriptor_pb2
from jinja2 import Environment, PackageLoader

from ..proto.registry import NotFoundError, SchemaRegistry
from ..proto.types import FieldType, json_name_of

env = Environment(
    loader=PackageLoader("grpcdyn.client", "templates"),
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)

template = env.get_template("proto.j2")

FieldProto = descriptor_pb2.FieldDescriptorProto

LABELS = {
    FieldProto.LABEL_REPEATED: "repeated ",
    FieldProto.LABEL_REQUIRED: "required ",
}


@dataclass(frozen=True)
class PrinterOptions:
    """Printing options.

    Attributes:
        add_meta_comments: Precede each element with a ``// name is a ...`` comment.
        fully_qualified: Write every type reference as ``.package.Type``.
        indent: Text used for one level of indentation.
    """

    add_meta_comments: bool = False
    fully_qualified: bool = False
    indent: str = "  "


class ProtoPrinter:
    """Print the files and symbols of a registry as proto source."""

    def __init__(self, registry: SchemaRegistry, options: PrinterOptions | None = None) -> None:
        self.registry = registry
        self.options = options or PrinterOptions()

    def print_all(self) -> str:
        return "\n".join(self.print_file(fdp) for fdp in self.registry.files)

    def print_file(self, fdp: descriptor_pb2.FileDescriptorProto) -> str:
        syntax = _syntax(fdp)
        if syntax == "editions":
            edition = descriptor_pb2.Edition.Name(fdp.edition).removeprefix("EDITION_")
            syntax_line = f'edition = "{edition}";'
        else:
            syntax_line = f'syntax = "{syntax}";'

        view = {
            "name": fdp.name,
            "syntax": syntax_line,
            "options": _options(fdp.options),
            "package": fdp.package,
            "imports": list(fdp.dependency),
            "services": [self._service_view(s, fdp) for s in fdp.service],
            "messages": [self._message_view(m, fdp, fdp.package) for m in fdp.message_type],
            "enums": [self._enum_view(e, fdp.package) for e in fdp.enum_type],
        }
        return self._render(file=view)

    def print_symbol(self, symbol: str) -> str:
        """Print one service, message or enum by its full name."""
        found = self.registry.find_proto(symbol)
        if found is None:
            raise NotFoundError(f"Unable to find the symbol `{symbol}`")
        fdp, proto = found
        full_name = symbol.lstrip(".")
        scope = full_name.rpartition(".")[0]

        if isinstance(proto, descriptor_pb2.ServiceDescriptorProto):
            return self._render(service=self._service_view(proto, fdp))
        if isinstance(proto, descriptor_pb2.DescriptorProto):
            return self._render(message=self._message_view(proto, fdp, scope))
        return self._render(enum=self._enum_view(proto, scope))

    def _render(self, **views: Any) -> str:
        return template.render(meta=self.options.add_meta_comments, pad=self.options.indent, **views)

    # Views

    def _service_view(self, svc: descriptor_pb2.ServiceDescriptorProto, fdp) -> dict[str, Any]:
        full_name = _join(fdp.package, svc.name)
        methods = []
        for m in svc.method:
            request = self._type_ref(self.registry.resolve(m.input_type, fdp.package), full_name)
            response = self._type_ref(self.registry.resolve(m.output_type, fdp.package), full_name)
            if m.client_streaming:
                request = f"stream {request}"
            if m.server_streaming:
                response = f"stream {response}"
            methods.append(f"rpc {m.name} ( {request} ) returns ( {response} );")
        return {
            "full_name": full_name,
            "name": svc.name,
            "options": _options(svc.options),
            "methods": methods,
        }

    def _message_view(self, desc: descriptor_pb2.DescriptorProto, fdp, scope: str) -> dict[str, Any]:
        full_name = _join(scope, desc.name)
        syntax = _syntax(fdp)
        nested_by_name = {_join(full_name, n.name): n for n in desc.nested_type}
        hidden: set[str] = {name for name, n in nested_by_name.items() if n.options.map_entry}

        body: list[dict[str, Any]] = []
        current_oneof = None
        for fd in desc.field:
            type_name = self.registry.resolve(fd.type_name, full_name) if fd.type_name else None
            oneof = None
            if fd.HasField("oneof_index") and not fd.proto3_optional:
                oneof = desc.oneof_decl[fd.oneof_index].name

            if fd.type == FieldProto.TYPE_GROUP:
                hidden.add(type_name)
                group = nested_by_name[type_name]
                label = "" if oneof else LABELS.get(fd.label, "optional ")
                item = {
                    "kind": "group",
                    "line": f"{label}group {group.name} = {fd.number}{self._field_options(fd)}",
                    "message": self._message_view(group, fdp, full_name),
                }
            else:
                item = {"kind": "field", "line": self._field_line(fd, type_name, full_name, syntax, oneof)}

            if oneof is None:
                body.append(item)
                current_oneof = None
            elif current_oneof is not None and current_oneof["name"] == oneof:
                current_oneof["items"].append(item)
            else:
                current_oneof = {"kind": "oneof", "name": oneof, "items": [item]}
                body.append(current_oneof)

        nested = [
            self._message_view(n, fdp, full_name)
            for name, n in nested_by_name.items()
            if name not in hidden
        ]
        enums = [self._enum_view(e, full_name) for e in desc.enum_type]
        options = _options(desc.options)
        reserved = [_range_text(r) for r in desc.reserved_range] + [f'"{n}"' for n in desc.reserved_name]

        return {
            "full_name": full_name,
            "name": desc.name,
            "options": options,
            "reserved": ", ".join(reserved),
            "body": body,
            "nested": nested,
            "enums": enums,
            "empty": not (body or nested or enums or options or reserved),
        }

    def _enum_view(self, enum: descriptor_pb2.EnumDescriptorProto, scope: str) -> dict[str, Any]:
        return {
            "full_name": _join(scope, enum.name),
            "name": enum.name,
            "options": _options(enum.options),
            "values": [(v.name, v.number, _bracket(_options(v.options))) for v in enum.value],
        }

    def _field_line(self, fd, type_name: str | None, scope: str, syntax: str, oneof: str | None) -> str:
        if fd.label == FieldProto.LABEL_REPEATED and type_name is not None:
            entry = self.registry.find_message(type_name)
            if entry is not None and entry.map_entry:
                key = entry.field_by_number(1)
                value = entry.field_by_number(2)
                kind = f"map<{self._type_text(key.type, key.type_name, scope)}, "
                kind += f"{self._type_text(value.type, value.type_name, scope)}>"
                return f"{kind} {fd.name} = {fd.number}{self._field_options(fd)};"

        if oneof is not None:
            label = ""
        elif fd.label in LABELS:
            label = LABELS[fd.label]
        elif syntax == "proto2" or fd.proto3_optional:
            label = "optional "
        else:
            label = ""

        kind = self._type_text(FieldType(fd.type) if fd.type else None, type_name, scope)
        return f"{label}{kind} {fd.name} = {fd.number}{self._field_options(fd)};"

    def _type_text(self, field_type: FieldType | None, type_name: str | None, scope: str) -> str:
        if type_name is not None:
            return self._type_ref(type_name, scope)
        return field_type.name.lower()

    def _type_ref(self, full_name: str, scope: str) -> str:
        """Shortest reference to full_name that reads correctly from scope."""
        if self.options.fully_qualified:
            return f".{full_name}"

        parts = full_name.split(".")
        scope_parts = scope.split(".") if scope else []
        common = 0
        while (
            common < len(scope_parts)
            and common < len(parts) - 1
            and scope_parts[common] == parts[common]
        ):
            common += 1
        if common == 0:
            return f".{full_name}"
        return ".".join(parts[common:])

    def _field_options(self, fd) -> str:
        options = []
        if fd.HasField("default_value"):
            default = fd.default_value
            if fd.type in (FieldProto.TYPE_STRING, FieldProto.TYPE_BYTES):
                default = f'"{default}"'
            options.append(f"default = {default}")
        if fd.HasField("json_name") and fd.json_name != json_name_of(fd.name):
            options.append(f'json_name = "{fd.json_name}"')
        options.extend(_options(fd.options))
        return _bracket(options)


def _options(options) -> list[str]:
    """``name = value`` text for each option set on an options message."""
    result = []
    for field, value in options.ListFields():
        name = f"({field.full_name})" if field.is_extension else field.name
        if field.is_repeated:
            continue
        result.append(f"{name} = {_option_value(field, value)}")
    return result


def _option_value(field, value) -> str:
    if field.type == field.TYPE_BOOL:
        return "true" if value else "false"
    if field.type == field.TYPE_ENUM:
        enum_value = field.enum_type.values_by_number.get(value)
        return enum_value.name if enum_value else str(value)
    if field.type in (field.TYPE_STRING, field.TYPE_BYTES):
        return f'"{value}"'
    if field.type == field.TYPE_MESSAGE:
        return "{ " + " ".join(f"{f.name}: {_option_value(f, v)}" for f, v in value.ListFields()) + " }"
    return str(value)


def _bracket(options: list[str]) -> str:
    return f" [{', '.join(options)}]" if options else ""


def _range_text(r) -> str:
    # Reserved ranges are stored end-exclusive
    if r.end - 1 == r.start:
        return str(r.start)
    return f"{r.start} to {r.end - 1}"


def _syntax(fdp: descriptor_pb2.FileDescriptorProto) -> str:
    return fdp.syntax or "proto2"


def _join(scope: str, name: str) -> str:
    return f"{scope}.{name}" if scope else name
