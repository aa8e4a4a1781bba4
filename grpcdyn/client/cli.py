"""Command-line interface for calling and inspecting gRPC services."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import click
import grpc
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from grpcdyn.client.client import DynamicClient, parse_method_path
from grpcdyn.client.json_io import from_json_value, to_json_value
from grpcdyn.client.printer import PrinterOptions, ProtoPrinter
from grpcdyn.client.reflection import ReflectionError, registry_from_reflection
from grpcdyn.proto.any import pack_any_fields, unpack_any_fields
from grpcdyn.proto.codec import CodecOptions
from grpcdyn.proto.registry import NotFoundError, SchemaRegistry
from grpcdyn.proto.types import SchemaError, summarize
from grpcdyn.proto.wire import CodecError

if TYPE_CHECKING:
    from grpcdyn.proto.types import MessageSchema, ServiceSchema

# Failures reported as a one-line error instead of a traceback
USER_ERRORS = (
    CodecError,
    SchemaError,
    NotFoundError,
    ReflectionError,
    ValueError,
    OSError,
    grpc.RpcError,
)


@dataclass
class Settings:
    """Options shared by every command."""

    descriptor_set: str | None
    plaintext: bool
    timeout: float | None
    codec_options: CodecOptions


@click.group()
@click.option(
    "--descriptor-set",
    type=click.Path(exists=True, dir_okay=False),
    help="Load schemas from a FileDescriptorSet file instead of server reflection",
)
@click.option("--plaintext", is_flag=True, help="Connect without TLS")
@click.option("--timeout", type=float, default=None, help="Deadline in seconds for each call")
@click.option("--json-names", is_flag=True, help="Use JSON (lowerCamel) field names")
@click.option("--numbered-enums", is_flag=True, help="Write enum values as numbers instead of names")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr")
@click.pass_context
def cli(
    ctx: click.Context,
    descriptor_set: str | None,
    plaintext: bool,
    timeout: float | None,
    json_names: bool,
    numbered_enums: bool,
    verbose: bool,
) -> None:
    """Call gRPC services described by reflection or descriptor sets."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    ctx.obj = Settings(
        descriptor_set=descriptor_set,
        plaintext=plaintext,
        timeout=timeout,
        codec_options=CodecOptions(json_names=json_names, numbered_enums=numbered_enums),
    )


@cli.command()
@click.argument("symbol", required=False)
@click.option("--address", "-a", help="Server to describe through reflection")
@click.option("--json", "output_json", is_flag=True, help="Output the service listing as JSON")
@click.option("--table", "output_table", is_flag=True, help="Output the service listing as a table")
@click.option("--meta-comments", is_flag=True, help="Add `// x is a message` comments")
@click.option("--fully-qualified", is_flag=True, help="Print fully-qualified type names")
@click.pass_obj
def describe(
    settings: Settings,
    symbol: str | None,
    address: str | None,
    output_json: bool,
    output_table: bool,
    meta_comments: bool,
    fully_qualified: bool,
) -> None:
    """Print proto definitions for all files, or for one service, message or enum."""
    try:
        registry = _load_registry(settings, address)
        services = registry.services
        if symbol and (output_json or output_table):
            service = registry.find_service(symbol)
            if service is None:
                raise NotFoundError(f"Unable to find the service `{symbol}`")
            services = [service]

        if output_json:
            click.echo(json.dumps(summarize(services), indent=2))
        elif output_table:
            _output_table(services)
        else:
            printer = ProtoPrinter(
                registry, PrinterOptions(add_meta_comments=meta_comments, fully_qualified=fully_qualified)
            )
            click.echo(printer.print_symbol(symbol) if symbol else printer.print_all(), nl=False)
    except USER_ERRORS as e:
        _fail(e)


@cli.command()
@click.argument("address")
@click.argument("method")
@click.option("--data", "-d", help="Request as JSON; an array sends several requests (default: stdin)")
@click.option("--header", "-H", "headers", multiple=True, help="Metadata as `name: value`")
@click.pass_obj
def call(settings: Settings, address: str, method: str, data: str | None, headers: tuple[str, ...]) -> None:
    """Call METHOD (package.Service/Method) on the server at ADDRESS."""
    try:
        service_name, method_name = parse_method_path(method)
        channel = _open_channel(address, settings)
        registry = _load_registry(settings, address, channel)
        client = DynamicClient(channel, registry, settings.codec_options)
        schema = client.method(service_name, method_name)

        request_schema = _message_schema(registry, schema.input_type)
        response_schema = _message_schema(registry, schema.output_type)
        codec = registry.codec(settings.codec_options)

        payload = json.loads(data if data is not None else sys.stdin.read() or "{}")
        requests = payload if isinstance(payload, list) else [payload]
        requests = [from_json_value(r, request_schema, codec) for r in requests]

        metadata = [_parse_header(h) for h in headers] or None
        for response in client.call(
            service_name, method_name, requests, timeout=settings.timeout, metadata=metadata
        ):
            click.echo(json.dumps(to_json_value(response, response_schema, codec), indent=2))
    except USER_ERRORS as e:
        _fail(e)


@cli.command()
@click.argument("type_name")
@click.option("--data", "-d", help="Message as JSON (default: stdin)")
@click.option("--binary", is_flag=True, help="Write raw bytes instead of hex")
@click.pass_obj
def encode(settings: Settings, type_name: str, data: str | None, binary: bool) -> None:
    """Encode a JSON message of TYPE_NAME to protobuf wire bytes."""
    try:
        registry = _load_registry(settings, None)
        schema = _message_schema(registry, type_name)
        codec = registry.codec(settings.codec_options)

        value = from_json_value(json.loads(data if data is not None else sys.stdin.read()), schema, codec)
        encoded = codec.encode(pack_any_fields(value, schema, codec), schema)
    except USER_ERRORS as e:
        _fail(e)

    if binary:
        click.get_binary_stream("stdout").write(encoded)
    else:
        click.echo(encoded.hex())


@cli.command()
@click.argument("type_name")
@click.argument("hex_data", required=False)
@click.option("--binary", is_flag=True, help="Read raw bytes from stdin instead of hex")
@click.pass_obj
def decode(settings: Settings, type_name: str, hex_data: str | None, binary: bool) -> None:
    """Decode protobuf wire bytes of TYPE_NAME to JSON."""
    try:
        registry = _load_registry(settings, None)
        schema = _message_schema(registry, type_name)
        codec = registry.codec(settings.codec_options)

        if binary:
            raw = click.get_binary_stream("stdin").read()
        else:
            text = hex_data if hex_data is not None else sys.stdin.read()
            raw = bytes.fromhex("".join(text.split()))

        value = unpack_any_fields(codec.decode(raw, schema), schema, codec)
        click.echo(json.dumps(to_json_value(value, schema, codec), indent=2))
    except USER_ERRORS as e:
        _fail(e)


def _load_registry(
    settings: Settings, address: str | None, channel: grpc.Channel | None = None
) -> SchemaRegistry:
    if settings.descriptor_set:
        return SchemaRegistry.from_descriptor_set(Path(settings.descriptor_set).read_bytes())
    if address is None:
        raise ValueError("A --descriptor-set file or a server address is required")
    if channel is None:
        channel = _open_channel(address, settings)
    return registry_from_reflection(channel, timeout=settings.timeout)


def _open_channel(address: str, settings: Settings) -> grpc.Channel:
    if address.startswith("http://"):
        return grpc.insecure_channel(address.removeprefix("http://"))
    if address.startswith("https://"):
        return grpc.secure_channel(address.removeprefix("https://"), grpc.ssl_channel_credentials())
    if settings.plaintext:
        return grpc.insecure_channel(address)
    return grpc.secure_channel(address, grpc.ssl_channel_credentials())


def _message_schema(registry: SchemaRegistry, type_name: str) -> MessageSchema:
    schema = registry.find_message(type_name)
    if schema is None:
        raise NotFoundError(f"Unable to find the message type `{type_name}`")
    return schema


def _parse_header(header: str) -> tuple[str, str]:
    name, sep, value = header.partition(":")
    if not sep:
        raise ValueError(f"Invalid header {header!r}, expecting `name: value`")
    return name.strip().lower(), value.strip()


def _output_table(services: list[ServiceSchema]) -> None:
    """Output the method listing using rich text formatting."""
    console = Console()
    table = Table(show_header=True, box=None, padding=(0, 2, 0, 0))
    table.add_column("Service", style="bold cyan")
    table.add_column("Method", style="white")
    table.add_column("Kind", style="dim")
    table.add_column("Request", style="yellow")
    table.add_column("Response", style="green")

    for service in services:
        for method in service.methods.values():
            table.add_row(service.full_name, method.name, method.kind, method.input_type, method.output_type)

    console.print(table)


def _fail(error: BaseException) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
