"""grpcdyn - Dynamic protobuf codec and gRPC client driven by runtime schemas."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("grpcdyn")
except PackageNotFoundError:
    __version__ = "(local)"
