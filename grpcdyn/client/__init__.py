"""gRPC client, reflection, JSON and proto text front ends."""

from .client import DynamicClient as DynamicClient
from .printer import PrinterOptions as PrinterOptions
from .printer import ProtoPrinter as ProtoPrinter
from .reflection import fetch_file_descriptors as fetch_file_descriptors
from .reflection import registry_from_reflection as registry_from_reflection
