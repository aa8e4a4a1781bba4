"""Schema model, registry and dynamic message codec."""

from .any import pack_any_fields as pack_any_fields
from .any import unpack_any_fields as unpack_any_fields
from .any import with_any as with_any
from .codec import Codec as Codec
from .codec import CodecOptions as CodecOptions
from .codec import MessageCodec as MessageCodec
from .registry import NotFoundError as NotFoundError
from .registry import RegistryError as RegistryError
from .registry import SchemaRegistry as SchemaRegistry
from .registry import order_units as order_units
from .types import *
from .wire import CodecError as CodecError
from .wire import DecodeError as DecodeError
from .wire import EncodeError as EncodeError
