from .cast_message import CastMessage, encode_frame, split_frames
from .channel import CastChannel
from .config import ClientConfig, RuntimeTarget, load_config
from .connection import CastConnection
from .mdns_gateway import MdnsDiscoveryGateway

__all__ = [
    "CastMessage",
    "encode_frame",
    "split_frames",
    "CastChannel",
    "ClientConfig",
    "RuntimeTarget",
    "load_config",
    "CastConnection",
    "MdnsDiscoveryGateway",
]
