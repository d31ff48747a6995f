from .errors import (
    CastError,
    InvalidRecordError,
    NotFoundError,
    OutOfOrderError,
    ProtocolDecodeError,
    RequestFailedError,
    TeardownError,
    TransportError,
)
from .events import ConnectionState, StateEvent
from .policy import AddressPolicy, RoundRobinAddresses, first_address, random_address
from .record import DeviceRecord, validate_record
from .state import AppState, CastFlag, MediaState, VolumeState

__all__ = [
    "AddressPolicy",
    "AppState",
    "CastError",
    "CastFlag",
    "ConnectionState",
    "DeviceRecord",
    "InvalidRecordError",
    "MediaState",
    "NotFoundError",
    "OutOfOrderError",
    "ProtocolDecodeError",
    "RequestFailedError",
    "RoundRobinAddresses",
    "StateEvent",
    "TeardownError",
    "TransportError",
    "VolumeState",
    "first_address",
    "random_address",
    "validate_record",
]
