"""CastMessage envelope and stream framing.

Every frame on the wire is a 4-byte big-endian length followed by a
protobuf-encoded ``CastMessage`` (package ``extensions.api.cast_channel``,
proto2):

    1 protocol_version  enum  (CASTV2_1_0 = 0)
    2 source_id         string
    3 destination_id    string
    4 namespace         string
    5 payload_type      enum  (STRING = 0, BINARY = 1)
    6 payload_utf8      string, optional
    7 payload_binary    bytes, optional

The message class is built from its descriptor at import time.
"""

import struct
from dataclasses import dataclass

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from castctl.domain.errors import ProtocolDecodeError

NS_CONNECTION = "urn:x-cast:com.google.cast.tp.connection"
NS_HEARTBEAT = "urn:x-cast:com.google.cast.tp.heartbeat"
NS_RECEIVER = "urn:x-cast:com.google.cast.receiver"
NS_MEDIA = "urn:x-cast:com.google.cast.media"

FRAME_HEADER = struct.Struct(">I")
MAX_FRAME_SIZE = 64 * 1024

_PACKAGE = "extensions.api.cast_channel"


def _build_message_class():
    fdp = descriptor_pb2.FieldDescriptorProto
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="castctl/cast_channel.proto",
        package=_PACKAGE,
        syntax="proto2",
    )
    message = file_proto.message_type.add(name="CastMessage")
    version = message.enum_type.add(name="ProtocolVersion")
    version.value.add(name="CASTV2_1_0", number=0)
    payload_type = message.enum_type.add(name="PayloadType")
    payload_type.value.add(name="STRING", number=0)
    payload_type.value.add(name="BINARY", number=1)

    fields = (
        ("protocol_version", 1, fdp.TYPE_ENUM, fdp.LABEL_REQUIRED, "ProtocolVersion"),
        ("source_id", 2, fdp.TYPE_STRING, fdp.LABEL_REQUIRED, None),
        ("destination_id", 3, fdp.TYPE_STRING, fdp.LABEL_REQUIRED, None),
        ("namespace", 4, fdp.TYPE_STRING, fdp.LABEL_REQUIRED, None),
        ("payload_type", 5, fdp.TYPE_ENUM, fdp.LABEL_REQUIRED, "PayloadType"),
        ("payload_utf8", 6, fdp.TYPE_STRING, fdp.LABEL_OPTIONAL, None),
        ("payload_binary", 7, fdp.TYPE_BYTES, fdp.LABEL_OPTIONAL, None),
    )
    for name, number, kind, label, enum_name in fields:
        field = message.field.add(name=name, number=number, type=kind, label=label)
        if enum_name:
            field.type_name = f".{_PACKAGE}.CastMessage.{enum_name}"

    pool = descriptor_pool.DescriptorPool()
    pool.Add(file_proto)
    return message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{_PACKAGE}.CastMessage"))


CastMessageProto = _build_message_class()


@dataclass(frozen=True)
class CastMessage:
    source_id: str
    destination_id: str
    namespace: str
    payload_utf8: str = ""
    payload_binary: bytes | None = None
    protocol_version: int = 0

    def to_bytes(self) -> bytes:
        proto = CastMessageProto(
            protocol_version=self.protocol_version,
            source_id=self.source_id,
            destination_id=self.destination_id,
            namespace=self.namespace,
        )
        if self.payload_binary is not None:
            proto.payload_type = CastMessageProto.BINARY
            proto.payload_binary = self.payload_binary
        else:
            proto.payload_type = CastMessageProto.STRING
            proto.payload_utf8 = self.payload_utf8
        return proto.SerializeToString()

    @classmethod
    def from_bytes(cls, data: bytes) -> "CastMessage":
        proto = CastMessageProto()
        try:
            proto.ParseFromString(bytes(data))
        except (DecodeError, UnicodeDecodeError) as exc:
            raise ProtocolDecodeError(f"malformed CastMessage: {exc}") from exc
        if not proto.IsInitialized():
            missing = ", ".join(proto.FindInitializationErrors())
            raise ProtocolDecodeError(f"missing required fields: {missing}")

        payload_binary = None
        if proto.payload_type == CastMessageProto.BINARY:
            payload_binary = proto.payload_binary
        return cls(
            source_id=proto.source_id,
            destination_id=proto.destination_id,
            namespace=proto.namespace,
            payload_utf8=proto.payload_utf8,
            payload_binary=payload_binary,
            protocol_version=proto.protocol_version,
        )


def encode_frame(message: CastMessage) -> bytes:
    body = message.to_bytes()
    if len(body) > MAX_FRAME_SIZE:
        raise ValueError(f"frame of {len(body)} bytes exceeds {MAX_FRAME_SIZE}")
    return FRAME_HEADER.pack(len(body)) + body


def split_frames(data: bytes) -> list[bytes]:
    """Split a byte string holding whole frames into message bodies."""
    bodies: list[bytes] = []
    pos = 0
    while pos < len(data):
        if pos + FRAME_HEADER.size > len(data):
            raise ProtocolDecodeError("truncated frame header")
        (length,) = FRAME_HEADER.unpack_from(data, pos)
        pos += FRAME_HEADER.size
        if pos + length > len(data):
            raise ProtocolDecodeError("truncated frame body")
        bodies.append(bytes(data[pos : pos + length]))
        pos += length
    return bodies
