import asyncio
import json

import pytest

from castctl.infrastructure import connection as connection_module
from castctl.infrastructure.cast_message import CastMessage, encode_frame, split_frames


class FakeWriter:
    def __init__(self) -> None:
        self.data = bytearray()
        self.closed = False
        self.fail_writes = False

    def write(self, data: bytes) -> None:
        if self.fail_writes or self.closed:
            raise ConnectionResetError("peer reset")
        self.data += data

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None

    def messages(self) -> list[CastMessage]:
        return [CastMessage.from_bytes(body) for body in split_frames(bytes(self.data))]


class FakeReceiver:
    """Stands in for the TLS stream of a receiver at the asyncio level."""

    def __init__(self) -> None:
        self.reader: asyncio.StreamReader | None = None
        self.writer = FakeWriter()
        self.opened: list[tuple[str, int]] = []

    async def open_connection(self, host, port, ssl=None, **_kwargs):
        self.opened.append((host, port))
        if self.writer.closed:
            self.writer = FakeWriter()
        self.reader = asyncio.StreamReader()
        return self.reader, self.writer

    def push(self, namespace: str, payload: dict, source_id: str = "receiver-0") -> None:
        message = CastMessage(
            source_id=source_id,
            destination_id="sender-0",
            namespace=namespace,
            payload_utf8=json.dumps(payload),
        )
        self.push_frame(encode_frame(message))

    def push_frame(self, data: bytes) -> None:
        assert self.reader is not None
        self.reader.feed_data(data)

    def hang_up(self) -> None:
        assert self.reader is not None
        self.reader.feed_eof()

    def sent(self, namespace: str | None = None) -> list[dict]:
        return [
            json.loads(m.payload_utf8)
            for m in self.writer.messages()
            if namespace is None or m.namespace == namespace
        ]

    def sent_types(self, namespace: str | None = None) -> list[str]:
        return [p["type"] for p in self.sent(namespace)]


@pytest.fixture
def receiver(monkeypatch) -> FakeReceiver:
    fake = FakeReceiver()
    monkeypatch.setattr(connection_module.asyncio, "open_connection", fake.open_connection)
    return fake


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0.005)
