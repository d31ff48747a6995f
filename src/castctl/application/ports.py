import asyncio
from typing import Callable, Protocol

from castctl.domain.events import ConnectionState
from castctl.domain.record import DeviceRecord
from castctl.infrastructure.channel import CastChannel, InboundMessage


class CastTransport(Protocol):
    channel: CastChannel

    @property
    def state(self) -> ConnectionState:
        ...

    async def connect(
        self,
        device_id: str,
        host: str,
        port: int,
        timeout_s: float,
        on_message: Callable[[InboundMessage], None],
        on_lost: Callable[[Exception], None] | None = None,
        errors: asyncio.Queue | None = None,
        states: asyncio.Queue | None = None,
    ) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def send(self, data: bytes) -> None:
        ...


class DiscoveryPort(Protocol):
    def discover(self, timeout_s: float) -> list[DeviceRecord]:
        ...
