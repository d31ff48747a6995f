import asyncio
import logging
import math
from typing import Callable

from castctl.application.ports import CastTransport
from castctl.domain.errors import NotFoundError, OutOfOrderError
from castctl.domain.events import ConnectionState
from castctl.domain.policy import AddressPolicy, first_address
from castctl.domain.record import DeviceRecord, validate_record
from castctl.domain.state import AppState, CastFlag, MediaState, VolumeState
from castctl.infrastructure.channel import (
    ConnectionClosed,
    InboundMessage,
    MediaStatus,
    ReceiverStatus,
    RequestFailed,
    Unhandled,
)
from castctl.infrastructure.connection import CastConnection

LOG = logging.getLogger(__name__)


class CastDevice:
    """One receiver: identity, cached state and the control requests.

    State is merged by the connection's dispatch task through ``set_volume``,
    ``set_app`` and ``set_media``; merges and cache resets never await, so
    they are atomic with respect to every other coroutine on the loop.
    Requests return once their frame is written. Their effect shows up later
    in the cache, or as an error on the sink passed to ``connect``.
    """

    def __init__(self, record: DeviceRecord, connection: CastTransport | None = None) -> None:
        validate_record(record)
        self._record = record
        self._connection: CastTransport = connection or CastConnection()
        self._lifecycle_lock = asyncio.Lock()
        self._address = ""
        self._volume: VolumeState | None = None
        self._app: AppState | None = None
        self._media: MediaState | None = None
        self._status_request_id: int | None = None
        self._changed = asyncio.Event()

    # ---- properties ----
    @property
    def record(self) -> DeviceRecord:
        return self._record

    @property
    def id(self) -> str:
        return self._record.id

    @property
    def name(self) -> str:
        return self._record.name or self._record.id

    @property
    def model(self) -> str:
        return self._record.model

    @property
    def service(self) -> str:
        """Running app name, else the status text the receiver advertised."""
        if self._app is not None and self._app.display_name:
            return self._app.display_name
        return self._record.status_text

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def status_flag(self) -> int:
        return self._record.status_flag

    @property
    def address(self) -> str:
        return self._address

    @property
    def port(self) -> int:
        return self._record.port

    @property
    def volume(self) -> VolumeState | None:
        return self._volume

    @property
    def app(self) -> AppState | None:
        return self._app

    @property
    def media(self) -> MediaState | None:
        return self._media

    @property
    def status_known(self) -> bool:
        return self._volume is not None and self._app is not None

    # ---- lifecycle ----
    async def connect(
        self,
        timeout_s: float = 5.0,
        errors: asyncio.Queue | None = None,
        states: asyncio.Queue | None = None,
        select_address: AddressPolicy = first_address,
    ) -> None:
        if not self._record.addresses:
            raise NotFoundError(f"{self.id}: no address to connect to")
        async with self._lifecycle_lock:
            if self.state != ConnectionState.DISCONNECTED:
                raise OutOfOrderError(f"{self.id}: already {self.state.value}")
            address = select_address(self._record.addresses)
            await self._connection.connect(
                self.id,
                address,
                self.port,
                timeout_s,
                on_message=self._on_message,
                on_lost=self._on_lost,
                errors=errors,
                states=states,
            )
            self._address = address
            self._reset_cache()

    async def disconnect(self) -> None:
        async with self._lifecycle_lock:
            try:
                await self._connection.disconnect()
            finally:
                self._reset_cache()
                self._notify(CastFlag.NONE, force=True)

    # ---- status ----
    async def update_status(self) -> int | None:
        """Ask the receiver for volume and app unless both are known.

        Concurrent callers share one in-flight request. Returns the id of the
        request issued or joined, or None when nothing was needed.
        """
        self._require_connected("update_status")
        if self.status_known:
            return None
        if self._status_request_id is not None:
            return self._status_request_id

        request_id, data = self._connection.channel.get_status()
        self._status_request_id = request_id
        try:
            await self._connection.send(data)
        except Exception:
            if self._status_request_id == request_id:
                self._status_request_id = None
            raise
        LOG.debug("cast status requested id=%s request_id=%d", self.id, request_id)
        return request_id

    def set_volume(self, volume: VolumeState) -> CastFlag:
        if self._volume == volume:
            return CastFlag.NONE
        self._volume = volume
        return CastFlag.VOLUME

    def set_app(self, app: AppState) -> CastFlag:
        if self._app == app:
            return CastFlag.NONE
        self._app = app
        return CastFlag.APP

    def set_media(self, media: MediaState | None) -> CastFlag:
        if self._media == media:
            return CastFlag.NONE
        self._media = media
        return CastFlag.MEDIA

    async def wait_changed(self, timeout_s: float | None = None) -> None:
        """Wait for the next merged change (or disconnect).

        Raises asyncio.TimeoutError when nothing changes in time.
        """
        await asyncio.wait_for(self._changed.wait(), timeout=timeout_s)

    async def wait_until(
        self,
        predicate: Callable[["CastDevice"], bool],
        timeout_s: float | None = None,
    ) -> None:
        async def _wait() -> None:
            while not predicate(self):
                self._require_connected("wait_until")
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout=timeout_s)

    async def wait_status(self, timeout_s: float | None = None) -> None:
        await self.wait_until(lambda device: device.status_known, timeout_s=timeout_s)

    # ---- requests ----
    async def launch_app(self, app_id: str) -> int:
        self._require_connected("launch_app")
        request_id, data = self._connection.channel.launch_app(app_id)
        await self._connection.send(data)
        LOG.debug("cast launch requested id=%s app_id=%s request_id=%d", self.id, app_id, request_id)
        return request_id

    async def set_volume_level(self, level: float) -> int:
        self._require_connected("set_volume_level")
        level = float(level)
        if math.isnan(level):
            raise ValueError("volume level must be a number")
        level = max(0.0, min(1.0, level))
        if level == 0.0:
            volume = VolumeState(level=0.0, muted=True)
        else:
            volume = VolumeState(level=level, muted=False)
        request_id, data = self._connection.channel.set_volume(volume)
        await self._connection.send(data)
        return request_id

    async def set_muted(self, muted: bool) -> int:
        self._require_connected("set_muted")
        request_id, data = self._connection.channel.set_muted(muted)
        await self._connection.send(data)
        return request_id

    async def load_media(self, url: str, mime_type: str = "", autoplay: bool = True) -> int:
        self._require_connected("load_media")
        if not url:
            raise ValueError("url must not be empty")
        app = self._app
        if app is None or not app.transport_id:
            raise OutOfOrderError(f"{self.id}: load_media needs a running app with a transport id")

        channel = self._connection.channel
        _, data = channel.connect_media(app.transport_id)
        await self._connection.send(data)
        request_id, data = channel.load_url(app.transport_id, url, mime_type, autoplay)
        await self._connection.send(data)
        LOG.debug(
            "cast load requested id=%s transport_id=%s url=%s request_id=%d",
            self.id,
            app.transport_id,
            url,
            request_id,
        )
        return request_id

    # ---- dispatch path ----
    def _on_message(self, message: InboundMessage) -> None:
        flags = CastFlag.NONE
        if isinstance(message, ReceiverStatus):
            if message.volume is not None:
                flags |= self.set_volume(message.volume)
            if message.app is not None:
                flags |= self.set_app(message.app)
            if self._status_request_id is not None and (
                message.request_id == self._status_request_id or self.status_known
            ):
                self._status_request_id = None
        elif isinstance(message, MediaStatus):
            flags |= self.set_media(message.media)
        elif isinstance(message, RequestFailed):
            if message.request_id and message.request_id == self._status_request_id:
                self._status_request_id = None
            LOG.debug(
                "cast request failed id=%s request_id=%d intent=%s reason=%s",
                self.id,
                message.request_id,
                message.intent,
                message.reason,
            )
        elif isinstance(message, ConnectionClosed):
            if self._app is not None and message.source_id == self._app.transport_id:
                flags |= self.set_media(None)
        elif isinstance(message, Unhandled):
            LOG.debug(
                "cast ignore message id=%s ns=%s type=%s",
                self.id,
                message.namespace,
                message.kind,
            )

        if flags:
            LOG.debug("cast state changed id=%s flags=%s", self.id, flags)
        self._notify(flags)

    def _on_lost(self, error: Exception) -> None:
        self._status_request_id = None
        self._notify(CastFlag.NONE, force=True)

    def _notify(self, flags: CastFlag, force: bool = False) -> None:
        if not flags and not force:
            return
        event = self._changed
        self._changed = asyncio.Event()
        event.set()

    def _reset_cache(self) -> None:
        self._volume = None
        self._app = None
        self._media = None
        self._status_request_id = None

    def _require_connected(self, operation: str) -> None:
        if self.state != ConnectionState.CONNECTED:
            raise OutOfOrderError(f"{self.id}: {operation} requires a connected device")

    def __repr__(self) -> str:
        return str(self)

    def __str__(self) -> str:
        parts = [f"<cast.device id={self.id}"]
        if self.name:
            parts.append(f"name={self.name!r}")
        if self.model:
            parts.append(f"model={self.model!r}")
        if self.service:
            parts.append(f"service={self.service!r}")
        parts.append(f"state={self.state.value}")
        if self._volume is not None:
            parts.append(f"volume={self._volume}")
        if self._app is not None:
            parts.append(f"app={self._app}")
        if self._media is not None:
            parts.append(f"media={self._media}")
        return " ".join(parts) + ">"
