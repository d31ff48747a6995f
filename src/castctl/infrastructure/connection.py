import asyncio
import contextlib
import logging
import ssl
from typing import Callable

from castctl.domain.errors import (
    NotFoundError,
    OutOfOrderError,
    ProtocolDecodeError,
    RequestFailedError,
    TeardownError,
    TransportError,
)
from castctl.domain.events import ConnectionState, StateEvent
from castctl.infrastructure.cast_message import FRAME_HEADER, MAX_FRAME_SIZE
from castctl.infrastructure.channel import (
    CastChannel,
    ConnectionClosed,
    Heartbeat,
    InboundMessage,
    RequestFailed,
)

LOG = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage], None]
LostHandler = Callable[[Exception], None]

_HEARTBEAT_MISSES = 3
_CLOSE_TIMEOUT_S = 1.0


def _receiver_ssl_context() -> ssl.SSLContext:
    # Receivers present self-signed device certificates.
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class CastConnection:
    """Secured stream to one receiver plus its dispatch and heartbeat tasks."""

    def __init__(
        self,
        channel: CastChannel | None = None,
        heartbeat_interval_s: float = 5.0,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self.channel = channel or CastChannel()
        self.heartbeat_interval_s = heartbeat_interval_s
        self._ssl_context = ssl_context
        self._state = ConnectionState.DISCONNECTED
        self._device_id = ""
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._on_message: MessageHandler | None = None
        self._on_lost: LostHandler | None = None
        self._errors: asyncio.Queue | None = None
        self._states: asyncio.Queue | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._writer is not None

    async def connect(
        self,
        device_id: str,
        host: str,
        port: int,
        timeout_s: float,
        on_message: MessageHandler,
        on_lost: LostHandler | None = None,
        errors: asyncio.Queue | None = None,
        states: asyncio.Queue | None = None,
    ) -> None:
        await self._await_loss()
        if self._state != ConnectionState.DISCONNECTED:
            raise OutOfOrderError(f"connection to {device_id} is {self._state.value}")

        self._device_id = device_id
        self._errors = errors
        self._states = states
        self._on_message = on_message
        self._on_lost = on_lost
        self.channel.reset()
        self._set_state(ConnectionState.CONNECTING)

        LOG.debug("cast connect begin id=%s addr=%s:%s timeout_s=%.2f", device_id, host, port, timeout_s)
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(
                    host,
                    port,
                    ssl=self._ssl_context or _receiver_ssl_context(),
                ),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError as exc:
            self._reset_transport()
            self._set_state(ConnectionState.DISCONNECTED)
            raise NotFoundError(f"{host}:{port} unreachable within {timeout_s:.1f}s") from exc
        except (OSError, ssl.SSLError) as exc:
            self._reset_transport()
            self._set_state(ConnectionState.DISCONNECTED)
            raise TransportError(f"cannot connect to {host}:{port}: {exc}") from exc
        except asyncio.CancelledError:
            self._reset_transport()
            self._set_state(ConnectionState.DISCONNECTED)
            raise

        try:
            await self._write(self.channel.connect())
        except TransportError:
            await self._close_writer()
            self._reset_transport()
            self._set_state(ConnectionState.DISCONNECTED)
            raise

        self._set_state(ConnectionState.CONNECTED)
        self._receive_task = asyncio.create_task(self._receive_loop())
        if self.heartbeat_interval_s > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        LOG.info("cast connected id=%s addr=%s:%s", device_id, host, port)

    async def disconnect(self) -> None:
        if self._state == ConnectionState.DISCONNECTED and self._writer is None:
            await self._await_loss()
            return

        errors: list[Exception] = []
        if self._writer is not None and self._state == ConnectionState.CONNECTED:
            try:
                await self._write(self.channel.close())
            except TransportError as exc:
                errors.append(exc)

        for task in (self._heartbeat_task, self._receive_task):
            if task is None or task is asyncio.current_task():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                errors.append(exc)
        self._heartbeat_task = None
        self._receive_task = None

        try:
            await self._close_writer()
        except (OSError, asyncio.TimeoutError) as exc:
            errors.append(TransportError(f"close failed: {exc}"))

        self._reset_transport()
        self.channel.reset()
        self._set_state(ConnectionState.DISCONNECTED)
        LOG.info("cast disconnected id=%s errors=%d", self._device_id, len(errors))
        if errors:
            raise TeardownError(errors)

    async def send(self, data: bytes) -> None:
        if not self.is_connected:
            raise TransportError(f"not connected to {self._device_id or 'receiver'}")
        await self._write(data)

    async def _write(self, data: bytes) -> None:
        writer = self._writer
        if writer is None:
            raise TransportError("transport is closed")
        try:
            writer.write(data)
            await writer.drain()
        except (OSError, RuntimeError) as exc:
            raise TransportError(f"write failed: {exc}") from exc

    async def _read_body(self) -> bytes:
        assert self._reader is not None
        header = await self._reader.readexactly(FRAME_HEADER.size)
        (length,) = FRAME_HEADER.unpack(header)
        if length > MAX_FRAME_SIZE:
            raise TransportError(f"frame of {length} bytes exceeds {MAX_FRAME_SIZE}")
        return await self._reader.readexactly(length)

    async def _receive_loop(self) -> None:
        silence_s = self.heartbeat_interval_s * _HEARTBEAT_MISSES if self.heartbeat_interval_s > 0 else None
        failure: Exception | None = None
        try:
            while True:
                try:
                    body = await asyncio.wait_for(self._read_body(), timeout=silence_s)
                except asyncio.TimeoutError:
                    failure = TransportError(f"no frame from receiver for {silence_s:.2f}s")
                    break
                except asyncio.IncompleteReadError:
                    failure = TransportError("receiver closed the stream")
                    break
                except TransportError as exc:
                    failure = exc
                    break
                except OSError as exc:
                    failure = TransportError(f"read failed: {exc}")
                    break

                try:
                    message = self.channel.decode(body)
                except ProtocolDecodeError as exc:
                    LOG.debug("cast decode failed id=%s err=%s", self._device_id, exc)
                    self._emit_error(exc)
                    continue

                failure = await self._dispatch(message)
                if failure is not None:
                    break
        except Exception as exc:
            LOG.exception("cast dispatch loop crashed id=%s", self._device_id)
            failure = exc

        if failure is not None:
            await self._lose(failure)

    async def _dispatch(self, message: InboundMessage) -> Exception | None:
        if isinstance(message, Heartbeat):
            if message.kind == "PING":
                try:
                    await self._write(self.channel.pong(message.source_id))
                except TransportError as exc:
                    return exc
            return None
        if isinstance(message, ConnectionClosed) and message.source_id == self.channel.receiver_id:
            return TransportError("receiver closed the virtual connection")
        if isinstance(message, RequestFailed):
            self._emit_error(RequestFailedError(message.request_id, message.intent, message.reason))

        if self._on_message is not None:
            try:
                self._on_message(message)
            except Exception as exc:
                LOG.exception("cast message handler failed id=%s", self._device_id)
                self._emit_error(exc)
        return None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            try:
                await self._write(self.channel.ping())
            except TransportError as exc:
                # The receive loop notices the dead stream and reports it.
                LOG.debug("cast heartbeat failed id=%s err=%s", self._device_id, exc)
                return

    async def _lose(self, failure: Exception) -> None:
        LOG.warning("cast connection lost id=%s err=%s", self._device_id, failure)
        # Detached before the first await; disconnect then waits on this task.
        writer = self._writer
        heartbeat = self._heartbeat_task
        self._heartbeat_task = None
        self._reset_transport()
        self.channel.reset()
        self._emit_error(failure)
        self._set_state(ConnectionState.DISCONNECTED)

        if heartbeat is not None:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
        with contextlib.suppress(OSError, asyncio.TimeoutError):
            await self._close_writer(writer)
        if self._receive_task is asyncio.current_task():
            self._receive_task = None
        if self._on_lost is not None:
            self._on_lost(failure)

    async def _await_loss(self) -> None:
        task = self._receive_task
        if self._state != ConnectionState.DISCONNECTED or task is None or task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _close_writer(self, writer: asyncio.StreamWriter | None = None) -> None:
        writer = writer or self._writer
        if writer is None:
            return
        writer.close()
        await asyncio.wait_for(writer.wait_closed(), timeout=_CLOSE_TIMEOUT_S)

    def _reset_transport(self) -> None:
        self._reader = None
        self._writer = None

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        LOG.debug("cast state id=%s %s -> %s", self._device_id, self._state.value, state.value)
        self._state = state
        if self._states is not None:
            self._states.put_nowait(StateEvent(device_id=self._device_id, state=state))

    def _emit_error(self, error: Exception) -> None:
        if self._errors is not None:
            self._errors.put_nowait(error)
