import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from castctl.domain.errors import ProtocolDecodeError
from castctl.domain.state import AppState, MediaState, VolumeState
from castctl.infrastructure.cast_message import (
    NS_CONNECTION,
    NS_HEARTBEAT,
    NS_MEDIA,
    NS_RECEIVER,
    CastMessage,
    encode_frame,
)

LOG = logging.getLogger(__name__)

SENDER_ID = "sender-0"
RECEIVER_ID = "receiver-0"

_MAX_OUTSTANDING = 256
_RECEIVER_ERRORS = {"LAUNCH_ERROR", "INVALID_REQUEST"}
_MEDIA_ERRORS = {"LOAD_FAILED", "LOAD_CANCELLED", "INVALID_PLAYER_STATE", "INVALID_REQUEST"}


@dataclass(frozen=True)
class ReceiverStatus:
    source_id: str
    request_id: int
    volume: VolumeState | None
    app: AppState | None
    intent: str | None = None


@dataclass(frozen=True)
class MediaStatus:
    source_id: str
    request_id: int
    media: MediaState | None
    intent: str | None = None


@dataclass(frozen=True)
class RequestFailed:
    source_id: str
    request_id: int
    kind: str
    reason: str
    intent: str | None = None


@dataclass(frozen=True)
class Heartbeat:
    source_id: str
    kind: str


@dataclass(frozen=True)
class ConnectionClosed:
    source_id: str


@dataclass(frozen=True)
class Unhandled:
    source_id: str
    namespace: str
    kind: str


InboundMessage = Union[ReceiverStatus, MediaStatus, RequestFailed, Heartbeat, ConnectionClosed, Unhandled]


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _VolumeModel(_Payload):
    level: float | None = Field(None, ge=0.0, le=1.0, allow_inf_nan=False)
    muted: bool = False


class _ApplicationModel(_Payload):
    app_id: str = Field("", alias="appId")
    display_name: str = Field("", alias="displayName")
    transport_id: str = Field("", alias="transportId")
    status_text: str = Field("", alias="statusText")
    session_id: str = Field("", alias="sessionId")


class _ReceiverStatusModel(_Payload):
    volume: _VolumeModel | None = None
    applications: list[_ApplicationModel] = Field(default_factory=list)


class _ReceiverStatusPayload(_Payload):
    status: _ReceiverStatusModel


class _MediaInformationModel(_Payload):
    content_id: str = Field("", alias="contentId")
    content_type: str = Field("", alias="contentType")


class _MediaSessionModel(_Payload):
    media_session_id: int = Field(alias="mediaSessionId")
    player_state: str = Field("", alias="playerState")
    current_time: float = Field(0.0, alias="currentTime")
    media: _MediaInformationModel | None = None


class _MediaStatusPayload(_Payload):
    status: list[_MediaSessionModel] = Field(default_factory=list)


class CastChannel:
    """Encodes requests and decodes replies for one receiver connection.

    Request encoders return ``(request_id, frame)``. Intents that the
    receiver answers are remembered by id so the reply can be tied back to
    the request that caused it.
    """

    def __init__(self, sender_id: str = SENDER_ID, receiver_id: str = RECEIVER_ID) -> None:
        self.sender_id = sender_id
        self.receiver_id = receiver_id
        self._request_id = 0
        self._outstanding: OrderedDict[int, str] = OrderedDict()

    def reset(self) -> None:
        self._outstanding.clear()

    @property
    def outstanding(self) -> dict[int, str]:
        return dict(self._outstanding)

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _take_intent(self, request_id: int) -> str | None:
        return self._outstanding.pop(request_id, None) if request_id else None

    def _remember(self, request_id: int, intent: str) -> None:
        self._outstanding[request_id] = intent
        while len(self._outstanding) > _MAX_OUTSTANDING:
            dropped, _ = self._outstanding.popitem(last=False)
            LOG.debug("cast channel forget request_id=%d reason=table_full", dropped)

    def _frame(self, destination_id: str, namespace: str, payload: dict[str, Any]) -> bytes:
        message = CastMessage(
            source_id=self.sender_id,
            destination_id=destination_id,
            namespace=namespace,
            payload_utf8=json.dumps(payload, separators=(",", ":")),
        )
        return encode_frame(message)

    def _request(
        self,
        destination_id: str,
        namespace: str,
        payload: dict[str, Any],
        expects_reply: bool = True,
    ) -> tuple[int, bytes]:
        request_id = self._next_id()
        data = self._frame(destination_id, namespace, {**payload, "requestId": request_id})
        if expects_reply:
            self._remember(request_id, payload["type"])
        return request_id, data

    # ---- transport-level frames ----
    def connect(self, destination_id: str | None = None) -> bytes:
        return self._frame(
            destination_id or self.receiver_id,
            NS_CONNECTION,
            {"type": "CONNECT", "origin": {}},
        )

    def close(self, destination_id: str | None = None) -> bytes:
        return self._frame(destination_id or self.receiver_id, NS_CONNECTION, {"type": "CLOSE"})

    def ping(self) -> bytes:
        return self._frame(self.receiver_id, NS_HEARTBEAT, {"type": "PING"})

    def pong(self, destination_id: str | None = None) -> bytes:
        return self._frame(destination_id or self.receiver_id, NS_HEARTBEAT, {"type": "PONG"})

    # ---- intents ----
    def get_status(self) -> tuple[int, bytes]:
        return self._request(self.receiver_id, NS_RECEIVER, {"type": "GET_STATUS"})

    def launch_app(self, app_id: str) -> tuple[int, bytes]:
        if not app_id:
            raise ValueError("app_id must not be empty")
        return self._request(self.receiver_id, NS_RECEIVER, {"type": "LAUNCH", "appId": app_id})

    def set_volume(self, volume: VolumeState) -> tuple[int, bytes]:
        return self._request(
            self.receiver_id,
            NS_RECEIVER,
            {"type": "SET_VOLUME", "volume": {"level": volume.level, "muted": volume.muted}},
        )

    def set_muted(self, muted: bool) -> tuple[int, bytes]:
        return self._request(
            self.receiver_id,
            NS_RECEIVER,
            {"type": "SET_VOLUME", "volume": {"muted": bool(muted)}},
        )

    def connect_media(self, transport_id: str) -> tuple[int, bytes]:
        if not transport_id:
            raise ValueError("transport_id must not be empty")
        return self._request(
            transport_id,
            NS_CONNECTION,
            {"type": "CONNECT", "origin": {}},
            expects_reply=False,
        )

    def load_url(
        self,
        transport_id: str,
        url: str,
        mime_type: str,
        autoplay: bool,
    ) -> tuple[int, bytes]:
        if not transport_id:
            raise ValueError("transport_id must not be empty")
        return self._request(
            transport_id,
            NS_MEDIA,
            {
                "type": "LOAD",
                "media": {
                    "contentId": url,
                    "contentType": mime_type,
                    "streamType": "BUFFERED",
                },
                "autoplay": bool(autoplay),
                "currentTime": 0,
            },
        )

    # ---- inbound ----
    def decode(self, body: bytes) -> InboundMessage:
        message = CastMessage.from_bytes(body)
        if message.payload_binary is not None:
            raise ProtocolDecodeError(f"binary payload not supported ns={message.namespace}")
        try:
            payload = json.loads(message.payload_utf8)
        except json.JSONDecodeError as exc:
            raise ProtocolDecodeError(f"invalid JSON payload ns={message.namespace}") from exc
        if not isinstance(payload, dict):
            raise ProtocolDecodeError(f"payload is not an object ns={message.namespace}")
        kind = payload.get("type")
        if not isinstance(kind, str) or not kind:
            raise ProtocolDecodeError(f"payload has no type ns={message.namespace}")

        request_id = payload.get("requestId")
        if isinstance(request_id, bool) or not isinstance(request_id, int):
            request_id = 0
        source = message.source_id
        if message.namespace == NS_HEARTBEAT:
            return Heartbeat(source_id=source, kind=kind)
        if message.namespace == NS_CONNECTION and kind == "CLOSE":
            return ConnectionClosed(source_id=source)
        # Intents are taken only once the payload has validated.
        if message.namespace == NS_RECEIVER:
            if kind == "RECEIVER_STATUS":
                volume, app = _parse_receiver_status(payload)
                return ReceiverStatus(source, request_id, volume, app, self._take_intent(request_id))
            if kind in _RECEIVER_ERRORS:
                return _request_failed(source, request_id, kind, payload, self._take_intent(request_id))
        if message.namespace == NS_MEDIA:
            if kind == "MEDIA_STATUS":
                media = _parse_media_status(payload)
                return MediaStatus(source, request_id, media, self._take_intent(request_id))
            if kind in _MEDIA_ERRORS:
                return _request_failed(source, request_id, kind, payload, self._take_intent(request_id))
        self._take_intent(request_id)
        return Unhandled(source_id=source, namespace=message.namespace, kind=kind)


def _request_failed(
    source_id: str,
    request_id: int,
    kind: str,
    payload: dict[str, Any],
    intent: str | None,
) -> RequestFailed:
    reason = payload.get("reason") or payload.get("detailedErrorCode") or kind
    return RequestFailed(
        source_id=source_id,
        request_id=request_id,
        kind=kind,
        reason=str(reason),
        intent=intent,
    )


def _parse_receiver_status(payload: dict[str, Any]) -> tuple[VolumeState | None, AppState]:
    try:
        parsed = _ReceiverStatusPayload.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolDecodeError(f"malformed RECEIVER_STATUS: {exc}") from exc

    volume = None
    raw_volume = parsed.status.volume
    if raw_volume is not None and raw_volume.level is not None:
        volume = VolumeState(level=raw_volume.level, muted=raw_volume.muted)

    # Receivers run at most one app at a time; none means idle.
    app = AppState()
    if parsed.status.applications:
        first = parsed.status.applications[0]
        app = AppState(
            app_id=first.app_id,
            display_name=first.display_name,
            transport_id=first.transport_id,
            status_text=first.status_text,
            session_id=first.session_id,
        )
    return volume, app


def _parse_media_status(payload: dict[str, Any]) -> MediaState | None:
    try:
        parsed = _MediaStatusPayload.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolDecodeError(f"malformed MEDIA_STATUS: {exc}") from exc
    if not parsed.status:
        return None
    session = parsed.status[0]
    media = session.media or _MediaInformationModel()
    return MediaState(
        session_id=session.media_session_id,
        player_state=session.player_state,
        content_id=media.content_id,
        content_type=media.content_type,
        current_time=session.current_time,
    )
