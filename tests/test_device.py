import asyncio

import pytest
from conftest import settle

from castctl.application.device import CastDevice
from castctl.domain.errors import InvalidRecordError, OutOfOrderError, TeardownError, TransportError
from castctl.domain.events import ConnectionState
from castctl.domain.policy import RoundRobinAddresses
from castctl.domain.record import DeviceRecord
from castctl.domain.state import AppState, CastFlag, MediaState, VolumeState
from castctl.infrastructure.cast_message import NS_CONNECTION, NS_MEDIA, NS_RECEIVER
from castctl.infrastructure.connection import CastConnection

RECORD = DeviceRecord(id="abc123", addresses=("10.0.0.5",), port=8009)

APP_RUNNING = {
    "type": "RECEIVER_STATUS",
    "status": {
        "volume": {"level": 0.25, "muted": False},
        "applications": [
            {
                "appId": "CC1AD845",
                "displayName": "Default Media Receiver",
                "transportId": "web-7",
                "sessionId": "s-1",
                "statusText": "Ready",
            }
        ],
    },
}


def _device(record: DeviceRecord = RECORD) -> CastDevice:
    return CastDevice(record, CastConnection(heartbeat_interval_s=0))


def test_device_exposes_record_and_falls_back_to_id_for_name() -> None:
    device = _device()
    assert device.id == "abc123"
    assert device.name == "abc123"
    assert device.port == 8009
    assert device.state == ConnectionState.DISCONNECTED
    assert device.volume is None and device.app is None and device.media is None
    assert "id=abc123" in str(device)
    assert "state=disconnected" in str(device)


@pytest.mark.parametrize(
    "record",
    [
        DeviceRecord(id="abc", addresses=("10.0.0.5",), port=0),
        DeviceRecord(id="abc", addresses=(), port=8009),
        DeviceRecord(id="", addresses=("10.0.0.5",), port=8009),
    ],
)
def test_device_rejects_invalid_record(record) -> None:
    with pytest.raises(InvalidRecordError):
        CastDevice(record)


def test_merges_report_only_real_changes() -> None:
    device = _device()
    assert device.set_volume(VolumeState(0.5)) == CastFlag.VOLUME
    assert device.set_volume(VolumeState(0.5)) == CastFlag.NONE
    assert device.set_app(AppState()) == CastFlag.APP
    assert device.set_app(AppState()) == CastFlag.NONE
    assert device.set_media(MediaState(session_id=1)) == CastFlag.MEDIA
    assert device.set_media(MediaState(session_id=1)) == CastFlag.NONE
    assert device.status_known is True


def test_disconnect_without_connect_is_noop() -> None:
    device = _device()
    asyncio.run(device.disconnect())
    assert device.state == ConnectionState.DISCONNECTED


def test_requests_require_connection() -> None:
    device = _device()

    async def scenario():
        for call in (
            device.update_status(),
            device.launch_app("CC1AD845"),
            device.set_volume_level(0.5),
            device.set_muted(True),
            device.load_media("http://example.invalid/a.mp3"),
        ):
            with pytest.raises(OutOfOrderError):
                await call

    asyncio.run(scenario())


def test_update_status_is_deduplicated_until_reply(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        assert device.state == ConnectionState.CONNECTED
        assert device.address == "10.0.0.5"

        first = await device.update_status()
        second = await device.update_status()
        assert first is not None and second == first
        assert receiver.sent_types(NS_RECEIVER) == ["GET_STATUS"]

        payload = {**APP_RUNNING, "requestId": first}
        receiver.push(NS_RECEIVER, payload)
        await device.wait_status(timeout_s=1.0)
        assert await device.update_status() is None
        assert receiver.sent_types(NS_RECEIVER) == ["GET_STATUS"]
        assert device.volume == VolumeState(0.25, False)
        assert device.app.transport_id == "web-7"
        assert device.service == "Default Media Receiver"
        await device.disconnect()

    asyncio.run(scenario())


def test_status_claim_is_released_by_request_failure(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        first = await device.update_status()
        receiver.push(NS_RECEIVER, {"type": "INVALID_REQUEST", "requestId": first})
        await settle()
        second = await device.update_status()
        assert second is not None and second != first
        assert receiver.sent_types(NS_RECEIVER) == ["GET_STATUS", "GET_STATUS"]
        await device.disconnect()

    asyncio.run(scenario())


def test_zero_level_is_sent_as_muted_zero(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        await device.set_volume_level(-0.3)
        await device.set_volume_level(0.0)
        await device.set_volume_level(1.7)
        await device.disconnect()

    asyncio.run(scenario())
    volumes = [p["volume"] for p in receiver.sent(NS_RECEIVER)]
    assert volumes == [
        {"level": 0.0, "muted": True},
        {"level": 0.0, "muted": True},
        {"level": 1.0, "muted": False},
    ]


def test_nan_level_is_rejected(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        with pytest.raises(ValueError):
            await device.set_volume_level(float("nan"))
        await device.disconnect()

    asyncio.run(scenario())
    assert receiver.sent(NS_RECEIVER) == []


def test_load_media_needs_transport_id(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        with pytest.raises(OutOfOrderError):
            await device.load_media("http://example.invalid/a.mp3")
        device.set_app(AppState(app_id="CC1AD845"))
        with pytest.raises(OutOfOrderError):
            await device.load_media("http://example.invalid/a.mp3")
        await device.disconnect()

    asyncio.run(scenario())
    assert receiver.sent(NS_MEDIA) == []
    assert receiver.sent_types(NS_CONNECTION) == ["CONNECT", "CLOSE"]


def test_load_media_connects_to_transport_before_load(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        receiver.push(NS_RECEIVER, APP_RUNNING)
        await device.wait_until(lambda d: d.app is not None, timeout_s=1.0)
        request_id = await device.load_media("http://example.invalid/a.mp3", mime_type="audio/mpeg")
        await device.disconnect()
        return request_id

    request_id = asyncio.run(scenario())
    messages = receiver.writer.messages()
    to_app = [m for m in messages if m.destination_id == "web-7"]
    assert [m.namespace for m in to_app] == [NS_CONNECTION, NS_MEDIA]
    load = receiver.sent(NS_MEDIA)[0]
    assert load["requestId"] == request_id
    assert load["media"]["contentId"] == "http://example.invalid/a.mp3"
    assert load["media"]["contentType"] == "audio/mpeg"
    assert load["autoplay"] is True


def test_app_close_clears_media(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        receiver.push(NS_RECEIVER, APP_RUNNING)
        receiver.push(
            NS_MEDIA,
            {"type": "MEDIA_STATUS", "status": [{"mediaSessionId": 3, "playerState": "PLAYING"}]},
            source_id="web-7",
        )
        await device.wait_until(lambda d: d.media is not None, timeout_s=1.0)
        receiver.push(NS_CONNECTION, {"type": "CLOSE"}, source_id="web-7")
        await device.wait_until(lambda d: d.media is None, timeout_s=1.0)
        assert device.state == ConnectionState.CONNECTED
        await device.disconnect()

    asyncio.run(scenario())


def test_disconnect_resets_cache_and_wakes_waiters(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        receiver.push(NS_RECEIVER, APP_RUNNING)
        await device.wait_status(timeout_s=1.0)
        waiter = asyncio.create_task(device.wait_changed(timeout_s=1.0))
        await settle(1)
        await device.disconnect()
        await waiter
        assert device.volume is None and device.app is None
        assert device.state == ConnectionState.DISCONNECTED

    asyncio.run(scenario())


def test_wait_until_fails_when_connection_drops(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        waiter = asyncio.create_task(device.wait_status(timeout_s=1.0))
        await settle(1)
        receiver.hang_up()
        with pytest.raises(OutOfOrderError):
            await waiter

    asyncio.run(scenario())


def test_connect_uses_address_policy(receiver) -> None:
    record = DeviceRecord(id="abc123", addresses=("10.0.0.5", "10.0.0.6"), port=8009)
    device = _device(record)
    policy = RoundRobinAddresses()

    async def scenario():
        for _ in range(2):
            await device.connect(timeout_s=1.0, select_address=policy)
            await device.disconnect()

    asyncio.run(scenario())
    assert receiver.opened == [("10.0.0.5", 8009), ("10.0.0.6", 8009)]


def test_load_media_stops_when_transport_connect_fails(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        receiver.push(NS_RECEIVER, APP_RUNNING)
        await device.wait_status(timeout_s=1.0)
        receiver.writer.fail_writes = True
        with pytest.raises(TransportError):
            await device.load_media("http://example.invalid/a.mp3")
        receiver.writer.fail_writes = False
        await device.disconnect()

    asyncio.run(scenario())
    assert receiver.sent(NS_MEDIA) == []
    assert [m.destination_id for m in receiver.writer.messages()].count("web-7") == 0


def test_disconnect_resets_cache_when_teardown_fails(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)
        receiver.push(NS_RECEIVER, APP_RUNNING)
        await device.wait_status(timeout_s=1.0)
        receiver.writer.fail_writes = True
        with pytest.raises(TeardownError):
            await device.disconnect()

    asyncio.run(scenario())
    assert device.app is None and device.volume is None
    assert device.state == ConnectionState.DISCONNECTED


def test_rejected_double_connect_keeps_address_rotation(receiver) -> None:
    record = DeviceRecord(id="abc123", addresses=("10.0.0.5", "10.0.0.6"), port=8009)
    device = _device(record)
    policy = RoundRobinAddresses()

    async def scenario():
        await device.connect(timeout_s=1.0, select_address=policy)
        with pytest.raises(OutOfOrderError):
            await device.connect(timeout_s=1.0, select_address=policy)
        await device.disconnect()
        await device.connect(timeout_s=1.0, select_address=policy)
        await device.disconnect()

    asyncio.run(scenario())
    assert receiver.opened == [("10.0.0.5", 8009), ("10.0.0.6", 8009)]


def test_disconnect_while_connection_is_being_lost(receiver) -> None:
    device = _device()

    async def scenario():
        await device.connect(timeout_s=1.0)

        async def slow_wait_closed():
            await asyncio.sleep(0.05)

        receiver.writer.wait_closed = slow_wait_closed
        receiver.hang_up()
        await asyncio.sleep(0.01)
        await device.disconnect()

    asyncio.run(scenario())
    assert device.state == ConnectionState.DISCONNECTED
    assert receiver.sent_types(NS_CONNECTION) == ["CONNECT"]
