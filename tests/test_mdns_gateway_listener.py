import pytest

from castctl.domain.record import DeviceRecord
from castctl.infrastructure import mdns_gateway

SERVICE = "_googlecast._tcp.local."


def _mk_info(addresses, properties=None, port=8009):
    class Info:
        pass

    i = Info()
    i.addresses = addresses
    i.properties = properties or {}
    i.port = port
    return i


def test_listener_add_service_builds_record_from_txt() -> None:
    listener = mdns_gateway._Listener()

    class FakeZC:
        def get_service_info(self, service_type, name, timeout):
            assert service_type == SERVICE
            assert timeout == 2000
            return _mk_info(
                addresses=[bytes([192, 168, 1, 10])],
                properties={
                    b"id": b"abc123",
                    b"fn": b"Kitchen",
                    b"md": b"Chromecast Audio",
                    b"rs": b"Spotify",
                    b"st": b"1",
                    b"bs": None,
                },
            )

    listener.add_service(FakeZC(), SERVICE, "Chromecast-Audio-abc123._googlecast._tcp.local.")
    assert listener.records == [
        DeviceRecord(
            id="abc123",
            addresses=("192.168.1.10",),
            port=8009,
            name="Kitchen",
            model="Chromecast Audio",
            status_text="Spotify",
            status_flag=1,
        )
    ]


def test_listener_orders_ipv4_before_ipv6() -> None:
    listener = mdns_gateway._Listener()
    ipv6 = bytes([0xFE, 0x80] + [0] * 13 + [1])

    class FakeZC:
        def get_service_info(self, *_args, **_kwargs):
            return _mk_info(addresses=[ipv6, bytes([10, 0, 0, 5])], properties={b"id": b"abc"})

    listener.add_service(FakeZC(), SERVICE, "x")
    assert listener.records[0].addresses == ("10.0.0.5", "fe80::1")


def test_listener_add_service_ignores_missing_or_invalid() -> None:
    listener = mdns_gateway._Listener()

    class ZcMissing:
        def get_service_info(self, *_args, **_kwargs):
            return None

    class ZcNoId:
        def get_service_info(self, *_args, **_kwargs):
            return _mk_info(addresses=[bytes([10, 0, 0, 5])], properties={b"fn": b"Kitchen"})

    class ZcNoPort:
        def get_service_info(self, *_args, **_kwargs):
            return _mk_info(addresses=[bytes([10, 0, 0, 5])], properties={b"id": b"abc"}, port=0)

    listener.add_service(ZcMissing(), SERVICE, "x")
    listener.add_service(ZcNoId(), SERVICE, "x")
    listener.add_service(ZcNoPort(), SERVICE, "x")
    assert listener.records == []


def test_listener_update_remove_methods_return_none() -> None:
    listener = mdns_gateway._Listener()
    assert listener.update_service(None, SERVICE, "x") is None
    assert listener.remove_service(None, SERVICE, "x") is None


def test_discover_deduplicates_by_id(monkeypatch) -> None:
    class FakeZC:
        def __init__(self):
            self.closed = False

        def close(self):
            self.closed = True

    fake_zc = FakeZC()
    monkeypatch.setattr(mdns_gateway, "Zeroconf", lambda: fake_zc)

    def fake_browser(_zc, _service_type, listener):
        listener.records.append(DeviceRecord(id="abc", addresses=("10.0.0.2",), port=8009))
        listener.records.append(DeviceRecord(id="abc", addresses=("10.0.0.3",), port=8009))
        return None

    monkeypatch.setattr(mdns_gateway, "ServiceBrowser", fake_browser)
    monkeypatch.setattr(mdns_gateway.time, "sleep", lambda _t: None)

    found = mdns_gateway.MdnsDiscoveryGateway().discover(timeout_s=0.01)
    assert len(found) == 1
    assert found[0].addresses == ("10.0.0.3",)
    assert fake_zc.closed is True


def test_discover_browses_googlecast_by_default(monkeypatch) -> None:
    class FakeZC:
        def close(self) -> None:
            return None

    seen_types: list[str] = []

    monkeypatch.setattr(mdns_gateway, "Zeroconf", lambda: FakeZC())

    def fake_browser(_zc, service_type, _listener):
        seen_types.append(service_type)
        return None

    monkeypatch.setattr(mdns_gateway, "ServiceBrowser", fake_browser)
    monkeypatch.setattr(mdns_gateway.time, "sleep", lambda _t: None)

    mdns_gateway.MdnsDiscoveryGateway().discover(timeout_s=0.01)
    assert seen_types == [SERVICE]


def test_discover_cancels_browser(monkeypatch) -> None:
    class FakeZC:
        def close(self) -> None:
            return None

    cancelled = {"value": False}

    class FakeBrowser:
        def __init__(self, _zc, _service_type, _listener):
            pass

        def cancel(self) -> None:
            cancelled["value"] = True

    monkeypatch.setattr(mdns_gateway, "Zeroconf", lambda: FakeZC())
    monkeypatch.setattr(mdns_gateway, "ServiceBrowser", FakeBrowser)

    def _sleep(_timeout: float) -> None:
        assert cancelled["value"] is False

    monkeypatch.setattr(mdns_gateway.time, "sleep", _sleep)
    mdns_gateway.MdnsDiscoveryGateway().discover(timeout_s=0.01)
    assert cancelled["value"] is True


def test_discover_releases_zeroconf_on_interrupt(monkeypatch) -> None:
    class FakeZC:
        closed = False

        def close(self) -> None:
            FakeZC.closed = True

    class FakeBrowser:
        cancelled = False

        def __init__(self, *_args):
            pass

        def cancel(self) -> None:
            FakeBrowser.cancelled = True

    monkeypatch.setattr(mdns_gateway, "Zeroconf", FakeZC)
    monkeypatch.setattr(mdns_gateway, "ServiceBrowser", FakeBrowser)

    def _interrupt(_timeout: float) -> None:
        raise KeyboardInterrupt()

    monkeypatch.setattr(mdns_gateway.time, "sleep", _interrupt)
    with pytest.raises(KeyboardInterrupt):
        mdns_gateway.MdnsDiscoveryGateway().discover(timeout_s=0.1)
    assert FakeBrowser.cancelled is True
    assert FakeZC.closed is True
