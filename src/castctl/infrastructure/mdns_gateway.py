import logging
import socket
import time

from zeroconf import ServiceBrowser, ServiceListener, Zeroconf

from castctl.domain.errors import InvalidRecordError
from castctl.domain.record import DeviceRecord, validate_record

LOG = logging.getLogger(__name__)

CAST_SERVICE_TYPE = "_googlecast._tcp.local."


def _decode_properties(properties) -> dict[str, str]:
    props: dict[str, str] = {}
    for k, v in (properties or {}).items():
        try:
            key = k.decode("utf-8") if isinstance(k, bytes) else str(k)
            value = v.decode("utf-8") if isinstance(v, bytes) else ("" if v is None else str(v))
        except UnicodeDecodeError:
            continue
        props[key] = value
    return props


def _format_address(raw: bytes) -> str | None:
    if len(raw) == 4:
        return socket.inet_ntop(socket.AF_INET, raw)
    if len(raw) == 16:
        return socket.inet_ntop(socket.AF_INET6, raw)
    return None


class _Listener(ServiceListener):
    def __init__(self) -> None:
        self.records: list[DeviceRecord] = []

    def add_service(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        LOG.debug("mDNS add_service type=%s name=%s", service_type, name)
        info = zeroconf.get_service_info(service_type, name, timeout=2000)
        if not info or not info.addresses:
            LOG.debug("mDNS ignore service name=%s reason=no_info_or_addresses", name)
            return

        # IPv4 first so the default address policy prefers it.
        addresses = [a for a in (_format_address(raw) for raw in info.addresses) if a]
        addresses.sort(key=lambda a: ":" in a)
        record = DeviceRecord.from_txt(addresses, info.port or 0, _decode_properties(info.properties))
        try:
            validate_record(record)
        except InvalidRecordError as exc:
            LOG.debug("mDNS reject service name=%s reason=%s", name, exc)
            return

        LOG.debug(
            "mDNS accept service name=%s id=%s addrs=%s port=%s model=%s",
            name,
            record.id,
            ",".join(record.addresses),
            record.port,
            record.model,
        )
        self.records.append(record)

    def update_service(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        return None

    def remove_service(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        return None


class MdnsDiscoveryGateway:
    def __init__(self, service_type: str = CAST_SERVICE_TYPE) -> None:
        self.service_type = service_type

    def discover(self, timeout_s: float = 3.0) -> list[DeviceRecord]:
        LOG.debug(
            "mDNS discovery begin service_type=%s timeout_s=%.2f",
            self.service_type,
            timeout_s,
        )
        zc = Zeroconf()
        browser = None
        try:
            listener = _Listener()
            browser = ServiceBrowser(zc, self.service_type, listener)
            time.sleep(timeout_s)
        finally:
            if browser is not None:
                cancel = getattr(browser, "cancel", None)
                if callable(cancel):
                    cancel()
            zc.close()

        # Receivers re-announce; keep the latest record per id.
        uniq: dict[str, DeviceRecord] = {}
        for r in listener.records:
            uniq[r.id] = r

        records = list(uniq.values())
        LOG.debug(
            "mDNS discovery done raw_services=%d unique_devices=%d",
            len(listener.records),
            len(records),
        )
        return records
