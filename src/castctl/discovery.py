from castctl.domain.record import DeviceRecord
from castctl.infrastructure.mdns_gateway import CAST_SERVICE_TYPE, MdnsDiscoveryGateway


def discover(
    timeout_s: float = 3.0, service_type: str = CAST_SERVICE_TYPE
) -> list[DeviceRecord]:
    records = MdnsDiscoveryGateway(service_type=service_type).discover(timeout_s=timeout_s)
    return sorted(records, key=lambda r: (r.name or r.id).lower())
