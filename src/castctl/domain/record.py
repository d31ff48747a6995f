from dataclasses import dataclass
from typing import Iterable, Mapping

from castctl.domain.errors import InvalidRecordError


def txt_to_map(txt: Iterable[str]) -> dict[str, str]:
    result: dict[str, str] = {}
    for entry in txt:
        key, sep, value = entry.partition("=")
        result[key] = value if sep else ""
    return result


def _parse_flag(value: str | None) -> int:
    if not value:
        return 0
    try:
        return int(value, 0)
    except ValueError:
        return 0


@dataclass(frozen=True)
class DeviceRecord:
    id: str
    addresses: tuple[str, ...]
    port: int
    name: str = ""
    model: str = ""
    status_text: str = ""
    status_flag: int = 0

    @classmethod
    def from_txt(
        cls,
        addresses: Iterable[str],
        port: int,
        txt: Mapping[str, str] | Iterable[str],
    ) -> "DeviceRecord":
        props = dict(txt) if isinstance(txt, Mapping) else txt_to_map(txt)
        return cls(
            id=props.get("id", ""),
            addresses=tuple(addresses),
            port=int(port or 0),
            name=props.get("fn", ""),
            model=props.get("md", ""),
            status_text=props.get("rs", ""),
            status_flag=_parse_flag(props.get("st")),
        )


def validate_record(record: DeviceRecord) -> None:
    if not record.port:
        raise InvalidRecordError(f"record {record.id or '<unnamed>'}: port is zero")
    if not record.addresses:
        raise InvalidRecordError(f"record {record.id or '<unnamed>'}: no addresses")
    if not record.id:
        raise InvalidRecordError("record has no identifier")
