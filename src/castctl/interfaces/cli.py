import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import os
import sys

from castctl.application.device import CastDevice
from castctl.application.ports import DiscoveryPort
from castctl.application.service import DEFAULT_MEDIA_RECEIVER_APP_ID, CastService
from castctl.domain.events import ConnectionState, StateEvent
from castctl.domain.record import DeviceRecord
from castctl.infrastructure.config import ClientConfig, load_config
from castctl.infrastructure.connection import CastConnection
from castctl.infrastructure.mdns_gateway import MdnsDiscoveryGateway

LOG = logging.getLogger(__name__)


def _describe(record: DeviceRecord) -> str:
    model = f" ({record.model})" if record.model else ""
    return f"{record.name or record.id}{model} -> {record.addresses[0]}:{record.port} id={record.id}"


def _pick(records: list[DeviceRecord], index: int | None) -> DeviceRecord:
    if not records:
        raise RuntimeError("No Cast receiver detected via mDNS. Check network / Wi-Fi isolation.")
    if index is None:
        if len(records) == 1:
            return records[0]
        for i, r in enumerate(records):
            print(f"[{i}] {_describe(r)}")
        raise RuntimeError("Multiple receivers detected. Run again with --index N.")
    if index < 0 or index >= len(records):
        raise RuntimeError(f"Invalid index: {index}")
    return records[index]


def _discover_records(timeout_s: float, gateway: DiscoveryPort | None = None) -> list[DeviceRecord]:
    records = (gateway or MdnsDiscoveryGateway()).discover(timeout_s=timeout_s)
    return sorted(records, key=lambda r: (r.name or r.id).lower())


def _record_from_args(args, cfg: ClientConfig) -> DeviceRecord:
    ip = args.ip if args.ip is not None else cfg.target.ip
    port = args.port if args.port is not None else cfg.target.port
    if ip:
        return DeviceRecord(id=args.device_id or ip, name="manual", addresses=(ip,), port=port)
    timeout = args.discover_timeout if args.discover_timeout is not None else cfg.target.discover_timeout
    index = args.index if args.index is not None else cfg.target.index
    return _pick(_discover_records(timeout_s=timeout), index)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        force=True,
    )


def _format_status(status: dict) -> list[str]:
    lines = [f"{status['name']} ({status['id']}) @ {status['address']}:{status['port']}"]
    if status.get("model"):
        lines.append(f"  model: {status['model']}")
    volume = status.get("volume")
    if volume is not None:
        muted = " muted" if volume["muted"] else ""
        lines.append(f"  volume: {volume['level']:.2f}{muted}")
    app = status.get("app")
    if app is not None:
        if app["app_id"]:
            lines.append(f"  app: {app['display_name'] or app['app_id']} ({app['app_id']})")
            if app["status_text"]:
                lines.append(f"  status: {app['status_text']}")
        else:
            lines.append("  app: idle")
    media = status.get("media")
    if media is not None:
        lines.append(f"  media: {media['player_state']} {media['content_id']}".rstrip())
    return lines


async def _watch(device: CastDevice, cfg: ClientConfig, duration_s: float | None) -> None:
    errors: asyncio.Queue = asyncio.Queue()
    states: asyncio.Queue = asyncio.Queue()
    await device.connect(
        timeout_s=cfg.connect_timeout_s,
        errors=errors,
        states=states,
        select_address=cfg.select_address(),
    )

    async def _print_errors() -> None:
        while True:
            exc = await errors.get()
            print(f"error: {exc}", file=sys.stderr)

    async def _print_changes() -> None:
        while True:
            await device.wait_changed()
            print(device, flush=True)

    async def _until_disconnected() -> None:
        while True:
            event: StateEvent = await states.get()
            print(f"state: {event.state.value}", flush=True)
            if event.state == ConnectionState.DISCONNECTED:
                return

    tasks = [
        asyncio.create_task(_print_errors()),
        asyncio.create_task(_print_changes()),
    ]
    try:
        await device.update_status()
        await asyncio.wait_for(_until_disconnected(), timeout=duration_s)
    except asyncio.TimeoutError:
        pass
    finally:
        for task in tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await device.disconnect()


async def _run_command(args, device: CastDevice, cfg: ClientConfig) -> None:
    if args.cmd == "watch":
        await _watch(device, cfg, args.duration)
        return

    await device.connect(timeout_s=cfg.connect_timeout_s, select_address=cfg.select_address())
    service = CastService(device, timeout_s=cfg.connect_timeout_s)
    try:
        if args.cmd == "status":
            status = await service.status()
            if args.status_json:
                print(json.dumps(status, indent=2, ensure_ascii=False))
            else:
                for line in _format_status(status):
                    print(line)
        elif args.cmd == "launch":
            await service.ensure_app(args.app_id)
            print("OK")
        elif args.cmd == "setvol":
            await device.set_volume_level(args.level)
            print("OK")
        elif args.cmd == "volup":
            print(f"{await service.volume_up():.2f}")
        elif args.cmd == "voldown":
            print(f"{await service.volume_down():.2f}")
        elif args.cmd == "mute":
            await device.set_muted(True)
            print("OK")
        elif args.cmd == "unmute":
            await device.set_muted(False)
            print("OK")
        elif args.cmd == "load":
            await service.play(
                args.url,
                mime_type=args.mime_type,
                app_id=args.app_id,
                autoplay=args.autoplay,
            )
            print("OK")
    finally:
        await device.disconnect()


def main() -> None:
    p = argparse.ArgumentParser(
        prog="castctl", description="Cast receiver control (discover + commands)"
    )
    p.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override log level (e.g. DEBUG, INFO, WARNING).",
    )
    p.add_argument("--config", type=str, default=None)
    p.add_argument("--discover-timeout", type=float, default=None)
    p.add_argument("--index", type=int, default=None)
    p.add_argument("--ip", type=str, default=None, help="Manual IP (bypass discovery)")
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--id", dest="device_id", type=str, default=None, help="Device id for --ip")
    p.add_argument("--timeout", type=float, default=None, help="Connect/reply timeout (s)")

    sub = p.add_subparsers(dest="cmd", required=True)
    sub.add_parser("list")
    status = sub.add_parser("status")
    status.add_argument("--json", action="store_true", dest="status_json")
    launch = sub.add_parser("launch")
    launch.add_argument("app_id", type=str)
    setvol = sub.add_parser("setvol")
    setvol.add_argument("level", type=float, help="Volume level between 0.0 and 1.0")
    sub.add_parser("volup")
    sub.add_parser("voldown")
    sub.add_parser("mute")
    sub.add_parser("unmute")
    load = sub.add_parser("load")
    load.add_argument("url", type=str)
    load.add_argument("--mime-type", type=str, default="")
    load.add_argument("--app-id", type=str, default=DEFAULT_MEDIA_RECEIVER_APP_ID)
    load.add_argument("--no-autoplay", action="store_false", dest="autoplay")
    watch = sub.add_parser("watch")
    watch.add_argument("--duration", type=float, default=None)

    args = p.parse_args()
    requested_log_level = args.log_level or os.getenv("CASTCTL_LOG_LEVEL")
    if requested_log_level is not None:
        _configure_logging(requested_log_level)

    try:
        cfg = load_config(args.config)
    except ValueError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        raise SystemExit(2)
    if requested_log_level is None:
        _configure_logging(cfg.log_level)
    if args.timeout is not None:
        cfg = dataclasses.replace(cfg, connect_timeout_s=args.timeout)

    if args.cmd == "list":
        timeout = args.discover_timeout if args.discover_timeout is not None else cfg.target.discover_timeout
        records = _discover_records(timeout_s=timeout)
        if not records:
            print("No receiver detected.")
            return
        for i, r in enumerate(records):
            print(f"[{i}] {_describe(r)}")
        return

    try:
        record = _record_from_args(args, cfg)
        device = CastDevice(record, CastConnection(heartbeat_interval_s=cfg.heartbeat_interval_s))
        asyncio.run(_run_command(args, device, cfg))
    except KeyboardInterrupt:
        return
    except Exception as exc:
        LOG.debug("command failed cmd=%s", args.cmd, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(2)
