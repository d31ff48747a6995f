import logging
from dataclasses import asdict
from typing import Any

from castctl.application.device import CastDevice
from castctl.domain.state import AppState

LOG = logging.getLogger(__name__)

DEFAULT_MEDIA_RECEIVER_APP_ID = "CC1AD845"


class CastService:
    """Flows that combine several requests and wait for the receiver's replies."""

    def __init__(self, device: CastDevice, step: float = 0.05, timeout_s: float = 5.0) -> None:
        self.device = device
        self.step = max(0.01, float(step))
        self.timeout_s = timeout_s

    async def refresh(self) -> None:
        await self.device.update_status()
        await self.device.wait_status(timeout_s=self.timeout_s)

    async def status(self) -> dict[str, Any]:
        await self.refresh()
        return snapshot(self.device)

    async def volume_up(self) -> float:
        return await self._relative_step(self.step)

    async def volume_down(self) -> float:
        return await self._relative_step(-self.step)

    async def ensure_app(self, app_id: str) -> AppState:
        await self.refresh()
        if not _is_running(self.device, app_id):
            LOG.debug("launching app id=%s app_id=%s", self.device.id, app_id)
            await self.device.launch_app(app_id)
            await self.device.wait_until(
                lambda device: _is_running(device, app_id),
                timeout_s=self.timeout_s,
            )
        assert self.device.app is not None
        return self.device.app

    async def play(
        self,
        url: str,
        mime_type: str = "",
        app_id: str = DEFAULT_MEDIA_RECEIVER_APP_ID,
        autoplay: bool = True,
    ) -> int:
        await self.ensure_app(app_id)
        return await self.device.load_media(url, mime_type=mime_type, autoplay=autoplay)

    async def _relative_step(self, delta: float) -> float:
        await self.refresh()
        volume = self.device.volume
        assert volume is not None
        target = round(max(0.0, min(1.0, volume.level + delta)), 2)
        if target != volume.level:
            await self.device.set_volume_level(target)
        return target


def _is_running(device: CastDevice, app_id: str) -> bool:
    app = device.app
    return app is not None and app.app_id == app_id and bool(app.transport_id)


def snapshot(device: CastDevice) -> dict[str, Any]:
    return {
        "id": device.id,
        "name": device.name,
        "model": device.model,
        "service": device.service,
        "address": device.address,
        "port": device.port,
        "state": device.state.value,
        "volume": asdict(device.volume) if device.volume is not None else None,
        "app": asdict(device.app) if device.app is not None else None,
        "media": asdict(device.media) if device.media is not None else None,
    }
