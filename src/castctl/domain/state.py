from dataclasses import dataclass
from enum import IntFlag


class CastFlag(IntFlag):
    NONE = 0
    VOLUME = 1
    APP = 2
    MEDIA = 4


@dataclass(frozen=True)
class VolumeState:
    level: float
    muted: bool = False

    def __str__(self) -> str:
        if self.muted:
            return f"{self.level:.2f} (muted)"
        return f"{self.level:.2f}"


@dataclass(frozen=True)
class AppState:
    """Application reported by the receiver.

    An empty ``transport_id`` means the receiver is idle (backdrop) or the
    app exposes no media endpoint; media commands need a transport id.
    """

    app_id: str = ""
    display_name: str = ""
    transport_id: str = ""
    status_text: str = ""
    session_id: str = ""

    @property
    def is_idle(self) -> bool:
        return not self.app_id

    def __str__(self) -> str:
        if self.is_idle:
            return "idle"
        return f"{self.display_name or self.app_id} ({self.app_id})"


@dataclass(frozen=True)
class MediaState:
    session_id: int
    player_state: str = ""
    content_id: str = ""
    content_type: str = ""
    current_time: float = 0.0

    def __str__(self) -> str:
        return f"{self.player_state} {self.content_id}".strip()
