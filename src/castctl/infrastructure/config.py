import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from castctl.domain.policy import AddressPolicy, address_policy_by_name

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib

DEFAULT_PORT = 8009
_ADDRESS_POLICIES = {"first", "random", "round_robin"}


@dataclass(frozen=True)
class RuntimeTarget:
    ip: str | None = None
    port: int = DEFAULT_PORT
    discover_timeout: float = 3.0
    index: int | None = None


@dataclass(frozen=True)
class ClientConfig:
    target: RuntimeTarget
    connect_timeout_s: float = 5.0
    heartbeat_interval_s: float = 5.0
    address_policy: str = "first"
    log_level: str = "INFO"

    def select_address(self) -> AddressPolicy:
        return address_policy_by_name(self.address_policy)


def _toml_error_type():
    return getattr(tomllib, "TOMLDecodeError", ValueError)


class _TargetConfigModel(BaseModel):
    ip: str | None = None
    port: int = DEFAULT_PORT
    discover_timeout: float = 3.0
    index: int | None = None

    @field_validator("port", "discover_timeout", "index", mode="before")
    @classmethod
    def _reject_bool_numbers(cls, value):
        if isinstance(value, bool):
            raise ValueError("boolean values are not valid for numeric fields")
        return value

    @field_validator("port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError("port must be between 1 and 65535")
        return value


class _ClientConfigModel(BaseModel):
    target: _TargetConfigModel = Field(default_factory=_TargetConfigModel)
    connect_timeout_s: float = 5.0
    heartbeat_interval_s: float = 5.0
    address_policy: str = "first"
    log_level: str = "INFO"

    @field_validator("connect_timeout_s", "heartbeat_interval_s", mode="before")
    @classmethod
    def _reject_bool_floats(cls, value):
        if isinstance(value, bool):
            raise ValueError("boolean values are not valid for numeric fields")
        return value

    @field_validator("connect_timeout_s")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("connect_timeout_s must be positive")
        return value

    @field_validator("heartbeat_interval_s")
    @classmethod
    def _non_negative_heartbeat(cls, value: float) -> float:
        if value < 0:
            raise ValueError("heartbeat_interval_s must not be negative")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _uppercase_log_level(cls, value):
        return str(value).upper()

    @field_validator("address_policy", mode="before")
    @classmethod
    def _normalize_address_policy(cls, value):
        normalized = str(value).strip().lower().replace("-", "_")
        if normalized not in _ADDRESS_POLICIES:
            raise ValueError("address_policy must be one of: first, random, round_robin")
        return normalized


def _default_config_path() -> Path:
    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "castctl" / "config.toml"
    return Path.home() / ".config" / "castctl" / "config.toml"


def _load_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    if not path.is_file():
        raise ValueError(f"Config path is not a file: {path}")
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except OSError as exc:
        raise ValueError(f"Cannot read config file: {path}") from exc
    except _toml_error_type() as exc:
        raise ValueError(f"Invalid TOML in config file: {path}") from exc
    return data if isinstance(data, dict) else {}


def _merge_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    merged = dict(data)
    target_data = dict(merged.get("target")) if isinstance(merged.get("target"), dict) else {}

    env_ip = os.getenv("CASTCTL_IP")
    env_port = os.getenv("CASTCTL_PORT")
    env_log_level = os.getenv("CASTCTL_LOG_LEVEL")
    env_connect_timeout = os.getenv("CASTCTL_CONNECT_TIMEOUT")
    env_address_policy = os.getenv("CASTCTL_ADDRESS_POLICY")
    if env_ip is not None:
        target_data["ip"] = env_ip
    if env_port is not None:
        target_data["port"] = env_port
    if env_log_level is not None:
        merged["log_level"] = env_log_level
    if env_connect_timeout is not None:
        merged["connect_timeout_s"] = env_connect_timeout
    if env_address_policy is not None:
        merged["address_policy"] = env_address_policy

    merged["target"] = target_data
    return merged


def load_config(path: str | None = None) -> ClientConfig:
    cfg_path = Path(path) if path else _default_config_path()
    data = _merge_env_overrides(_load_toml(cfg_path))
    try:
        parsed = _ClientConfigModel.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid config values: {exc}") from exc

    target = RuntimeTarget(
        ip=parsed.target.ip,
        port=parsed.target.port,
        discover_timeout=parsed.target.discover_timeout,
        index=parsed.target.index,
    )
    return ClientConfig(
        target=target,
        connect_timeout_s=parsed.connect_timeout_s,
        heartbeat_interval_s=parsed.heartbeat_interval_s,
        address_policy=parsed.address_policy,
        log_level=parsed.log_level,
    )
