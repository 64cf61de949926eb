"""Configuration management for encoder-link."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

DEFAULT_DATA_DIR = Path("data")
DEFAULT_REMOTE_HOST = "remote.belabox.net"
DEFAULT_REMOTE_PATH = "/ws/remote"
DEFAULT_PROTOCOL_VERSION = 16
DEFAULT_HOTSPOT_PREFIX = "BELABOX"


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be used."""


def data_dir() -> Path:
    """Return the directory holding persisted state."""

    override = os.getenv("ENCODER_LINK_DATA_DIR")
    return Path(override) if override else DEFAULT_DATA_DIR


def env_flag(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


@dataclass(frozen=True, slots=True)
class RemoteEndpoint:
    """Where the relay control channel connects to."""

    host: str = DEFAULT_REMOTE_HOST
    path: str = DEFAULT_REMOTE_PATH
    secure: bool = True
    protocol_version: int = DEFAULT_PROTOCOL_VERSION

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("Remote endpoint host must not be empty")
        if not self.path.startswith("/"):
            raise ValueError("Remote endpoint path must start with '/'")
        if self.protocol_version < 1:
            raise ValueError("Remote protocol version must be positive")

    def url(self, address: str | None = None) -> str:
        target = address or self.host
        if ":" in target:
            target = f"[{target}]"
        scheme = "wss" if self.secure else "ws"
        return f"{scheme}://{target}{self.path}"

    def to_dict(self) -> dict[str, object]:
        return {
            "host": self.host,
            "path": self.path,
            "secure": self.secure,
            "protocol_version": self.protocol_version,
        }


@dataclass(frozen=True, slots=True)
class StreamTarget:
    """Relay selection of the streaming configuration.

    Either a manual SRTLA address/port with an SRT stream id, or references
    to a cached relay server and account.
    """

    relay_server: str | None = None
    relay_account: str | None = None
    srt_streamid: str | None = None
    srtla_addr: str | None = None
    srtla_port: int | None = None

    def to_dict(self) -> dict[str, object | None]:
        return {
            "relay_server": self.relay_server,
            "relay_account": self.relay_account,
            "srt_streamid": self.srt_streamid,
            "srtla_addr": self.srtla_addr,
            "srtla_port": self.srtla_port,
        }


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _parse_stream_target(payload: Mapping[str, Any]) -> StreamTarget:
    port = payload.get("srtla_port")
    if isinstance(port, str) and port.isdigit():
        port = int(port)
    if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
        port = None
    return StreamTarget(
        relay_server=_optional_str(payload.get("relay_server")),
        relay_account=_optional_str(payload.get("relay_account")),
        srt_streamid=_optional_str(payload.get("srt_streamid")),
        srtla_addr=_optional_str(payload.get("srtla_addr")),
        srtla_port=port,
    )


def _parse_remote_endpoint(payload: object) -> RemoteEndpoint:
    if not isinstance(payload, Mapping):
        return RemoteEndpoint()
    defaults = RemoteEndpoint()
    host = payload.get("host", defaults.host)
    path = payload.get("path", defaults.path)
    secure = payload.get("secure", defaults.secure)
    version = payload.get("protocol_version", defaults.protocol_version)
    try:
        return RemoteEndpoint(
            host=str(host),
            path=str(path),
            secure=bool(secure),
            protocol_version=int(version),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid remote endpoint: {exc}") from exc


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._remote_key,
            self._stream_target,
            self._remote_endpoint,
            self._hotspot_prefix,
        ) = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> tuple[str | None, StreamTarget, RemoteEndpoint, str]:
        if not self._path.exists():
            return None, StreamTarget(), RemoteEndpoint(), DEFAULT_HOTSPOT_PREFIX
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
        except (OSError, ValueError) as exc:
            raise ConfigError(f"Failed to load configuration: {exc}") from exc
        prefix = payload.get("hotspot_name_prefix")
        if not isinstance(prefix, str) or not prefix.strip():
            prefix = DEFAULT_HOTSPOT_PREFIX
        return (
            _optional_str(payload.get("remote_key")),
            _parse_stream_target(payload),
            _parse_remote_endpoint(payload.get("remote_endpoint")),
            prefix.strip(),
        )

    def _save(self) -> None:
        payload: dict[str, object | None] = {"remote_key": self._remote_key}
        payload.update(self._stream_target.to_dict())
        payload["remote_endpoint"] = self._remote_endpoint.to_dict()
        payload["hotspot_name_prefix"] = self._hotspot_prefix
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    # ------------------------------ accessors ------------------------------
    def get_remote_key(self) -> str | None:
        with self._lock:
            return self._remote_key

    def set_remote_key(self, key: str | None) -> None:
        """Store a new relay key; the cached relay selection no longer applies."""

        cleaned = key.strip() if isinstance(key, str) and key.strip() else None
        with self._lock:
            self._remote_key = cleaned
            self._stream_target = replace(
                self._stream_target, relay_server=None, relay_account=None
            )
            self._save()

    def get_stream_target(self) -> StreamTarget:
        with self._lock:
            return self._stream_target

    def set_stream_target(self, target: StreamTarget) -> StreamTarget:
        with self._lock:
            self._stream_target = target
            self._save()
            return self._stream_target

    def get_remote_endpoint(self) -> RemoteEndpoint:
        with self._lock:
            return self._remote_endpoint

    def get_hotspot_prefix(self) -> str:
        with self._lock:
            return self._hotspot_prefix


__all__ = [
    "ConfigError",
    "ConfigManager",
    "RemoteEndpoint",
    "StreamTarget",
    "data_dir",
    "env_flag",
]
