"""Disk-backed copy of the relay servers and accounts pushed by the relay."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping

from .broadcast import Broadcaster
from .config import StreamTarget
from .event_log import EventLog


logger = logging.getLogger(__name__)

RELAY_CACHE_FILE = "relays_cache.json"
SERVER_TYPE = "srtla"

_PORT_PATTERN = re.compile(r"^\d+$")

RelayData = dict[str, Any]


class RelayValidationError(ValueError):
    """Raised when a relay payload holds no usable server."""


def validate_port(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and _PORT_PATTERN.match(value):
        value = int(value)
    if not isinstance(value, int) or not 1 <= value <= 0xFFFF:
        return None
    return value


def _validate_server(entry: object) -> dict[str, Any] | None:
    if not isinstance(entry, Mapping):
        return None
    if entry.get("type") != SERVER_TYPE:
        return None
    name = entry.get("name")
    addr = entry.get("addr")
    if not isinstance(name, str) or not isinstance(addr, str):
        return None
    default = entry.get("default")
    if default and default is not True:
        return None
    port = validate_port(entry.get("port"))
    if port is None:
        return None
    server: dict[str, Any] = {"type": SERVER_TYPE, "name": name, "addr": addr, "port": port}
    bcrp_port = entry.get("bcrp_port")
    if bcrp_port:
        server["bcrp_port"] = bcrp_port
    if default:
        server["default"] = True
    return server


def _validate_account(entry: object) -> dict[str, Any] | None:
    if not isinstance(entry, Mapping):
        return None
    name = entry.get("name")
    ingest_key = entry.get("ingest_key")
    if not isinstance(name, str) or not isinstance(ingest_key, str):
        return None
    account: dict[str, Any] = {"name": name, "ingest_key": ingest_key}
    if entry.get("disabled"):
        account["disabled"] = True
    return account


def validate_relays(payload: object) -> RelayData:
    """Return the usable part of a relay push.

    Malformed servers and accounts are dropped one by one; a payload left
    without any server raises :class:`RelayValidationError`.
    """

    if not isinstance(payload, Mapping):
        raise RelayValidationError("Relay payload must be an object")
    servers_in = payload.get("servers")
    accounts_in = payload.get("accounts")
    result: RelayData = {"servers": {}, "accounts": {}}

    if isinstance(servers_in, Mapping):
        for server_id, entry in servers_in.items():
            server = _validate_server(entry)
            if server is None:
                logger.debug("Dropping invalid relay server %s", server_id)
                continue
            result["servers"][str(server_id)] = server

    if isinstance(accounts_in, Mapping):
        for account_id, entry in accounts_in.items():
            account = _validate_account(entry)
            if account is None:
                logger.debug("Dropping invalid relay account %s", account_id)
                continue
            result["accounts"][str(account_id)] = account

    if "bcrp_key" in payload:
        bcrp_key = payload["bcrp_key"]
        if not isinstance(bcrp_key, str):
            raise RelayValidationError("bcrp_key must be a string")
        result["bcrp_key"] = bcrp_key

    if not result["servers"]:
        raise RelayValidationError("Relay payload contains no valid server")
    return result


class RelayCache:
    """Holds the last validated relay data and mirrors it to disk."""

    def __init__(
        self,
        path: Path | str,
        broadcaster: Broadcaster,
        *,
        event_log: EventLog | None = None,
    ) -> None:
        self._path = Path(path)
        self._broadcaster = broadcaster
        self._event_log = event_log
        self._data: RelayData | None = self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def data(self) -> RelayData | None:
        return self._data

    def _load(self) -> RelayData | None:
        if not self._path.exists():
            return None
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load the relays cache, starting with an empty cache: %s", exc)
            return None
        if not isinstance(payload, dict):
            return None
        try:
            return validate_relays(payload)
        except RelayValidationError as exc:
            logger.warning("Ignoring stored relays cache: %s", exc)
            return None

    def _store(self, data: RelayData | None) -> bool:
        if data == self._data:
            return False
        self._data = data
        try:
            self._write(data)
        except OSError as exc:
            logger.error("Unable to persist the relays cache: %s", exc)
        logger.debug("Updated the relays cache")
        return True

    def _write(self, data: RelayData | None) -> None:
        """Replace the cache file in one step so readers never see a partial file."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            delete=False,
        )
        tmp_path = Path(handle.name)
        try:
            with handle:
                json.dump(data, handle)
            os.replace(tmp_path, self._path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    # -------------------------------- updates ------------------------------
    def update(self, payload: object) -> bool:
        """Validate and store a relay push; returns whether anything changed.

        Raises :class:`RelayValidationError` when nothing usable remains.
        """

        validated = validate_relays(payload)
        if not self._store(validated):
            return False
        if self._event_log is not None:
            self._event_log.record(
                "relays",
                "updated",
                "Relay list updated",
                servers=len(validated["servers"]),
                accounts=len(validated["accounts"]),
            )
        self._broadcaster.broadcast("relays", self.build_relays_message())
        return True

    def clear(self) -> bool:
        if not self._store(None):
            return False
        self._broadcaster.broadcast("relays", self.build_relays_message())
        return True

    # -------------------------------- views --------------------------------
    def build_relays_message(self) -> dict[str, dict[str, dict[str, object]]]:
        message: dict[str, dict[str, dict[str, object]]] = {"servers": {}, "accounts": {}}
        if not self._data:
            return message
        for server_id, server in self._data["servers"].items():
            entry: dict[str, object] = {"name": server["name"]}
            if server.get("default"):
                entry["default"] = True
            message["servers"][server_id] = entry
        for account_id, account in self._data["accounts"].items():
            disabled = bool(account.get("disabled"))
            entry = {"name": account["name"] + (" [disabled]" if disabled else "")}
            if disabled:
                entry["disabled"] = True
            message["accounts"][account_id] = entry
        return message

    def convert_manual_to_remote_relay(self, target: StreamTarget) -> StreamTarget | None:
        """Point a manually entered relay at the matching cached entries.

        Returns the rewritten target, or ``None`` when nothing changed.
        """

        if not self._data:
            return None
        updated = target
        if not updated.relay_server and updated.srtla_addr and updated.srtla_port:
            for server_id, server in self._data["servers"].items():
                if (
                    server["addr"].lower() == updated.srtla_addr.lower()
                    and server["port"] == updated.srtla_port
                ):
                    updated = replace(updated, relay_server=server_id)
                    break

        # Without a relay server the stream id stays a manual one.
        if not updated.relay_server:
            return None

        if updated.srtla_addr or updated.srtla_port:
            updated = replace(updated, srtla_addr=None, srtla_port=None)

        if not updated.relay_account and updated.srt_streamid:
            for account_id, account in self._data["accounts"].items():
                if account["ingest_key"] == updated.srt_streamid:
                    updated = replace(updated, relay_account=account_id)
                    break

        if updated.relay_account and updated.srt_streamid:
            updated = replace(updated, srt_streamid=None)

        return updated if updated != target else None


__all__ = [
    "RELAY_CACHE_FILE",
    "RelayCache",
    "RelayValidationError",
    "validate_port",
    "validate_relays",
]
