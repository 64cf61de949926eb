"""Cellular modem tracking on top of ModemManager and NetworkManager.

Modems are discovered through ``mmcli`` every ten seconds. Each modem with a
SIM gets a NetworkManager ``gsm`` connection holding its APN and roaming
settings; the connection is matched back to the modem by device and SIM id.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Mapping

from .broadcast import Broadcaster, Requester
from .event_log import EventLog
from .mmcli import (
    ModemInfo,
    ModemManagerCLI,
    NetworkType,
    convert_access_tech,
    convert_network_type,
    convert_network_types,
)
from .nmcli import NetworkManagerCLI


logger = logging.getLogger(__name__)

UPDATE_INTERVAL = 10.0

GSM_CONNECTION_FIELDS = (
    "gsm.device-id",
    "gsm.sim-id",
    "gsm.sim-operator-id",
    "gsm.apn",
    "gsm.username",
    "gsm.password",
    "gsm.home-only",
    "gsm.network-id",
)

_SIM_PATH = re.compile(r"/org/freedesktop/ModemManager1/SIM/(\d+)")
_NET_PORT = re.compile(r" \(net\)$")


class GsmOperatorCache:
    """Remembers operator names for networks picked from scan results."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = Lock()
        self._names: dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unable to load GSM operator cache: %s", exc)
            return
        if isinstance(payload, dict):
            self._names = {
                str(key): value for key, value in payload.items() if isinstance(value, str)
            }

    def get(self, operator_id: str) -> str | None:
        with self._lock:
            return self._names.get(operator_id)

    def set(self, operator_id: str, name: str) -> None:
        with self._lock:
            if self._names.get(operator_id) == name:
                return
            self._names[operator_id] = name
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._path.write_text(json.dumps(self._names), encoding="utf-8")
            except OSError as exc:
                logger.warning("Unable to persist GSM operator cache: %s", exc)


@dataclass(slots=True)
class ModemConfig:
    apn: str = "internet"
    username: str = ""
    password: str = ""
    roaming: bool = True
    network: str = ""
    autoconfig: bool = True
    conn: str | None = None

    def to_dict(self, *, autoconfig_supported: bool) -> dict[str, object]:
        return {
            "apn": self.apn,
            "username": self.username,
            "password": self.password,
            "roaming": self.roaming,
            "network": self.network,
            "autoconfig": autoconfig_supported and self.autoconfig,
        }


@dataclass(slots=True)
class ModemStatus:
    connection: str
    network_type: str
    signal: int
    roaming: bool
    network: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "connection": self.connection,
            "network": self.network,
            "network_type": self.network_type,
            "signal": self.signal,
            "roaming": self.roaming,
        }


@dataclass(slots=True)
class Modem:
    id: int
    ifname: str
    name: str
    sim_network: str
    supported_types: dict[str, NetworkType]
    active_type: str | None = None
    config: ModemConfig | None = None
    status: ModemStatus | None = None
    available_networks: dict[str, dict[str, str]] | None = None
    is_scanning: bool = False
    inhibit: bool = False


@dataclass(slots=True)
class GsmConnection:
    uuid: str
    state: str
    device_id: str
    sim_id: str
    operator_id: str
    config: ModemConfig = field(default_factory=ModemConfig)


def nm_modem_settings(config: ModemConfig, *, autoconfig_supported: bool) -> dict[str, str]:
    """Translate a modem config into NetworkManager ``gsm.*`` settings.

    With autoconfig in effect the manual APN credentials are cleared from
    ``config``; without support for it the flag is turned off.
    """

    autoconfig = autoconfig_supported and config.autoconfig
    settings = {
        "gsm.apn": config.apn or "",
        "gsm.username": config.username or "",
        "gsm.password": config.password or "",
        "gsm.password-flags": "0" if config.password else "4",
        "gsm.home-only": "no" if config.roaming else "yes",
        "gsm.network-id": config.network if config.roaming else "",
    }
    if autoconfig_supported:
        settings["gsm.auto-config"] = "yes" if autoconfig else "no"
    if autoconfig:
        config.apn = ""
        config.username = ""
        config.password = ""
    else:
        config.autoconfig = False
    return settings


def merge_scan_results(rows: list[dict[str, str]]) -> dict[str, dict[str, str]]:
    """Fold per-technology scan rows into one entry per operator code.

    ``current`` is reported as ``available`` since results are cached and
    shown after switching networks; ``unknown`` availability is dropped.
    """

    merged: dict[str, dict[str, str]] = {}
    for row in rows:
        code = row.get("operator-code")
        if not code:
            continue
        availability = row.get("availability")
        if availability == "current":
            availability = "available"
        elif availability == "unknown":
            availability = None
        entry = merged.get(code)
        if entry is None:
            entry = {"name": row.get("operator-name", "")}
            if availability:
                entry["availability"] = availability
            merged[code] = entry
        elif availability == "available":
            entry["availability"] = "available"
    return merged


def _first(info: ModemInfo, key: str) -> str:
    value = info.get(key, "")
    if isinstance(value, list):
        return value[0] if value else ""
    return value


def _list(info: ModemInfo, key: str) -> list[str]:
    value = info.get(key, [])
    return value if isinstance(value, list) else [value]


class ModemController:
    """Owns every known modem keyed by its ModemManager id."""

    def __init__(
        self,
        mmcli: ModemManagerCLI,
        nmcli: NetworkManagerCLI,
        broadcaster: Broadcaster,
        operator_cache: GsmOperatorCache,
        *,
        event_log: EventLog | None = None,
        autoconfig_supported: bool = True,
    ) -> None:
        self._mmcli = mmcli
        self._nmcli = nmcli
        self._broadcaster = broadcaster
        self._operators = operator_cache
        self._event_log = event_log
        self._autoconfig = autoconfig_supported
        self._modems: dict[int, Modem] = {}
        self._gsm_connections: list[GsmConnection] | None = None

    # ------------------------------- queries -------------------------------
    def get(self, modem_id: int) -> Modem | None:
        return self._modems.get(modem_id)

    def modems(self) -> list[Modem]:
        return [self._modems[key] for key in sorted(self._modems)]

    def available_networks(self, modem: Modem) -> dict[str, dict[str, str]]:
        """Scan results plus the configured network when it was not seen."""

        networks = dict(modem.available_networks or {})
        if modem.config is None or not modem.config.network:
            return networks
        network = modem.config.network
        if network not in networks:
            name = self._operators.get(network) or f"Operator ID {network}"
            entry = {"name": name}
            if modem.available_networks is not None:
                entry["availability"] = "unavailable"
            networks[network] = entry
        return networks

    # -------------------------------- status -------------------------------
    def _modem_entry(self, modem: Modem, status: ModemStatus, full: bool) -> dict[str, object]:
        entry: dict[str, object] = {"status": status.to_dict()}
        if not full:
            return entry
        entry["ifname"] = modem.ifname
        entry["name"] = modem.name
        entry["network_type"] = {
            "supported": list(modem.supported_types),
            "active": modem.active_type,
        }
        if modem.config is not None:
            entry["config"] = modem.config.to_dict(autoconfig_supported=self._autoconfig)
        else:
            entry["no_sim"] = True
        entry["available_networks"] = self.available_networks(modem)
        return entry

    def build_status_message(self, full: set[int] | None = None) -> dict[str, object]:
        """Status for every modem; ``full`` limits the detailed fields to some ids."""

        message: dict[str, object] = {}
        for modem in self.modems():
            if modem.status is None:
                continue
            detailed = full is None or modem.id in full
            message[str(modem.id)] = self._modem_entry(modem, modem.status, detailed)
        return message

    def broadcast_modems(self, full: set[int] | None = None) -> None:
        self._broadcaster.broadcast("status", {"modems": self.build_status_message(full)})

    def broadcast_available_networks(self, modem_id: int) -> None:
        message: dict[str, object] = {}
        for modem in self.modems():
            entry: dict[str, object] = {}
            if modem.id == modem_id:
                entry["available_networks"] = self.available_networks(modem)
            message[str(modem.id)] = entry
        self._broadcaster.broadcast("status", {"modems": message})

    # ----------------------------- update loop -----------------------------
    async def update(self) -> None:
        """One reconciliation pass over ModemManager's modem list."""

        listed = await self._mmcli.list_modems()
        if listed is None:
            listed = []
        self._gsm_connections = None
        previous = set(self._modems)
        new_modems: set[int] = set()
        for modem_id in listed:
            if modem_id in self._modems:
                await self._refresh(modem_id)
            elif await self._register(modem_id):
                new_modems.add(modem_id)
        for modem_id in previous - set(listed):
            removed = self._modems.pop(modem_id, None)
            if removed is not None:
                logger.warning("Modem %s removed", modem_id)
                self._record("removed", f"Modem {removed.name} removed", id=modem_id)
        self.broadcast_modems(new_modems)

    async def run(self, interval: float = UPDATE_INTERVAL) -> None:
        while True:
            try:
                await self.update()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Modem update failed")
            await asyncio.sleep(interval)

    async def _refresh(self, modem_id: int) -> None:
        modem = self._modems[modem_id]
        info = await self._mmcli.get_modem(modem_id)
        if info is None:
            return
        modem.status = self._build_status(info, modem)
        await self._connect_if_needed(modem)

    def _build_status(self, info: ModemInfo, modem: Modem) -> ModemStatus:
        registration = _first(info, "modem.3gpp.registration-state")
        network = _first(info, "modem.3gpp.operator-name") or None
        # Some modems omit the operator name while on the home network.
        if network is None and registration == "home":
            network = modem.sim_network
        try:
            signal = int(_first(info, "modem.generic.signal-quality.value"))
        except ValueError:
            signal = 0
        return ModemStatus(
            connection="scanning" if modem.is_scanning else _first(info, "modem.generic.state"),
            network=network,
            network_type=convert_access_tech(_list(info, "modem.generic.access-technologies")),
            signal=signal,
            roaming=registration == "roaming",
        )

    async def _connect_if_needed(self, modem: Modem) -> None:
        if modem.inhibit or modem.is_scanning:
            return
        if modem.status is None or modem.status.connection not in ("registered", "enabled"):
            return
        if modem.config is None or not modem.config.conn:
            return
        state = await self._nmcli.get_connection_fields(modem.config.conn, "GENERAL.STATE")
        # A single empty line means the connection is not active.
        if state is not None and len(state) == 1:
            logger.info("Bringing up connection %s for modem %s", modem.config.conn, modem.id)
            await self._nmcli.connect(modem.config.conn)

    async def _load_gsm_connections(self) -> list[GsmConnection]:
        if self._gsm_connections is not None:
            return self._gsm_connections
        fields = list(GSM_CONNECTION_FIELDS)
        if self._autoconfig:
            fields.append("gsm.auto-config")
        connections: list[GsmConnection] = []
        for row in await self._nmcli.list_connections("uuid,type,state") or []:
            if len(row) < 3 or row[1] != "gsm":
                continue
            values = await self._nmcli.get_connection_fields(row[0], ",".join(fields))
            if values is None:
                continue
            values = values + [""] * (len(fields) - len(values))
            connections.append(
                GsmConnection(
                    uuid=row[0],
                    state=row[2],
                    device_id=values[0],
                    sim_id=values[1],
                    operator_id=values[2],
                    config=ModemConfig(
                        apn=values[3],
                        username=values[4],
                        password=values[5],
                        roaming=values[6] == "no",
                        network=values[7],
                        autoconfig=self._autoconfig and values[8] == "yes",
                        conn=row[0],
                    ),
                )
            )
        self._gsm_connections = connections
        return connections

    async def _find_config(self, device_id: str, sim_id: str, operator_id: str) -> ModemConfig:
        connections = await self._load_gsm_connections()
        for connection in connections:
            if connection.device_id == device_id and connection.sim_id == sim_id and sim_id:
                return connection.config
        if operator_id:
            for connection in connections:
                if connection.operator_id == operator_id:
                    # Copy the settings of another SIM from the same operator.
                    source = connection.config
                    return ModemConfig(
                        apn=source.apn,
                        username=source.username,
                        password=source.password,
                        roaming=source.roaming,
                        network=source.network,
                        autoconfig=source.autoconfig,
                    )
        return ModemConfig()

    async def _add_connection(self, device_id: str, sim_id: str, operator_id: str, config: ModemConfig) -> None:
        settings: dict[str, str] = {
            "type": "gsm",
            "ifname": "",
            "autoconnect": "yes",
            "connection.autoconnect-retries": "2",
            "ipv6.method": "ignore",
            "gsm.device-id": device_id,
            "gsm.sim-id": sim_id,
        }
        settings.update(nm_modem_settings(config, autoconfig_supported=self._autoconfig))
        if operator_id:
            settings["gsm.sim-operator-id"] = operator_id
        uuid = await self._nmcli.add_connection(settings)
        if uuid:
            config.conn = uuid
            logger.debug("Created connection %s for modem %s", uuid, device_id)

    async def _register(self, modem_id: int) -> bool:
        info = await self._mmcli.get_modem(modem_id)
        if info is None:
            logger.error("Failed to get modem info for modem %s", modem_id)
            return False

        sim_info: ModemInfo | None = None
        config: ModemConfig | None = None
        sim_match = _SIM_PATH.search(_first(info, "modem.generic.sim"))
        if sim_match:
            sim_info = await self._mmcli.get_sim(int(sim_match.group(1)))
            if sim_info is not None:
                device_id = _first(info, "modem.generic.device-identifier")
                sim_id = _first(sim_info, "sim.properties.iccid")
                operator_id = _first(sim_info, "sim.properties.operator-code")
                config = await self._find_config(device_id, sim_id, operator_id)
                if not config.conn:
                    await self._add_connection(device_id, sim_id, operator_id, config)

        ifname = next(
            (_NET_PORT.sub("", port) for port in _list(info, "modem.generic.ports") if _NET_PORT.search(port)),
            None,
        )
        if not ifname:
            logger.error("Failed to find the network interface of modem %s", modem_id)
            return False

        supported = convert_network_types(_list(info, "modem.generic.supported-modes"))
        active: str | None = None
        current_modes = _first(info, "modem.generic.current-modes")
        if current_modes:
            try:
                current = convert_network_type(current_modes)
            except ValueError:
                current = None
            if current is not None:
                supported.setdefault(current.label, current)
                active = current.label

        imei = _first(info, "modem.generic.equipment-identifier")[-5:]
        sim_network = "<NO SIM>"
        if sim_info is not None:
            sim_network = _first(sim_info, "sim.properties.operator-name") or "Unknown"
        modem = Modem(
            id=modem_id,
            ifname=ifname,
            name=f"{_first(info, 'modem.generic.model')} - {imei} | {sim_network}",
            sim_network=sim_network,
            supported_types=supported,
            active_type=active,
            config=config,
        )
        modem.status = self._build_status(info, modem)
        self._modems[modem_id] = modem
        self._record("added", f"Modem {modem.name} added", id=modem_id, ifname=ifname)
        return True

    # ------------------------------- commands ------------------------------
    async def scan(self, modem_id: int) -> None:
        modem = self._modems.get(modem_id)
        if modem is None or modem.config is None or modem.status is None or modem.is_scanning:
            return
        modem.is_scanning = True
        try:
            if modem.config.conn:
                # The radio must be idle to scan.
                await self._nmcli.disconnect(modem.config.conn)
            rows = await self._mmcli.network_scan(modem_id)
        finally:
            modem.is_scanning = False
        if rows:
            modem.available_networks = merge_scan_results(rows)
        # Sent even without new results so clients see the scan finish.
        self.broadcast_available_networks(modem_id)

    async def configure(self, payload: Mapping[str, object]) -> None:
        try:
            modem_id = int(payload.get("device"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            logger.info("Ignoring modem config without a device id")
            return
        modem = self._modems.get(modem_id)
        if modem is None or modem.config is None or not modem.config.conn:
            logger.info("Ignoring modem config for unknown or unconfigured modem %s", modem_id)
            return
        conn = modem.config.conn

        roaming = payload.get("roaming")
        autoconfig = payload.get("autoconfig")
        texts = [payload.get(key) for key in ("apn", "username", "password", "network", "network_type")]
        if not isinstance(roaming, bool) or not isinstance(autoconfig, bool) or not all(
            isinstance(value, str) for value in texts
        ):
            logger.error("Received invalid configuration for modem %s", modem_id)
            return
        apn, username, password, network, network_type = (str(value) for value in texts)

        selected_type = modem.supported_types.get(network_type)
        if selected_type is None:
            logger.error("Unsupported network type %s for modem %s", network_type, modem_id)
            return
        available = modem.available_networks or {}
        if network and network != modem.config.network and network not in available:
            logger.warning("Network %s is not available to modem %s", network, modem_id)
            return
        if network in available:
            self._operators.set(network, available[network].get("name", ""))

        updated = ModemConfig(
            apn=apn,
            username=username,
            password=password,
            roaming=roaming,
            network=network,
            autoconfig=autoconfig,
            conn=conn,
        )
        settings = nm_modem_settings(updated, autoconfig_supported=self._autoconfig)
        if await self._nmcli.set_connection_fields(conn, settings):
            modem.config = updated
        else:
            logger.error("Failed to update connection %s of modem %s", conn, modem_id)

        # Reload the settings by cycling the connection; the update loop brings it back.
        modem.inhibit = True
        try:
            await self._nmcli.disconnect(conn)
            if network_type != modem.active_type and await self._mmcli.set_network_types(
                modem_id, selected_type.allowed, selected_type.preferred
            ):
                modem.active_type = network_type
        finally:
            modem.inhibit = False
        self._record("configured", f"Modem {modem.name} reconfigured", id=modem_id)
        self.broadcast_modems({modem_id})

    async def handle_message(self, requester: Requester, message: Mapping[str, object]) -> None:
        for key, value in message.items():
            if key == "config" and isinstance(value, Mapping):
                await self.configure(value)
            elif key == "scan" and isinstance(value, Mapping):
                try:
                    modem_id = int(value.get("device"))  # type: ignore[arg-type]
                except (TypeError, ValueError):
                    continue
                await self.scan(modem_id)
            else:
                logger.debug("Ignoring modem command %r", key)

    def _record(self, event: str, message: str, **details: object) -> None:
        if self._event_log is not None:
            self._event_log.record("modem", event, message, **details)


__all__ = [
    "GsmOperatorCache",
    "Modem",
    "ModemConfig",
    "ModemController",
    "ModemStatus",
    "merge_scan_results",
    "nm_modem_settings",
]
