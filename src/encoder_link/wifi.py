"""Wi-Fi state reconciliation against NetworkManager.

:class:`WifiManager` owns every Wi-Fi interface keyed by MAC address. It is
fed by the device list tracker (which interfaces exist) and by ``nmcli``
(connection state, saved profiles and scan results) and pushes a status
message to the UI whenever its view changes.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping

from .broadcast import Broadcaster, Requester
from .device_list import DeviceListTracker
from .event_log import EventLog
from .hotspot import Hotspot, HotspotController
from .nmcli import NetworkManagerCLI


logger = logging.getLogger(__name__)

SCAN_UPDATE_DELAYS = (1.0, 3.0, 5.0, 10.0, 15.0, 20.0)
UNAVAILABLE_RETRY_INTERVAL = 3.0
UNAVAILABLE_RETRY_WINDOW = 5 * 60.0

DEVICE_FIELDS = "device,type,state,con-uuid"
DEVICE_PROPERTIES = (
    "GENERAL.VENDOR,GENERAL.PRODUCT,"
    "WIFI-PROPERTIES.AP,WIFI-PROPERTIES.5GHZ,WIFI-PROPERTIES.2GHZ"
)
SCAN_FIELDS = "active,ssid,signal,security,freq,device"
SAVED_FIELDS = "802-11-wireless.mode,802-11-wireless.ssid,802-11-wireless.mac-address"

_LEADING_INT = re.compile(r"^\s*(-?\d+)")
_PRODUCT_DETAIL = re.compile(r"[\[(](.+)[\])]")


def _leading_int(value: str) -> int:
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else 0


def describe_hardware(vendor: str, product: str) -> str:
    """Build a short adapter description from NetworkManager's properties."""

    vendor = vendor.replace("Corporation", "").strip()
    detail = _PRODUCT_DETAIL.search(product)
    if detail:
        product = detail.group(1)
    return f"{vendor} {product}"


@dataclass(slots=True)
class WifiNetwork:
    """A network seen in the latest scan."""

    active: bool
    ssid: str
    signal: int
    security: str
    freq: int

    def to_dict(self) -> dict[str, object]:
        return {
            "active": self.active,
            "ssid": self.ssid,
            "signal": self.signal,
            "security": self.security,
            "freq": self.freq,
        }


@dataclass(slots=True)
class WifiInterface:
    """One Wi-Fi adapter, identified by its MAC address."""

    id: int
    ifname: str
    mac: str
    hw: str
    conn: str | None = None
    available: dict[str, WifiNetwork] = field(default_factory=dict)
    saved: dict[str, str] = field(default_factory=dict)
    hotspot: Hotspot | None = None

    @property
    def supports_hotspot(self) -> bool:
        return self.hotspot is not None

    def is_hotspot(self, now: float) -> bool:
        hotspot = self.hotspot
        if hotspot is None:
            return False
        if hotspot.conn and self.conn == hotspot.conn:
            return True
        return hotspot.is_forced(now)

    def to_status(self, now: float) -> dict[str, object]:
        status: dict[str, object] = {
            "ifname": self.ifname,
            "conn": self.conn,
            "hw": self.hw,
        }
        if self.hotspot is not None and self.is_hotspot(now):
            status["hotspot"] = self.hotspot.to_dict()
            status["saved"] = {}
        else:
            status["available"] = [network.to_dict() for network in self.available.values()]
            status["saved"] = dict(self.saved)
            if self.supports_hotspot:
                status["supports_hotspot"] = True
        return status


class WifiManager:
    """Reconciles NetworkManager's Wi-Fi view into :class:`WifiInterface` records."""

    def __init__(
        self,
        nmcli: NetworkManagerCLI,
        devices: DeviceListTracker,
        broadcaster: Broadcaster,
        *,
        event_log: EventLog | None = None,
        hotspot_prefix: str = "BELABOX",
        clock: Callable[[], float] = time.monotonic,
        scan_delays: Iterable[float] = SCAN_UPDATE_DELAYS,
    ) -> None:
        self._nmcli = nmcli
        self._devices = devices
        self._broadcaster = broadcaster
        self._event_log = event_log
        self._clock = clock
        self._scan_delays = tuple(scan_delays)
        self._interfaces: dict[str, WifiInterface] = {}
        self._ids: dict[int, str] = {}
        self._next_id = 0
        self._scan_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[object]] = set()
        self._unavailable_expiry = 0.0
        self.hotspot = HotspotController(
            self, nmcli, name_prefix=hotspot_prefix, event_log=event_log
        )

    # ------------------------------- queries -------------------------------
    def now(self) -> float:
        return self._clock()

    def interfaces(self) -> list[WifiInterface]:
        return list(self._interfaces.values())

    def get(self, mac: str) -> WifiInterface | None:
        return self._interfaces.get(mac)

    def resolve_device(self, device: object) -> WifiInterface | None:
        """Find an interface from the numeric id used in UI messages."""

        try:
            device_id = int(device)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        mac = self._ids.get(device_id)
        return self._interfaces.get(mac) if mac else None

    def find_device_by_connection(self, uuid: str) -> int | None:
        for device_id, mac in self._ids.items():
            interface = self._interfaces.get(mac)
            if interface is not None and uuid in interface.saved.values():
                return device_id
        return None

    # ------------------------------- mutation ------------------------------
    def upsert_interface(
        self,
        mac: str,
        ifname: str,
        conn: str | None,
        *,
        hw: str = "",
        hotspot: Hotspot | None = None,
    ) -> tuple[WifiInterface, bool]:
        """Create or refresh the interface owning ``mac``.

        Returns the interface and whether its reported state changed.
        """

        interface = self._interfaces.get(mac)
        if interface is None:
            interface = WifiInterface(
                id=self._next_id, ifname=ifname, mac=mac, hw=hw, conn=conn, hotspot=hotspot
            )
            self._next_id += 1
            self._interfaces[mac] = interface
            self._ids[interface.id] = mac
            return interface, True
        changed = False
        if interface.ifname != ifname:
            interface.ifname = ifname
            changed = True
        if interface.conn != conn:
            interface.conn = conn
            changed = True
        self._ids[interface.id] = mac
        return interface, changed

    def remove_interface(self, mac: str) -> bool:
        interface = self._interfaces.pop(mac, None)
        if interface is None:
            return False
        self._ids.pop(interface.id, None)
        return True

    # ---------------------------- reconciliation ---------------------------
    async def update_devices(self) -> bool:
        """Re-sync the interface list with NetworkManager's device table."""

        rows = await self._nmcli.list_devices(DEVICE_FIELDS)
        if rows is None:
            return False
        new_devices = False
        status_change = False
        unavailable = False
        previous = set(self._interfaces)
        present: set[str] = set()

        for row in sorted(rows):
            if len(row) < 4:
                continue
            ifname, dev_type, state, conn_uuid = row[:4]
            if dev_type != "wifi":
                continue
            if state == "unavailable":
                unavailable = True
                continue
            mac = self._devices.get_mac(ifname)
            if not mac:
                continue
            conn = conn_uuid if conn_uuid and self._devices.get_inet(ifname) else None
            if mac in self._interfaces:
                _, changed = self.upsert_interface(mac, ifname, conn)
                status_change = status_change or changed
            else:
                hw, hotspot = await self._read_adapter(ifname)
                interface, _ = self.upsert_interface(mac, ifname, conn, hw=hw, hotspot=hotspot)
                new_devices = True
                status_change = True
                self._record("wifi", "added", f"Wi-Fi adapter {ifname} ({hw}) added", id=interface.id)
            present.add(mac)

        for mac in previous - present:
            interface = self._interfaces.get(mac)
            if interface is not None and self.remove_interface(mac):
                status_change = True
                self._record("wifi", "removed", f"Wi-Fi adapter {interface.ifname} removed")

        if new_devices:
            await self.update_saved_connections()
            self.schedule_scan_updates()
        if status_change:
            await self.update_scan_results()
            self.schedule_scan_updates()
        if new_devices or status_change:
            self.broadcast_state()

        self._handle_unavailable(unavailable)
        return status_change

    async def _read_adapter(self, ifname: str) -> tuple[str, Hotspot | None]:
        props = await self._nmcli.device_properties(ifname, DEVICE_PROPERTIES)
        props = (props or []) + [""] * 5
        hw = describe_hardware(props[0], props[1])
        if props[2] != "yes":
            return hw, None
        channels = ["auto"]
        if props[3] == "yes":
            channels.append("auto_50")
        if props[4] == "yes":
            channels.append("auto_24")
        return hw, Hotspot(available_channels=channels)

    def _handle_unavailable(self, unavailable: bool) -> None:
        # Adapters often turn up unavailable right after boot; keep polling
        # for a bounded time rather than forever.
        if not unavailable:
            self._unavailable_expiry = 0.0
            return
        now = self._clock()
        if self._unavailable_expiry == 0.0:
            self._unavailable_expiry = now + UNAVAILABLE_RETRY_WINDOW
            logger.warning("Wi-Fi interfaces unavailable; retrying for the next 5 minutes")
        elif now >= self._unavailable_expiry:
            return
        if self._retry_task is None or self._retry_task.done():
            self._retry_task = self._spawn(self._retry_devices())

    async def _retry_devices(self) -> None:
        await asyncio.sleep(UNAVAILABLE_RETRY_INTERVAL)
        await self.update_devices()

    def request_device_update(self) -> None:
        self._spawn(self.update_devices())

    async def update_saved_connections(self) -> None:
        """Rebuild every interface's saved profiles from NetworkManager."""

        rows = await self._nmcli.list_connections("uuid,type")
        if rows is None:
            return
        saved: dict[str, dict[str, str]] = {mac: {} for mac in self._interfaces}
        for row in rows:
            if len(row) < 2 or row[1] != "802-11-wireless":
                continue
            uuid = row[0]
            values = await self._nmcli.get_connection_fields(uuid, SAVED_FIELDS)
            if values is None or len(values) < 3:
                continue
            mode, ssid, mac = values[0], values[1], values[2].lower()
            if not ssid:
                logger.warning("Ignoring Wi-Fi connection %s without an SSID", uuid)
                continue
            if mode == "ap":
                await self.hotspot.handle_connection(mac or None, uuid)
            elif mode == "infrastructure" and mac in saved:
                saved[mac][ssid] = uuid
        for mac, profiles in saved.items():
            interface = self._interfaces.get(mac)
            if interface is not None:
                interface.saved = profiles

    async def update_scan_results(self) -> None:
        """Replace each interface's available networks with the latest scan."""

        rows = await self._nmcli.scan_results(SCAN_FIELDS)
        if rows is None:
            return
        fresh: dict[str, dict[str, WifiNetwork]] = {mac: {} for mac in self._interfaces}
        for row in rows:
            if len(row) < 6:
                continue
            active_raw, ssid, signal, security, freq, device = row[:6]
            if not ssid:
                continue
            mac = self._devices.get_mac(device)
            networks = fresh.get(mac) if mac else None
            if networks is None:
                continue
            active = active_raw == "yes"
            # An active entry wins over stale inactive duplicates.
            if not active and ssid in networks:
                continue
            networks[ssid] = WifiNetwork(
                active=active,
                ssid=ssid,
                signal=_leading_int(signal),
                security=security,
                freq=_leading_int(freq),
            )
        for mac, networks in fresh.items():
            interface = self._interfaces.get(mac)
            if interface is not None:
                interface.available = networks
        self.broadcast_state()

    def schedule_scan_updates(self) -> None:
        """Poll scan results at fixed delays, replacing any pending schedule."""

        if self._scan_task is not None and not self._scan_task.done():
            self._scan_task.cancel()
        self._scan_task = self._spawn(self._run_scan_schedule())

    async def _run_scan_schedule(self) -> None:
        elapsed = 0.0
        for delay in self._scan_delays:
            await asyncio.sleep(max(0.0, delay - elapsed))
            elapsed = delay
            # A pending nmcli call is left to finish even if this schedule is replaced.
            await asyncio.shield(self.update_scan_results())

    async def rescan(self) -> None:
        await self._nmcli.rescan()
        # The request fails while a scan is running; results are read anyway.
        await self.update_scan_results()
        self.schedule_scan_updates()

    # -------------------------------- status -------------------------------
    def build_status_message(self) -> dict[str, object]:
        now = self._clock()
        return {
            str(interface.id): interface.to_status(now)
            for interface in sorted(self._interfaces.values(), key=lambda item: item.id)
        }

    def broadcast_state(self) -> None:
        self._broadcaster.broadcast("status", {"wifi": self.build_status_message()})

    # ------------------------------- commands ------------------------------
    async def connect(self, requester: Requester, uuid: str) -> None:
        device_id = self.find_device_by_connection(uuid)
        if device_id is None:
            return
        success = await self._nmcli.connect(uuid)
        await self.update_scan_results()
        requester.reply("wifi", {"connect": success, "device": device_id})

    async def disconnect(self, uuid: str) -> None:
        if self.find_device_by_connection(uuid) is None:
            return
        if await self._nmcli.disconnect(uuid):
            await self.update_scan_results()
            self.schedule_scan_updates()

    async def forget(self, uuid: str) -> None:
        if self.find_device_by_connection(uuid) is None:
            return
        if await self._nmcli.delete_connection(uuid):
            self._record("wifi", "forgotten", "Saved Wi-Fi network removed", conn=uuid)
            await self.update_saved_connections()
            await self.update_scan_results()
            self.schedule_scan_updates()

    async def delete_failed_connections(self) -> None:
        """Remove client profiles that never connected successfully."""

        rows = await self._nmcli.list_connections("uuid,type,timestamp")
        for row in rows or []:
            if len(row) >= 3 and row[1] == "802-11-wireless" and row[2] == "0":
                await self._nmcli.delete_connection(row[0])

    async def new(self, requester: Requester, payload: Mapping[str, object]) -> None:
        device = payload.get("device")
        ssid = payload.get("ssid")
        password = payload.get("password")
        if device is None or not isinstance(ssid, str) or not ssid:
            return
        interface = self.resolve_device(device)
        if interface is None:
            return
        result = await self._nmcli.wifi_connect_new(
            interface.ifname, ssid, password if isinstance(password, str) else None
        )
        if result.uuid is None:
            await self.delete_failed_connections()
            error = "auth" if result.auth_failed else "generic"
            requester.reply("wifi", {"new": {"error": error, "device": device}})
            return
        if not await self._nmcli.set_connection_mac(result.uuid, interface.mac):
            logger.warning("Unable to bind new connection %s to %s", result.uuid, interface.mac)
        await self.update_saved_connections()
        await self.update_scan_results()
        self._record("wifi", "connected", f"Connected {interface.ifname} to {ssid}")
        requester.reply("wifi", {"new": {"success": True, "device": device}})

    async def handle_message(self, requester: Requester, message: Mapping[str, object]) -> None:
        for key, value in message.items():
            if key == "connect" and isinstance(value, str):
                await self.connect(requester, value)
            elif key == "disconnect" and isinstance(value, str):
                await self.disconnect(value)
            elif key == "scan":
                await self.rescan()
            elif key == "new" and isinstance(value, Mapping):
                await self.new(requester, value)
            elif key == "forget" and isinstance(value, str):
                await self.forget(value)
            elif key == "hotspot" and isinstance(value, Mapping):
                await self._handle_hotspot(requester, value)
            else:
                logger.debug("Ignoring Wi-Fi command %r", key)

    async def _handle_hotspot(self, requester: Requester, message: Mapping[str, object]) -> None:
        start = message.get("start")
        stop = message.get("stop")
        config = message.get("config")
        if isinstance(start, Mapping):
            await self.hotspot.start(start.get("device"))
        elif isinstance(stop, Mapping):
            await self.hotspot.stop(stop.get("device"))
        elif isinstance(config, Mapping):
            await self.hotspot.config(requester, config)

    # ------------------------------- helpers -------------------------------
    def _record(self, category: str, event: str, message: str, **details: object) -> None:
        if self._event_log is not None:
            self._event_log.record(category, event, message, **details)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Wi-Fi background task failed", exc_info=exc)

    async def aclose(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "SCAN_UPDATE_DELAYS",
    "WifiInterface",
    "WifiManager",
    "WifiNetwork",
    "describe_hardware",
]
