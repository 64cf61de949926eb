"""Wi-Fi hotspot lifecycle on top of NetworkManager profiles.

Activating or reconfiguring a hotspot takes NetworkManager several seconds
to report. During that time the interface is held in hotspot mode through a
forced-status window so the UI does not flicker back to client mode. A failed
operation cancels the window straight away.
"""

from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping

from .broadcast import Requester
from .event_log import EventLog
from .nmcli import NetworkManagerCLI

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .wifi import WifiInterface, WifiManager


logger = logging.getLogger(__name__)

ACTIVATION_WAIT = 10
FORCE_WINDOW = float(ACTIVATION_WAIT + 2)

NAME_LENGTH = (1, 32)
PASSWORD_LENGTH = (8, 64)

HOTSPOT_SETTINGS_FIELDS = (
    "connection.autoconnect-priority",
    "802-11-wireless.ssid",
    "802-11-wireless-security.psk",
    "802-11-wireless.band",
    "802-11-wireless.channel",
)

# Values every managed hotspot profile is expected to carry.
HOTSPOT_BASELINE = (
    ("802-11-wireless.hidden", "no"),
    ("802-11-wireless-security.key-mgmt", "wpa-psk"),
    ("802-11-wireless-security.pairwise", "ccmp"),
    ("802-11-wireless-security.group", "ccmp"),
    ("802-11-wireless-security.proto", "rsn"),
    ("802-11-wireless-security.pmf", "1"),
)


@dataclass(frozen=True, slots=True)
class HotspotChannel:
    """A selectable hotspot channel and its NetworkManager band/channel."""

    name: str
    band: str
    channel: str


HOTSPOT_CHANNELS: dict[str, HotspotChannel] = {
    "auto": HotspotChannel("Auto (any band)", "", ""),
    "auto_24": HotspotChannel("Auto (2.4 GHz)", "bg", ""),
    "auto_50": HotspotChannel("Auto (5.0 GHz)", "a", ""),
}


def channel_from_settings(band: str, channel: str) -> str:
    """Map a profile's band/channel back to a known channel key."""

    for key, candidate in HOTSPOT_CHANNELS.items():
        if candidate.band == band and candidate.channel == channel:
            return key
    return "auto"


def hotspot_name(prefix: str, mac: str) -> str:
    octets = mac.split(":")
    return f"{prefix}_{octets[4]}{octets[5]}"


def generate_password() -> str:
    return base64.b64encode(secrets.token_bytes(9)).decode("ascii")


@dataclass(slots=True)
class Hotspot:
    """Hotspot sub-state of an access-point capable interface."""

    available_channels: list[str]
    conn: str | None = None
    name: str | None = None
    password: str | None = None
    channel: str | None = None
    warnings: set[str] = field(default_factory=set)
    forced_until: float | None = None

    def force(self, seconds: float, now: float) -> None:
        """Extend the forced window; ``seconds <= 0`` cancels it."""

        if seconds <= 0:
            self.forced_until = None
            return
        until = now + seconds
        if self.forced_until is None or until > self.forced_until:
            self.forced_until = until

    def is_forced(self, now: float) -> bool:
        return self.forced_until is not None and now < self.forced_until

    def is_complete(self) -> bool:
        return None not in (self.conn, self.name, self.password, self.channel)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "name": self.name,
            "password": self.password,
            "available_channels": {
                key: {"name": HOTSPOT_CHANNELS[key].name}
                for key in self.available_channels
                if key in HOTSPOT_CHANNELS
            },
            "channel": self.channel,
        }
        if self.warnings:
            payload["warnings"] = sorted(self.warnings)
        return payload


def channel_settings(name: str, password: str, channel: str) -> dict[str, str]:
    selected = HOTSPOT_CHANNELS[channel]
    # Empty values clear a previous band or channel selection.
    return {
        "802-11-wireless.ssid": name,
        "802-11-wireless-security.psk": password,
        "802-11-wireless.band": selected.band,
        "802-11-wireless.channel": selected.channel,
    }


class HotspotController:
    """Start, stop and reconfigure hotspots for a :class:`WifiManager`."""

    def __init__(
        self,
        manager: "WifiManager",
        nmcli: NetworkManagerCLI,
        *,
        name_prefix: str = "BELABOX",
        event_log: EventLog | None = None,
        force_window: float = FORCE_WINDOW,
    ) -> None:
        self._manager = manager
        self._nmcli = nmcli
        self._prefix = name_prefix
        self._event_log = event_log
        self._force_window = force_window

    def _record(self, event: str, message: str, **details: object) -> None:
        if self._event_log is not None:
            self._event_log.record("hotspot", event, message, **details)

    def force(self, interface: "WifiInterface", seconds: float) -> None:
        if interface.hotspot is None:
            return
        interface.hotspot.force(seconds, self._manager.now())

    # -------------------------- saved connections --------------------------
    async def _find_owner(self, uuid: str) -> str | None:
        """Bind an unassigned hotspot profile to the adapter it names."""

        values = await self._nmcli.get_connection_fields(uuid, "connection.interface-name")
        profile_ifname = values[0] if values else None
        for interface in self._manager.interfaces():
            hotspot = interface.hotspot
            if hotspot is None:
                continue
            if hotspot.conn != uuid and interface.ifname != profile_ifname:
                continue
            if hotspot.conn is None:
                if await self._nmcli.set_connection_mac(uuid, interface.mac):
                    hotspot.conn = uuid
                    return interface.mac
            else:
                # The adapter already owns a hotspot profile.
                await self._nmcli.set_connection_fields(uuid, {"connection.autoconnect": "no"})
            break
        return None

    async def handle_connection(self, mac: str | None, uuid: str) -> None:
        """Adopt a saved access-point profile found during reconciliation."""

        owner = mac or await self._find_owner(uuid)
        if not owner:
            return
        interface = self._manager.get(owner)
        if interface is None:
            logger.warning("Cannot adopt hotspot profile %s: interface not found", uuid)
            return
        hotspot = interface.hotspot
        if hotspot is None:
            logger.warning("Cannot adopt hotspot profile %s: %s has no AP support", uuid, interface.ifname)
            return
        if hotspot.conn and hotspot.conn != uuid:
            logger.warning("Cannot adopt hotspot profile %s: %s already has one", uuid, interface.ifname)
            return

        names = list(HOTSPOT_SETTINGS_FIELDS) + [name for name, _ in HOTSPOT_BASELINE]
        values = await self._nmcli.get_connection_fields(uuid, ",".join(names))
        if values is None:
            return
        values = values + [""] * (len(names) - len(values))

        if values[0] != "999":
            await self._nmcli.set_connection_fields(
                uuid, {"connection.autoconnect-priority": "999"}
            )
        hotspot.conn = uuid
        hotspot.name = values[1]
        hotspot.password = values[2]
        hotspot.channel = channel_from_settings(values[3], values[4])
        observed = values[len(HOTSPOT_SETTINGS_FIELDS):]
        if any(value != expected for value, (_, expected) in zip(observed, HOTSPOT_BASELINE)):
            hotspot.warnings.add("modified")

    # ------------------------------ operations -----------------------------
    async def start(self, device: object) -> None:
        interface = self._manager.resolve_device(device)
        if interface is None or interface.hotspot is None:
            return
        hotspot = interface.hotspot
        if hotspot.conn:
            if hotspot.conn == interface.conn:
                return
            self.force(interface, self._force_window)
            self._manager.broadcast_state()
            if await self._nmcli.connect(hotspot.conn, wait=ACTIVATION_WAIT):
                await self._nmcli.set_connection_fields(
                    hotspot.conn,
                    {
                        "connection.autoconnect": "yes",
                        "connection.autoconnect-priority": "999",
                    },
                )
                self._record("started", f"Hotspot started on {interface.ifname}", conn=hotspot.conn)
            else:
                self._fail_start(interface)
            return

        name = hotspot_name(self._prefix, interface.mac)
        password = generate_password()
        hotspot.name = name
        hotspot.password = password
        hotspot.channel = "auto"
        self.force(interface, self._force_window)
        self._manager.broadcast_state()

        uuid = await self._nmcli.create_hotspot(
            interface.ifname, name, password, wait=ACTIVATION_WAIT
        )
        if uuid is None:
            self._fail_start(interface)
            return
        await self._nmcli.set_connection_fields(
            uuid,
            {
                "connection.interface-name": "",
                "connection.autoconnect": "yes",
                "connection.autoconnect-priority": "999",
                "802-11-wireless.mac-address": interface.mac,
                "802-11-wireless-security.pmf": "disable",
            },
        )
        await self._manager.update_saved_connections()
        # Reactivate so the adjusted security settings take effect.
        self.force(interface, self._force_window)
        await self._nmcli.connect(uuid, wait=ACTIVATION_WAIT)
        self._record("created", f"Hotspot {name} created on {interface.ifname}", conn=uuid)

    def _fail_start(self, interface: "WifiInterface") -> None:
        self.force(interface, -1)
        self._record("failed", f"Hotspot failed to start on {interface.ifname}")
        self._manager.request_device_update()

    async def stop(self, device: object) -> None:
        interface = self._manager.resolve_device(device)
        if interface is None or interface.hotspot is None:
            return
        if not interface.is_hotspot(self._manager.now()):
            return
        conn = interface.hotspot.conn
        if not conn:
            return
        await self._nmcli.set_connection_fields(conn, {"connection.autoconnect": "no"})
        self.force(interface, -1)
        if await self._nmcli.disconnect(conn):
            interface.conn = None
            interface.available = {}
            self._manager.broadcast_state()
            self._record("stopped", f"Hotspot stopped on {interface.ifname}")
            await self._manager.rescan()

    async def config(self, requester: Requester, payload: Mapping[str, object]) -> None:
        device = payload.get("device")
        interface = self._manager.resolve_device(device)
        if interface is None or interface.hotspot is None:
            return
        if not interface.is_hotspot(self._manager.now()):
            return
        hotspot = interface.hotspot

        def reply(**result: object) -> None:
            requester.reply("wifi", {"hotspot": {"config": {"device": device, **result}}})

        name = payload.get("name")
        password = payload.get("password")
        channel = payload.get("channel")
        if not isinstance(name, str) or not NAME_LENGTH[0] <= len(name) <= NAME_LENGTH[1]:
            reply(error="name")
            return
        if not isinstance(password, str) or not PASSWORD_LENGTH[0] <= len(password) <= PASSWORD_LENGTH[1]:
            reply(error="password")
            return
        if not isinstance(channel, str) or channel not in HOTSPOT_CHANNELS:
            reply(error="channel")
            return

        if hotspot.conn and not await self._nmcli.set_connection_fields(
            hotspot.conn, channel_settings(name, password, channel)
        ):
            reply(error="saving")
            return

        self.force(interface, self._force_window)
        if hotspot.is_complete() and not await self._nmcli.connect(
            hotspot.conn, wait=ACTIVATION_WAIT
        ):
            reply(error="activating")
            self._record("config_reverted", f"Hotspot settings on {interface.ifname} reverted")
            # Restore the previous, working settings.
            self.force(interface, self._force_window)
            await self._nmcli.set_connection_fields(
                hotspot.conn,
                channel_settings(hotspot.name, hotspot.password, hotspot.channel),
            )
            await self._nmcli.connect(hotspot.conn, wait=ACTIVATION_WAIT)
            return

        await self._manager.update_saved_connections()
        self._record("configured", f"Hotspot on {interface.ifname} reconfigured", name=name)
        reply(success=True)


__all__ = [
    "FORCE_WINDOW",
    "HOTSPOT_CHANNELS",
    "Hotspot",
    "HotspotChannel",
    "HotspotController",
    "channel_from_settings",
    "generate_password",
    "hotspot_name",
]
