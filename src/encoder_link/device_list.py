"""Cheap enumeration of the host's network interfaces.

The tracker is refreshed every second from ``psutil``. Only when a refresh
reports a change does the Wi-Fi layer ask NetworkManager for a full device
listing, which is considerably more expensive.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from typing import Iterable, Mapping

import psutil


logger = logging.getLogger(__name__)

IGNORED_PREFIXES = ("lo", "docker", "l4tbr")


@dataclass(frozen=True, slots=True)
class NetworkDevice:
    """An interface as seen by the operating system."""

    ifname: str
    mac: str
    inet: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"ifname": self.ifname, "mac": self.mac, "inet": self.inet}


class DeviceListUpdate:
    """A single mark-and-sweep pass over the device list.

    Obtained from :meth:`DeviceListTracker.start_update`. Records are added
    with :meth:`add`; :meth:`end` drops every previously known interface that
    was not added again and reports whether anything changed.
    """

    def __init__(self, tracker: "DeviceListTracker", previous: Mapping[str, NetworkDevice]) -> None:
        self._tracker = tracker
        self._previous = dict(previous)
        self._seen: dict[str, NetworkDevice] = {}
        self._modified = False
        self._finished = False
        self.removed: list[str] = []

    def add(self, ifname: str, mac: str, inet: str | None = None) -> None:
        if self._finished:
            raise RuntimeError("Device list update already finished")
        record = NetworkDevice(ifname, mac.lower(), inet)
        if self._previous.get(ifname) != record:
            self._modified = True
        self._seen[ifname] = record

    def end(self) -> bool:
        if self._finished:
            raise RuntimeError("Device list update already finished")
        self._finished = True
        self.removed = sorted(set(self._previous) - set(self._seen))
        if self.removed:
            self._modified = True
        self._tracker._commit(self._seen)
        return self._modified


class DeviceListTracker:
    """Holds the most recent complete interface listing keyed by name."""

    def __init__(self) -> None:
        self._devices: dict[str, NetworkDevice] = {}
        self._pending: DeviceListUpdate | None = None

    def start_update(self) -> DeviceListUpdate:
        if self._pending is not None:
            raise RuntimeError("A device list update is already in progress")
        self._pending = DeviceListUpdate(self, self._devices)
        return self._pending

    def _commit(self, devices: dict[str, NetworkDevice]) -> None:
        self._devices = devices
        self._pending = None

    def get_mac(self, ifname: str) -> str | None:
        device = self._devices.get(ifname)
        return device.mac if device else None

    def get_inet(self, ifname: str) -> str | None:
        device = self._devices.get(ifname)
        return device.inet if device else None

    def snapshot(self) -> list[NetworkDevice]:
        return [self._devices[name] for name in sorted(self._devices)]

    def refresh(self, interfaces: Iterable[tuple[str, str, str | None]]) -> bool:
        """Run a complete pass from ``(ifname, mac, inet)`` tuples."""

        update = self.start_update()
        for ifname, mac, inet in interfaces:
            update.add(ifname, mac, inet)
        changed = update.end()
        if update.removed:
            logger.info("Network interfaces removed: %s", ", ".join(update.removed))
        return changed


def enumerate_interfaces() -> list[tuple[str, str, str | None]]:
    """Return ``(ifname, mac, inet)`` for every relevant interface.

    The IPv4 address is reported only for interfaces that are up, matching
    NetworkManager's notion of a usable connection.
    """

    addresses = psutil.net_if_addrs()
    stats = psutil.net_if_stats()
    interfaces: list[tuple[str, str, str | None]] = []
    for ifname, entries in addresses.items():
        if ifname.startswith(IGNORED_PREFIXES):
            continue
        mac: str | None = None
        inet: str | None = None
        for entry in entries:
            if entry.family == psutil.AF_LINK and entry.address:
                mac = entry.address.lower()
            elif entry.family == socket.AF_INET and inet is None:
                inet = entry.address
        if not mac:
            continue
        link = stats.get(ifname)
        if link is None or not link.isup:
            inet = None
        interfaces.append((ifname, mac, inet))
    return interfaces


__all__ = [
    "DeviceListTracker",
    "DeviceListUpdate",
    "NetworkDevice",
    "enumerate_interfaces",
]
