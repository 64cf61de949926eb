"""Default-route repair when the current uplink stops reaching the internet."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

import httpx

from .commands import CommandError, run_command
from .device_list import DeviceListTracker
from .dns_cache import DNSCache, DNSLookupError


logger = logging.getLogger(__name__)

UPDATE_INTERVAL = 2.0
CHECK_DOMAIN = "www.gstatic.com"
CHECK_PATH = "/generate_204"
CHECK_TIMEOUT = 4.0

ConnectivityCheck = Callable[[str, "str | None"], Awaitable[bool]]


async def check_connectivity(address: str, local_address: str | None = None) -> bool:
    """Return True when ``address`` answers the 204 check, optionally from ``local_address``."""

    transport = httpx.AsyncHTTPTransport(local_address=local_address)
    host = f"[{address}]" if ":" in address else address
    try:
        async with httpx.AsyncClient(transport=transport, timeout=CHECK_TIMEOUT) as client:
            response = await client.get(
                f"http://{host}{CHECK_PATH}", headers={"Host": CHECK_DOMAIN}
            )
    except httpx.HTTPError as exc:
        logger.debug("Connectivity check via %s failed: %s", local_address or "default route", exc)
        return False
    return response.status_code == 204 and response.content == b""


class GatewayUpdater:
    """Coalescing, rate-limited connectivity check and default-route switch.

    :meth:`queue` may be called any number of times; at most one check runs
    at a time and checks start at least ``interval`` seconds apart. A failed
    check stays queued and is retried on the next call.
    """

    def __init__(
        self,
        dns: DNSCache,
        devices: DeviceListTracker,
        *,
        checker: ConnectivityCheck = check_connectivity,
        interval: float = UPDATE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._dns = dns
        self._devices = devices
        self._checker = checker
        self._interval = interval
        self._clock = clock
        self._queued = True
        self._running = False
        self._last_run: float | None = None
        self._task: asyncio.Task[None] | None = None

    def queue(self) -> None:
        self._queued = True
        if self._running or (self._task is not None and not self._task.done()):
            return
        self._task = asyncio.get_running_loop().create_task(self.run_if_due())

    async def aclose(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_if_due(self) -> bool:
        if not self._queued or self._running:
            return False
        now = self._clock()
        if self._last_run is not None and now < self._last_run + self._interval:
            return False
        self._last_run = now
        self._running = True
        self._queued = False
        try:
            ok = await self._update()
        except Exception:
            logger.exception("Gateway update failed")
            ok = False
        finally:
            self._running = False
        if not ok:
            self._queued = True
        return ok

    async def _update(self) -> bool:
        try:
            resolution = await self._dns.resolve(CHECK_DOMAIN)
        except DNSLookupError as exc:
            logger.warning("Failed to resolve %s: %s", CHECK_DOMAIN, exc)
            return False

        for address in resolution.addresses:
            if await self._checker(address, None):
                if not resolution.from_cache:
                    self._dns.validate(CHECK_DOMAIN)
                logger.debug("Internet reachable via the default route")
                return True

        logger.warning("No internet connectivity via the default route, probing all interfaces")
        for address in resolution.addresses:
            for device in self._devices.snapshot():
                if not device.inet:
                    continue
                if await self._checker(address, device.inet):
                    logger.info("Internet reachable via %s (%s)", device.ifname, device.inet)
                    if not resolution.from_cache:
                        self._dns.validate(CHECK_DOMAIN)
                    return await self._set_default_route(device.ifname)
        return False

    async def _set_default_route(self, ifname: str) -> bool:
        try:
            result = await run_command(["ip", "route", "show", "table", ifname, "default"])
            route = result.stdout.split()
            if not route:
                logger.warning("No default route in table %s", ifname)
                return False
            while True:
                deleted = await run_command(["ip", "route", "del", "default"], check=False)
                if deleted.returncode != 0:
                    break
            await run_command(["ip", "route", "add", *route])
        except CommandError as exc:
            logger.error("Error updating the default route: %s", exc)
            return False
        logger.info("Set default route via %s: %s", ifname, " ".join(route))
        return True


__all__ = ["GatewayUpdater", "check_connectivity"]
