"""Name resolution with a persistent fallback cache.

Captive portals and half-working uplinks often answer DNS queries with
bogus addresses. Before trusting the resolver a well-known record with a
fixed answer is looked up; when that check fails the last answer that led
to a working connection is used instead.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import random
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Sequence


logger = logging.getLogger(__name__)

DNS_TIMEOUT = 2.0
DNS_MIN_AGE = 60.0
WELLKNOWN_NAME = "wellknown.belabox.net"
WELLKNOWN_ADDRESS = "127.1.33.7"

Lookup = Callable[[str, int], Awaitable[list[str]]]


class DNSLookupError(RuntimeError):
    """Raised when a name has neither a fresh nor a cached answer."""


@dataclass(frozen=True, slots=True)
class Resolution:
    addresses: tuple[str, ...]
    from_cache: bool

    def pick(self) -> str:
        """Return one address at random to spread load across them."""

        if not self.addresses:
            raise DNSLookupError("Resolution has no addresses")
        return random.choice(self.addresses)


async def system_lookup(name: str, family: int) -> list[str]:
    """Resolve ``name`` for one address family through the system resolver."""

    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(name, None, family=family, type=socket.SOCK_STREAM)
    addresses: list[str] = []
    for info in infos:
        address = str(info[4][0])
        if address not in addresses:
            addresses.append(address)
    return addresses


def _is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


class DNSCache:
    """Resolve names, remembering validated answers on disk."""

    def __init__(
        self,
        path: Path | str,
        *,
        lookup: Lookup = system_lookup,
        timeout: float = DNS_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path)
        self._lookup = lookup
        self._timeout = timeout
        self._clock = clock
        self._cache: dict[str, dict[str, object]] = {}
        self._fresh: dict[str, list[str]] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unable to load DNS cache, starting empty: %s", exc)
            return
        if not isinstance(payload, dict):
            return
        for name, entry in payload.items():
            if (
                isinstance(entry, dict)
                and isinstance(entry.get("results"), list)
                and isinstance(entry.get("ts"), (int, float))
            ):
                self._cache[name] = {"ts": float(entry["ts"]), "results": list(entry["results"])}

    def _save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(self._cache), encoding="utf-8")
        except OSError as exc:
            logger.warning("Unable to persist DNS cache: %s", exc)

    def cached(self, name: str) -> list[str]:
        entry = self._cache.get(name)
        return list(entry["results"]) if entry else []  # type: ignore[arg-type]

    async def _query(self, name: str, families: Sequence[int]) -> list[str]:
        for family in families:
            try:
                addresses = await asyncio.wait_for(self._lookup(name, family), self._timeout)
            except (OSError, asyncio.TimeoutError) as exc:
                logger.debug("Lookup of %s (family %s) failed: %s", name, family, exc)
                continue
            if addresses:
                return addresses
        return []

    async def _resolver_healthy(self) -> bool:
        answer = await self._query(WELLKNOWN_NAME, (socket.AF_INET,))
        if answer == [WELLKNOWN_ADDRESS]:
            return True
        logger.error(
            "DNS validation failure: got %s instead of %s", answer or "no answer", WELLKNOWN_ADDRESS
        )
        return False

    async def resolve(self, name: str) -> Resolution:
        if _is_ipv4(name):
            return Resolution((name,), False)
        if await self._resolver_healthy():
            addresses = await self._query(name, (socket.AF_INET, socket.AF_INET6))
            if addresses:
                self._fresh[name] = addresses
                return Resolution(tuple(addresses), False)
            logger.error("DNS lookup of %s failed", name)
        else:
            self._fresh.pop(name, None)
        cached = self.cached(name)
        if cached:
            return Resolution(tuple(cached), True)
        raise DNSLookupError(f"DNS query for {name} failed and no cached value is available")

    def validate(self, name: str) -> None:
        """Persist the last fresh answer for ``name`` after it proved usable."""

        fresh = self._fresh.get(name)
        if not fresh:
            logger.warning("Cannot validate DNS results for %s: not found", name)
            return
        entry = self._cache.get(name)
        if entry is not None and set(entry["results"]) == set(fresh):  # type: ignore[arg-type]
            return
        now = self._clock()
        # CDN-backed names change often; limit how often the file is rewritten.
        write = entry is None or now - float(entry["ts"]) >= DNS_MIN_AGE  # type: ignore[arg-type]
        if entry is None:
            entry = {"ts": now, "results": []}
            self._cache[name] = entry
        entry["results"] = list(fresh)
        if write:
            entry["ts"] = now
            self._save()


__all__ = ["DNSCache", "DNSLookupError", "Resolution", "system_lookup"]
