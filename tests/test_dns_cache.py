import asyncio
import json
import socket
from pathlib import Path

import pytest

from encoder_link.dns_cache import (
    WELLKNOWN_ADDRESS,
    WELLKNOWN_NAME,
    DNSCache,
    DNSLookupError,
    Resolution,
)

HOST = "remote.example.net"


class FakeResolver:
    def __init__(self) -> None:
        self.answers: dict[tuple[str, int], list[str]] = {
            (WELLKNOWN_NAME, socket.AF_INET): [WELLKNOWN_ADDRESS],
            (HOST, socket.AF_INET): ["203.0.113.10", "203.0.113.11"],
        }
        self.queries: list[tuple[str, int]] = []

    async def __call__(self, name: str, family: int) -> list[str]:
        self.queries.append((name, family))
        answer = self.answers.get((name, family))
        if answer is None:
            raise socket.gaierror("no such name")
        return list(answer)


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_fresh_answer_is_persisted_after_validation(tmp_path: Path) -> None:
    resolver = FakeResolver()
    path = tmp_path / "dns_cache.json"
    cache = DNSCache(path, lookup=resolver, clock=Clock())

    resolution = asyncio.run(cache.resolve(HOST))
    assert resolution == Resolution(("203.0.113.10", "203.0.113.11"), False)
    assert not path.exists()

    cache.validate(HOST)
    stored = json.loads(path.read_text())
    assert stored[HOST]["results"] == ["203.0.113.10", "203.0.113.11"]
    assert DNSCache(path, lookup=resolver).cached(HOST) == ["203.0.113.10", "203.0.113.11"]


def test_broken_resolver_falls_back_to_cache(tmp_path: Path) -> None:
    path = tmp_path / "dns_cache.json"
    path.write_text(json.dumps({HOST: {"ts": 1.0, "results": ["198.51.100.7"]}}))
    resolver = FakeResolver()
    # A captive portal answers everything with its own address.
    resolver.answers[(WELLKNOWN_NAME, socket.AF_INET)] = ["10.0.0.1"]
    cache = DNSCache(path, lookup=resolver)

    resolution = asyncio.run(cache.resolve(HOST))
    assert resolution.from_cache is True
    assert resolution.pick() == "198.51.100.7"
    assert (HOST, socket.AF_INET) not in resolver.queries


def test_failed_lookup_without_cache_raises(tmp_path: Path) -> None:
    resolver = FakeResolver()
    del resolver.answers[(HOST, socket.AF_INET)]
    cache = DNSCache(tmp_path / "dns_cache.json", lookup=resolver)
    with pytest.raises(DNSLookupError):
        asyncio.run(cache.resolve(HOST))


def test_ipv6_answer_is_used_when_ipv4_is_missing(tmp_path: Path) -> None:
    resolver = FakeResolver()
    del resolver.answers[(HOST, socket.AF_INET)]
    resolver.answers[(HOST, socket.AF_INET6)] = ["2001:db8::1"]
    cache = DNSCache(tmp_path / "dns_cache.json", lookup=resolver)
    assert asyncio.run(cache.resolve(HOST)).addresses == ("2001:db8::1",)


def test_slow_resolver_times_out(tmp_path: Path) -> None:
    async def slow_lookup(name: str, family: int) -> list[str]:
        await asyncio.sleep(1)
        return [WELLKNOWN_ADDRESS]

    cache = DNSCache(tmp_path / "dns_cache.json", lookup=slow_lookup, timeout=0.01)
    with pytest.raises(DNSLookupError):
        asyncio.run(cache.resolve(HOST))


def test_ipv4_literal_is_returned_unchanged(tmp_path: Path) -> None:
    resolver = FakeResolver()
    cache = DNSCache(tmp_path / "dns_cache.json", lookup=resolver)
    assert asyncio.run(cache.resolve("192.0.2.5")) == Resolution(("192.0.2.5",), False)
    assert resolver.queries == []


def test_changed_answers_rewrite_file_at_most_once_a_minute(tmp_path: Path) -> None:
    resolver = FakeResolver()
    clock = Clock()
    path = tmp_path / "dns_cache.json"
    cache = DNSCache(path, lookup=resolver, clock=clock)
    asyncio.run(cache.resolve(HOST))
    cache.validate(HOST)

    resolver.answers[(HOST, socket.AF_INET)] = ["203.0.113.99"]
    clock.now += 10
    asyncio.run(cache.resolve(HOST))
    cache.validate(HOST)
    assert cache.cached(HOST) == ["203.0.113.99"]
    assert json.loads(path.read_text())[HOST]["results"] == ["203.0.113.10", "203.0.113.11"]

    clock.now += 60
    resolver.answers[(HOST, socket.AF_INET)] = ["203.0.113.98"]
    asyncio.run(cache.resolve(HOST))
    cache.validate(HOST)
    stored = json.loads(path.read_text())[HOST]
    assert stored == {"ts": clock.now, "results": ["203.0.113.98"]}


def test_empty_resolution_cannot_pick() -> None:
    with pytest.raises(DNSLookupError):
        Resolution((), True).pick()
