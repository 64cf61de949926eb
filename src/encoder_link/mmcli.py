"""Asynchronous wrapper around ModemManager's ``mmcli`` tool."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

from .commands import CommandError, run_command


logger = logging.getLogger(__name__)

ModemInfo = dict[str, "str | list[str]"]

SCAN_TIMEOUT = 240

_ESCAPED_CHAR = re.compile(r"\\\d+")
_LIST_LENGTH = re.compile(r"\.length$")
_LIST_VALUE = re.compile(r"\.value\[\d+\]$")
_MODEM_PATH = re.compile(r"/org/freedesktop/ModemManager1/Modem/(\d+)")
_NETWORK_TYPE = re.compile(r"^allowed: (.+); preferred: (.+)$")
_TYPE_SEPARATOR = re.compile(r",? ")

ACCESS_TECH_GENERATIONS = {
    "gsm": "2G",
    "umts": "3G",
    "hsdpa": "3G+",
    "hsupa": "3G+",
    "lte": "4G",
    "5gnr": "5G",
}


def parse_key_values(output: str) -> ModemInfo:
    """Parse ``mmcli -K`` output into a flat mapping.

    ``--`` marks an empty value and is skipped. Array values are announced
    by a ``.length`` key and followed by ``.value[N]`` entries; both collapse
    into a list stored under the base key.
    """

    parsed: ModemInfo = {}
    for raw_line in output.split("\n"):
        line = _ESCAPED_CHAR.sub("", raw_line)
        if not line:
            continue
        if ":" not in line:
            logger.warning("Unable to parse mmcli line %r", line)
            continue
        raw_key, raw_value = line.split(":", 1)
        key = raw_key.strip()
        value = raw_value.strip()
        if value == "--":
            continue
        if _LIST_LENGTH.search(key):
            parsed[_LIST_LENGTH.sub("", key)] = []
        elif _LIST_VALUE.search(key):
            target = parsed.setdefault(_LIST_VALUE.sub("", key), [])
            if isinstance(target, list):
                target.append(value)
            else:
                logger.warning("mmcli key %s mixes list and scalar values", key)
        else:
            parsed[key] = value
    return parsed


@dataclass(frozen=True, slots=True)
class NetworkType:
    """An allowed/preferred radio mode combination."""

    label: str
    allowed: str
    preferred: str

    def to_dict(self) -> dict[str, str]:
        return {"allowed": self.allowed, "preferred": self.preferred}


def convert_network_type(mode: str) -> NetworkType:
    match = _NETWORK_TYPE.match(mode)
    if match is None:
        raise ValueError(f"Invalid network type {mode!r}")
    parts = _TYPE_SEPARATOR.split(match.group(1))
    label = "".join(sorted(parts, reverse=True))
    allowed = _TYPE_SEPARATOR.sub("|", match.group(1))
    return NetworkType(label, allowed, match.group(2))


def convert_network_types(modes: Sequence[str]) -> dict[str, NetworkType]:
    """Reduce the supported modes to one entry per allowed combination."""

    types: dict[str, NetworkType] = {}
    for mode in modes:
        try:
            candidate = convert_network_type(mode)
        except ValueError as exc:
            logger.warning("%s", exc)
            continue
        current = types.get(candidate.label)
        if (
            current is None
            or current.preferred == "none"
            or current.preferred < candidate.preferred
        ):
            types[candidate.label] = candidate
    return types


def convert_access_tech(techs: Sequence[str] | None) -> str:
    """Return the highest generation among the reported technologies."""

    if not techs:
        return ""
    generation = ""
    for tech in techs:
        label = ACCESS_TECH_GENERATIONS.get(tech)
        if label is None:
            logger.warning("Unknown access technology %s", tech)
            continue
        if label > generation:
            generation = label
    return generation or techs[0]


def parse_scan_entry(entry: str) -> dict[str, str]:
    """Split ``operator-code: 310260, operator-name: X, ...`` into a mapping."""

    result: dict[str, str] = {}
    for item in re.split(r", *", entry):
        key, _, value = item.partition(":")
        if key.strip():
            result[key.strip()] = value.strip()
    return result


class ModemManagerCLI:
    """Issue ModemManager commands through ``mmcli``."""

    def __init__(self, executable: str = "mmcli", *, timeout: float = 30.0) -> None:
        self._executable = executable
        self._timeout = timeout

    async def _run(self, args: Sequence[str], *, timeout: float | None = None) -> str:
        result = await run_command(
            [self._executable, *args],
            timeout=timeout if timeout is not None else self._timeout,
        )
        return result.stdout

    async def list_modems(self) -> list[int] | None:
        try:
            output = await self._run(["-K", "-L"])
        except CommandError as exc:
            logger.warning("Unable to list modems: %s", exc)
            return None
        entries = parse_key_values(output).get("modem-list", [])
        modems: list[int] = []
        for entry in entries if isinstance(entries, list) else [entries]:
            match = _MODEM_PATH.search(entry)
            if match:
                modems.append(int(match.group(1)))
        return modems

    async def get_modem(self, modem_id: int) -> ModemInfo | None:
        try:
            return parse_key_values(await self._run(["-K", "-m", str(modem_id)]))
        except CommandError as exc:
            logger.warning("Unable to query modem %s: %s", modem_id, exc)
            return None

    async def get_sim(self, sim_id: int) -> ModemInfo | None:
        try:
            return parse_key_values(await self._run(["-K", "-i", str(sim_id)]))
        except CommandError as exc:
            logger.warning("Unable to query SIM %s: %s", sim_id, exc)
            return None

    async def set_network_types(self, modem_id: int, allowed: str, preferred: str) -> bool:
        args = ["-m", str(modem_id), f"--set-allowed-modes={allowed}"]
        if preferred != "none":
            args.append(f"--set-preferred-mode={preferred}")
        try:
            output = await self._run(args)
        except CommandError as exc:
            logger.warning("Unable to set network types of modem %s: %s", modem_id, exc)
            return False
        return "successfully set current modes in the modem" in output

    async def network_scan(self, modem_id: int, timeout: int = SCAN_TIMEOUT) -> list[dict[str, str]] | None:
        """Run a 3GPP operator scan; this keeps the radio busy for minutes."""

        try:
            output = await self._run(
                [f"--timeout={timeout}", "-K", "-m", str(modem_id), "--3gpp-scan"],
                timeout=timeout + 10,
            )
        except CommandError as exc:
            logger.warning("Network scan on modem %s failed: %s", modem_id, exc)
            return None
        entries = parse_key_values(output).get("modem.3gpp.scan-networks", [])
        if not isinstance(entries, list):
            entries = [entries]
        return [parse_scan_entry(entry) for entry in entries]


__all__ = [
    "ModemInfo",
    "ModemManagerCLI",
    "NetworkType",
    "convert_access_tech",
    "convert_network_type",
    "convert_network_types",
    "parse_key_values",
    "parse_scan_entry",
]
