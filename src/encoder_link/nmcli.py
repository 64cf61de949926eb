"""Thin asynchronous wrapper around NetworkManager's ``nmcli`` tool.

Every operation either returns a parsed result or an explicit failure value
(``None`` or ``False``). Command failures are logged and never raised, so the
reconciliation code can treat them as "state unchanged, retry later".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Sequence

from .commands import CommandError, run_command


logger = logging.getLogger(__name__)

_ACTIVATED_RE = re.compile(r"successfully activated with '(.+)'")
_ADDED_RE = re.compile(r"Connection '.+' \((.+)\) successfully added\.")


def parse_terse_line(line: str) -> list[str]:
    """Split a line of ``nmcli --terse`` output into its fields.

    nmcli escapes literal colons and backslashes inside values, so only
    unescaped colons separate fields.
    """

    fields: list[str] = []
    current: list[str] = []
    escaped = False
    for char in line:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ":":
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
    if escaped:
        current.append("\\")
    fields.append("".join(current))
    return fields


@dataclass(frozen=True, slots=True)
class NewConnectionResult:
    """Outcome of ``nmcli device wifi connect``."""

    uuid: str | None
    output: str

    @property
    def success(self) -> bool:
        return self.uuid is not None

    @property
    def auth_failed(self) -> bool:
        return "Secrets were required, but not provided" in self.output


class NetworkManagerCLI:
    """Issue NetworkManager commands through ``nmcli``."""

    def __init__(self, executable: str = "nmcli", *, timeout: float = 30.0) -> None:
        self._executable = executable
        self._timeout = timeout

    # ------------------------------- helpers -------------------------------
    async def _run(self, args: Sequence[str], *, timeout: float | None = None) -> str:
        result = await run_command(
            [self._executable, *args],
            timeout=timeout if timeout is not None else self._timeout,
        )
        return result.stdout

    async def _lines(self, args: Sequence[str]) -> list[str] | None:
        try:
            output = await self._run(args)
        except CommandError as exc:
            logger.warning("nmcli %s failed: %s", " ".join(args[-3:]), exc)
            return None
        return [line for line in output.splitlines() if line]

    # ----------------------------- connections -----------------------------
    async def list_connections(self, fields: str) -> list[list[str]] | None:
        lines = await self._lines(["--terse", "--fields", fields, "connection", "show"])
        if lines is None:
            return None
        return [parse_terse_line(line) for line in lines]

    async def get_connection_fields(self, uuid: str, fields: str) -> list[str] | None:
        """Return the raw values of ``fields`` for one connection, in order."""

        try:
            output = await self._run(
                [
                    "--terse",
                    "--escape",
                    "no",
                    "--show-secrets",
                    "--get-values",
                    fields,
                    "connection",
                    "show",
                    uuid,
                ]
            )
        except CommandError as exc:
            logger.warning("Unable to read fields of connection %s: %s", uuid, exc)
            return None
        return output.split("\n")

    async def set_connection_fields(self, uuid: str, fields: Mapping[str, str]) -> bool:
        args = ["con", "modify", uuid]
        for key, value in fields.items():
            args.extend([key, value])
        try:
            output = await self._run(args)
        except CommandError as exc:
            logger.warning("Unable to modify connection %s: %s", uuid, exc)
            return False
        return output == ""

    async def set_connection_mac(self, uuid: str, mac: str) -> bool:
        """Bind a connection to an adapter by MAC address instead of name."""

        return await self.set_connection_fields(
            uuid,
            {"connection.interface-name": "", "802-11-wireless.mac-address": mac},
        )

    async def delete_connection(self, uuid: str) -> bool:
        try:
            output = await self._run(["conn", "del", uuid])
        except CommandError as exc:
            logger.warning("Unable to delete connection %s: %s", uuid, exc)
            return False
        return "successfully deleted" in output

    async def add_connection(self, fields: Mapping[str, str]) -> str | None:
        args = ["connection", "add"]
        for key, value in fields.items():
            args.extend([key, value])
        try:
            output = await self._run(args)
        except CommandError as exc:
            logger.warning("Unable to add connection: %s", exc)
            return None
        match = _ADDED_RE.search(output)
        return match.group(1) if match else None

    async def connect(self, uuid: str, *, wait: int | None = None) -> bool:
        args: list[str] = []
        if wait is not None:
            args.extend(["-w", str(wait)])
        args.extend(["conn", "up", uuid])
        try:
            output = await self._run(args, timeout=None if wait is None else wait + 5)
        except CommandError as exc:
            logger.warning("Unable to activate connection %s: %s", uuid, exc)
            return False
        return output.startswith("Connection successfully activated")

    async def disconnect(self, uuid: str) -> bool:
        try:
            output = await self._run(["conn", "down", uuid])
        except CommandError as exc:
            logger.warning("Unable to deactivate connection %s: %s", uuid, exc)
            return False
        return "successfully deactivated" in output

    # ------------------------------- devices -------------------------------
    async def list_devices(self, fields: str) -> list[list[str]] | None:
        lines = await self._lines(["--terse", "--fields", fields, "device", "status"])
        if lines is None:
            return None
        return [parse_terse_line(line) for line in lines]

    async def device_properties(self, ifname: str, fields: str) -> list[str] | None:
        try:
            output = await self._run(
                ["--terse", "--escape", "no", "--get-values", fields, "device", "show", ifname]
            )
        except CommandError as exc:
            logger.warning("Unable to read properties of %s: %s", ifname, exc)
            return None
        return output.split("\n")

    # -------------------------------- wi-fi --------------------------------
    async def rescan(self, ifname: str | None = None) -> bool:
        args = ["device", "wifi", "rescan"]
        if ifname:
            args.extend(["ifname", ifname])
        try:
            await self._run(args)
        except CommandError as exc:
            # Rescans are refused while a previous one is still running.
            logger.debug("Wi-Fi rescan request failed: %s", exc)
            return False
        return True

    async def scan_results(self, fields: str) -> list[list[str]] | None:
        lines = await self._lines(
            ["--terse", "--fields", fields, "device", "wifi", "list", "--rescan", "no"]
        )
        if lines is None:
            return None
        return [parse_terse_line(line) for line in lines]

    async def wifi_connect_new(
        self, ifname: str, ssid: str, password: str | None, *, wait: int = 15
    ) -> NewConnectionResult:
        args = ["-w", str(wait), "device", "wifi", "connect", ssid, "ifname", ifname]
        if password:
            args.extend(["password", password])
        try:
            output = await self._run(args, timeout=wait + 5)
        except CommandError as exc:
            logger.info("Connecting %s to %r failed: %s", ifname, ssid, exc)
            return NewConnectionResult(None, exc.stdout + exc.stderr)
        match = _ACTIVATED_RE.search(output)
        return NewConnectionResult(match.group(1) if match else None, output)

    async def create_hotspot(
        self, ifname: str, ssid: str, password: str, *, wait: int = 10
    ) -> str | None:
        """Create and activate a hotspot profile, returning its UUID."""

        try:
            output = await self._run(
                [
                    "-w",
                    str(wait),
                    "device",
                    "wifi",
                    "hotspot",
                    "ssid",
                    ssid,
                    "password",
                    password,
                    "ifname",
                    ifname,
                ],
                timeout=wait + 5,
            )
        except CommandError as exc:
            logger.warning("Unable to create hotspot on %s: %s", ifname, exc)
            return None
        match = _ACTIVATED_RE.search(output)
        return match.group(1) if match else None


__all__ = ["NetworkManagerCLI", "NewConnectionResult", "parse_terse_line"]
