"""Persistent control channel to the cloud relay service.

The client keeps one websocket open to the relay endpoint, authenticates
with the configured key and forwards every non-relay frame to the local
message handler as if it came from a UI session. Any close, error or
liveness timeout leads to a reconnect one second later.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol

import aiohttp

from .broadcast import Broadcaster, MessageSink, Requester
from .config import ConfigManager
from .dns_cache import DNSCache, DNSLookupError
from .event_log import EventLog
from .gateway import GatewayUpdater
from .relay_cache import RelayCache, RelayValidationError


logger = logging.getLogger(__name__)

RETRY_DELAY = 1.0
LIVENESS_TIMEOUT = 5.0
LIVENESS_INTERVAL = 1.0
CONNECT_TIMEOUT = 10.0
OUTBOX_SIZE = 256


class RemoteState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"


class RelaySocket(Protocol):
    """The subset of :class:`aiohttp.ClientWebSocketResponse` used here."""

    async def send_str(self, data: str) -> None:
        ...

    async def close(self) -> Any:
        ...

    def __aiter__(self) -> AsyncIterator[aiohttp.WSMessage]:
        ...


Connector = Callable[[str, Mapping[str, str], "str | None"], Awaitable[RelaySocket]]
MessageHandler = Callable[[Requester, dict[str, Any]], None]
InitialStatus = Callable[[MessageSink], None]


class RemoteRelayClient:
    """Connects, authenticates and keeps the relay connection alive."""

    def __init__(
        self,
        config: ConfigManager,
        dns: DNSCache,
        relays: RelayCache,
        broadcaster: Broadcaster,
        *,
        handler: MessageHandler | None = None,
        initial_status: InitialStatus | None = None,
        gateway: GatewayUpdater | None = None,
        event_log: EventLog | None = None,
        connector: Connector | None = None,
        clock: Callable[[], float] = time.monotonic,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self._config = config
        self._dns = dns
        self._relays = relays
        self._broadcaster = broadcaster
        self._handler = handler
        self._initial_status = initial_status
        self._gateway = gateway
        self._event_log = event_log
        self._connector = connector
        self._clock = clock
        self._retry_delay = retry_delay
        self._session: aiohttp.ClientSession | None = None
        self._ws: RelaySocket | None = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=OUTBOX_SIZE)
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._liveness_task: asyncio.Task[None] | None = None
        self._status_handled = False
        self._rejected_key: str | None = None
        self._offered_key: str | None = None
        self._generation = 0
        self.state = RemoteState.DISCONNECTED
        self.last_active = 0.0

    # ------------------------------ lifecycle ------------------------------
    def start(self) -> None:
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        self._liveness_task = loop.create_task(self._liveness())

    async def aclose(self) -> None:
        for task in (self._task, self._liveness_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._liveness_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _run(self) -> None:
        while True:
            key = self._config.get_remote_key()
            # A rejected key is not offered again until it changes.
            if not key or key == self._rejected_key:
                await self._wake.wait()
                self._wake.clear()
                continue
            await self.connect_once()
            if self._gateway is not None:
                self._gateway.queue()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._retry_delay)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def _liveness(self) -> None:
        while True:
            await asyncio.sleep(LIVENESS_INTERVAL)
            await self.check_liveness()

    async def check_liveness(self) -> bool:
        """Close the socket when no frame arrived within the timeout."""

        ws = self._ws
        if ws is None or self.last_active + LIVENESS_TIMEOUT >= self._clock():
            return False
        logger.warning("remote: connection timed out")
        await ws.close()
        return True

    # ------------------------------ connection -----------------------------
    async def _aiohttp_connect(
        self, url: str, headers: Mapping[str, str], server_hostname: str | None
    ) -> RelaySocket:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(
            url,
            headers=dict(headers),
            server_hostname=server_hostname,
            autoping=True,
        )

    async def _open(self, host: str, address: str | None) -> RelaySocket:
        endpoint = self._config.get_remote_endpoint()
        url = endpoint.url(address)
        headers = {"Host": host} if address else {}
        connect = self._connector or self._aiohttp_connect
        return await asyncio.wait_for(
            connect(url, headers, host if address and endpoint.secure else None),
            timeout=CONNECT_TIMEOUT,
        )

    async def connect_once(self) -> None:
        """Run a single connection attempt until the socket closes."""

        key = self._config.get_remote_key()
        if not key:
            return
        generation = self._generation
        endpoint = self._config.get_remote_endpoint()
        host = endpoint.host
        try:
            resolution = await self._dns.resolve(host)
        except DNSLookupError as exc:
            logger.error("remote: %s", exc)
            return
        address: str | None = None
        if resolution.from_cache:
            address = resolution.pick()
            if self._gateway is not None:
                self._gateway.queue()
            logger.warning("remote: DNS lookup failed, using cached address %s", address)

        logger.info("remote: trying to connect")
        self.state = RemoteState.CONNECTING
        self._status_handled = False
        self.last_active = self._clock() + CONNECT_TIMEOUT - LIVENESS_TIMEOUT
        writer: asyncio.Task[None] | None = None
        try:
            ws = await self._open(host, address)
            self._ws = ws
            if generation != self._generation:
                # The key changed while connecting; start over with the new one.
                self._status_handled = True
                await ws.close()
                return
            if not resolution.from_cache:
                self._dns.validate(host)
            self._offered_key = key
            await ws.send_str(
                json.dumps(
                    {
                        "remote": {
                            "auth/encoder": {
                                "key": key,
                                "version": endpoint.protocol_version,
                            }
                        }
                    }
                )
            )
            writer = asyncio.get_running_loop().create_task(self._write(ws))
            async for message in ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    await self.handle_frame(message.data)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    logger.error("remote error: %s", message.data)
                    break
                elif message.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            logger.error("remote error: %s", exc)
        finally:
            if writer is not None:
                writer.cancel()
            self._closed()

    def _closed(self) -> None:
        self._ws = None
        self.state = RemoteState.DISCONNECTED
        if self._broadcaster.remote is self:
            self._broadcaster.remote = None
        while not self._outbox.empty():
            self._outbox.get_nowait()
        if not self._status_handled:
            self._broadcaster.broadcast_local(
                "status",
                {"remote": {"error": "network"}},
                active_since=self._broadcaster.recently_active(),
            )

    async def _write(self, ws: RelaySocket) -> None:
        while True:
            data = await self._outbox.get()
            try:
                await ws.send_str(data)
            except (aiohttp.ClientError, ConnectionError) as exc:
                logger.warning("remote: send failed: %s", exc)
                return

    def send(self, message: Mapping[str, object]) -> None:
        """Queue a message for the relay; dropped unless authenticated."""

        if self.state is not RemoteState.AUTHENTICATED:
            return
        try:
            self._outbox.put_nowait(json.dumps(message))
        except asyncio.QueueFull:
            logger.warning("remote: dropping outbound message")

    # ------------------------------- inbound -------------------------------
    async def handle_frame(self, data: str) -> None:
        try:
            payload = json.loads(data)
        except ValueError as exc:
            logger.error("Error handling remote message: %s", exc)
            return
        if not isinstance(payload, dict):
            return
        remote = payload.pop("remote", None)
        if isinstance(remote, dict):
            await self._handle_remote(remote)
        if self._handler is not None and any(key != "id" for key in payload):
            self._handler(Requester(self, payload.get("id")), payload)
        self.last_active = self._clock()

    async def _handle_remote(self, message: Mapping[str, Any]) -> None:
        for msg_type, value in message.items():
            if msg_type == "auth/encoder":
                if value is True:
                    self._authenticated()
                else:
                    await self._rejected()
            elif msg_type == "relays":
                self._handle_relays(value)

    def _authenticated(self) -> None:
        self.state = RemoteState.AUTHENTICATED
        self._broadcaster.remote = self
        if self._initial_status is not None:
            self._initial_status(self)
        self._broadcaster.broadcast_local(
            "status", {"remote": True}, active_since=self._broadcaster.recently_active()
        )
        if self._event_log is not None:
            self._event_log.record("remote", "authenticated", "Connected to the relay service")
        logger.info("remote: authenticated")

    async def _rejected(self) -> None:
        self._broadcaster.broadcast_local(
            "status",
            {"remote": {"error": "key"}},
            active_since=self._broadcaster.recently_active(),
        )
        self._status_handled = True
        self._rejected_key = self._offered_key
        if self._event_log is not None:
            self._event_log.record("remote", "rejected", "The relay service rejected the key")
        logger.warning("remote: invalid key")
        if self._ws is not None:
            await self._ws.close()

    def _handle_relays(self, payload: object) -> None:
        try:
            updated = self._relays.update(payload)
        except RelayValidationError as exc:
            logger.warning("remote: ignoring relay list: %s", exc)
            return
        if not updated:
            return
        target = self._relays.convert_manual_to_remote_relay(self._config.get_stream_target())
        if target is not None:
            self._config.set_stream_target(target)
            self._broadcaster.broadcast("config", target.to_dict())

    # ------------------------------- commands ------------------------------
    async def set_remote_key(self, key: str | None) -> None:
        """Store a new key and restart the connection with it."""

        self._config.set_remote_key(key)
        self._rejected_key = None
        self._generation += 1
        if self._ws is not None:
            self._status_handled = True
            await self._ws.close()
        self._wake.set()
        self._relays.clear()
        self._broadcaster.broadcast("config", self._config.get_stream_target().to_dict())

    def status(self) -> bool:
        return self.state is RemoteState.AUTHENTICATED


__all__ = [
    "CONNECT_TIMEOUT",
    "LIVENESS_TIMEOUT",
    "RETRY_DELAY",
    "RelaySocket",
    "RemoteRelayClient",
    "RemoteState",
]
