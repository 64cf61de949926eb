"""FastAPI application wiring together the encoder-link services."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Mapping

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ValidationError

from .broadcast import Broadcaster, MessageSink, Requester, UISession, build_message
from .config import ConfigManager, data_dir, env_flag
from .device_list import DeviceListTracker, enumerate_interfaces
from .dns_cache import DNSCache, Lookup, system_lookup
from .event_log import CATEGORIES, EventLog
from .gateway import GatewayUpdater
from .mmcli import ModemManagerCLI
from .modems import GsmOperatorCache, ModemController
from .nmcli import NetworkManagerCLI
from .relay_cache import RELAY_CACHE_FILE, RelayCache
from .remote import Connector, RemoteRelayClient
from .router import MessageRouter
from .version import APP_VERSION
from .wifi import WifiManager

DEVICE_POLL_INTERVAL = 1.0


class RemoteKeyPayload(BaseModel):
    remote_key: str | None = None


def create_app(
    config_path: Path | str | None = None,
    *,
    nmcli: NetworkManagerCLI | None = None,
    mmcli: ModemManagerCLI | None = None,
    dns_lookup: Lookup = system_lookup,
    relay_connector: Connector | None = None,
    enable_remote: bool | None = None,
    enable_modems: bool | None = None,
    enable_polling: bool = True,
) -> FastAPI:
    app = FastAPI(title="encoder-link", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path) if config_path is not None else data_dir() / "config.json"
    config_manager = ConfigManager(config_path)
    state_dir = config_path.parent
    if enable_remote is None:
        enable_remote = env_flag("ENCODER_LINK_REMOTE")
    if enable_modems is None:
        enable_modems = env_flag("ENCODER_LINK_MODEMS")

    event_log = EventLog(state_dir / "events.jsonl")
    broadcaster = Broadcaster()
    devices = DeviceListTracker()
    nmcli = nmcli or NetworkManagerCLI()
    mmcli = mmcli or ModemManagerCLI()

    wifi = WifiManager(
        nmcli,
        devices,
        broadcaster,
        event_log=event_log,
        hotspot_prefix=config_manager.get_hotspot_prefix(),
    )
    modems = ModemController(
        mmcli,
        nmcli,
        broadcaster,
        GsmOperatorCache(state_dir / "gsm_operators.json"),
        event_log=event_log,
    )
    dns = DNSCache(state_dir / "dns_cache.json", lookup=dns_lookup)
    gateway = GatewayUpdater(dns, devices)
    relays = RelayCache(state_dir / RELAY_CACHE_FILE, broadcaster, event_log=event_log)
    router = MessageRouter()

    def send_initial_status(sink: MessageSink) -> None:
        sink.send(
            build_message(
                "status",
                {
                    "wifi": wifi.build_status_message(),
                    "modems": modems.build_status_message(),
                    "remote": remote.status(),
                },
            )
        )
        sink.send(build_message("relays", relays.build_relays_message()))
        sink.send(build_message("config", config_manager.get_stream_target().to_dict()))

    remote = RemoteRelayClient(
        config_manager,
        dns,
        relays,
        broadcaster,
        handler=router.dispatch,
        initial_status=send_initial_status,
        gateway=gateway,
        event_log=event_log,
        connector=relay_connector,
    )

    # ------------------------------- commands ------------------------------
    async def handle_wifi(requester: Requester, value: Any) -> None:
        if isinstance(value, Mapping):
            await wifi.handle_message(requester, value)

    async def handle_modems(requester: Requester, value: Any) -> None:
        if isinstance(value, Mapping):
            await modems.handle_message(requester, value)

    async def handle_config(requester: Requester, value: Any) -> None:
        if not isinstance(value, Mapping) or "remote_key" not in value:
            return
        try:
            payload = RemoteKeyPayload.model_validate(value)
        except ValidationError:
            requester.reply("config", {"error": "remote_key"})
            return
        await update_remote_key(payload.remote_key)

    async def handle_keepalive(requester: Requester, value: Any) -> None:
        return None

    router.register("wifi", handle_wifi)
    router.register("modems", handle_modems)
    router.register("config", handle_config)
    router.register("keepalive", handle_keepalive)

    async def update_remote_key(key: str | None) -> None:
        if enable_remote:
            await remote.set_remote_key(key)
        else:
            config_manager.set_remote_key(key)
            relays.clear()
            broadcaster.broadcast("config", config_manager.get_stream_target().to_dict())

    # ----------------------------- background ------------------------------
    background: list[asyncio.Task[None]] = []

    async def poll_devices() -> None:
        while True:
            try:
                interfaces = await run_in_threadpool(enumerate_interfaces)
                if devices.refresh(interfaces):
                    await wifi.update_devices()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Network interface polling failed")
            await asyncio.sleep(DEVICE_POLL_INTERVAL)

    app.state.config_manager = config_manager
    app.state.event_log = event_log
    app.state.broadcaster = broadcaster
    app.state.devices = devices
    app.state.wifi = wifi
    app.state.modems = modems
    app.state.relays = relays
    app.state.remote = remote
    app.state.router = router

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        event_log.record("system", "startup", "encoder-link starting up.")
        loop = asyncio.get_running_loop()
        if enable_polling:
            background.append(loop.create_task(poll_devices()))
        if enable_modems:
            background.append(loop.create_task(modems.run()))
        if enable_remote:
            remote.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        background.clear()
        await remote.aclose()
        await gateway.aclose()
        await router.aclose()
        await wifi.aclose()
        event_log.record("system", "shutdown", "encoder-link shut down.")

    # --------------------------------- HTTP --------------------------------
    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        return {
            "version": APP_VERSION,
            "wifi": wifi.build_status_message(),
            "modems": modems.build_status_message(),
            "remote": {
                "enabled": enable_remote,
                "state": remote.state.value,
                "endpoint": config_manager.get_remote_endpoint().to_dict(),
            },
            "relays": relays.build_relays_message(),
            "config": config_manager.get_stream_target().to_dict(),
            "interfaces": [device.to_dict() for device in devices.snapshot()],
        }

    @app.get("/api/events")
    async def get_events(limit: int = 50, category: str | None = None) -> dict[str, object]:
        if category is not None and category not in CATEGORIES:
            raise HTTPException(status_code=400, detail="Unknown event category")
        entries = event_log.tail(limit, category=category)
        return {"entries": [entry.to_dict() for entry in reversed(entries)]}

    @app.post("/api/remote/key")
    async def set_remote_key(payload: RemoteKeyPayload) -> dict[str, object]:
        await update_remote_key(payload.remote_key)
        return {"remote_key_set": config_manager.get_remote_key() is not None}

    # ------------------------------ websocket ------------------------------
    async def drain(websocket: WebSocket, session: UISession) -> None:
        while True:
            message = await session.queue.get()
            await websocket.send_json(message)

    @app.websocket("/ws")
    async def ui_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        session = UISession()
        broadcaster.add_session(session)
        send_initial_status(session)
        sender = asyncio.get_running_loop().create_task(drain(websocket, session))
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    payload = json.loads(text)
                except ValueError:
                    logger.debug("Ignoring malformed UI message")
                    continue
                session.mark_active()
                if isinstance(payload, dict):
                    router.dispatch(Requester(session, payload.get("id")), payload)
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.remove_session(session)
            sender.cancel()

    return app


__all__ = ["create_app"]
