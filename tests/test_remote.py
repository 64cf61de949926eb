import asyncio
import json
from pathlib import Path
from types import SimpleNamespace

import aiohttp

from encoder_link.broadcast import Broadcaster, UISession
from encoder_link.config import ConfigManager, StreamTarget
from encoder_link.dns_cache import DNSLookupError, Resolution
from encoder_link.relay_cache import RelayCache
from encoder_link.remote import RemoteRelayClient, RemoteState

RELAYS = {
    "servers": {
        "na-east": {"type": "srtla", "name": "NA East", "addr": "east.example.net", "port": 5000},
    },
    "accounts": {
        "main": {"name": "Main", "ingest_key": "KEY-1"},
    },
}


class FakeSocket:
    def __init__(self, auth_reply: object = None) -> None:
        self.auth_reply = auth_reply
        self.sent: list[dict[str, object]] = []
        self.closed = False
        self.opened = asyncio.Event()
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()

    async def send_str(self, data: str) -> None:
        message = json.loads(data)
        self.sent.append(message)
        self.opened.set()
        if self.auth_reply is not None and "remote" in message:
            self.push({"remote": {"auth/encoder": self.auth_reply}})

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def push(self, payload: object) -> None:
        self._incoming.put_nowait(json.dumps(payload))

    def hang_up(self) -> None:
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        data = await self._incoming.get()
        if data is None:
            raise StopAsyncIteration
        return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data)


class FakeConnector:
    def __init__(self, auth_reply: object = None, error: Exception | None = None) -> None:
        self.auth_reply = auth_reply
        self.error = error
        self.calls: list[tuple[str, dict[str, str], str | None]] = []
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url, headers, server_hostname):
        self.calls.append((url, dict(headers), server_hostname))
        if self.error is not None:
            raise self.error
        socket = FakeSocket(self.auth_reply)
        self.sockets.append(socket)
        return socket


class FakeDNS:
    def __init__(self, resolution: Resolution | None) -> None:
        self.resolution = resolution
        self.validated: list[str] = []

    async def resolve(self, name):
        if self.resolution is None:
            raise DNSLookupError("no answer")
        return self.resolution

    def validate(self, name):
        self.validated.append(name)


class FakeGateway:
    def __init__(self) -> None:
        self.queued = 0

    def queue(self) -> None:
        self.queued += 1


class Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _drain(session: UISession) -> list[dict[str, object]]:
    messages = []
    while not session.queue.empty():
        messages.append(session.queue.get_nowait())
    return messages


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _setup(tmp_path: Path, *, dns: FakeDNS | None = None, connector: FakeConnector | None = None, **kwargs):
    config = ConfigManager(tmp_path / "config.json")
    config.set_remote_key("secret")
    broadcaster = Broadcaster()
    relays = RelayCache(tmp_path / "relays_cache.json", broadcaster)
    dns = dns or FakeDNS(Resolution(("203.0.113.10",), False))
    connector = connector or FakeConnector()
    client = RemoteRelayClient(
        config,
        dns,
        relays,
        broadcaster,
        connector=connector,
        **kwargs,
    )
    return client, config, broadcaster, relays, dns, connector


def test_authenticated_session_forwards_frames(tmp_path: Path) -> None:
    handled = []
    initial = []

    def initial_status(sink):
        initial.append(sink)
        sink.send({"status": {"wifi": {}}})

    client, config, broadcaster, relays, dns, connector = _setup(
        tmp_path,
        handler=lambda requester, payload: handled.append((requester, payload)),
        initial_status=initial_status,
    )
    config.set_stream_target(
        StreamTarget(srt_streamid="KEY-1", srtla_addr="east.example.net", srtla_port=5000)
    )

    async def scenario():
        session = UISession()
        broadcaster.add_session(session)
        task = asyncio.create_task(client.connect_once())
        while not connector.sockets:
            await asyncio.sleep(0)
        socket = connector.sockets[0]
        await asyncio.wait_for(socket.opened.wait(), 1)
        assert client.state is RemoteState.CONNECTING

        socket.push({"remote": {"auth/encoder": True}})
        await _settle()
        assert client.status() is True
        assert broadcaster.remote is client
        assert initial == [client]

        socket.push({"remote": {"relays": RELAYS}})
        socket.push({"wifi": {"scan": True}, "id": 7})
        await _settle()

        socket.hang_up()
        await asyncio.wait_for(task, 1)
        return socket, _drain(session)

    socket, messages = asyncio.run(scenario())

    assert connector.calls == [("wss://remote.belabox.net/ws/remote", {}, None)]
    assert dns.validated == ["remote.belabox.net"]
    assert socket.sent[0] == {
        "remote": {"auth/encoder": {"key": "secret", "version": 16}}
    }
    assert {"status": {"wifi": {}}} in socket.sent
    assert any("relays" in message for message in socket.sent)

    assert messages[0] == {"status": {"remote": True}}
    assert {"status": {"remote": {"error": "network"}}} in messages
    assert relays.data is not None and set(relays.data["servers"]) == {"na-east"}

    target = config.get_stream_target()
    assert target.relay_server == "na-east"
    assert target.relay_account == "main"
    assert target.srtla_addr is None and target.srt_streamid is None
    assert {"config": target.to_dict()} in messages

    assert len(handled) == 1
    requester, payload = handled[0]
    assert requester.sink is client
    assert requester.request_id == 7
    assert payload == {"wifi": {"scan": True}, "id": 7}

    assert client.state is RemoteState.DISCONNECTED
    assert broadcaster.remote is None


def test_rejected_key_is_not_offered_again(tmp_path: Path) -> None:
    connector = FakeConnector(auth_reply=False)
    client, config, broadcaster, *_ = _setup(tmp_path, connector=connector, retry_delay=0.01)

    async def scenario():
        session = UISession()
        broadcaster.add_session(session)
        client.start()
        await asyncio.sleep(0.1)
        first = len(connector.sockets)
        await client.set_remote_key("fresh-key")
        await asyncio.sleep(0.1)
        await client.aclose()
        return first, _drain(session)

    first, messages = asyncio.run(scenario())

    assert first == 1
    assert len(connector.sockets) == 2
    assert all(socket.closed for socket in connector.sockets)
    assert [len(socket.sent) for socket in connector.sockets] == [1, 1]
    assert connector.sockets[1].sent[0]["remote"]["auth/encoder"]["key"] == "fresh-key"
    status = [message["status"] for message in messages if "status" in message]
    assert status == [{"remote": {"error": "key"}}, {"remote": {"error": "key"}}]
    assert config.get_remote_key() == "fresh-key"


class SlowConnector(FakeConnector):
    async def __call__(self, url, headers, server_hostname):
        await asyncio.sleep(0.05)
        return await super().__call__(url, headers, server_hostname)


def test_key_changed_while_connecting_is_offered(tmp_path: Path) -> None:
    connector = SlowConnector(auth_reply=False)
    client, config, broadcaster, *_ = _setup(tmp_path, connector=connector, retry_delay=0.01)

    async def scenario():
        session = UISession()
        broadcaster.add_session(session)
        client.start()
        await asyncio.sleep(0.01)
        await client.set_remote_key("fresh-key")
        await asyncio.sleep(0.3)
        await client.aclose()
        return _drain(session)

    messages = asyncio.run(scenario())

    offered = [
        message["remote"]["auth/encoder"]["key"]
        for socket in connector.sockets
        for message in socket.sent
    ]
    assert offered == ["fresh-key"]
    assert len(connector.sockets) == 2
    assert connector.sockets[0].closed
    status = [message["status"] for message in messages if "status" in message]
    assert status == [{"remote": {"error": "key"}}]


def test_connection_failure_reports_network_error(tmp_path: Path) -> None:
    connector = FakeConnector(error=aiohttp.ClientConnectionError("refused"))
    client, _, broadcaster, *_ = _setup(tmp_path, connector=connector)

    async def scenario():
        session = UISession()
        broadcaster.add_session(session)
        await client.connect_once()
        return _drain(session)

    messages = asyncio.run(scenario())

    assert messages == [{"status": {"remote": {"error": "network"}}}]
    assert client.state is RemoteState.DISCONNECTED


def test_dns_failure_skips_the_attempt(tmp_path: Path) -> None:
    client, _, broadcaster, _, _, connector = _setup(tmp_path, dns=FakeDNS(None))

    async def scenario():
        session = UISession()
        broadcaster.add_session(session)
        await client.connect_once()
        return _drain(session)

    assert asyncio.run(scenario()) == []
    assert connector.calls == []


def test_cached_address_connects_with_host_header(tmp_path: Path) -> None:
    dns = FakeDNS(Resolution(("198.51.100.7",), True))
    gateway = FakeGateway()
    client, *_, connector = _setup(tmp_path, dns=dns, gateway=gateway)

    async def scenario():
        task = asyncio.create_task(client.connect_once())
        while not connector.sockets:
            await asyncio.sleep(0)
        connector.sockets[0].hang_up()
        await asyncio.wait_for(task, 1)

    asyncio.run(scenario())

    assert connector.calls == [
        ("wss://198.51.100.7/ws/remote", {"Host": "remote.belabox.net"}, "remote.belabox.net")
    ]
    assert gateway.queued == 1
    assert dns.validated == []


def test_liveness_timeout_closes_socket(tmp_path: Path) -> None:
    clock = Clock()
    client, *_, connector = _setup(tmp_path, clock=clock)

    async def scenario():
        task = asyncio.create_task(client.connect_once())
        while not connector.sockets:
            await asyncio.sleep(0)
        await asyncio.wait_for(connector.sockets[0].opened.wait(), 1)
        clock.now = 105.0
        early = await client.check_liveness()
        clock.now = 110.5
        late = await client.check_liveness()
        await asyncio.wait_for(task, 1)
        return early, late

    early, late = asyncio.run(scenario())

    assert early is False
    assert late is True
    assert connector.sockets[0].closed
    assert asyncio.run(client.check_liveness()) is False


def test_new_key_closes_connection_quietly(tmp_path: Path) -> None:
    client, config, broadcaster, relays, _, connector = _setup(
        tmp_path, connector=FakeConnector(auth_reply=True)
    )
    relays.update(RELAYS)
    config.set_stream_target(StreamTarget(relay_server="na-east", relay_account="main"))

    async def scenario():
        session = UISession()
        broadcaster.add_session(session)
        task = asyncio.create_task(client.connect_once())
        while not client.status():
            await asyncio.sleep(0)
        _drain(session)
        await client.set_remote_key("other")
        await asyncio.wait_for(task, 1)
        return _drain(session)

    messages = asyncio.run(scenario())

    assert connector.sockets[0].closed
    assert config.get_remote_key() == "other"
    assert relays.data is None
    assert config.get_stream_target().relay_server is None
    assert {"relays": {"servers": {}, "accounts": {}}} in messages
    assert not any(message.get("status") for message in messages)


def test_frames_are_ignored_until_valid(tmp_path: Path) -> None:
    handled = []
    client, *_ = _setup(tmp_path, handler=lambda requester, payload: handled.append(payload))

    asyncio.run(client.handle_frame("not json"))
    asyncio.run(client.handle_frame(json.dumps({"id": 3})))
    client.send({"status": {}})

    assert handled == []
    assert client._outbox.empty()
