import asyncio
from pathlib import Path

from encoder_link.broadcast import Broadcaster
from encoder_link.modems import (
    GsmOperatorCache,
    ModemConfig,
    ModemController,
    merge_scan_results,
    nm_modem_settings,
)

MODEM_INFO = {
    "modem.generic.sim": "/org/freedesktop/ModemManager1/SIM/0",
    "modem.generic.device-identifier": "dev123",
    "modem.generic.ports": ["cdc-wdm0 (qmi)", "wwan0 (net)"],
    "modem.generic.supported-modes": [
        "allowed: 2g, 3g, 4g; preferred: 4g",
        "allowed: 4g; preferred: none",
    ],
    "modem.generic.current-modes": "allowed: 2g, 3g, 4g; preferred: 4g",
    "modem.generic.equipment-identifier": "356789012345678",
    "modem.generic.model": "EM7455",
    "modem.generic.state": "registered",
    "modem.generic.signal-quality.value": "75",
    "modem.generic.access-technologies": ["lte"],
    "modem.3gpp.registration-state": "home",
}

SIM_INFO = {
    "sim.properties.iccid": "8901260000000000001",
    "sim.properties.operator-code": "310260",
    "sim.properties.operator-name": "T-Mobile",
}


class Recorder:
    def __init__(self) -> None:
        self.messages: list[dict[str, object]] = []

    def send(self, message) -> None:
        self.messages.append(dict(message))


class FakeMMCLI:
    def __init__(self) -> None:
        self.ids = [0]
        self.scan_rows: list[dict[str, str]] | None = []
        self.scans: list[int] = []
        self.set_types: list[tuple[int, str, str]] = []

    async def list_modems(self):
        return list(self.ids)

    async def get_modem(self, modem_id):
        return dict(MODEM_INFO)

    async def get_sim(self, sim_id):
        return dict(SIM_INFO)

    async def network_scan(self, modem_id, timeout=240):
        self.scans.append(modem_id)
        return self.scan_rows

    async def set_network_types(self, modem_id, allowed, preferred):
        self.set_types.append((modem_id, allowed, preferred))
        return True


class FakeNMCLI:
    def __init__(self) -> None:
        self.added: list[dict[str, str]] = []
        self.connected: list[str] = []
        self.disconnected: list[str] = []
        self.modified: list[tuple[str, dict[str, str]]] = []

    async def list_connections(self, fields):
        return []

    async def get_connection_fields(self, uuid, fields):
        return [""]

    async def add_connection(self, fields):
        self.added.append(dict(fields))
        return "gsm-uuid"

    async def connect(self, uuid, *, wait=None):
        self.connected.append(uuid)
        return True

    async def disconnect(self, uuid):
        self.disconnected.append(uuid)
        return True

    async def set_connection_fields(self, uuid, fields):
        self.modified.append((uuid, dict(fields)))
        return True


def _controller(tmp_path: Path):
    broadcaster = Broadcaster()
    recorder = Recorder()
    broadcaster.remote = recorder
    mmcli = FakeMMCLI()
    nmcli = FakeNMCLI()
    controller = ModemController(
        mmcli, nmcli, broadcaster, GsmOperatorCache(tmp_path / "gsm_operators.json")
    )
    return controller, mmcli, nmcli, recorder


def test_scan_rows_fold_into_one_entry_per_operator() -> None:
    merged = merge_scan_results(
        [
            {"operator-code": "310", "operator-name": "Carrier", "availability": "current"},
            {"operator-code": "310", "operator-name": "Carrier", "availability": "unknown"},
        ]
    )
    assert merged == {"310": {"name": "Carrier", "availability": "available"}}


def test_unknown_availability_is_dropped_and_available_wins() -> None:
    merged = merge_scan_results(
        [
            {"operator-code": "311", "operator-name": "Other", "availability": "unknown"},
            {"operator-code": "312", "operator-name": "Third", "availability": "forbidden"},
            {"operator-code": "312", "operator-name": "Third", "availability": "available"},
        ]
    )
    assert merged == {
        "311": {"name": "Other"},
        "312": {"name": "Third", "availability": "available"},
    }


def test_nm_settings_clear_credentials_under_autoconfig() -> None:
    config = ModemConfig(apn="apn", username="user", password="pw", roaming=False)
    settings = nm_modem_settings(config, autoconfig_supported=True)
    assert settings["gsm.auto-config"] == "yes"
    assert settings["gsm.home-only"] == "yes"
    assert settings["gsm.password-flags"] == "0"
    assert (config.apn, config.username, config.password) == ("", "", "")

    config = ModemConfig(apn="apn")
    settings = nm_modem_settings(config, autoconfig_supported=False)
    assert "gsm.auto-config" not in settings
    assert config.autoconfig is False
    assert config.apn == "apn"


def test_operator_cache_persists(tmp_path: Path) -> None:
    cache = GsmOperatorCache(tmp_path / "ops.json")
    cache.set("310260", "T-Mobile")
    assert GsmOperatorCache(tmp_path / "ops.json").get("310260") == "T-Mobile"


def test_new_modem_gets_connection_and_full_status(tmp_path: Path) -> None:
    controller, _, nmcli, recorder = _controller(tmp_path)
    asyncio.run(controller.update())

    (settings,) = nmcli.added
    assert settings["type"] == "gsm"
    assert settings["gsm.device-id"] == "dev123"
    assert settings["gsm.sim-id"] == "8901260000000000001"
    assert settings["gsm.sim-operator-id"] == "310260"
    assert settings["ipv6.method"] == "ignore"

    modem = controller.get(0)
    assert modem.config.conn == "gsm-uuid"
    assert modem.ifname == "wwan0"
    status = recorder.messages[-1]["status"]["modems"]["0"]
    assert status["name"] == "EM7455 - 45678 | T-Mobile"
    assert status["network_type"]["active"] == "4g3g2g"
    assert set(status["network_type"]["supported"]) == {"4g3g2g", "4g"}
    assert status["status"] == {
        "connection": "registered",
        "network": "T-Mobile",
        "network_type": "4G",
        "signal": 75,
        "roaming": False,
    }


def test_known_modem_reconnects_and_reports_status_only(tmp_path: Path) -> None:
    controller, _, nmcli, recorder = _controller(tmp_path)

    async def scenario():
        await controller.update()
        await controller.update()

    asyncio.run(scenario())
    assert nmcli.connected == ["gsm-uuid"]
    assert len(nmcli.added) == 1
    assert list(recorder.messages[-1]["status"]["modems"]["0"]) == ["status"]


def test_missing_modem_is_removed(tmp_path: Path) -> None:
    controller, mmcli, _, recorder = _controller(tmp_path)

    async def scenario():
        await controller.update()
        mmcli.ids = []
        await controller.update()

    asyncio.run(scenario())
    assert controller.get(0) is None
    assert recorder.messages[-1] == {"status": {"modems": {}}}


def test_scan_disconnects_and_broadcasts_results(tmp_path: Path) -> None:
    controller, mmcli, nmcli, recorder = _controller(tmp_path)
    mmcli.scan_rows = [
        {"operator-code": "310", "operator-name": "Carrier", "availability": "current"},
        {"operator-code": "310", "operator-name": "Carrier", "availability": "unknown"},
    ]

    async def scenario():
        await controller.update()
        await controller.scan(0)

    asyncio.run(scenario())
    assert nmcli.disconnected == ["gsm-uuid"]
    assert controller.get(0).is_scanning is False
    assert recorder.messages[-1] == {
        "status": {
            "modems": {"0": {"available_networks": {"310": {"name": "Carrier", "availability": "available"}}}}
        }
    }


def test_empty_scan_still_broadcasts_completion(tmp_path: Path) -> None:
    controller, mmcli, _, recorder = _controller(tmp_path)
    mmcli.scan_rows = None

    async def scenario():
        await controller.update()
        await controller.scan(0)

    asyncio.run(scenario())
    assert recorder.messages[-1] == {"status": {"modems": {"0": {"available_networks": {}}}}}


def test_scan_in_progress_is_not_repeated(tmp_path: Path) -> None:
    controller, mmcli, _, _ = _controller(tmp_path)

    async def scenario():
        await controller.update()
        controller.get(0).is_scanning = True
        await controller.scan(0)
        await controller.scan(7)

    asyncio.run(scenario())
    assert mmcli.scans == []


def test_configure_updates_connection_and_network_type(tmp_path: Path) -> None:
    controller, mmcli, nmcli, _ = _controller(tmp_path)

    async def scenario():
        await controller.update()
        await controller.configure(
            {
                "device": 0,
                "apn": "fast.t-mobile.com",
                "username": "",
                "password": "",
                "roaming": False,
                "network": "",
                "network_type": "4g",
                "autoconfig": False,
            }
        )

    asyncio.run(scenario())
    uuid, settings = nmcli.modified[-1]
    assert uuid == "gsm-uuid"
    assert settings["gsm.apn"] == "fast.t-mobile.com"
    assert settings["gsm.home-only"] == "yes"
    assert settings["gsm.auto-config"] == "no"
    assert mmcli.set_types == [(0, "4g", "none")]
    modem = controller.get(0)
    assert modem.active_type == "4g"
    assert modem.config.apn == "fast.t-mobile.com"
    assert modem.inhibit is False


def test_modem_without_status_is_left_out(tmp_path: Path) -> None:
    controller, *_ = _controller(tmp_path)
    asyncio.run(controller.update())
    assert list(controller.build_status_message()) == ["0"]
    controller.get(0).status = None
    assert controller.build_status_message() == {}


def test_configure_rejects_unknown_network_type(tmp_path: Path) -> None:
    controller, mmcli, nmcli, _ = _controller(tmp_path)

    async def scenario():
        await controller.update()
        await controller.configure(
            {
                "device": 0,
                "apn": "",
                "username": "",
                "password": "",
                "roaming": True,
                "network": "",
                "network_type": "5g",
                "autoconfig": True,
            }
        )

    asyncio.run(scenario())
    assert nmcli.modified == []
    assert mmcli.set_types == []
