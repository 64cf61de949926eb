import pytest

from encoder_link.device_list import DeviceListTracker


def _pass(tracker: DeviceListTracker, *entries: tuple[str, str, str | None]) -> bool:
    update = tracker.start_update()
    for ifname, mac, inet in entries:
        update.add(ifname, mac, inet)
    return update.end()


def test_interfaces_missing_from_a_pass_are_removed() -> None:
    tracker = DeviceListTracker()
    assert _pass(tracker, ("wlan0", "AA:BB:CC:DD:EE:01", None), ("eth0", "aa:bb:cc:dd:ee:02", "10.0.0.2"))

    update = tracker.start_update()
    update.add("eth0", "aa:bb:cc:dd:ee:02", "10.0.0.2")
    assert update.end() is True
    assert update.removed == ["wlan0"]
    assert tracker.get_mac("wlan0") is None
    assert tracker.get_inet("eth0") == "10.0.0.2"


def test_repeated_pass_without_changes_reports_nothing() -> None:
    tracker = DeviceListTracker()
    _pass(tracker, ("wlan0", "aa:bb:cc:dd:ee:01", None))
    assert _pass(tracker, ("wlan0", "aa:bb:cc:dd:ee:01", None)) is False


def test_changed_address_marks_pass_modified() -> None:
    tracker = DeviceListTracker()
    _pass(tracker, ("wlan0", "aa:bb:cc:dd:ee:01", None))
    assert _pass(tracker, ("wlan0", "aa:bb:cc:dd:ee:01", "192.168.1.4")) is True
    assert tracker.get_inet("wlan0") == "192.168.1.4"


def test_device_removed_only_after_cycle_where_it_is_omitted() -> None:
    tracker = DeviceListTracker()
    _pass(tracker, ("wlan0", "aa:bb:cc:dd:ee:01", None))
    _pass(tracker, ("wlan0", "aa:bb:cc:dd:ee:01", None))
    assert tracker.get_mac("wlan0") == "aa:bb:cc:dd:ee:01"

    update = tracker.start_update()
    assert update.end() is True
    assert update.removed == ["wlan0"]
    assert tracker.snapshot() == []


def test_macs_are_normalised_to_lower_case() -> None:
    tracker = DeviceListTracker()
    _pass(tracker, ("wlan0", "AA:BB:CC:DD:EE:01", None))
    assert tracker.get_mac("wlan0") == "aa:bb:cc:dd:ee:01"


def test_second_start_without_end_fails() -> None:
    tracker = DeviceListTracker()
    tracker.start_update()
    with pytest.raises(RuntimeError):
        tracker.start_update()


def test_finished_update_cannot_be_reused() -> None:
    tracker = DeviceListTracker()
    update = tracker.start_update()
    update.end()
    with pytest.raises(RuntimeError):
        update.add("wlan0", "aa:bb:cc:dd:ee:01")
    with pytest.raises(RuntimeError):
        update.end()


def test_refresh_runs_a_complete_pass() -> None:
    tracker = DeviceListTracker()
    assert tracker.refresh([("wlan1", "aa:bb:cc:dd:ee:03", None)]) is True
    assert [device.ifname for device in tracker.snapshot()] == ["wlan1"]
    assert tracker.refresh([]) is True
    assert tracker.snapshot() == []
