from __future__ import annotations

import pytest

from pethub.status import (
    UNKNOWN,
    DeviceKind,
    classify_device,
    format_duration_minutes,
    is_corrupted_payload,
    minutes_to_time,
    parse_feed_history,
    parse_feeder_status,
    parse_fountain_status,
    parse_litter_box_status,
    seconds_to_min_sec,
    translate_status,
)


@pytest.mark.parametrize(
    ("product_name", "category", "expected"),
    [
        ("", "cwwsq", DeviceKind.FEEDER),
        ("", "msp", DeviceKind.LITTER_BOX),
        ("", "cwysj", DeviceKind.FOUNTAIN),
        ("Smart Pet Feeder", "", DeviceKind.FEEDER),
        ("Self-cleaning Litter Box", "", DeviceKind.LITTER_BOX),
        ("Cat Water Fountain", "", DeviceKind.FOUNTAIN),
        ("Desk Lamp", "dj", DeviceKind.UNKNOWN),
        ("", "", DeviceKind.UNKNOWN),
    ],
)
def test_classify_device(product_name: str, category: str, expected: DeviceKind) -> None:
    assert classify_device(product_name, category) is expected


def test_corrupted_payload_detection() -> None:
    assert is_corrupted_payload({"dps": {"1": "ok\x01"}})
    assert is_corrupted_payload(b"\x00\x10abc")
    assert is_corrupted_payload([{"dps": {"2": ["fine", "bad\x7f"]}}])
    assert not is_corrupted_payload({"dps": {"1": "BQgeAgE=", "2": True, "3": 4}})
    assert not is_corrupted_payload("line one\nline two\ttab")


def test_duration_formatters() -> None:
    assert seconds_to_min_sec(0) == "0:00"
    assert seconds_to_min_sec(125) == "2:05"
    assert minutes_to_time(0) == "00:00"
    assert minutes_to_time(1380) == "23:00"
    assert format_duration_minutes(5) == "5m"
    assert format_duration_minutes(65) == "1h 5m"
    assert format_duration_minutes(1501) == "1d 1h 1m"


def test_feed_history_seconds_and_milliseconds() -> None:
    seconds = parse_feed_history("R:3  C:12  T:1700000000")
    assert seconds is not None
    assert (seconds.remaining, seconds.count, seconds.timestamp) == (3, 12, 1700000000)
    assert seconds.timestamp_readable == "2023-11-14T22:13:20Z"

    millis = parse_feed_history("R:0  C:1  T:1700000000000")
    assert millis is not None
    assert millis.timestamp_readable == "2023-11-14T22:13:20Z"


def test_feed_history_garbage_is_tolerated() -> None:
    history = parse_feed_history("R:x  nonsense")
    assert history is not None
    assert history.remaining is None
    assert history.count is None
    assert history.timestamp_readable is None
    assert parse_feed_history(42) is None


def test_feeder_status_defaults_when_empty() -> None:
    status = parse_feeder_status({})
    assert status.feeding.manual_feed_enabled is True
    assert status.feeding.last_feed_size == UNKNOWN
    assert status.settings.sound_enabled is True
    assert status.system.powered_by == UNKNOWN
    assert status.system.ip_address == UNKNOWN
    assert status.history is None


def test_feeder_status_fields() -> None:
    status = parse_feeder_status(
        {
            "dps": {
                "101": 2,
                "102": False,
                "105": 1,
                "107": "192.168.1.50",
                "15": 4,
                "2": True,
                "103": False,
                "106": True,
                "14": 0,
                "104": "R:5  C:2  T:1700000000",
            }
        }
    )
    assert status.feeding.last_feed_size == "2 portions"
    assert status.feeding.manual_feed_enabled is False
    assert status.feeding.last_feed_report == 4
    assert status.feeding.quick_feed_available is True
    assert status.settings.sound_enabled is False
    assert status.settings.alexa_feed_enabled is True
    assert status.system.powered_by == "Battery"
    assert status.system.ip_address == "192.168.1.50"
    assert status.system.fault_status is False
    assert status.history is not None and status.history.count == 2


@pytest.mark.parametrize(("value", "expected"), [(0, "AC Power"), (3, "Mode 3"), ("x", UNKNOWN)])
def test_feeder_power_source(value, expected: str) -> None:
    assert parse_feeder_status({"105": value}).system.powered_by == expected


def test_litter_box_status() -> None:
    status = parse_litter_box_status(
        {
            "101": 90,
            "102": True,
            "103": 1320,
            "104": 420,
            "105": 3,
            "106": 45,
            "107": True,
            "109": "satnd_by",
            "112": "half",
            "116": True,
        }
    )
    assert status.clean_delay.formatted == "1:30"
    assert status.sleep_mode.enabled is True
    assert status.sleep_mode.start_time_formatted == "22:00"
    assert status.sleep_mode.end_time_formatted == "07:00"
    assert status.sensors.defecation_frequency == 3
    assert status.sensors.defecation_duration == 45
    assert status.sensors.litter_level == "half"
    assert status.system.state == "satnd_by"
    assert status.system.cleaning_in_progress is True
    assert status.settings.lighting is True
    assert status.settings.child_lock is False


def test_litter_box_out_of_range_values_degrade() -> None:
    status = parse_litter_box_status({"103": 5000, "109": "flying", "112": 7, "101": "soon"})
    assert status.sleep_mode.start_time_minutes == 0
    assert status.system.state == UNKNOWN
    assert status.sensors.litter_level == UNKNOWN
    assert status.clean_delay.seconds == 0


def test_fountain_status() -> None:
    status = parse_fountain_status(
        {"dps": {"1": True, "3": 1501, "4": 80, "5": 65, "10": False, "101": 1, "130": "aa:bb"}}
    )
    assert status.power is True
    assert status.water_time_formatted == "1d 1h 1m"
    assert status.filter_life == 80
    assert status.pump_time_formatted == "1h 5m"
    assert status.uv is False
    assert status.low_water is True
    assert status.mac_address == "aa:bb"
    assert status.uv_runtime is None
    assert status.uv_runtime_formatted == UNKNOWN
    assert status.raw["3"] == 1501


def test_translate_status_dispatches_on_kind() -> None:
    assert translate_status(DeviceKind.FOUNTAIN, {"1": False})["power"] is False
    assert translate_status(DeviceKind.FEEDER, {})["system"]["powered_by"] == UNKNOWN
    assert translate_status(DeviceKind.LITTER_BOX, {})["clean_delay"]["formatted"] == "0:00"
    assert translate_status(DeviceKind.UNKNOWN, {"1": True}) == {}
