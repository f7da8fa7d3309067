"""Philips Hue Bluetooth lamp protocol helpers.

Pure functions only: advertisement matching, UUID comparison, value
conversions and the combined control command layout.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

LIGHT_CONTROL_SERVICE = "932c32bd-0000-47a2-835a-a8d455b859dd"
POWER_CHAR = "932c32bd-0002-47a2-835a-a8d455b859dd"
BRIGHTNESS_CHAR = "932c32bd-0003-47a2-835a-a8d455b859dd"
TEMPERATURE_CHAR = "932c32bd-0004-47a2-835a-a8d455b859dd"
COLOR_CHAR = "932c32bd-0005-47a2-835a-a8d455b859dd"
CONTROL_CHAR = "932c32bd-0007-47a2-835a-a8d455b859dd"

DEVICE_INFO_SERVICE = "0000180a-0000-1000-8000-00805f9b34fb"
MODEL_CHAR = "00002a24-0000-1000-8000-00805f9b34fb"
FIRMWARE_CHAR = "00002a28-0000-1000-8000-00805f9b34fb"
MANUFACTURER_CHAR = "00002a29-0000-1000-8000-00805f9b34fb"

CONFIG_SERVICE = "0000fe0f-0000-1000-8000-00805f9b34fb"
DEVICE_NAME_CHAR = "97fe6561-0003-4f62-86e9-b71ee2da3d22"

# Role name -> characteristic UUID, in resolution order.
CHARACTERISTIC_ROLES = {
    "power": POWER_CHAR,
    "brightness": BRIGHTNESS_CHAR,
    "temperature": TEMPERATURE_CHAR,
    "control": CONTROL_CHAR,
    "model": MODEL_CHAR,
    "firmware": FIRMWARE_CHAR,
    "manufacturer": MANUFACTURER_CHAR,
    "device_name": DEVICE_NAME_CHAR,
}

KNOWN_MODELS = (
    "LWV001",  # filament bulb
    "LWA001",  # white ambiance
    "LTG002",  # GU10 spot
    "LWA004",  # E27 bulb
    "LWB010",  # white bulb
    "LCA001",  # color bulb
    "LCT024",  # play light bar
)

HUE_SERVICE_UUIDS = (
    "fe0f",
    "932c32bd000047a2835aa8d455b859dd",
    "0000fe0f00001000800000805f9b34fb",
)
HUE_NAME_MARKERS = ("hue", "lwa", "lwv", "ltg", "lct", "lwb", "lca")
# 0x0075 Philips, 0x0105 Signify
HUE_MANUFACTURER_IDS = (0x0075, 0x0105)

BRIGHTNESS_RAW_MIN = 1
BRIGHTNESS_RAW_MAX = 254
TEMPERATURE_RAW_MIN = 1
TEMPERATURE_RAW_MAX = 244

_BLUETOOTH_BASE_SUFFIX = "00001000800000805f9b34fb"


def normalize_uuid(uuid: str) -> str:
    return uuid.replace("-", "").lower()


def uuid_matches(candidate: str, target: str) -> bool:
    """Compare UUIDs, accepting 16-bit short forms of base-UUID characteristics."""
    left = normalize_uuid(candidate)
    right = normalize_uuid(target)
    if left == right:
        return True
    if len(left) == 4 and len(right) == 32:
        return right == f"0000{left}{_BLUETOOTH_BASE_SUFFIX}"
    if len(right) == 4 and len(left) == 32:
        return left == f"0000{right}{_BLUETOOTH_BASE_SUFFIX}"
    return False


def is_hue_lamp(
    local_name: Optional[str],
    manufacturer_data: Optional[Mapping[int, bytes]] = None,
    service_uuids: Optional[Iterable[str]] = None,
) -> bool:
    """Match an advertisement against the lamp heuristic.

    Checked in priority order: advertised service UUIDs, then name patterns,
    then the manufacturer company id.
    """
    for uuid in service_uuids or ():
        if normalize_uuid(uuid) in HUE_SERVICE_UUIDS:
            return True

    if local_name:
        name = local_name.lower()
        if name.startswith("philips") or any(marker in name for marker in HUE_NAME_MARKERS):
            return True

    for company_id in (manufacturer_data or {}):
        if company_id in HUE_MANUFACTURER_IDS:
            return True
    return False


def is_known_model(model: str) -> bool:
    return model in KNOWN_MODELS


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def percent_to_brightness(percent: float) -> int:
    return int(round(_clamp(percent, 1, 100) / 100 * BRIGHTNESS_RAW_MAX))


def brightness_to_percent(raw: int) -> int:
    raw = int(_clamp(raw, BRIGHTNESS_RAW_MIN, BRIGHTNESS_RAW_MAX))
    return max(1, int(round(raw / BRIGHTNESS_RAW_MAX * 100)))


def percent_to_temperature(
    percent: float,
    minimum: int = TEMPERATURE_RAW_MIN,
    maximum: int = TEMPERATURE_RAW_MAX,
) -> int:
    """Map 1 (warmest) .. 100 (coolest) onto the lamp's raw range.

    ``maximum`` is the warm-end bound discovered for the lamp; the cool end
    ``minimum`` always maps to 100%.
    """
    percent = _clamp(percent, 1, 100)
    if maximum <= minimum:
        return minimum
    return int(round(maximum - (percent - 1) / 99 * (maximum - minimum)))


def temperature_to_percent(
    raw: int,
    minimum: int = TEMPERATURE_RAW_MIN,
    maximum: int = TEMPERATURE_RAW_MAX,
) -> int:
    if maximum <= minimum:
        return 100
    raw = int(_clamp(raw, minimum, maximum))
    return int(round(1 + (maximum - raw) / (maximum - minimum) * 99))


def build_control_command(
    power: Optional[bool] = None,
    brightness: Optional[int] = None,
    temperature: Optional[int] = None,
) -> bytes:
    """Build a combined control write of type/length/value triplets.

    ``brightness`` and ``temperature`` are raw values.
    """
    command = bytearray()
    if power is not None:
        command += bytes((0x01, 0x01, 0x01 if power else 0x00))
    if brightness is not None:
        command += bytes((0x02, 0x01, int(_clamp(brightness, BRIGHTNESS_RAW_MIN, BRIGHTNESS_RAW_MAX))))
    if temperature is not None:
        raw = int(_clamp(temperature, TEMPERATURE_RAW_MIN, TEMPERATURE_RAW_MAX))
        command += bytes((0x03, 0x02, raw, 0x01))
    return bytes(command)


def encode_power(on: bool) -> bytes:
    return bytes((0x01 if on else 0x00,))


def encode_brightness(raw: int) -> bytes:
    return bytes((int(_clamp(raw, BRIGHTNESS_RAW_MIN, BRIGHTNESS_RAW_MAX)),))


def encode_temperature(raw: int) -> bytes:
    return bytes((int(_clamp(raw, TEMPERATURE_RAW_MIN, TEMPERATURE_RAW_MAX)), 0x01))


def parse_power(data: Optional[bytes]) -> Optional[bool]:
    if not data:
        return None
    return data[0] == 0x01


def parse_brightness(data: Optional[bytes]) -> Optional[int]:
    if not data:
        return None
    return data[0]


def parse_temperature(data: Optional[bytes]) -> Optional[int]:
    """Raw temperature, or None when the lamp reports it as disabled."""
    if not data or len(data) < 2 or data[1] != 0x01:
        return None
    return data[0]


def parse_text(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return bytes(data).decode("utf-8", errors="replace").strip("\x00").strip()
