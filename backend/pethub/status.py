"""Translate raw data point maps into named appliance status structures.

The translators never raise on odd input: an absent field falls back to its
documented default and a value of the wrong type or out of range becomes the
``UNKNOWN`` sentinel.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

UNKNOWN = "unknown"

# Control characters in decrypted payloads usually mean a wrong local key or
# protocol version rather than a real value.
_CORRUPTED_RE = re.compile(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F-\x9F]")

_MILLISECONDS_THRESHOLD = 1_000_000_000_000


class DeviceKind(str, Enum):
    FEEDER = "feeder"
    LITTER_BOX = "litter-box"
    FOUNTAIN = "fountain"
    UNKNOWN = "unknown"


def classify_device(product_name: str, category: str) -> DeviceKind:
    """Infer the appliance kind from the vendor product name and category code."""
    name = (product_name or "").lower()
    code = (category or "").lower()
    if "feeder" in name or code == "cwwsq":
        return DeviceKind.FEEDER
    if "litter" in name or code == "msp":
        return DeviceKind.LITTER_BOX
    if "fountain" in name or code == "cwysj":
        return DeviceKind.FOUNTAIN
    return DeviceKind.UNKNOWN


def is_corrupted_payload(data: Any) -> bool:
    """Return True when any string or bytes inside ``data`` carries control characters."""
    if isinstance(data, str):
        return bool(_CORRUPTED_RE.search(data))
    if isinstance(data, (bytes, bytearray)):
        return is_corrupted_payload(bytes(data).decode("latin-1"))
    if isinstance(data, Mapping):
        return any(is_corrupted_payload(k) or is_corrupted_payload(v) for k, v in data.items())
    if isinstance(data, (list, tuple)):
        return any(is_corrupted_payload(item) for item in data)
    return False


def seconds_to_min_sec(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def minutes_to_time(minutes: int) -> str:
    minutes = max(0, int(minutes)) % (24 * 60)
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def format_duration_minutes(minutes: int) -> str:
    minutes = max(0, int(minutes))
    days, rest = divmod(minutes, 24 * 60)
    hours, mins = divmod(rest, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if days or hours:
        parts.append(f"{hours}h")
    parts.append(f"{mins}m")
    return " ".join(parts)


def _field(dps: Mapping[Any, Any], key: int, default: Any = None) -> Any:
    """Look up a data point by number; devices report keys as strings."""
    if str(key) in dps:
        return dps[str(key)]
    return dps.get(key, default)


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    return default


def _as_int(value: Any, default: int = 0, *, minimum: int = 0, maximum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    if value < minimum or (maximum is not None and value > maximum):
        return default
    return value


def _as_choice(value: Any, choices: tuple) -> str:
    if isinstance(value, str) and value in choices:
        return value
    return UNKNOWN


def _raw_dps(status: Mapping[str, Any]) -> Mapping[Any, Any]:
    """Accept either a full ``{"dps": {...}}`` payload or the bare map."""
    if not isinstance(status, Mapping):
        return {}
    dps = status.get("dps", status)
    return dps if isinstance(dps, Mapping) else {}


# --- feeder -----------------------------------------------------------------


@dataclass
class FeedHistory:
    raw: str
    remaining: Optional[int] = None
    count: Optional[int] = None
    timestamp: Optional[int] = None
    timestamp_readable: Optional[str] = None


@dataclass
class FeedingInfo:
    manual_feed_enabled: bool = True
    last_feed_size: str = UNKNOWN
    last_feed_report: int = 0
    quick_feed_available: bool = False


@dataclass
class FeederSettings:
    sound_enabled: bool = True
    alexa_feed_enabled: bool = False


@dataclass
class FeederSystem:
    fault_status: bool = False
    powered_by: str = UNKNOWN
    ip_address: str = UNKNOWN


@dataclass
class FeederStatus:
    feeding: FeedingInfo = field(default_factory=FeedingInfo)
    settings: FeederSettings = field(default_factory=FeederSettings)
    system: FeederSystem = field(default_factory=FeederSystem)
    history: Optional[FeedHistory] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _history_number(part: str, prefix: str) -> Optional[int]:
    text = part.strip()
    if not text.startswith(prefix):
        return None
    try:
        return int(text[len(prefix):])
    except ValueError:
        return None


def parse_feed_history(value: Any) -> Optional[FeedHistory]:
    """Parse ``"R:<remaining>  C:<count>  T:<unix-ts>"``."""
    if not isinstance(value, str):
        return None
    parts = [p for p in value.split("  ") if p.strip()]
    history = FeedHistory(raw=value)
    if len(parts) > 0:
        history.remaining = _history_number(parts[0], "R:")
    if len(parts) > 1:
        history.count = _history_number(parts[1], "C:")
    if len(parts) > 2:
        history.timestamp = _history_number(parts[2], "T:")
    if history.timestamp is not None:
        seconds = (
            history.timestamp / 1000
            if history.timestamp > _MILLISECONDS_THRESHOLD
            else history.timestamp
        )
        try:
            moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
            history.timestamp_readable = moment.isoformat().replace("+00:00", "Z")
        except (OverflowError, OSError, ValueError):
            history.timestamp_readable = None
    return history


def parse_feeder_status(status: Mapping[str, Any]) -> FeederStatus:
    dps = _raw_dps(status)

    feed_size = _field(dps, 101)
    if isinstance(feed_size, int) and not isinstance(feed_size, bool) and feed_size >= 0:
        last_feed_size = f"{feed_size} portion{'s' if feed_size > 1 else ''}"
    else:
        last_feed_size = UNKNOWN

    power = _field(dps, 105)
    if power is None:
        powered_by = UNKNOWN
    elif power == 0 and not isinstance(power, bool):
        powered_by = "AC Power"
    elif power == 1 and not isinstance(power, bool):
        powered_by = "Battery"
    elif isinstance(power, int) and not isinstance(power, bool):
        powered_by = f"Mode {power}"
    else:
        powered_by = UNKNOWN

    ip_address = _field(dps, 107)
    return FeederStatus(
        feeding=FeedingInfo(
            manual_feed_enabled=_as_bool(_field(dps, 102), True),
            last_feed_size=last_feed_size,
            last_feed_report=_as_int(_field(dps, 15), 0),
            quick_feed_available=_as_bool(_field(dps, 2), False),
        ),
        settings=FeederSettings(
            sound_enabled=_as_bool(_field(dps, 103), True),
            alexa_feed_enabled=_as_bool(_field(dps, 106), False),
        ),
        system=FeederSystem(
            fault_status=bool(_field(dps, 14)),
            powered_by=powered_by,
            ip_address=ip_address if isinstance(ip_address, str) and ip_address else UNKNOWN,
        ),
        history=parse_feed_history(_field(dps, 104)),
    )


# --- litter box -------------------------------------------------------------

LITTER_STATES = ("satnd_by", "stand_by", "cat_inside", "clumping", "cleaning")
LITTER_LEVELS = ("half", "full", "empty", "normal")


@dataclass
class CleanDelay:
    seconds: int = 0
    formatted: str = "0:00"


@dataclass
class SleepMode:
    enabled: bool = False
    start_time_minutes: int = 0
    start_time_formatted: str = "00:00"
    end_time_minutes: int = 0
    end_time_formatted: str = "00:00"


@dataclass
class LitterSensors:
    defecation_duration: int = 0
    defecation_frequency: int = 0
    fault_alarm: int = 0
    litter_level: str = UNKNOWN


@dataclass
class LitterSystem:
    state: str = UNKNOWN
    cleaning_in_progress: bool = False
    maintenance_required: bool = False


@dataclass
class LitterSettings:
    lighting: bool = False
    child_lock: bool = False
    prompt_sound: bool = False
    kitten_mode: bool = False
    automatic_homing: bool = False


@dataclass
class LitterBoxStatus:
    clean_delay: CleanDelay = field(default_factory=CleanDelay)
    sleep_mode: SleepMode = field(default_factory=SleepMode)
    sensors: LitterSensors = field(default_factory=LitterSensors)
    system: LitterSystem = field(default_factory=LitterSystem)
    settings: LitterSettings = field(default_factory=LitterSettings)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_litter_box_status(status: Mapping[str, Any]) -> LitterBoxStatus:
    dps = _raw_dps(status)
    delay = _as_int(_field(dps, 101), 0)
    start = _as_int(_field(dps, 103), 0, maximum=24 * 60 - 1)
    end = _as_int(_field(dps, 104), 0, maximum=24 * 60 - 1)
    return LitterBoxStatus(
        clean_delay=CleanDelay(seconds=delay, formatted=seconds_to_min_sec(delay)),
        sleep_mode=SleepMode(
            enabled=_as_bool(_field(dps, 102), False),
            start_time_minutes=start,
            start_time_formatted=minutes_to_time(start),
            end_time_minutes=end,
            end_time_formatted=minutes_to_time(end),
        ),
        sensors=LitterSensors(
            defecation_duration=_as_int(_field(dps, 106), 0),
            defecation_frequency=_as_int(_field(dps, 105), 0),
            fault_alarm=_as_int(_field(dps, 114), 0),
            litter_level=_as_choice(_field(dps, 112), LITTER_LEVELS),
        ),
        system=LitterSystem(
            # "satnd_by" is how the firmware spells it.
            state=_as_choice(_field(dps, 109), LITTER_STATES),
            cleaning_in_progress=_as_bool(_field(dps, 107), False),
            maintenance_required=_as_bool(_field(dps, 108), False),
        ),
        settings=LitterSettings(
            lighting=_as_bool(_field(dps, 116), False),
            child_lock=_as_bool(_field(dps, 110), False),
            prompt_sound=_as_bool(_field(dps, 117), False),
            kitten_mode=_as_bool(_field(dps, 111), False),
            automatic_homing=_as_bool(_field(dps, 119), False),
        ),
    )


# --- fountain ---------------------------------------------------------------


@dataclass
class FountainStatus:
    power: Optional[bool] = None
    water_time: Optional[int] = None
    water_time_formatted: str = UNKNOWN
    filter_life: Optional[int] = None
    pump_time: Optional[int] = None
    pump_time_formatted: str = UNKNOWN
    water_reset: Optional[bool] = None
    filter_reset: Optional[bool] = None
    pump_reset: Optional[bool] = None
    uv: Optional[bool] = None
    uv_runtime: Optional[int] = None
    uv_runtime_formatted: str = UNKNOWN
    water_level: Any = None
    low_water: Optional[bool] = None
    eco_mode: Any = None
    eco_watering_status: Any = None
    no_water: Optional[bool] = None
    associated_camera: Any = None
    mac_address: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _optional_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    return None


def _optional_minutes(value: Any) -> tuple:
    minutes = _as_int(value, -1)
    if minutes < 0:
        return None, UNKNOWN
    return minutes, format_duration_minutes(minutes)


def parse_fountain_status(status: Mapping[str, Any]) -> FountainStatus:
    dps = _raw_dps(status)
    water_time, water_time_formatted = _optional_minutes(_field(dps, 3))
    pump_time, pump_time_formatted = _optional_minutes(_field(dps, 5))
    uv_runtime, uv_runtime_formatted = _optional_minutes(_field(dps, 11))
    filter_life = _as_int(_field(dps, 4), -1)
    mac_address = _field(dps, 130)
    return FountainStatus(
        power=_optional_bool(_field(dps, 1)),
        water_time=water_time,
        water_time_formatted=water_time_formatted,
        filter_life=filter_life if filter_life >= 0 else None,
        pump_time=pump_time,
        pump_time_formatted=pump_time_formatted,
        water_reset=_optional_bool(_field(dps, 6)),
        filter_reset=_optional_bool(_field(dps, 7)),
        pump_reset=_optional_bool(_field(dps, 8)),
        uv=_optional_bool(_field(dps, 10)),
        uv_runtime=uv_runtime,
        uv_runtime_formatted=uv_runtime_formatted,
        water_level=_field(dps, 12),
        low_water=_optional_bool(_field(dps, 101)),
        eco_mode=_field(dps, 102),
        eco_watering_status=_field(dps, 103),
        no_water=_optional_bool(_field(dps, 104)),
        associated_camera=_field(dps, 110),
        mac_address=mac_address if isinstance(mac_address, str) else None,
        raw={str(k): v for k, v in dps.items()},
    )


def translate_status(kind: DeviceKind, status: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate with the parser matching ``kind``; unknown kinds yield an empty map."""
    if kind is DeviceKind.FEEDER:
        return parse_feeder_status(status).to_dict()
    if kind is DeviceKind.LITTER_BOX:
        return parse_litter_box_status(status).to_dict()
    if kind is DeviceKind.FOUNTAIN:
        return parse_fountain_status(status).to_dict()
    return {}
