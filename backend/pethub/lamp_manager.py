from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .connection import ConnectionStatus, backoff_delay
from .controllers import (
    BLE_ERRORS,
    Advertisement,
    BluetoothCentral,
    FailureKind,
    GattCharacteristic,
    classify_ble_error,
    normalize_address,
)
from .controllers.lamp_protocol import (
    CHARACTERISTIC_ROLES,
    TEMPERATURE_RAW_MAX,
    TEMPERATURE_RAW_MIN,
    brightness_to_percent,
    build_control_command,
    encode_brightness,
    encode_power,
    encode_temperature,
    is_hue_lamp,
    is_known_model,
    parse_brightness,
    parse_power,
    parse_temperature,
    parse_text,
    percent_to_brightness,
    percent_to_temperature,
    temperature_to_percent,
    uuid_matches,
)
from .errors import (
    AuthorizationRequiredError,
    CommandFailedError,
    ConnectionTimeoutError,
    DeviceNotFoundError,
    NotConnectableError,
    StatusTimeoutError,
    TransportError,
)

logger = logging.getLogger(__name__)

LAMP_STATE_FILE = Path(os.getenv("PETHUB_LAMP_STORE", "state/hue-lamps.json"))
LAMP_BLACKLIST_FILE = Path(os.getenv("PETHUB_LAMP_BLACKLIST_STORE", "state/hue-lamps-blacklist.json"))

DISABLE_BLUETOOTH = os.getenv("PETHUB_DISABLE_BLUETOOTH", "").lower() in ("1", "true", "yes", "on")
SCAN_INTERVAL = float(os.getenv("PETHUB_SCAN_INTERVAL", "10"))
SCAN_DURATION = float(os.getenv("PETHUB_SCAN_DURATION", "5"))
LAMP_CONNECT_TIMEOUT = float(os.getenv("PETHUB_LAMP_CONNECT_TIMEOUT", "15"))
LAMP_POLL_INTERVAL = float(os.getenv("PETHUB_LAMP_POLL_INTERVAL", "30"))
RECONNECT_INITIAL_DELAY = float(os.getenv("PETHUB_RECONNECT_INITIAL_DELAY", "2"))
RECONNECT_MAX_DELAY = float(os.getenv("PETHUB_RECONNECT_MAX_DELAY", "60"))
RECONNECT_JITTER = float(os.getenv("PETHUB_RECONNECT_JITTER", "1"))

OPERATION_TIMEOUT = 5.0
REACHABILITY_TIMEOUT = 2.0
# Failure counts after which a lamp that never connected is blacklisted.
TIMEOUT_BLACKLIST_THRESHOLD = 3
FAILURE_BLACKLIST_THRESHOLD = 5

_NOTIFY_ROLES = ("power", "brightness", "temperature", "control")
_INFO_ROLES = ("model", "manufacturer", "firmware", "device_name")


@dataclass
class LampConfig:
    id: str
    name: str
    address: str
    model: Optional[str] = None
    has_connected_once: bool = False

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, entry: Dict[str, Any]) -> "LampConfig":
        address = str(entry.get("address") or entry["id"])
        return cls(
            id=str(entry.get("id") or address),
            name=str(entry.get("name") or address),
            address=address,
            model=entry.get("model") or None,
            has_connected_once=bool(entry.get("has_connected_once", entry.get("hasConnectedOnce", False))),
        )


@dataclass
class LampState:
    is_on: bool = False
    brightness: int = 100
    temperature: Optional[int] = None
    temperature_min: int = TEMPERATURE_RAW_MIN
    temperature_max: int = TEMPERATURE_RAW_MAX
    reachable: bool = False


@dataclass
class LampInfo:
    model: Optional[str] = None
    manufacturer: Optional[str] = None
    firmware: Optional[str] = None
    device_name: Optional[str] = None


@dataclass
class LampConnection:
    config: LampConfig
    device: Any = None
    link: Any = None
    characteristics: Dict[str, GattCharacteristic] = field(default_factory=dict)
    state: LampState = field(default_factory=LampState)
    info: LampInfo = field(default_factory=LampInfo)
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_seen: Optional[float] = None
    reconnect_attempts: int = 0
    reconnect_task: Optional[asyncio.Task] = None
    pairing_required: bool = False
    connection_failures: int = 0
    temperature_calibrated: bool = False
    last_error: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def lamp_id(self) -> str:
        return self.config.id

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED and self.link is not None and self.link.is_connected


class LampManager:
    """Discovers Hue Bluetooth lamps and keeps a GATT link to each one.

    Every lamp has its own lock; connects, reads and writes for one lamp run
    one at a time while different lamps proceed independently. When Bluetooth
    is disabled the manager stays inert and reports an empty lamp list.
    """

    def __init__(
        self,
        central: Optional[Any] = None,
        *,
        config_path: Path = LAMP_STATE_FILE,
        blacklist_path: Path = LAMP_BLACKLIST_FILE,
        enabled: bool = not DISABLE_BLUETOOTH,
        scan_interval: float = SCAN_INTERVAL,
        scan_duration: float = SCAN_DURATION,
        connect_timeout: float = LAMP_CONNECT_TIMEOUT,
        poll_interval: float = LAMP_POLL_INTERVAL,
        operation_timeout: float = OPERATION_TIMEOUT,
        reachability_timeout: float = REACHABILITY_TIMEOUT,
        reconnect_initial_delay: float = RECONNECT_INITIAL_DELAY,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY,
        reconnect_jitter: float = RECONNECT_JITTER,
        timeout_blacklist_threshold: int = TIMEOUT_BLACKLIST_THRESHOLD,
        failure_blacklist_threshold: int = FAILURE_BLACKLIST_THRESHOLD,
        jitter_source: Callable[[], float] = random.random,
    ) -> None:
        self.lamps: Dict[str, LampConnection] = {}
        self._central = central
        self._config_path = Path(config_path)
        self._blacklist_path = Path(blacklist_path)
        self._enabled = enabled
        self._scan_interval = scan_interval
        self._scan_duration = scan_duration
        self._connect_timeout = connect_timeout
        self._poll_interval = poll_interval
        self._operation_timeout = operation_timeout
        self._reachability_timeout = reachability_timeout
        self._reconnect_initial_delay = reconnect_initial_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._reconnect_jitter = reconnect_jitter
        self._timeout_blacklist_threshold = timeout_blacklist_threshold
        self._failure_blacklist_threshold = failure_blacklist_threshold
        self._jitter_source = jitter_source
        self._blacklist: Set[str] = set()
        self._scanning = False
        self._stopping = False
        self._scan_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._enabled

    # ------------------------------------------------------------------
    # Lifecycle and persistence
    # ------------------------------------------------------------------

    async def initialize(self, background: bool = True) -> None:
        self._stopping = False
        if not self._enabled:
            logger.info("Bluetooth disabled; lamp manager is inactive")
            return
        if self._central is None:
            self._central = BluetoothCentral(connect_timeout=self._connect_timeout)
        self._blacklist = self._load_blacklist()
        self.lamps = {}
        for config in self._load_configs():
            if self._is_blacklisted(config.id, config.address):
                logger.info("Skipping blacklisted lamp %s from configuration", config.address)
                continue
            self.lamps[config.id] = LampConnection(config=config)
        logger.info(
            "Lamp manager ready with %d known lamps and %d blacklisted addresses",
            len(self.lamps),
            len(self._blacklist),
        )
        if background:
            self._scan_task = asyncio.create_task(self._scan_loop())
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def shutdown(self) -> None:
        self._stopping = True
        tasks = [self._scan_task, self._poll_task, *self._background]
        tasks.extend(conn.reconnect_task for conn in self.lamps.values())
        pending = [task for task in tasks if task is not None and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._scan_task = self._poll_task = None
        links = []
        for conn in self.lamps.values():
            conn.reconnect_task = None
            links.append(self._detach_link(conn))
        await asyncio.gather(*(self._close_link(link) for link in links))
        logger.info("Lamp manager stopped")

    def _load_configs(self) -> List[LampConfig]:
        if not self._config_path.exists():
            return []
        try:
            data = json.loads(self._config_path.read_text())
        except (OSError, ValueError):
            logger.exception("Failed to read lamp configuration from %s", self._config_path)
            return []
        configs = []
        for entry in data if isinstance(data, list) else []:
            try:
                configs.append(LampConfig.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid lamp entry %r: %s", entry, exc)
        return configs

    def _load_blacklist(self) -> Set[str]:
        if not self._blacklist_path.exists():
            return set()
        try:
            data = json.loads(self._blacklist_path.read_text())
        except (OSError, ValueError):
            logger.exception("Failed to read lamp blacklist from %s", self._blacklist_path)
            return set()
        return {str(address) for address in data} if isinstance(data, list) else set()

    def _persist_configs(self) -> None:
        payload = [conn.config.to_dict() for conn in self.lamps.values()]
        try:
            self._config_path.parent.mkdir(parents=True, exist_ok=True)
            self._config_path.write_text(json.dumps(payload, indent=2))
        except OSError:
            logger.exception("Failed to persist lamp configuration to %s", self._config_path)

    def _persist_blacklist(self) -> None:
        try:
            self._blacklist_path.parent.mkdir(parents=True, exist_ok=True)
            self._blacklist_path.write_text(json.dumps(sorted(self._blacklist), indent=2))
        except OSError:
            logger.exception("Failed to persist lamp blacklist to %s", self._blacklist_path)

    def _get(self, lamp_id: str) -> LampConnection:
        conn = self.lamps.get(lamp_id)
        if conn is None:
            raise DeviceNotFoundError(f"Unknown lamp: {lamp_id}")
        return conn

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _scan_loop(self) -> None:
        while not self._stopping:
            try:
                await self._scan_burst(connect=True)
            except BLE_ERRORS as exc:
                logger.warning("BLE scan failed: %s", exc)
            await asyncio.sleep(max(0.0, self._scan_interval - self._scan_duration))

    async def _scan_burst(self, connect: bool) -> Set[str]:
        seen: Set[str] = set()
        if self._scanning:
            logger.debug("Scan already running; skipping burst")
            return seen
        self._scanning = True

        def _on_advertisement(adv: Advertisement) -> None:
            lamp_id = self._handle_advertisement(adv, connect=connect)
            if lamp_id is not None:
                seen.add(lamp_id)

        try:
            await self._central.scan(self._scan_duration, _on_advertisement)
        finally:
            self._scanning = False
        return seen

    def _is_blacklisted(self, *identifiers: str) -> bool:
        return any(identifier in self._blacklist for identifier in identifiers if identifier)

    def _handle_advertisement(self, adv: Advertisement, connect: bool = True) -> Optional[str]:
        """Register or refresh a lamp from one advertisement; returns its id when accepted."""
        if self._stopping:
            return None
        if not is_hue_lamp(adv.name, adv.manufacturer_data, adv.service_uuids):
            return None
        try:
            lamp_id = normalize_address(adv.address)
        except ValueError:
            return None
        if self._is_blacklisted(lamp_id, adv.address):
            return None

        conn = self.lamps.get(lamp_id)
        if conn is None:
            config = LampConfig(
                id=lamp_id,
                name=adv.name or f"Hue Lamp {lamp_id[-5:]}",
                address=adv.address,
            )
            conn = LampConnection(config=config)
            self.lamps[lamp_id] = conn
            self._persist_configs()
            logger.info("Discovered lamp %s (%s)", config.name, lamp_id)

        if adv.device is not None:
            conn.device = adv.device
        conn.last_seen = time.time()
        conn.state.reachable = True

        idle = conn.status is ConnectionStatus.DISCONNECTED and not conn.lock.locked()
        reconnect_pending = conn.reconnect_task is not None and not conn.reconnect_task.done()
        if connect and idle and not reconnect_pending:
            self._spawn(self._connect_quietly(conn))
        return lamp_id

    async def trigger_scan(self) -> Dict[str, Any]:
        """Run one scan pass, re-check connected lamps and connect newly seen ones."""
        if not self._enabled:
            return {"disabled": True, "discovered": 0, "verified": 0, "lost": 0, "connecting": 0}
        seen = await self._scan_burst(connect=False)

        connected = [conn for conn in self.lamps.values() if conn.status is ConnectionStatus.CONNECTED]
        verified = await asyncio.gather(*(self._verify_connected(conn) for conn in connected))

        candidates = []
        for lamp_id in seen:
            conn = self.lamps.get(lamp_id)
            if conn is not None and conn.status is ConnectionStatus.DISCONNECTED:
                candidates.append(conn)
        await asyncio.gather(*(self._connect_quietly(conn) for conn in candidates))

        return {
            "disabled": False,
            "discovered": len(seen),
            "verified": sum(1 for ok in verified if ok),
            "lost": sum(1 for ok in verified if not ok),
            "connecting": len(candidates),
        }

    async def _verify_connected(self, conn: LampConnection) -> bool:
        async with conn.lock:
            if conn.status is not ConnectionStatus.CONNECTED or conn.link is None:
                return False
            probe = conn.characteristics.get("power") or next(iter(conn.characteristics.values()), None)
            try:
                if probe is None or not conn.link.is_connected:
                    raise NotConnectableError(f"Lamp {conn.lamp_id} has no usable link")
                await asyncio.wait_for(conn.link.read(probe), self._reachability_timeout)
            except (NotConnectableError, *BLE_ERRORS) as exc:
                logger.info("Lamp %s did not answer: %s", conn.config.name, str(exc) or type(exc).__name__)
                await self._invalidate(conn)
                return False
            try:
                self._resolve_characteristics(conn)
                await self._read_state(conn)
            except BLE_ERRORS as exc:
                logger.info("Refreshing lamp %s failed: %s", conn.config.name, exc)
                await self._invalidate(conn)
                return False
            return True

    # ------------------------------------------------------------------
    # Connection state machine
    # ------------------------------------------------------------------

    async def connect_lamp(self, lamp_id: str) -> Dict[str, Any]:
        conn = self._get(lamp_id)
        async with conn.lock:
            await self._connect_locked(conn)
        return self._snapshot(conn)

    async def disconnect_lamp(self, lamp_id: str) -> None:
        conn = self._get(lamp_id)
        async with conn.lock:
            self._cancel_reconnect(conn)
            conn.reconnect_attempts = 0
            link = self._detach_link(conn)
            await self._close_link(link)
        logger.info("Disconnected lamp %s", conn.config.name)

    async def connect_all_lamps(self) -> Dict[str, bool]:
        conns = list(self.lamps.values())
        results = await asyncio.gather(*(self._connect_quietly(conn) for conn in conns))
        return {conn.lamp_id: ok for conn, ok in zip(conns, results)}

    async def disconnect_all_lamps(self) -> None:
        await asyncio.gather(*(self.disconnect_lamp(lamp_id) for lamp_id in list(self.lamps)))

    async def _connect_quietly(self, conn: LampConnection) -> bool:
        if self.lamps.get(conn.lamp_id) is not conn:
            return False
        try:
            async with conn.lock:
                await self._connect_locked(conn)
        except TransportError as exc:
            logger.debug("Background connect to lamp %s failed: %s", conn.lamp_id, exc)
            return False
        return True

    async def _connect_locked(self, conn: LampConnection) -> None:
        """Caller holds ``conn.lock``."""
        if conn.is_connected:
            return
        if self._stopping:
            raise NotConnectableError(f"Cannot connect lamp {conn.lamp_id}: manager is stopping")
        if self.lamps.get(conn.lamp_id) is not conn:
            raise NotConnectableError(f"Lamp {conn.lamp_id} is no longer managed")

        self._cancel_reconnect(conn)
        await self._close_link(self._detach_link(conn))
        conn.status = ConnectionStatus.CONNECTING
        logger.info("Connecting to lamp %s (%s)", conn.config.name, conn.config.address)

        link = None

        def _on_disconnect() -> None:
            self._handle_link_lost(conn, link)

        link = self._central.create_link(conn.device or conn.config.address, _on_disconnect)
        established = False
        try:
            await asyncio.wait_for(link.connect(), self._connect_timeout)
            if self._stopping or self.lamps.get(conn.lamp_id) is not conn:
                raise NotConnectableError(f"Lamp {conn.lamp_id} was dropped while connecting")
            conn.link = link
            self._resolve_characteristics(conn)
            await self._subscribe_notifications(conn)
            await self._read_state(conn)
            established = True
        except BLE_ERRORS as exc:
            raise self._connect_failed(conn, exc) from exc
        finally:
            # Also runs on cancellation, so the GATT client is never left open.
            if not established:
                if conn.link is link:
                    conn.link = None
                conn.characteristics = {}
                conn.status = ConnectionStatus.DISCONNECTED
                await self._close_link(link)

        await self._read_info(conn)
        if not conn.temperature_calibrated and "temperature" in conn.characteristics:
            await self._calibrate_temperature(conn)

        conn.status = ConnectionStatus.CONNECTED
        conn.state.reachable = True
        conn.pairing_required = False
        conn.connection_failures = 0
        conn.reconnect_attempts = 0
        conn.last_error = None
        if not conn.config.has_connected_once:
            conn.config.has_connected_once = True
            self._persist_configs()
        logger.info("Connected to lamp %s", conn.config.name)

    def _connect_failed(self, conn: LampConnection, exc: BaseException) -> TransportError:
        """Classify a connect failure, blacklisting lamps that were never ours."""
        kind = classify_ble_error(exc)
        conn.connection_failures += 1
        conn.last_error = str(exc) or type(exc).__name__
        name = conn.config.name
        logger.warning(
            "Connecting to lamp %s failed (%s, %d failures): %s",
            name,
            kind.value,
            conn.connection_failures,
            conn.last_error,
        )

        if kind is FailureKind.AUTHORIZATION:
            conn.pairing_required = True
            logger.warning("Lamp %s requires pairing", name)
            if not conn.config.has_connected_once:
                self._remove_and_blacklist(conn, "pairing rejected")
            return AuthorizationRequiredError(f"Lamp {name} is not paired with this hub")

        if not conn.config.has_connected_once:
            timed_out = kind is FailureKind.TIMEOUT and conn.connection_failures >= self._timeout_blacklist_threshold
            if timed_out or conn.connection_failures >= self._failure_blacklist_threshold:
                conn.pairing_required = True
                self._remove_and_blacklist(conn, f"{conn.connection_failures} failed connects")
                return NotConnectableError(f"Lamp {name} never connected and was blacklisted")

        self._schedule_reconnect(conn)
        if kind is FailureKind.TIMEOUT:
            return ConnectionTimeoutError(f"Connecting to lamp {name} timed out")
        return NotConnectableError(f"Connecting to lamp {name} failed: {conn.last_error}")

    def _handle_link_lost(self, conn: LampConnection, link: Any) -> None:
        if link is None or conn.link is not link:
            return
        conn.link = None
        conn.characteristics = {}
        conn.status = ConnectionStatus.DISCONNECTED
        conn.state.reachable = False
        logger.info("Lamp %s disconnected", conn.config.name)
        self._schedule_reconnect(conn)

    def _schedule_reconnect(self, conn: LampConnection) -> None:
        if self._stopping or self.lamps.get(conn.lamp_id) is not conn:
            return
        if conn.reconnect_task is not None and not conn.reconnect_task.done():
            return
        delay = backoff_delay(
            conn.reconnect_attempts,
            self._reconnect_initial_delay,
            self._reconnect_max_delay,
            self._reconnect_jitter,
            self._jitter_source,
        )
        conn.reconnect_attempts += 1
        logger.debug("Reconnecting lamp %s in %.1fs", conn.config.name, delay)
        conn.reconnect_task = asyncio.create_task(self._reconnect_after(conn, delay))

    async def _reconnect_after(self, conn: LampConnection, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._stopping or self.lamps.get(conn.lamp_id) is not conn:
            return
        async with conn.lock:
            conn.reconnect_task = None
            if conn.is_connected:
                return
            try:
                await self._connect_locked(conn)
            except TransportError as exc:
                logger.debug("Reconnect to lamp %s failed: %s", conn.lamp_id, exc)

    def _cancel_reconnect(self, conn: LampConnection) -> None:
        task = conn.reconnect_task
        conn.reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _detach_link(self, conn: LampConnection) -> Any:
        link = conn.link
        conn.link = None
        conn.characteristics = {}
        conn.status = ConnectionStatus.DISCONNECTED
        return link

    async def _close_link(self, link: Any) -> None:
        if link is None:
            return
        try:
            await asyncio.wait_for(link.disconnect(), self._operation_timeout)
        except BLE_ERRORS:
            logger.debug("GATT disconnect failed", exc_info=True)

    async def _invalidate(self, conn: LampConnection) -> None:
        """Drop a link whose handles can no longer be trusted and retry later."""
        link = self._detach_link(conn)
        conn.state.reachable = False
        await self._close_link(link)
        self._schedule_reconnect(conn)

    # ------------------------------------------------------------------
    # GATT helpers
    # ------------------------------------------------------------------

    def _resolve_characteristics(self, conn: LampConnection) -> None:
        resolved: Dict[str, GattCharacteristic] = {}
        for char in self._link(conn).characteristics():
            for role, uuid in CHARACTERISTIC_ROLES.items():
                if role not in resolved and uuid_matches(char.uuid, uuid):
                    resolved[role] = char
        conn.characteristics = resolved
        logger.debug("Lamp %s characteristics: %s", conn.lamp_id, sorted(resolved))

    def _link(self, conn: LampConnection) -> Any:
        link = conn.link
        if link is None:
            raise ConnectionError(f"Lamp {conn.lamp_id} has no GATT link")
        return link

    async def _read(self, conn: LampConnection, char: GattCharacteristic) -> bytes:
        return await asyncio.wait_for(self._link(conn).read(char), self._operation_timeout)

    async def _write(self, conn: LampConnection, char: GattCharacteristic, payload: bytes) -> None:
        await asyncio.wait_for(self._link(conn).write(char, payload), self._operation_timeout)

    async def _read_state(self, conn: LampConnection) -> None:
        chars = conn.characteristics
        state = conn.state
        if "power" in chars:
            is_on = parse_power(await self._read(conn, chars["power"]))
            if is_on is not None:
                state.is_on = is_on
        if "brightness" in chars:
            raw = parse_brightness(await self._read(conn, chars["brightness"]))
            if raw is not None:
                state.brightness = brightness_to_percent(raw)
        if "temperature" in chars:
            raw = parse_temperature(await self._read(conn, chars["temperature"]))
            if raw is not None:
                state.temperature = temperature_to_percent(raw, state.temperature_min, state.temperature_max)

    async def _read_info(self, conn: LampConnection) -> None:
        info = LampInfo()
        for role in _INFO_ROLES:
            char = conn.characteristics.get(role)
            if char is None:
                continue
            try:
                setattr(info, role, parse_text(await self._read(conn, char)) or None)
            except BLE_ERRORS as exc:
                logger.debug("Reading %s of lamp %s failed: %s", role, conn.lamp_id, exc)
        conn.info = info
        if info.model and info.model != conn.config.model:
            conn.config.model = info.model
            self._persist_configs()
            if not is_known_model(info.model):
                logger.info("Lamp %s reports unlisted model %s", conn.config.name, info.model)

    async def _subscribe_notifications(self, conn: LampConnection) -> None:
        handlers = {
            "power": self._on_power_notification,
            "brightness": self._on_brightness_notification,
            "temperature": self._on_temperature_notification,
            "control": self._on_control_notification,
        }
        for role in _NOTIFY_ROLES:
            char = conn.characteristics.get(role)
            if char is None or not char.can_notify:
                continue
            handler = handlers[role]
            try:
                await asyncio.wait_for(
                    self._link(conn).subscribe(char, lambda data, handler=handler: handler(conn, data)),
                    self._operation_timeout,
                )
            except BLE_ERRORS as exc:
                logger.debug("Subscribing to %s on lamp %s failed: %s", role, conn.lamp_id, exc)

    def _on_power_notification(self, conn: LampConnection, data: bytes) -> None:
        is_on = parse_power(data)
        if is_on is not None:
            conn.state.is_on = is_on

    def _on_brightness_notification(self, conn: LampConnection, data: bytes) -> None:
        raw = parse_brightness(data)
        if raw is not None:
            conn.state.brightness = brightness_to_percent(raw)

    def _on_temperature_notification(self, conn: LampConnection, data: bytes) -> None:
        raw = parse_temperature(data)
        if raw is not None:
            conn.state.temperature = temperature_to_percent(
                raw, conn.state.temperature_min, conn.state.temperature_max
            )

    def _on_control_notification(self, conn: LampConnection, _data: bytes) -> None:
        if not self._stopping:
            self._spawn(self._refresh_from_notification(conn))

    async def _refresh_from_notification(self, conn: LampConnection) -> None:
        async with conn.lock:
            if not conn.is_connected:
                return
            try:
                await self._read_state(conn)
            except BLE_ERRORS as exc:
                logger.debug("State refresh for lamp %s failed: %s", conn.lamp_id, exc)

    async def _calibrate_temperature(self, conn: LampConnection) -> None:
        """Probe the warm end the lamp actually accepts, then restore its setting."""
        char = conn.characteristics["temperature"]
        try:
            original = await self._read(conn, char)
            await self._write(conn, char, encode_temperature(TEMPERATURE_RAW_MAX))
            reported = parse_temperature(await self._read(conn, char))
            if original:
                await self._write(conn, char, bytes(original))
        except BLE_ERRORS as exc:
            logger.warning("Temperature calibration for lamp %s failed: %s", conn.config.name, exc)
            return
        state = conn.state
        state.temperature_min = TEMPERATURE_RAW_MIN
        if reported is not None and reported > TEMPERATURE_RAW_MIN:
            state.temperature_max = reported
        raw = parse_temperature(original)
        if raw is not None:
            state.temperature = temperature_to_percent(raw, state.temperature_min, state.temperature_max)
        conn.temperature_calibrated = True
        logger.info(
            "Lamp %s temperature range %d-%d",
            conn.config.name,
            state.temperature_min,
            state.temperature_max,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _require_connection(self, conn: LampConnection) -> None:
        if not conn.is_connected:
            await self._connect_locked(conn)

    async def _send(self, conn: LampConnection, char: GattCharacteristic, payload: bytes) -> None:
        try:
            await self._write(conn, char, payload)
        except BLE_ERRORS as exc:
            logger.warning("Write to lamp %s failed, dropping its handles: %s", conn.config.name, exc)
            await self._invalidate(conn)
            raise CommandFailedError(conn.lamp_id, exc) from exc

    async def set_power(self, lamp_id: str, on: bool) -> bool:
        conn = self._get(lamp_id)
        async with conn.lock:
            await self._require_connection(conn)
            control = conn.characteristics.get("control")
            if control is not None:
                await self._send(conn, control, build_control_command(power=on))
            elif "power" in conn.characteristics:
                await self._send(conn, conn.characteristics["power"], encode_power(on))
            else:
                return False
            conn.state.is_on = on
        return True

    async def set_brightness(self, lamp_id: str, percent: int) -> bool:
        conn = self._get(lamp_id)
        percent = max(1, min(100, int(percent)))
        raw = percent_to_brightness(percent)
        async with conn.lock:
            await self._require_connection(conn)
            control = conn.characteristics.get("control")
            if control is not None:
                await self._send(conn, control, build_control_command(brightness=raw))
            elif "brightness" in conn.characteristics:
                await self._send(conn, conn.characteristics["brightness"], encode_brightness(raw))
            else:
                return False
            conn.state.brightness = percent
        return True

    async def set_temperature(self, lamp_id: str, percent: int) -> bool:
        conn = self._get(lamp_id)
        percent = max(1, min(100, int(percent)))
        async with conn.lock:
            await self._require_connection(conn)
            if "temperature" not in conn.characteristics:
                return False
            state = conn.state
            raw = percent_to_temperature(percent, state.temperature_min, state.temperature_max)
            control = conn.characteristics.get("control")
            if control is not None:
                await self._send(conn, control, build_control_command(temperature=raw))
            else:
                await self._send(conn, conn.characteristics["temperature"], encode_temperature(raw))
            state.temperature = percent
        return True

    async def set_lamp_state(self, lamp_id: str, on: bool, brightness: Optional[int] = None) -> bool:
        conn = self._get(lamp_id)
        percent = max(1, min(100, int(brightness))) if brightness is not None else None
        raw = percent_to_brightness(percent) if percent is not None else None
        async with conn.lock:
            await self._require_connection(conn)
            chars = conn.characteristics
            if "control" in chars:
                await self._send(conn, chars["control"], build_control_command(power=on, brightness=raw))
            elif "power" in chars:
                await self._send(conn, chars["power"], encode_power(on))
                if raw is not None and on and "brightness" in chars:
                    await self._send(conn, chars["brightness"], encode_brightness(raw))
            else:
                return False
            conn.state.is_on = on
            if percent is not None:
                conn.state.brightness = percent
        return True

    async def rename_lamp(self, lamp_id: str, name: str) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ValueError("Lamp name must not be empty")
        conn = self._get(lamp_id)
        async with conn.lock:
            conn.config.name = name
            self._persist_configs()
            char = conn.characteristics.get("device_name")
            if conn.is_connected and char is not None:
                try:
                    await self._write(conn, char, name.encode("utf-8"))
                except BLE_ERRORS as exc:
                    logger.warning("Writing name to lamp %s failed: %s", lamp_id, exc)
        return self._snapshot(conn)

    async def refresh_lamp_state(self, lamp_id: str) -> Dict[str, Any]:
        conn = self._get(lamp_id)
        async with conn.lock:
            await self._require_connection(conn)
            try:
                await self._read_state(conn)
            except BLE_ERRORS as exc:
                await self._invalidate(conn)
                raise StatusTimeoutError(lamp_id, exc) from exc
        return self._snapshot(conn)

    async def _poll_loop(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self._poll_interval)
            for conn in list(self.lamps.values()):
                if self._stopping or not conn.is_connected or conn.lock.locked():
                    continue
                async with conn.lock:
                    if not conn.is_connected:
                        continue
                    try:
                        await self._read_state(conn)
                    except BLE_ERRORS as exc:
                        logger.info("Polling lamp %s failed: %s", conn.config.name, exc)
                        await self._invalidate(conn)

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------

    def _remove_and_blacklist(self, conn: LampConnection, reason: str) -> None:
        self._cancel_reconnect(conn)
        self.lamps.pop(conn.lamp_id, None)
        self._blacklist.add(conn.config.address)
        self._blacklist.add(conn.lamp_id)
        self._persist_configs()
        self._persist_blacklist()
        logger.warning("Blacklisted lamp %s (%s): %s", conn.config.name, conn.config.address, reason)

    async def blacklist_lamp(self, lamp_id: str) -> bool:
        conn = self._get(lamp_id)
        async with conn.lock:
            link = self._detach_link(conn)
            self._remove_and_blacklist(conn, "requested")
            await self._close_link(link)
        return True

    def get_blacklist(self) -> List[str]:
        return sorted(self._blacklist)

    def unblacklist_address(self, address: str) -> bool:
        candidates = {address}
        try:
            candidates.add(normalize_address(address))
        except ValueError:
            pass
        removed = candidates & self._blacklist
        if not removed:
            return False
        self._blacklist -= removed
        self._persist_blacklist()
        logger.info("Removed %s from the lamp blacklist", address)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _snapshot(self, conn: LampConnection) -> Dict[str, Any]:
        chars = conn.characteristics
        return {
            **conn.config.to_dict(),
            "status": conn.status.value,
            "connected": conn.is_connected,
            "connecting": conn.status is ConnectionStatus.CONNECTING,
            "pairing_required": conn.pairing_required,
            "connection_failures": conn.connection_failures,
            "reconnect_attempts": conn.reconnect_attempts,
            "last_seen": conn.last_seen,
            "last_error": conn.last_error,
            "state": asdict(conn.state),
            "info": asdict(conn.info),
            "capabilities": {
                "power": "power" in chars or "control" in chars,
                "brightness": "brightness" in chars or "control" in chars,
                "temperature": "temperature" in chars,
                "combined_control": "control" in chars,
            },
        }

    def get_all_lamps(self) -> List[Dict[str, Any]]:
        return [self._snapshot(conn) for conn in self.lamps.values()]

    def get_lamp(self, lamp_id: str) -> Dict[str, Any]:
        return self._snapshot(self._get(lamp_id))

    def get_connection_stats(self) -> Dict[str, Any]:
        if not self._enabled:
            return {
                "disabled": True,
                "message": "Bluetooth is disabled on this host",
                "total": 0,
                "connected": 0,
                "disconnected": 0,
                "reachable": 0,
                "scanning": False,
                "blacklisted": 0,
            }
        lamps = list(self.lamps.values())
        connected = sum(1 for conn in lamps if conn.is_connected)
        return {
            "disabled": False,
            "total": len(lamps),
            "connected": connected,
            "disconnected": len(lamps) - connected,
            "reachable": sum(1 for conn in lamps if conn.state.reachable),
            "scanning": self._scanning,
            "blacklisted": len(self._blacklist),
        }
