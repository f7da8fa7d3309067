from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from . import meal_plan
from .connection import ConnectionStatus, backoff_delay
from .controllers import TuyaTransport
from .errors import (
    CommandFailedError,
    ConnectionTimeoutError,
    CorruptedPayloadError,
    DeviceNotFoundError,
    NotConnectableError,
    StatusTimeoutError,
    TransportError,
    ValidationError,
)
from .meal_plan import MealPlanEntry
from .status import DeviceKind, classify_device, is_corrupted_payload, translate_status

logger = logging.getLogger(__name__)

DEVICE_STATE_FILE = Path(os.getenv("PETHUB_DEVICE_STORE", "state/devices.json"))
MEAL_PLAN_FILE = Path(os.getenv("PETHUB_MEAL_PLAN_STORE", "state/meal-plans.json"))

CONNECT_TIMEOUT = float(os.getenv("PETHUB_CONNECT_TIMEOUT", "10"))
HEARTBEAT_INTERVAL = float(os.getenv("PETHUB_HEARTBEAT_INTERVAL", "30"))
RECONNECT_INITIAL_DELAY = float(os.getenv("PETHUB_RECONNECT_INITIAL_DELAY", "2"))
RECONNECT_MAX_DELAY = float(os.getenv("PETHUB_RECONNECT_MAX_DELAY", "60"))
RECONNECT_JITTER = float(os.getenv("PETHUB_RECONNECT_JITTER", "1"))
MAX_RECONNECT_ATTEMPTS = int(os.getenv("PETHUB_MAX_RECONNECT_ATTEMPTS", "10"))
COMMAND_ATTEMPTS = int(os.getenv("PETHUB_COMMAND_ATTEMPTS", "3"))
STATUS_ATTEMPTS = int(os.getenv("PETHUB_STATUS_ATTEMPTS", "2"))
STATUS_TIMEOUT = float(os.getenv("PETHUB_STATUS_TIMEOUT", "5"))

CONNECT_ATTEMPTS = 3
RETRY_DELAY = 1.0

FEEDER_MEAL_PLAN_FIELD = "1"
FEEDER_FEEDING_FIELD = "3"
LITTER_ACTIVITY_FIELD = "105"
FOUNTAIN_POWER_FIELD = "1"
FOUNTAIN_LOW_WATER_FIELD = "101"


@dataclass(frozen=True)
class DeviceConfig:
    id: str
    name: str
    key: str
    ip: str
    version: str = "3.3"
    port: int = 6668
    category: str = ""
    product_name: str = ""
    model: str = ""

    def to_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        # The local key never leaves the process.
        payload.pop("key", None)
        return payload

    @classmethod
    def from_dict(cls, entry: Dict[str, Any]) -> "DeviceConfig":
        device_id = str(entry["id"])
        return cls(
            id=device_id,
            name=str(entry.get("name") or device_id),
            key=str(entry.get("key") or entry.get("local_key") or ""),
            ip=str(entry.get("ip") or entry.get("address") or ""),
            version=str(entry.get("version") or "3.3"),
            port=int(entry.get("port") or 6668),
            category=str(entry.get("category") or ""),
            product_name=str(entry.get("product_name") or ""),
            model=str(entry.get("model") or ""),
        )


@dataclass
class DeviceConnection:
    config: DeviceConfig
    transport: Any
    kind: DeviceKind = DeviceKind.UNKNOWN
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reconnect_attempts: int = 0
    reconnect_task: Optional[asyncio.Task] = None
    heartbeat_task: Optional[asyncio.Task] = None
    reader_task: Optional[asyncio.Task] = None
    connecting_since: Optional[float] = None
    last_data: Dict[str, Any] = field(default_factory=dict)
    parsed_status: Optional[Dict[str, Any]] = None
    last_update: Optional[float] = None
    last_error: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def device_id(self) -> str:
        return self.config.id


def _cancel(task: Optional[asyncio.Task]) -> Optional[asyncio.Task]:
    if task is None or task.done() or task is asyncio.current_task():
        return None
    task.cancel()
    return task


class DeviceManager:
    """Owns one connection state machine per configured local-protocol appliance.

    Commands and status reads for one device are serialized by that device's
    lock; different devices never wait on each other. Background tasks drive
    reconnection, heartbeats and the inbound data reader.
    """

    def __init__(
        self,
        configs: Optional[Iterable[DeviceConfig]] = None,
        *,
        config_path: Path = DEVICE_STATE_FILE,
        meal_plan_path: Path = MEAL_PLAN_FILE,
        transport_factory: Optional[Callable[[DeviceConfig], Any]] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        connect_attempts: int = CONNECT_ATTEMPTS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        reconnect_initial_delay: float = RECONNECT_INITIAL_DELAY,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY,
        reconnect_jitter: float = RECONNECT_JITTER,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        command_attempts: int = COMMAND_ATTEMPTS,
        status_attempts: int = STATUS_ATTEMPTS,
        status_timeout: float = STATUS_TIMEOUT,
        retry_delay: float = RETRY_DELAY,
        jitter_source: Callable[[], float] = random.random,
    ) -> None:
        self.devices: Dict[str, DeviceConnection] = {}
        self._configs = list(configs) if configs is not None else None
        self._config_path = Path(config_path)
        self._meal_plan_path = Path(meal_plan_path)
        self._transport_factory = transport_factory or self._default_transport
        self._connect_timeout = connect_timeout
        self._connect_attempts = max(1, connect_attempts)
        self._heartbeat_interval = heartbeat_interval
        self._reconnect_initial_delay = reconnect_initial_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._reconnect_jitter = reconnect_jitter
        self._max_reconnect_attempts = max_reconnect_attempts
        self._command_attempts = max(1, command_attempts)
        self._status_attempts = max(1, status_attempts)
        self._status_timeout = status_timeout
        self._retry_delay = retry_delay
        self._jitter_source = jitter_source
        self._meal_plans: Dict[str, str] = {}
        self._stopping = False

    def _default_transport(self, config: DeviceConfig) -> TuyaTransport:
        return TuyaTransport(
            config.id,
            config.ip,
            config.key,
            version=config.version,
            port=config.port,
            socket_timeout=self._connect_timeout,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def startup(self) -> None:
        self._stopping = False
        configs = self._configs if self._configs is not None else self._load_configs()
        self._meal_plans = self._load_meal_plans()
        self.devices = {}
        for config in configs:
            if config.id in self.devices:
                logger.warning("Duplicate device id %s in configuration; keeping the first", config.id)
                continue
            kind = classify_device(config.product_name, config.category)
            self.devices[config.id] = DeviceConnection(
                config=config,
                transport=self._transport_factory(config),
                kind=kind,
            )
        logger.info("Loaded %d local devices", len(self.devices))

    async def shutdown(self) -> None:
        self._stopping = True
        pending: List[asyncio.Task] = []
        for conn in self.devices.values():
            for task in (conn.reconnect_task, conn.heartbeat_task, conn.reader_task):
                cancelled = _cancel(task)
                if cancelled is not None:
                    pending.append(cancelled)
            conn.reconnect_task = conn.heartbeat_task = conn.reader_task = None
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await asyncio.gather(*(self._close_transport(conn) for conn in self.devices.values()))
        for conn in self.devices.values():
            conn.status = ConnectionStatus.DISCONNECTED
            conn.connecting_since = None
        logger.info("Device manager stopped")

    def _load_configs(self) -> List[DeviceConfig]:
        if not self._config_path.exists():
            logger.info("No device configuration at %s", self._config_path)
            return []
        try:
            data = json.loads(self._config_path.read_text())
        except (OSError, ValueError):
            logger.exception("Failed to read device configuration from %s", self._config_path)
            return []
        if isinstance(data, dict):
            data = data.get("devices", [])
        configs: List[DeviceConfig] = []
        for entry in data or []:
            try:
                configs.append(DeviceConfig.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid device entry %r: %s", entry, exc)
        return configs

    def _load_meal_plans(self) -> Dict[str, str]:
        if not self._meal_plan_path.exists():
            return {}
        try:
            data = json.loads(self._meal_plan_path.read_text())
        except (OSError, ValueError):
            logger.exception("Failed to read meal plan cache from %s", self._meal_plan_path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): value for key, value in data.items() if isinstance(value, str)}

    def _persist_meal_plans(self) -> None:
        try:
            self._meal_plan_path.parent.mkdir(parents=True, exist_ok=True)
            self._meal_plan_path.write_text(json.dumps(self._meal_plans, indent=2))
        except OSError:
            logger.exception("Failed to persist meal plan cache to %s", self._meal_plan_path)

    def _get(self, device_id: str) -> DeviceConnection:
        conn = self.devices.get(device_id)
        if conn is None:
            raise DeviceNotFoundError(f"Unknown device: {device_id}")
        return conn

    # ------------------------------------------------------------------
    # Connection state machine
    # ------------------------------------------------------------------

    async def connect_device(self, device_id: str) -> None:
        conn = self._get(device_id)
        async with conn.lock:
            await self._ensure_connected(conn)

    async def disconnect_device(self, device_id: str) -> None:
        conn = self._get(device_id)
        async with conn.lock:
            await self._disconnect(conn)

    async def connect_all_devices(self) -> Dict[str, bool]:
        ids = list(self.devices)
        results = await asyncio.gather(*(self._connect_in_background(device_id) for device_id in ids))
        return dict(zip(ids, results))

    async def disconnect_all_devices(self) -> None:
        await asyncio.gather(*(self.disconnect_device(device_id) for device_id in list(self.devices)))

    async def _connect_in_background(self, device_id: str) -> bool:
        try:
            await self.connect_device(device_id)
        except TransportError as exc:
            logger.warning("Initial connect to %s failed: %s", device_id, exc)
            self._schedule_reconnect(self.devices[device_id])
            return False
        return True

    async def _ensure_connected(self, conn: DeviceConnection) -> None:
        """Synchronous bounded connect used by the command and status paths.

        Caller holds ``conn.lock``.
        """
        if conn.status is ConnectionStatus.CONNECTED:
            return
        if conn.status is ConnectionStatus.CONNECTING:
            # Only lock holders connect, so a connecting state seen here was abandoned.
            stuck_for = time.monotonic() - (conn.connecting_since or time.monotonic())
            logger.warning("%s stuck in connecting for %.1fs; resetting", conn.device_id, stuck_for)
            await self._reset(conn)

        # An explicit request takes over from the background scheduler.
        _cancel(conn.reconnect_task)
        conn.reconnect_task = None
        conn.reconnect_attempts = 0

        for attempt in range(1, self._connect_attempts + 1):
            if self._stopping:
                raise NotConnectableError(f"Cannot connect {conn.device_id}: manager is stopping")
            try:
                await self._open_session(conn)
                return
            except TransportError as exc:
                logger.warning(
                    "Connect attempt %d/%d for %s failed: %s",
                    attempt,
                    self._connect_attempts,
                    conn.device_id,
                    exc,
                )
                if attempt >= self._connect_attempts:
                    raise
            await asyncio.sleep(self._retry_delay * attempt)

    async def _open_session(self, conn: DeviceConnection) -> None:
        conn.status = ConnectionStatus.CONNECTING
        conn.connecting_since = time.monotonic()
        try:
            payload = await asyncio.wait_for(conn.transport.connect(), self._connect_timeout)
        except asyncio.TimeoutError as exc:
            await self._reset(conn)
            conn.last_error = "connect timeout"
            raise ConnectionTimeoutError(
                f"Connecting to {conn.device_id} timed out after {self._connect_timeout:.0f}s"
            ) from exc
        except TransportError as exc:
            await self._reset(conn)
            conn.last_error = str(exc)
            raise
        self._mark_connected(conn)
        if payload:
            self._handle_data(conn, payload)

    def _mark_connected(self, conn: DeviceConnection) -> None:
        conn.status = ConnectionStatus.CONNECTED
        conn.connecting_since = None
        conn.reconnect_attempts = 0
        conn.last_error = None
        conn.heartbeat_task = asyncio.create_task(self._heartbeat_loop(conn))
        conn.reader_task = asyncio.create_task(self._reader_loop(conn))
        logger.info("Connected to %s (%s)", conn.config.name, conn.device_id)

    async def _reset(self, conn: DeviceConnection) -> None:
        conn.status = ConnectionStatus.DISCONNECTED
        conn.connecting_since = None
        self._stop_session_tasks(conn)
        await self._close_transport(conn)

    async def _disconnect(self, conn: DeviceConnection) -> None:
        was_connected = conn.status is not ConnectionStatus.DISCONNECTED
        _cancel(conn.reconnect_task)
        conn.reconnect_task = None
        conn.reconnect_attempts = 0
        await self._reset(conn)
        if was_connected:
            logger.info("Disconnected from %s", conn.device_id)

    def _stop_session_tasks(self, conn: DeviceConnection) -> None:
        _cancel(conn.heartbeat_task)
        _cancel(conn.reader_task)
        conn.heartbeat_task = None
        conn.reader_task = None

    async def _close_transport(self, conn: DeviceConnection) -> None:
        try:
            await conn.transport.close()
        except (TransportError, OSError):
            logger.debug("Closing transport for %s failed", conn.device_id, exc_info=True)

    async def _handle_transport_error(self, conn: DeviceConnection, exc: BaseException) -> None:
        if conn.status is ConnectionStatus.DISCONNECTED:
            return
        conn.last_error = str(exc) or exc.__class__.__name__
        await self._reset(conn)
        logger.warning("Lost connection to %s: %s", conn.device_id, conn.last_error)
        if not self._stopping:
            self._schedule_reconnect(conn)

    def _schedule_reconnect(self, conn: DeviceConnection) -> None:
        if self._stopping:
            return
        if conn.reconnect_task is not None and not conn.reconnect_task.done():
            return
        if conn.reconnect_attempts >= self._max_reconnect_attempts:
            logger.warning(
                "Giving up on automatic reconnect for %s after %d attempts",
                conn.device_id,
                conn.reconnect_attempts,
            )
            return
        delay = backoff_delay(
            conn.reconnect_attempts,
            self._reconnect_initial_delay,
            self._reconnect_max_delay,
            self._reconnect_jitter,
            self._jitter_source,
        )
        conn.reconnect_attempts += 1
        logger.info(
            "Reconnecting %s in %.1fs (attempt %d/%d)",
            conn.device_id,
            delay,
            conn.reconnect_attempts,
            self._max_reconnect_attempts,
        )
        conn.reconnect_task = asyncio.create_task(self._reconnect_after(conn, delay))

    async def _reconnect_after(self, conn: DeviceConnection, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._stopping:
            return
        async with conn.lock:
            conn.reconnect_task = None
            if self._stopping or conn.status is ConnectionStatus.CONNECTED:
                return
            try:
                await self._open_session(conn)
            except TransportError as exc:
                logger.warning("Reconnect to %s failed: %s", conn.device_id, exc)
                self._schedule_reconnect(conn)

    async def _heartbeat_loop(self, conn: DeviceConnection) -> None:
        while not self._stopping and conn.status is ConnectionStatus.CONNECTED:
            await asyncio.sleep(self._heartbeat_interval)
            async with conn.lock:
                if self._stopping or conn.status is not ConnectionStatus.CONNECTED:
                    return
                try:
                    await asyncio.wait_for(conn.transport.heartbeat(), self._status_timeout)
                except (asyncio.TimeoutError, TransportError) as exc:
                    logger.warning("Heartbeat failed for %s: %r", conn.device_id, exc)
                    await self._handle_transport_error(conn, exc)
                    return

    async def _reader_loop(self, conn: DeviceConnection) -> None:
        while not self._stopping and conn.status is ConnectionStatus.CONNECTED:
            try:
                data = await conn.transport.receive()
            except TransportError as exc:
                async with conn.lock:
                    await self._handle_transport_error(conn, exc)
                return
            if data:
                self._handle_data(conn, data)

    async def _drop_session(self, conn: DeviceConnection) -> None:
        if conn.status is not ConnectionStatus.DISCONNECTED:
            await self._reset(conn)

    # ------------------------------------------------------------------
    # Commands and status
    # ------------------------------------------------------------------

    async def send_command(
        self,
        device_id: str,
        field_id: Union[str, int],
        value: Any,
        disconnect_after: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Write one data point, connecting first when needed.

        Raises ``CommandFailedError`` carrying the last cause once every
        attempt has failed.
        """
        conn = self._get(device_id)
        async with conn.lock:
            last_exc: Optional[BaseException] = None
            for attempt in range(1, self._command_attempts + 1):
                if self._stopping:
                    last_exc = NotConnectableError("manager is stopping")
                    break
                try:
                    await self._ensure_connected(conn)
                    response = await asyncio.wait_for(
                        conn.transport.set_value(field_id, value), self._connect_timeout
                    )
                except asyncio.TimeoutError:
                    last_exc = ConnectionTimeoutError(f"Write to {device_id} timed out")
                except TransportError as exc:
                    last_exc = exc
                else:
                    if response:
                        self._handle_data(conn, response)
                    logger.info("Set field %s on %s", field_id, device_id)
                    if disconnect_after:
                        await self._disconnect(conn)
                    return response

                logger.warning(
                    "Command attempt %d/%d on %s failed: %s",
                    attempt,
                    self._command_attempts,
                    device_id,
                    last_exc,
                )
                conn.last_error = str(last_exc)
                await self._drop_session(conn)
                if attempt < self._command_attempts:
                    await asyncio.sleep(self._retry_delay * attempt)

            self._schedule_reconnect(conn)
        raise CommandFailedError(device_id, last_exc)

    async def get_device_status(self, device_id: str) -> Dict[str, Any]:
        """Fetch the raw data point map with a short, time boxed attempt budget."""
        conn = self._get(device_id)
        async with conn.lock:
            last_exc: Optional[BaseException] = None
            for attempt in range(1, self._status_attempts + 1):
                try:
                    response = await asyncio.wait_for(self._fetch_status(conn), self._status_timeout)
                except asyncio.TimeoutError:
                    last_exc = ConnectionTimeoutError(
                        f"Status of {device_id} not received within {self._status_timeout:.0f}s"
                    )
                    await self._drop_session(conn)
                except CorruptedPayloadError as exc:
                    last_exc = exc
                except TransportError as exc:
                    last_exc = exc
                    await self._drop_session(conn)
                else:
                    self._handle_data(conn, response)
                    dps = response.get("dps") if isinstance(response, dict) else None
                    return {str(key): value for key, value in (dps or {}).items()}
                logger.warning(
                    "Status attempt %d/%d for %s failed: %s",
                    attempt,
                    self._status_attempts,
                    device_id,
                    last_exc,
                )
            self._schedule_reconnect(conn)
        raise StatusTimeoutError(device_id, last_exc)

    async def _fetch_status(self, conn: DeviceConnection) -> Dict[str, Any]:
        await self._ensure_connected(conn)
        response = await conn.transport.get_status()
        if is_corrupted_payload(response):
            logger.error(
                "Corrupted status from %s; check the local key and protocol version",
                conn.device_id,
            )
            raise CorruptedPayloadError(f"Corrupted status payload from {conn.device_id}")
        return response or {}

    def _handle_data(self, conn: DeviceConnection, data: Any) -> bool:
        """Merge an inbound payload into the cached state. Returns False when discarded."""
        if is_corrupted_payload(data):
            logger.error(
                "Discarding corrupted payload from %s; likely a wrong local key or protocol version",
                conn.device_id,
            )
            return False
        dps = data.get("dps") if isinstance(data, dict) else None
        if not isinstance(dps, dict) or not dps:
            logger.debug("Payload without data points from %s: %r", conn.device_id, data)
            return False

        update = {str(key): value for key, value in dps.items()}
        conn.last_data.update(update)
        conn.parsed_status = translate_status(conn.kind, conn.last_data) or None
        conn.last_update = time.time()
        self._log_activity(conn, update)

        encoded = update.get(FEEDER_MEAL_PLAN_FIELD)
        if conn.kind is DeviceKind.FEEDER and isinstance(encoded, str) and encoded:
            self._store_meal_plan(conn.device_id, encoded)
        return True

    def _log_activity(self, conn: DeviceConnection, update: Dict[str, Any]) -> None:
        name = conn.config.name
        if conn.kind is DeviceKind.FEEDER:
            if FEEDER_MEAL_PLAN_FIELD in update:
                logger.info("Meal plan reported by %s", name)
            if FEEDER_FEEDING_FIELD in update:
                logger.info("Feeding on %s: %s portion(s)", name, update[FEEDER_FEEDING_FIELD])
        elif conn.kind is DeviceKind.LITTER_BOX:
            if LITTER_ACTIVITY_FIELD in update:
                logger.info("Litter box %s activity: %s", name, update[LITTER_ACTIVITY_FIELD])
        elif conn.kind is DeviceKind.FOUNTAIN:
            if FOUNTAIN_POWER_FIELD in update:
                logger.info("Fountain %s power: %s", name, update[FOUNTAIN_POWER_FIELD])
            if FOUNTAIN_LOW_WATER_FIELD in update:
                logger.info("Fountain %s low water: %s", name, update[FOUNTAIN_LOW_WATER_FIELD])
        else:
            logger.debug("Update from %s: %s", name, update)

    # ------------------------------------------------------------------
    # Meal plan cache
    # ------------------------------------------------------------------

    def get_meal_plan(self, device_id: str) -> Optional[str]:
        self._get(device_id)
        return self._meal_plans.get(device_id)

    def set_meal_plan(self, device_id: str, encoded: str) -> None:
        self._get(device_id)
        self._store_meal_plan(device_id, encoded)

    def clear_meal_plan(self, device_id: str) -> None:
        self._get(device_id)
        if self._meal_plans.pop(device_id, None) is not None:
            self._persist_meal_plans()

    def _store_meal_plan(self, device_id: str, encoded: str) -> None:
        if self._meal_plans.get(device_id) == encoded:
            return
        self._meal_plans[device_id] = encoded
        self._persist_meal_plans()

    def get_decoded_meal_plan(self, device_id: str) -> Optional[List[MealPlanEntry]]:
        encoded = self.get_meal_plan(device_id)
        if encoded is None:
            return None
        return meal_plan.decode(encoded)

    async def push_meal_plan(
        self, device_id: str, entries: Iterable[Union[MealPlanEntry, Dict[str, Any]]]
    ) -> str:
        """Validate, encode and send a meal plan, then cache what was sent."""
        self._get(device_id)
        plan = [entry if isinstance(entry, MealPlanEntry) else MealPlanEntry.from_dict(entry) for entry in entries]
        rejected = [index for index, entry in enumerate(plan, start=1) if not meal_plan.validate(entry)]
        if rejected:
            raise ValidationError(f"Invalid meal plan entries: {rejected}")
        encoded = meal_plan.encode(plan)
        await self.send_command(device_id, FEEDER_MEAL_PLAN_FIELD, encoded)
        self._store_meal_plan(device_id, encoded)
        return encoded

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _snapshot(self, conn: DeviceConnection) -> Dict[str, Any]:
        payload: Dict[str, Any] = conn.config.to_dict()
        payload.update(
            {
                "kind": conn.kind.value,
                "status": conn.status.value,
                "reconnect_attempts": conn.reconnect_attempts,
                "last_error": conn.last_error,
                "last_update": conn.last_update,
                "last_data": dict(conn.last_data),
                "parsed_status": conn.parsed_status,
            }
        )
        return payload

    def get_device(self, device_id: str) -> Dict[str, Any]:
        return self._snapshot(self._get(device_id))

    def get_all_devices(self) -> List[Dict[str, Any]]:
        return [self._snapshot(conn) for conn in self.devices.values()]

    def get_devices_by_kind(self, kind: Union[DeviceKind, str]) -> List[Dict[str, Any]]:
        kind = DeviceKind(kind)
        return [self._snapshot(conn) for conn in self.devices.values() if conn.kind is kind]

    def get_connection_stats(self) -> Dict[str, Any]:
        counts = {status: 0 for status in ConnectionStatus}
        for conn in self.devices.values():
            counts[conn.status] += 1
        return {
            "total": len(self.devices),
            "connected": counts[ConnectionStatus.CONNECTED],
            "connecting": counts[ConnectionStatus.CONNECTING],
            "disconnected": counts[ConnectionStatus.DISCONNECTED],
            "devices": {
                device_id: {
                    "status": conn.status.value,
                    "reconnect_attempts": conn.reconnect_attempts,
                    "reconnect_pending": conn.reconnect_task is not None and not conn.reconnect_task.done(),
                }
                for device_id, conn in self.devices.items()
            },
        }
