from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

logger = logging.getLogger(__name__)

# Everything a GATT operation may raise on a flaky link.
BLE_ERRORS = (BleakError, asyncio.TimeoutError, OSError, EOFError)

_AUTH_MARKERS = (
    "401",
    "unauthorized",
    "not authorized",
    "notauthorized",
    "notpermitted",
    "not permitted",
    "pairing",
    "authentication",
    "insufficient encryption",
)


class FailureKind(str, Enum):
    AUTHORIZATION = "authorization"
    TIMEOUT = "timeout"
    GENERAL = "general"


def classify_ble_error(exc: BaseException) -> FailureKind:
    """Sort a connect failure into authorization, timeout or general."""
    if isinstance(exc, asyncio.TimeoutError):
        return FailureKind.TIMEOUT
    message = str(exc).lower()
    if any(marker in message for marker in _AUTH_MARKERS):
        return FailureKind.AUTHORIZATION
    if "timeout" in message or "timed out" in message:
        return FailureKind.TIMEOUT
    return FailureKind.GENERAL


def normalize_address(address: str) -> str:
    """Upper-case colon form for MAC addresses; platform UUID ids pass through.

    Accepts forms like "aabbccddeeff", "aa_bb_cc_dd_ee_ff" and
    "dev_AA:BB:CC:DD:EE:FF".
    """
    if not address:
        raise ValueError("empty bluetooth address")
    cleaned = re.sub(r"(?i)^(dev[_:-]?|device[_:-]?|bluetooth:)", "", address.strip())
    hex_str = "".join(re.findall(r"[0-9A-Fa-f]", cleaned))
    if len(hex_str) == 12 and len(cleaned) <= 17:
        return ":".join(hex_str[i : i + 2] for i in range(0, 12, 2)).upper()
    return cleaned


@dataclass
class Advertisement:
    address: str
    name: Optional[str]
    service_uuids: List[str] = field(default_factory=list)
    manufacturer_data: Dict[int, bytes] = field(default_factory=dict)
    rssi: Optional[int] = None
    device: Any = None


@dataclass
class GattCharacteristic:
    uuid: str
    properties: List[str]
    handle: Any = None

    @property
    def can_notify(self) -> bool:
        return "notify" in self.properties or "indicate" in self.properties


class GattLink:
    """One GATT connection to a peripheral, wrapping ``BleakClient``."""

    def __init__(
        self,
        device: Any,
        *,
        on_disconnect: Optional[Callable[[], None]] = None,
        timeout: float = 15.0,
    ) -> None:
        self._on_disconnect = on_disconnect
        self._client = BleakClient(device, disconnected_callback=self._disconnected, timeout=timeout)

    def _disconnected(self, _client: BleakClient) -> None:
        if self._on_disconnect is not None:
            self._on_disconnect()

    @property
    def is_connected(self) -> bool:
        return bool(self._client.is_connected)

    async def connect(self) -> None:
        await self._client.connect()
        if not self._client.is_connected:
            raise BleakError("GATT connect returned without a connection")

    async def disconnect(self) -> None:
        try:
            await self._client.disconnect()
        except EOFError:
            # dbus_fast raises a raw EOFError when the system bus went away.
            logger.warning("DBus EOFError during disconnect", exc_info=True)

    def characteristics(self) -> List[GattCharacteristic]:
        found: List[GattCharacteristic] = []
        for service in self._client.services:
            for char in service.characteristics:
                found.append(GattCharacteristic(uuid=str(char.uuid), properties=list(char.properties), handle=char))
        return found

    async def read(self, char: GattCharacteristic) -> bytes:
        return bytes(await self._client.read_gatt_char(char.handle))

    async def write(self, char: GattCharacteristic, payload: bytes, *, response: bool = True) -> None:
        await self._client.write_gatt_char(char.handle, payload, response=response)

    async def subscribe(self, char: GattCharacteristic, callback: Callable[[bytes], None]) -> None:
        def _handler(_sender: Any, data: bytearray) -> None:
            callback(bytes(data))

        await self._client.start_notify(char.handle, _handler)


class BluetoothCentral:
    """Scanning and link creation helpers over Bleak."""

    def __init__(self, connect_timeout: float = 15.0) -> None:
        self._connect_timeout = connect_timeout

    async def scan(self, duration: float, on_advertisement: Callable[[Advertisement], None]) -> None:
        """Run one active scan burst, reporting every advertisement seen."""

        def _detected(device: Any, adv: Any) -> None:
            on_advertisement(
                Advertisement(
                    address=device.address,
                    name=adv.local_name or device.name,
                    service_uuids=list(adv.service_uuids or []),
                    manufacturer_data=dict(adv.manufacturer_data or {}),
                    rssi=adv.rssi,
                    device=device,
                )
            )

        scanner = BleakScanner(detection_callback=_detected, scanning_mode="active")
        try:
            await scanner.start()
            await asyncio.sleep(duration)
        finally:
            try:
                await scanner.stop()
            except (BleakError, EOFError):
                logger.debug("BLE scanner stop failed", exc_info=True)

    def create_link(self, device: Any, on_disconnect: Optional[Callable[[], None]] = None) -> GattLink:
        return GattLink(device, on_disconnect=on_disconnect, timeout=self._connect_timeout)
