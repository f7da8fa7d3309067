from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Union

import tinytuya

from ..errors import ConnectionTimeoutError, NotConnectableError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6668
# tinytuya error codes (see tinytuya.error_codes)
_ERR_TIMEOUT = "902"
_ERR_CONNECT = ("901", "905")


def _error_from_response(response: Any, action: str, device_id: str) -> Optional[TransportError]:
    """tinytuya reports failures as ``{"Error": ..., "Err": code}`` instead of raising."""
    if not isinstance(response, dict) or "Error" not in response:
        return None
    code = str(response.get("Err") or "")
    message = f"{action} failed for {device_id}: {response.get('Error')} (Err {code or '?'})"
    if code == _ERR_TIMEOUT:
        return ConnectionTimeoutError(message)
    if code in _ERR_CONNECT:
        return NotConnectableError(message)
    return TransportError(message)


class TuyaTransport:
    """Persistent local connection to one Tuya-protocol appliance.

    tinytuya is blocking, so every socket call runs in a worker thread. A
    threading lock keeps the status, heartbeat, write and receive calls from
    interleaving on the shared socket; ``receive`` uses a short socket timeout
    so it gives the lock back often.
    """

    def __init__(
        self,
        device_id: str,
        address: str,
        local_key: str,
        *,
        version: Union[str, float] = "3.3",
        port: int = DEFAULT_PORT,
        socket_timeout: float = 5.0,
        receive_timeout: float = 1.0,
    ) -> None:
        self._device_id = device_id
        self._address = address
        self._local_key = local_key
        self._version = float(version)
        self._port = port
        self._socket_timeout = socket_timeout
        self._receive_timeout = receive_timeout
        self._device: Optional[tinytuya.Device] = None
        self._io_lock = threading.Lock()

    @property
    def device_id(self) -> str:
        return self._device_id

    async def connect(self) -> Dict[str, Any]:
        """Open the session and return the first status payload."""
        return await asyncio.to_thread(self._open)

    async def close(self) -> None:
        await asyncio.to_thread(self._close)

    async def get_status(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._call, "status", lambda d: d.status())

    async def heartbeat(self) -> None:
        await asyncio.to_thread(self._call, "heartbeat", lambda d: d.heartbeat())

    async def set_value(self, index: Union[int, str], value: Any) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(
            self._call, f"set dps {index}", lambda d: d.set_value(index, value)
        )

    async def receive(self) -> Optional[Dict[str, Any]]:
        """Wait briefly for a pushed update; None when nothing arrived."""
        return await asyncio.to_thread(self._receive)

    def _open(self) -> Dict[str, Any]:
        with self._io_lock:
            self._close_locked()
            try:
                device = tinytuya.Device(
                    self._device_id,
                    self._address,
                    self._local_key,
                    version=self._version,
                    connection_timeout=self._socket_timeout,
                    port=self._port,
                )
                device.set_socketPersistent(True)
                device.set_socketRetryLimit(1)
                device.set_socketTimeout(self._socket_timeout)
                response = device.status()
            except OSError as exc:
                raise NotConnectableError(f"Connect failed for {self._device_id}: {exc}") from exc
            error = _error_from_response(response, "Connect", self._device_id)
            if error is not None:
                try:
                    device.close()
                except OSError:
                    logger.debug("close after failed connect raised for %s", self._device_id, exc_info=True)
                raise error
            self._device = device
            logger.debug("tinytuya session open for %s at %s", self._device_id, self._address)
            return response or {}

    def _close(self) -> None:
        with self._io_lock:
            self._close_locked()

    def _close_locked(self) -> None:
        device, self._device = self._device, None
        if device is None:
            return
        try:
            device.close()
        except OSError:
            logger.debug("tinytuya close raised for %s", self._device_id, exc_info=True)

    def _call(self, action: str, operation):
        with self._io_lock:
            if self._device is None:
                raise NotConnectableError(f"{action} on {self._device_id}: session is not open")
            try:
                response = operation(self._device)
            except OSError as exc:
                raise NotConnectableError(f"{action} failed for {self._device_id}: {exc}") from exc
        error = _error_from_response(response, action, self._device_id)
        if error is not None:
            raise error
        return response

    def _receive(self) -> Optional[Dict[str, Any]]:
        with self._io_lock:
            if self._device is None:
                raise NotConnectableError(f"receive on {self._device_id}: session is not open")
            self._device.set_socketTimeout(self._receive_timeout)
            try:
                response = self._device.receive()
            except OSError as exc:
                raise NotConnectableError(f"receive failed for {self._device_id}: {exc}") from exc
            finally:
                if self._device is not None:
                    self._device.set_socketTimeout(self._socket_timeout)
        if isinstance(response, dict) and str(response.get("Err") or "") == _ERR_TIMEOUT:
            return None
        error = _error_from_response(response, "receive", self._device_id)
        if error is not None:
            raise error
        return response or None
