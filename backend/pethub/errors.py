"""Domain-specific errors for the pet hub."""

from __future__ import annotations

from typing import Optional


class PetHubError(Exception):
    """Base error for the pet hub."""


class DeviceNotFoundError(PetHubError):
    """Raised when a device or lamp id is not known to its manager."""


class TransportError(PetHubError):
    """Base transport error."""


class NotConnectableError(TransportError):
    """Raised when a connection cannot be established or was lost."""


class ConnectionTimeoutError(TransportError):
    """Raised when a connect, read or write does not finish in time."""


class AuthorizationRequiredError(TransportError):
    """Raised when a BLE peripheral rejects us for lack of pairing."""


class CorruptedPayloadError(PetHubError):
    """Raised when inbound data carries control characters (wrong key or version)."""


class OperationFailedError(PetHubError):
    """Raised when every attempt of a device operation failed."""

    def __init__(self, device_id: str, cause: Optional[BaseException] = None) -> None:
        self.device_id = device_id
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{self._action} failed for {device_id}{detail}")

    _action = "Operation"


class CommandFailedError(OperationFailedError):
    """Raised when a command could not be delivered after all retries."""

    _action = "Command"


class StatusTimeoutError(OperationFailedError):
    """Raised when a status fetch did not succeed within its attempt budget."""

    _action = "Status fetch"


class MealPlanError(PetHubError):
    """Base error for the meal plan codec."""


class EncodingError(MealPlanError):
    """Raised when a meal plan entry cannot be packed."""


class DecodingError(MealPlanError):
    """Raised when an encoded meal plan is not valid base64."""


class ValidationError(MealPlanError):
    """Raised when a caller supplied meal plan entry is rejected."""
