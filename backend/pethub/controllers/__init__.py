"""Transport controllers for the pet hub backend."""

from .bluetooth import (  # noqa: F401
    BLE_ERRORS,
    Advertisement,
    BluetoothCentral,
    FailureKind,
    GattCharacteristic,
    GattLink,
    classify_ble_error,
    normalize_address,
)
from .tuya import TuyaTransport  # noqa: F401
