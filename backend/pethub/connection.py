"""Connection state shared by the device and lamp managers."""

from __future__ import annotations

import random
from enum import Enum
from typing import Callable


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def backoff_delay(
    attempts: int,
    initial: float,
    maximum: float,
    jitter: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """Return the delay before reconnect attempt number ``attempts + 1``.

    The exponential part is capped at ``maximum``; the random jitter in
    ``[0, jitter)`` is added on top, so the result never exceeds
    ``maximum + jitter``.
    """
    exponent = max(0, int(attempts))
    # Cap the exponent so huge attempt counters do not overflow floats.
    base = min(initial * (2 ** min(exponent, 32)), maximum)
    return base + rand() * jitter
