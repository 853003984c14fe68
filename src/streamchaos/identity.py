# src/streamchaos/identity.py
"""Run-wide payload identifiers and their wire encoding.

Every published message carries a payload id that is unique for the
lifetime of the process. Payload ids travel as 8-byte little-endian
unsigned integers, which is what consumers decode back out of the body.
"""

from __future__ import annotations

import itertools
import threading

PAYLOAD_SIZE = 8
_MAX_PAYLOAD_ID = 2**64 - 1


class IdGenerator:
    """Monotonic, thread-safe id source.

    Only the control thread calls this today; the lock keeps the
    uniqueness guarantee if publishing ever moves to worker threads.
    """

    def __init__(self, start: int = 0) -> None:
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        """Return the next unused id."""
        with self._lock:
            value = next(self._counter)
        if value > _MAX_PAYLOAD_ID:
            raise OverflowError("payload id space exhausted")
        return value


_GLOBAL_IDS = IdGenerator()


def next_payload_id() -> int:
    """Next id from the process-wide generator."""
    return _GLOBAL_IDS.next_id()


def encode_payload_id(payload_id: int) -> bytes:
    """Encode a payload id as a message body."""
    return payload_id.to_bytes(PAYLOAD_SIZE, "little", signed=False)


def decode_payload_id(body: bytes) -> int:
    """Decode a message body back into a payload id.

    Raises:
        ValueError: If the body is not exactly PAYLOAD_SIZE bytes.
    """
    if len(body) != PAYLOAD_SIZE:
        raise ValueError(f"payload body must be {PAYLOAD_SIZE} bytes, got {len(body)}")
    return int.from_bytes(body, "little", signed=False)
