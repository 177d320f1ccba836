"""
Time-sortable 64-bit identifiers.

Layout (most significant bit first):
    1 bit   unused (keeps ids positive in signed BIGINT columns)
    41 bits milliseconds since SNOWFLAKE_EPOCH_MS
    10 bits machine id
    12 bits per-millisecond sequence

Ids generated by one process are strictly increasing; ids from different
machines interleave by creation time.
"""

import threading
import time
from typing import Callable, Optional

from config import SNOWFLAKE_EPOCH_MS, SNOWFLAKE_MACHINE_ID

MACHINE_ID_BITS = 10
SEQUENCE_BITS = 12
MAX_MACHINE_ID = (1 << MACHINE_ID_BITS) - 1
MAX_SEQUENCE = (1 << SEQUENCE_BITS) - 1
TIMESTAMP_SHIFT = MACHINE_ID_BITS + SEQUENCE_BITS


class SnowflakeGenerator:
    """Thread-safe snowflake id generator."""

    def __init__(
        self,
        machine_id: int = SNOWFLAKE_MACHINE_ID,
        epoch_ms: int = SNOWFLAKE_EPOCH_MS,
        clock: Optional[Callable[[], int]] = None,
    ):
        if not 0 <= machine_id <= MAX_MACHINE_ID:
            raise ValueError(f"machine_id must be between 0 and {MAX_MACHINE_ID}, got {machine_id}")
        self.machine_id = machine_id
        self.epoch_ms = epoch_ms
        self._clock = clock or (lambda: time.time_ns() // 1_000_000)
        self._lock = threading.Lock()
        self._last_ms = -1
        self._sequence = 0

    def next_id(self) -> int:
        with self._lock:
            now_ms = self._clock()
            # Clock moved backwards: keep issuing from the last timestamp
            if now_ms < self._last_ms:
                now_ms = self._last_ms

            if now_ms == self._last_ms:
                self._sequence = (self._sequence + 1) & MAX_SEQUENCE
                if self._sequence == 0:
                    # Sequence exhausted for this millisecond, borrow the next one
                    now_ms = self._last_ms + 1
            else:
                self._sequence = 0

            self._last_ms = now_ms
            return ((now_ms - self.epoch_ms) << TIMESTAMP_SHIFT) | (self.machine_id << SEQUENCE_BITS) | self._sequence

    def timestamp_ms(self, snowflake_id: int) -> int:
        """Creation time (unix milliseconds) encoded in an id."""
        return (snowflake_id >> TIMESTAMP_SHIFT) + self.epoch_ms


_generator = SnowflakeGenerator()


def new_id() -> int:
    """Generate a new process-wide unique, time-sortable id."""
    return _generator.next_id()
