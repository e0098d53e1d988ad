"""Fail-fast concurrency gate for backend executions.

    controller = AdmissionController(capacity=4)
    slot = controller.acquire()
    if slot is None:
        ...  # reject with 429, do not touch the backend
    try:
        ...
    finally:
        slot.release()

Everything runs on one event loop, so the counter is only ever changed from
`acquire` and `ExecutionSlot.release` and needs no lock.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field


class AdmissionController:
    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1 (got {capacity})")
        self._capacity = capacity
        self._in_flight = 0
        self._ids = itertools.count(1)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def available(self) -> int:
        return self._capacity - self._in_flight

    def acquire(self) -> "ExecutionSlot | None":
        """Take a slot, or return None immediately when the pool is exhausted."""
        if self._in_flight >= self._capacity:
            return None
        self._in_flight += 1
        return ExecutionSlot(controller=self, slot_id=next(self._ids))

    def _release(self) -> None:
        self._in_flight = max(0, self._in_flight - 1)


@dataclass
class ExecutionSlot:
    """A permit owned by one in-flight request. `release()` is idempotent."""

    controller: AdmissionController
    slot_id: int
    _released: bool = field(default=False, init=False, repr=False)

    def __enter__(self) -> "ExecutionSlot":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def release(self) -> None:
        if not self._released:
            self._released = True
            self.controller._release()

    async def arelease(self) -> None:
        self.release()

    @property
    def is_released(self) -> bool:
        return self._released
