"""
Progress aggregation for concurrent transfers.

Workers never touch shared counters. They send small deltas to a single
ProgressCollector, which folds them into one snapshot and hands that to
the user-facing callback. ``report`` never blocks: when the bounded queue
is full the delta is merged into a pending overflow delta that the
collector picks up on its next turn, so totals stay exact.
"""

import asyncio
import logging
from dataclasses import dataclass, fields
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProgressDelta:
    """A change to the aggregate progress counters."""
    objects_total: int = 0
    bytes_total: int = 0
    objects_succeeded: int = 0
    objects_skipped: int = 0
    objects_failed: int = 0
    bytes_transferred: int = 0
    current: Optional[str] = None

    def merge(self, other: "ProgressDelta") -> None:
        for f in fields(self):
            if f.name == "current":
                continue
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))
        if other.current is not None:
            self.current = other.current

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, f.name) == 0 for f in fields(self) if f.name != "current")


@dataclass
class TransferProgress:
    """Snapshot of the aggregate progress of one engine run."""
    objects_total: int = 0
    bytes_total: int = 0
    objects_succeeded: int = 0
    objects_skipped: int = 0
    objects_failed: int = 0
    bytes_transferred: int = 0
    current: Optional[str] = None

    @property
    def objects_done(self) -> int:
        return self.objects_succeeded + self.objects_skipped + self.objects_failed

    @property
    def progress_percentage(self) -> float:
        """Progress by bytes, falling back to object count for empty objects."""
        if self.bytes_total > 0:
            return min(100.0, self.bytes_transferred / self.bytes_total * 100.0)
        if self.objects_total > 0:
            return min(100.0, self.objects_done / self.objects_total * 100.0)
        return 0.0

    def apply(self, delta: ProgressDelta) -> None:
        self.objects_total += delta.objects_total
        self.bytes_total += delta.bytes_total
        self.objects_succeeded += delta.objects_succeeded
        self.objects_skipped += delta.objects_skipped
        self.objects_failed += delta.objects_failed
        self.bytes_transferred += delta.bytes_transferred
        if delta.current is not None:
            self.current = delta.current


ProgressCallback = Callable[[TransferProgress], None]


class ProgressCollector:
    """Single consumer of progress deltas."""

    def __init__(self, callback: Optional[ProgressCallback] = None, maxsize: int = 256):
        self.callback = callback
        self.snapshot = TransferProgress()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._overflow = ProgressDelta()
        self._task: Optional[asyncio.Task] = None
        self.coalesced = 0

    def report(self, delta: ProgressDelta) -> None:
        """Queue a delta without blocking the caller."""
        try:
            self._queue.put_nowait(delta)
        except asyncio.QueueFull:
            self._overflow.merge(delta)
            self.coalesced += 1

    def _apply(self, delta: ProgressDelta) -> None:
        self.snapshot.apply(delta)
        if not self._overflow.is_empty or self._overflow.current is not None:
            overflow, self._overflow = self._overflow, ProgressDelta()
            self.snapshot.apply(overflow)
        if self.callback:
            try:
                self.callback(self.snapshot)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    async def _run(self) -> None:
        while True:
            delta = await self._queue.get()
            if delta is None:
                return
            self._apply(delta)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> TransferProgress:
        """Drain everything reported so far and return the final snapshot."""
        if self._task is not None:
            # the stop marker may have to wait for queue space; the consumer is running
            await self._queue.put(None)
            await self._task
            self._task = None
        while not self._queue.empty():
            delta = self._queue.get_nowait()
            if delta is not None:
                self._apply(delta)
        if not self._overflow.is_empty or self._overflow.current is not None:
            self._apply(ProgressDelta())
        return self.snapshot
