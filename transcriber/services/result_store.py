import asyncio
from typing import AsyncIterator, List, Optional

import structlog

from transcriber.core.exceptions import PreconditionViolation, SlotNotFound
from transcriber.domain.models import ResultSlot, SlotStatus

logger = structlog.get_logger(__name__)


class _SlotRecord:
    """Mutable backing state for one index. Never handed out directly."""

    __slots__ = ("index", "status", "parts", "error", "changed")

    def __init__(self, index: int):
        self.index = index
        self.status = SlotStatus.EMPTY
        self.parts: List[str] = []
        self.error: Optional[str] = None
        self.changed = asyncio.Event()

    @property
    def is_terminal(self) -> bool:
        return self.status in (SlotStatus.DONE, SlotStatus.FAILED)

    def snapshot(self) -> ResultSlot:
        return ResultSlot(
            index=self.index,
            status=self.status,
            text="".join(self.parts),
            error=self.error,
        )

    def notify(self) -> None:
        # Wake current watchers, then re-arm for the next change
        event, self.changed = self.changed, asyncio.Event()
        event.set()


class ResultStore:
    """
    Ordered, index-addressable collection of result slots.

    Indices are handed out in strictly increasing order and never reused.
    All mutations are synchronous and scoped to a single index, so on a
    single event loop each one applies atomically and fragments for an
    index land in the order they were appended.
    """

    def __init__(self):
        self._slots: List[_SlotRecord] = []

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def count(self) -> int:
        return len(self._slots)

    def allocate(self, n: int, start_index: Optional[int] = None) -> range:
        """
        Appends ``n`` empty slots and returns their indices.

        Args:
            n: number of slots to reserve.
            start_index: when given, must equal the current count.

        Raises:
            PreconditionViolation: if ``n`` is negative or ``start_index``
                does not match the current count.
        """
        if n < 0:
            raise PreconditionViolation(f"Cannot allocate {n} slots")
        start = len(self._slots)
        if start_index is not None and start_index != start:
            raise PreconditionViolation(
                f"start_index {start_index} does not match current item count {start}"
            )
        self._slots.extend(_SlotRecord(i) for i in range(start, start + n))
        logger.debug("store.allocated", start_index=start, count=n)
        return range(start, start + n)

    def _record(self, index: int) -> _SlotRecord:
        if index < 0 or index >= len(self._slots):
            raise SlotNotFound(index)
        return self._slots[index]

    def _writable(self, index: int) -> _SlotRecord:
        record = self._record(index)
        if record.is_terminal:
            raise PreconditionViolation(
                f"Slot {index} is already {record.status.value}"
            )
        return record

    def append_fragment(self, index: int, text: str) -> None:
        record = self._writable(index)
        record.parts.append(text)
        record.status = SlotStatus.ACCUMULATING
        record.notify()

    def mark_done(self, index: int) -> None:
        record = self._writable(index)
        record.status = SlotStatus.DONE
        record.notify()

    def mark_failed(self, index: int, reason: str) -> None:
        record = self._writable(index)
        record.status = SlotStatus.FAILED
        record.error = reason
        record.notify()

    def get(self, index: int) -> ResultSlot:
        """Returns an immutable snapshot of the slot at ``index``."""
        return self._record(index).snapshot()

    def snapshot(self) -> List[ResultSlot]:
        return [record.snapshot() for record in self._slots]

    async def watch(self, index: int) -> AsyncIterator[ResultSlot]:
        """
        Yields the slot's current snapshot and then one per change,
        finishing after the first terminal snapshot.
        """
        record = self._record(index)
        while True:
            waiter = record.changed
            snapshot = record.snapshot()
            yield snapshot
            if snapshot.is_terminal:
                return
            await waiter.wait()
