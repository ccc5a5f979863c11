"""Optimistic local board: apply a move now, confirm remotely, commit or revert.

Each move records its own from/to and the operation that owned the item's
placement before it. A failed confirmation reverts only while its operation
still owns the item, so a stale failure can never undo a newer move.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Generic, TypeVar

from salesdesk.core.models import ActionResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

Confirm = Callable[[], Awaitable[ActionResult]]


class MutationOutcome(str, enum.Enum):
    COMMITTED = "committed"
    REVERTED = "reverted"
    SUPERSEDED = "superseded"  # failed, but a newer operation owns the item


class PendingMutation(Generic[T]):
    """Handle for one optimistic operation. Await it for the outcome."""

    def __init__(
        self,
        item_id: str,
        item: T,
        from_bucket: str,
        to_bucket: str | None,
        index: int,
        prev: PendingMutation[T] | None,
    ):
        self.item_id = item_id
        self.item = item  # snapshot as it sat in from_bucket
        self.from_bucket = from_bucket
        self.to_bucket = to_bucket  # None for a removal
        self.index = index
        self.prev = prev
        self.result: ActionResult | None = None
        self.outcome: MutationOutcome | None = None
        self.task: asyncio.Task[MutationOutcome] | None = None

    @property
    def done(self) -> bool:
        return self.outcome is not None

    @property
    def failed(self) -> bool:
        return self.result is not None and not self.result.success

    def __await__(self):
        assert self.task is not None
        return self.task.__await__()

    def __repr__(self) -> str:
        return (
            f"PendingMutation({self.item_id!r}, {self.from_bucket!r} -> "
            f"{self.to_bucket!r}, outcome={self.outcome})"
        )


class OptimisticBoard(Generic[T]):
    """Items grouped into named buckets, mutated optimistically.

    key: item id accessor (defaults to the item's ``id`` attribute).
    place: returns the item as it should look in a new bucket, e.g. with its
        status or stage field updated.
    sort_key: keeps each bucket in display order after a change.
    on_revert: called with each operation after its local change is undone.
    """

    def __init__(
        self,
        buckets: dict[str, list[T]] | None = None,
        key: Callable[[T], str] | None = None,
        place: Callable[[T, str], T] | None = None,
        sort_key: Callable[[T], Any] | None = None,
        on_error: Callable[[str], None] | None = None,
        on_revert: Callable[[PendingMutation[T]], None] | None = None,
    ):
        self.key = key or (lambda item: item.id)  # type: ignore[attr-defined]
        self.place = place
        self.sort_key = sort_key
        self.on_error = on_error
        self.on_revert = on_revert
        self.buckets: dict[str, list[T]] = {}
        self.last_error: str | None = None
        self._owner: dict[str, PendingMutation[T]] = {}
        self._tasks: set[asyncio.Task[MutationOutcome]] = set()
        if buckets:
            self.replace_all(buckets)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def items(self, bucket: str) -> list[T]:
        return list(self.buckets.get(bucket, []))

    def locate(self, item_id: str) -> tuple[str, T] | None:
        for name, items in self.buckets.items():
            for item in items:
                if self.key(item) == item_id:
                    return name, item
        return None

    def counts(self) -> dict[str, int]:
        return {name: len(items) for name, items in self.buckets.items()}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    def replace_all(self, buckets: dict[str, Iterable[T]]) -> None:
        """Install authoritative state. In-flight confirmations lose ownership."""
        self.buckets = {name: list(items) for name, items in buckets.items()}
        for name in self.buckets:
            self._sort(name)
        self._owner.clear()

    def add(self, bucket: str, item: T) -> None:
        """Insert an item the server already created."""
        self.buckets.setdefault(bucket, []).insert(0, item)
        self._sort(bucket)

    def begin_move(
        self, item_id: str, from_bucket: str, to_bucket: str, confirm: Confirm
    ) -> PendingMutation[T] | None:
        """Move an item now and confirm in the background.

        Returns None (and does nothing) when from and to are the same bucket
        or the item is not currently in from_bucket.
        """
        if from_bucket == to_bucket:
            return None
        index = self._index_of(from_bucket, item_id)
        if index is None:
            return None

        item = self.buckets[from_bucket].pop(index)
        moved = self.place(item, to_bucket) if self.place else item
        self.buckets.setdefault(to_bucket, []).insert(0, moved)
        self._sort(to_bucket)

        op = PendingMutation(
            item_id, item, from_bucket, to_bucket, index, self._owner.get(item_id)
        )
        return self._start(op, confirm)

    def begin_remove(
        self, item_id: str, from_bucket: str, confirm: Confirm
    ) -> PendingMutation[T] | None:
        index = self._index_of(from_bucket, item_id)
        if index is None:
            return None
        item = self.buckets[from_bucket].pop(index)
        op = PendingMutation(item_id, item, from_bucket, None, index, self._owner.get(item_id))
        return self._start(op, confirm)

    async def drain(self) -> None:
        """Wait for every in-flight confirmation to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # -----------------------------------------------------------------------
    # Settlement
    # -----------------------------------------------------------------------

    def _start(self, op: PendingMutation[T], confirm: Confirm) -> PendingMutation[T]:
        self._owner[op.item_id] = op
        task = asyncio.create_task(self._settle(op, confirm))
        op.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return op

    async def _settle(self, op: PendingMutation[T], confirm: Confirm) -> MutationOutcome:
        try:
            result = await confirm()
        except Exception as e:
            logger.exception("Confirmation for %s raised", op.item_id)
            result = ActionResult(success=False, message=str(e) or type(e).__name__)
        op.result = result

        owns = self._owner.get(op.item_id) is op
        if result.success:
            if owns:
                del self._owner[op.item_id]
            op.outcome = MutationOutcome.COMMITTED
            return op.outcome

        self._report(result.message or "Operation failed")
        if not owns or not self._revert(op):
            logger.warning(
                "Confirmation for %s failed after a newer change; keeping current placement",
                op.item_id,
            )
            op.outcome = MutationOutcome.SUPERSEDED
            return op.outcome

        logger.warning(
            "Reverted %s to %s: %s", op.item_id, op.from_bucket, result.message
        )
        op.outcome = MutationOutcome.REVERTED
        if self.on_revert is not None:
            self.on_revert(op)
        return op.outcome

    def _revert(self, op: PendingMutation[T]) -> bool:
        """Undo op and any earlier failed operations it was chained to."""
        if op.to_bucket is None:
            if self.locate(op.item_id) is not None:
                return False
        else:
            index = self._index_of(op.to_bucket, op.item_id)
            if index is None:
                return False
            self.buckets[op.to_bucket].pop(index)

        # Earlier moves that already failed never reached the server
        target = op
        while target.prev is not None and target.prev.failed:
            target = target.prev

        bucket = self.buckets.setdefault(target.from_bucket, [])
        bucket.insert(min(target.index, len(bucket)), target.item)
        self._sort(target.from_bucket)

        prev = target.prev
        if prev is not None and not prev.done:
            self._owner[op.item_id] = prev
        else:
            self._owner.pop(op.item_id, None)
        return True

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _index_of(self, bucket: str, item_id: str) -> int | None:
        for i, item in enumerate(self.buckets.get(bucket, [])):
            if self.key(item) == item_id:
                return i
        return None

    def _sort(self, bucket: str) -> None:
        if self.sort_key is not None and bucket in self.buckets:
            self.buckets[bucket].sort(key=self.sort_key)

    def _report(self, message: str) -> None:
        self.last_error = message
        if self.on_error is not None:
            self.on_error(message)
