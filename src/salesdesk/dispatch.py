"""AI call queue state machine: atomic dispatch, priority, cancel, remove, worker reports."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from salesdesk.activity import ActivityLog
from salesdesk.core.config import Settings
from salesdesk.core.database import Database
from salesdesk.core.database_pg import PostgresDatabase
from salesdesk.core.models import (
    ActionError,
    ActionResult,
    EntityType,
    OutcomeReport,
    QueueItem,
    QueueOutcome,
    QueueStatus,
)
from salesdesk.item_store import (
    InvalidInputError,
    InvalidStateError,
    ItemNotFoundError,
    ItemStore,
    parse_priority,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Legal transition map
# ---------------------------------------------------------------------------

TRANSITIONS: dict[QueueStatus, set[QueueStatus]] = {
    QueueStatus.PENDING: {
        QueueStatus.IN_PROGRESS,
        QueueStatus.CANCELLED,
    },
    QueueStatus.RETRY_SCHEDULED: {
        QueueStatus.IN_PROGRESS,
        QueueStatus.CANCELLED,
    },
    # Only the external dispatch worker reports these
    QueueStatus.IN_PROGRESS: {
        QueueStatus.COMPLETED,
        QueueStatus.FAILED,
        QueueStatus.RETRY_SCHEDULED,
    },
    QueueStatus.COMPLETED: set(),  # terminal
    QueueStatus.FAILED: set(),
    QueueStatus.CANCELLED: set(),  # terminal
}

TERMINAL_STATES = {
    QueueStatus.COMPLETED,
    QueueStatus.CANCELLED,
}

WORKER_REPORT_STATES = TRANSITIONS[QueueStatus.IN_PROGRESS]

NOT_FOUND = "Item not found"


def can_transition(current: QueueStatus, target: QueueStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


def sources_of(target: QueueStatus) -> frozenset[QueueStatus]:
    """States from which target can be entered."""
    return frozenset(s for s in QueueStatus if can_transition(s, target))


# Waiting items: the ones a dispatch may still claim
CLAIMABLE_STATES = sources_of(QueueStatus.IN_PROGRESS)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DispatchController:
    """Applies queue transitions as single conditional updates.

    Expected conflicts come back as ActionResult failures; storage errors
    propagate to the caller.
    """

    def __init__(
        self,
        db: Database | PostgresDatabase,
        settings: Settings | None = None,
        store: ItemStore | None = None,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.store = store or ItemStore(db, self.settings)
        self.activity = ActivityLog(db)

    async def dispatch(
        self, company_id: str, item_id: str, user_id: str | None = None
    ) -> ActionResult:
        """Claim an item for an immediate call. At most one caller wins."""
        if not item_id:
            return ActionResult.fail(ActionError.INVALID_INPUT, "Item ID is required")

        claimed = await self.db.claim_queue_item(
            company_id, item_id, _now(), CLAIMABLE_STATES
        )
        if claimed is None:
            return await self._classify_failed_claim(company_id, item_id)

        await self.activity.record(
            company_id, EntityType.QUEUE_ITEM, item_id, "dispatched",
            user_id=user_id,
            new_value={"status": claimed.status.value, "attempts": claimed.attempts},
        )
        logger.info(
            "Dispatched %s (attempt %d/%d)", item_id, claimed.attempts, claimed.max_attempts
        )
        return ActionResult.ok("Call dispatched")

    async def _classify_failed_claim(self, company_id: str, item_id: str) -> ActionResult:
        item = await self.db.get_queue_item(company_id, item_id)
        if item is None:
            return ActionResult.fail(ActionError.NOT_FOUND, NOT_FOUND)
        if item.attempts_exhausted:
            return ActionResult.fail(ActionError.ATTEMPTS_EXHAUSTED, "Maximum attempts reached")
        if item.status == QueueStatus.IN_PROGRESS:
            return ActionResult.fail(
                ActionError.ALREADY_DISPATCHED, "Item is already being dispatched"
            )
        return ActionResult.fail(
            ActionError.INVALID_STATE, "Item is not in a dispatchable state"
        )

    async def set_priority(
        self,
        company_id: str,
        item_id: str,
        priority: str | int,
        user_id: str | None = None,
    ) -> ActionResult:
        try:
            new_priority = parse_priority(
                priority, message="Priority must be 1 (high) or 2 (normal)"
            )
        except InvalidInputError as e:
            return ActionResult.fail(ActionError.INVALID_INPUT, str(e))

        before = await self.db.get_queue_item(company_id, item_id)
        if before is None:
            return ActionResult.fail(ActionError.NOT_FOUND, NOT_FOUND)

        updated = await self.db.update_queue_item_if(
            company_id, item_id, CLAIMABLE_STATES, priority=new_priority
        )
        if updated is None:
            return await self._conflict(
                company_id, item_id, "Priority can only be changed while the item is waiting"
            )

        await self.activity.record(
            company_id, EntityType.QUEUE_ITEM, item_id, "priority_changed",
            user_id=user_id,
            old_value={"priority": before.priority.value},
            new_value={"priority": new_priority.value},
        )
        logger.info("Priority of %s set to %s", item_id, new_priority.value)
        return ActionResult.ok()

    async def cancel(
        self, company_id: str, item_id: str, user_id: str | None = None
    ) -> ActionResult:
        updated = await self.db.update_queue_item_if(
            company_id, item_id, sources_of(QueueStatus.CANCELLED),
            status=QueueStatus.CANCELLED,
        )
        if updated is None:
            return await self._conflict(
                company_id, item_id, "Only waiting items can be cancelled"
            )
        await self.activity.record(
            company_id, EntityType.QUEUE_ITEM, item_id, "cancelled",
            user_id=user_id,
            new_value={"status": QueueStatus.CANCELLED.value},
        )
        logger.info("Cancelled %s", item_id)
        return ActionResult.ok()

    async def remove(
        self, company_id: str, item_id: str, user_id: str | None = None
    ) -> ActionResult:
        try:
            await self.store.delete(company_id, item_id)
        except ItemNotFoundError as e:
            return ActionResult.fail(ActionError.NOT_FOUND, str(e))
        except InvalidStateError as e:
            return ActionResult.fail(ActionError.INVALID_STATE, str(e))

        await self.activity.record(
            company_id, EntityType.QUEUE_ITEM, item_id, "removed", user_id=user_id
        )
        logger.info("Removed %s from queue", item_id)
        return ActionResult.ok()

    async def report_outcome(
        self, company_id: str, item_id: str, report: OutcomeReport
    ) -> ActionResult:
        """Record the external worker's result for an in-progress call."""
        try:
            target = QueueStatus(report.status)
        except ValueError:
            return ActionResult.fail(ActionError.INVALID_INPUT, "Invalid status")
        if target not in WORKER_REPORT_STATES:
            return ActionResult.fail(
                ActionError.INVALID_INPUT,
                "Status must be completed, failed or retry_scheduled",
            )
        try:
            outcome = QueueOutcome(report.outcome) if report.outcome else None
        except ValueError:
            return ActionResult.fail(ActionError.INVALID_INPUT, "Invalid outcome")

        item = await self.db.get_queue_item(company_id, item_id)
        if item is None:
            return ActionResult.fail(ActionError.NOT_FOUND, NOT_FOUND)
        if not can_transition(item.status, target):
            return ActionResult.fail(ActionError.INVALID_STATE, "Item is not in progress")
        if target == QueueStatus.RETRY_SCHEDULED and item.attempts_exhausted:
            return ActionResult.fail(ActionError.ATTEMPTS_EXHAUSTED, "Maximum attempts reached")

        fields: dict = {"status": target}
        if outcome is not None:
            fields["outcome"] = outcome
        if report.notes is not None:
            fields["notes"] = report.notes
        if target == QueueStatus.RETRY_SCHEDULED:
            retry_at = report.retry_at or (
                _now() + timedelta(minutes=self.settings.retry_delay_minutes)
            )
            if retry_at.tzinfo is None:
                retry_at = retry_at.replace(tzinfo=timezone.utc)
            fields["scheduled_at"] = retry_at

        updated = await self.db.update_queue_item_if(
            company_id, item_id, sources_of(target), **fields
        )
        if updated is None:
            return await self._conflict(company_id, item_id, "Item is not in progress")

        await self.activity.record(
            company_id, EntityType.QUEUE_ITEM, item_id, "outcome_reported",
            old_value={"status": item.status.value},
            new_value={
                "status": target.value,
                "outcome": outcome.value if outcome else None,
            },
        )
        logger.info("Outcome for %s: %s", item_id, target.value)
        return ActionResult.ok()

    async def candidates(self, company_id: str, limit: int | None = None) -> list[QueueItem]:
        """Items the worker may claim now, in dispatch order."""
        s = self.settings
        limit = s.list_limit_default if limit is None else max(1, min(limit, s.list_limit_max))
        return await self.db.list_dispatch_candidates(company_id, _now(), limit)

    async def _conflict(self, company_id: str, item_id: str, message: str) -> ActionResult:
        if await self.db.get_queue_item(company_id, item_id) is None:
            return ActionResult.fail(ActionError.NOT_FOUND, NOT_FOUND)
        return ActionResult.fail(ActionError.INVALID_STATE, message)
