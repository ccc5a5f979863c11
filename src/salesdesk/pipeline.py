"""Deal and contact pipelines: stages, deal create/move/delete, status kanban, stats."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from salesdesk.activity import ActivityLog
from salesdesk.core.config import Settings
from salesdesk.core.database import Database
from salesdesk.core.database_pg import PostgresDatabase
from salesdesk.core.models import (
    PIPELINE_STATUSES,
    ActionError,
    ActionResult,
    Contact,
    ContactBoard,
    ContactStatus,
    CreateDealRequest,
    CreateDealResult,
    Deal,
    DealBoard,
    DealFilters,
    EntityType,
    PipelineStage,
    PipelineStats,
)
from salesdesk.stats import start_of_day
from salesdesk.tenancy import ContactDirectory

logger = logging.getLogger(__name__)


# name, slug, color, closed won, closed lost
DEFAULT_STAGES: list[tuple[str, str, str, bool, bool]] = [
    ("New Lead", "new_lead", "#6b7280", False, False),
    ("Contacted", "contacted", "#3b82f6", False, False),
    ("Qualified", "qualified", "#8b5cf6", False, False),
    ("Proposal", "proposal", "#f59e0b", False, False),
    ("Negotiation", "negotiation", "#f97316", False, False),
    ("Closed Won", "closed_won", "#22c55e", True, False),
    ("Closed Lost", "closed_lost", "#ef4444", False, True),
]

DATE_RANGES = ("today", "week", "month", "quarter", "all")

DEAL_NOT_FOUND = "Deal not found"

CONTACT_BOARD_LIMIT = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


def date_range_start(
    date_range: str | None, now: datetime | None = None, tz_name: str = "UTC"
) -> datetime | None:
    """Lower bound on created_at for a named date range filter."""
    if not date_range or date_range == "all":
        return None
    now = now or _now()
    if date_range == "today":
        return start_of_day(now, tz_name)
    if date_range == "week":
        return now - timedelta(days=7)
    if date_range == "month":
        return now - timedelta(days=30)
    if date_range == "quarter":
        return now - timedelta(days=90)
    raise ValueError(f"Unknown date range: {date_range}")


def compute_stats(
    deals: list[Deal], stages: list[PipelineStage], now: datetime | None = None
) -> PipelineStats:
    now = now or _now()
    week_ago = now - timedelta(days=7)
    won_ids = {s.id for s in stages if s.is_closed_won}

    total = len(deals)
    new_this_week = 0
    for d in deals:
        created = d.created_at
        if created is None:
            continue
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        if created >= week_ago:
            new_this_week += 1
    won = sum(1 for d in deals if d.stage_id in won_ids)

    return PipelineStats(
        total_deals=total,
        new_this_week=new_this_week,
        total_value=sum(d.value for d in deals),
        conversion_rate=round(won / total * 100) if total else 0,
    )


class PipelineService:
    """Tenant-scoped deal pipeline operations."""

    def __init__(
        self,
        db: Database | PostgresDatabase,
        settings: Settings | None = None,
        contacts: ContactDirectory | None = None,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.contacts = contacts or ContactDirectory(db)
        self.activity = ActivityLog(db)

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    async def list_stages(self, company_id: str) -> list[PipelineStage]:
        return await self.db.list_stages(company_id)

    async def ensure_default_stages(self, company_id: str) -> list[PipelineStage]:
        """Seed the default stage set for a company that has none."""
        existing = await self.db.list_stages(company_id)
        if existing:
            return existing
        for position, (name, slug, color, won, lost) in enumerate(DEFAULT_STAGES):
            await self.db.create_stage(
                PipelineStage(
                    id=str(uuid.uuid4()),
                    company_id=company_id,
                    name=name,
                    slug=slug,
                    color=color,
                    position=position,
                    is_closed_won=won,
                    is_closed_lost=lost,
                )
            )
        logger.info("Seeded %d default stages for %s", len(DEFAULT_STAGES), company_id)
        return await self.db.list_stages(company_id)

    # -----------------------------------------------------------------------
    # Deals
    # -----------------------------------------------------------------------

    async def get_deals(
        self,
        company_id: str,
        filters: DealFilters | None = None,
        now: datetime | None = None,
    ) -> DealBoard:
        """Deals grouped by stage id. Every tenant stage gets a column."""
        stages = await self.db.list_stages(company_id)
        deals = await self.db.list_deals(company_id, filters)

        grouped: dict[str, list[Deal]] = {s.id: [] for s in stages}
        for deal in deals:
            grouped.setdefault(deal.stage_id, []).append(deal)

        return DealBoard(deals=grouped, stats=compute_stats(deals, stages, now))

    async def create_deal(
        self, company_id: str, user_id: str, request: CreateDealRequest
    ) -> CreateDealResult:
        title = (request.title or "").strip()
        if len(title) < 2:
            return CreateDealResult(
                error=ActionError.INVALID_INPUT, message="Title must be at least 2 characters"
            )
        if not request.stage_id:
            return CreateDealResult(error=ActionError.INVALID_INPUT, message="Stage is required")
        if request.value < 0:
            return CreateDealResult(
                error=ActionError.INVALID_INPUT, message="Value cannot be negative"
            )

        stage = await self.db.get_stage(company_id, request.stage_id)
        if stage is None:
            return CreateDealResult(error=ActionError.INVALID_INPUT, message="Invalid stage")
        if request.contact_id and not await self.contacts.belongs_to(
            company_id, request.contact_id
        ):
            return CreateDealResult(error=ActionError.INVALID_INPUT, message="Invalid contact")

        deal = await self.db.create_deal(
            Deal(
                id=str(uuid.uuid4()),
                company_id=company_id,
                stage_id=stage.id,
                contact_id=request.contact_id or None,
                title=title,
                value=request.value,
                priority=request.priority,
                source=request.source,
                expected_close_date=request.expected_close_date,
                notes=request.notes or None,
                created_by=user_id,
                assigned_to=request.assigned_to or user_id,
                closed_at=_now() if stage.is_terminal else None,
            )
        )
        await self.activity.record(
            company_id, EntityType.DEAL, deal.id, "created",
            user_id=user_id,
            new_value={"title": deal.title, "value": deal.value},
        )
        logger.info("Created deal %s in stage %s", deal.id, stage.slug)
        return CreateDealResult(success=True, deal=deal)

    async def move_stage(
        self,
        company_id: str,
        deal_id: str,
        to_stage_id: str,
        from_stage_id: str | None = None,
        user_id: str | None = None,
    ) -> ActionResult:
        """Move a deal to another stage of the same tenant.

        Last writer wins: from_stage_id is informational and is not used as a
        guard. Concurrent moves are resolved by the client sync engine.
        """
        if not deal_id:
            return ActionResult.fail(ActionError.INVALID_INPUT, "Deal ID is required")
        if not to_stage_id:
            return ActionResult.fail(ActionError.INVALID_INPUT, "Stage ID is required")

        deal = await self.db.get_deal(company_id, deal_id)
        if deal is None:
            return ActionResult.fail(ActionError.NOT_FOUND, DEAL_NOT_FOUND)
        stage = await self.db.get_stage(company_id, to_stage_id)
        if stage is None:
            return ActionResult.fail(ActionError.INVALID_INPUT, "Invalid stage")
        if deal.stage_id == to_stage_id:
            return ActionResult.ok()

        if from_stage_id and from_stage_id != deal.stage_id:
            logger.debug(
                "Deal %s moved from %s but server has %s", deal_id, from_stage_id, deal.stage_id
            )

        closed_at = _now() if stage.is_terminal else None
        updated = await self.db.update_deal_stage(company_id, deal_id, to_stage_id, closed_at)
        if updated is None:
            return ActionResult.fail(ActionError.NOT_FOUND, DEAL_NOT_FOUND)

        await self.activity.record(
            company_id, EntityType.DEAL, deal_id, "stage_changed",
            user_id=user_id,
            old_value={"stage_id": deal.stage_id},
            new_value={"stage_id": to_stage_id},
        )
        logger.info("Deal %s moved %s -> %s", deal_id, deal.stage_id, to_stage_id)
        return ActionResult.ok()

    async def delete_deal(
        self, company_id: str, deal_id: str, user_id: str | None = None
    ) -> ActionResult:
        deal = await self.db.get_deal(company_id, deal_id)
        if deal is None or not await self.db.delete_deal(company_id, deal_id):
            return ActionResult.fail(ActionError.NOT_FOUND, DEAL_NOT_FOUND)

        await self.activity.record(
            company_id, EntityType.DEAL, deal_id, "deleted",
            user_id=user_id,
            old_value={"title": deal.title},
        )
        logger.info("Deleted deal %s", deal_id)
        return ActionResult.ok()

    # -----------------------------------------------------------------------
    # Contact status pipeline
    # -----------------------------------------------------------------------

    async def get_contacts_by_status(self, company_id: str) -> ContactBoard:
        """Contacts in a pipeline status, one column per status, newest activity first."""
        contacts = await self.db.list_contacts_by_status(
            company_id, PIPELINE_STATUSES, CONTACT_BOARD_LIMIT
        )
        grouped: dict[ContactStatus, list[Contact]] = {s: [] for s in PIPELINE_STATUSES}
        for contact in contacts:
            grouped[contact.status].append(contact)
        return ContactBoard(contacts=grouped)

    async def update_contact_status(
        self,
        company_id: str,
        contact_id: str,
        status: str | ContactStatus,
        user_id: str | None = None,
    ) -> ActionResult:
        if not contact_id or not isinstance(contact_id, str):
            return ActionResult.fail(ActionError.INVALID_INPUT, "Invalid contact ID")
        try:
            target = ContactStatus(status)
        except ValueError:
            return ActionResult.fail(ActionError.INVALID_INPUT, "Invalid status")
        if target not in PIPELINE_STATUSES:
            return ActionResult.fail(ActionError.INVALID_INPUT, "Invalid status")

        before = await self.db.get_contact(company_id, contact_id)
        if before is None:
            return ActionResult.fail(ActionError.NOT_FOUND, "Contact not found")
        if before.status == target:
            return ActionResult.ok()

        updated = await self.db.update_contact_status(company_id, contact_id, target)
        if updated is None:
            return ActionResult.fail(ActionError.NOT_FOUND, "Contact not found")

        await self.activity.record(
            company_id, EntityType.CONTACT, contact_id, "status_changed",
            user_id=user_id,
            old_value={"status": before.status.value},
            new_value={"status": target.value},
        )
        logger.info("Contact %s moved %s -> %s", contact_id, before.status.value, target.value)
        return ActionResult.ok()
