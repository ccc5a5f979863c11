"""Pydantic models for the queue and pipeline."""

from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRY_SCHEDULED = "retry_scheduled"


class QueuePriority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"

    @property
    def rank(self) -> int:
        """Sort rank; lower dispatches first."""
        return 0 if self is QueuePriority.HIGH else 1


class QueueOutcome(str, enum.Enum):
    BOOKED = "booked"
    CALLBACK = "callback"
    NOT_INTERESTED = "not_interested"
    NO_ANSWER = "no_answer"
    WRONG_NUMBER = "wrong_number"
    VOICEMAIL = "voicemail"


class DealPriority(str, enum.Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class DealSource(str, enum.Enum):
    MANUAL = "manual"
    FACEBOOK = "facebook"
    GOOGLE = "google"
    WEBSITE = "website"
    REFERRAL = "referral"
    OTHER = "other"


class ActionError(str, enum.Enum):
    """Tagged failure reasons returned by queue and pipeline operations."""

    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    NOT_AUTHORIZED = "not_authorized"
    ALREADY_DISPATCHED = "already_dispatched"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    INVALID_STATE = "invalid_state"
    STORAGE_UNAVAILABLE = "storage_unavailable"


class ContactStatus(str, enum.Enum):
    NEW = "new"
    CONTACTED = "contacted"
    ENGAGED = "engaged"
    QUALIFIED = "qualified"
    NURTURING = "nurturing"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"
    DO_NOT_CONTACT = "do_not_contact"


# Kanban columns, in display order. Nurturing and do-not-contact stay off the board.
PIPELINE_STATUSES: tuple[ContactStatus, ...] = (
    ContactStatus.NEW,
    ContactStatus.CONTACTED,
    ContactStatus.ENGAGED,
    ContactStatus.QUALIFIED,
    ContactStatus.CLOSED_WON,
    ContactStatus.CLOSED_LOST,
)


class EntityType(str, enum.Enum):
    QUEUE_ITEM = "queue_item"
    DEAL = "deal"
    CONTACT = "contact"


# ---------------------------------------------------------------------------
# Collaborator rows
# ---------------------------------------------------------------------------

class ContactSummary(BaseModel):
    """Contact fields shown alongside queue items and deals."""

    id: str
    name: str = "Unknown"
    phone: str = ""
    business_name: str | None = None

    @classmethod
    def pop_from_row(cls, row: dict[str, Any]) -> ContactSummary | None:
        """Remove joined contact_* columns from a row dict and summarise them.

        Returns None when the row has no contact or the join found none.
        """
        fields = {
            key: row.pop(f"contact_{key}", None)
            for key in ("first_name", "last_name", "phone", "business_name")
        }
        if not row.get("contact_id") or fields["phone"] is None:
            return None
        contact = Contact(id=row["contact_id"], company_id=row.get("company_id", ""), **fields)
        return contact.summary()


class Contact(BaseModel):
    id: str
    company_id: str
    first_name: str | None = None
    last_name: str | None = None
    phone: str = ""
    business_name: str | None = None
    status: ContactStatus = ContactStatus.NEW
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or "Unknown"

    def summary(self) -> ContactSummary:
        return ContactSummary(
            id=self.id,
            name=self.display_name,
            phone=self.phone,
            business_name=self.business_name,
        )


class CompanyMember(BaseModel):
    user_id: str
    company_id: str
    role: str = "member"
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class QueueItem(BaseModel):
    id: str
    company_id: str
    contact_id: str
    status: QueueStatus = QueueStatus.PENDING
    priority: QueuePriority = QueuePriority.NORMAL
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    scheduled_at: datetime | None = None
    last_attempt_at: datetime | None = None
    outcome: QueueOutcome | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    contact: ContactSummary | None = None  # joined on listings

    @model_validator(mode="after")
    def _check_invariants(self) -> QueueItem:
        if self.attempts > self.max_attempts:
            raise ValueError(
                f"attempts ({self.attempts}) exceeds max_attempts ({self.max_attempts})"
            )
        if self.status == QueueStatus.IN_PROGRESS and (
            self.last_attempt_at is None or self.attempts < 1
        ):
            raise ValueError("in_progress item must have an attempt recorded")
        return self

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


class EnqueueRequest(BaseModel):
    """Input for adding contacts to the AI call queue.

    Fields are loosely typed so the item store can reject bad values with
    user-facing messages instead of schema errors.
    """

    contact_ids: list[str] = Field(default_factory=list)
    priority: str | int | None = None
    scheduled_at: str | datetime | None = None


class EnqueueResult(BaseModel):
    created: int = 0
    skipped: int = 0  # already active, or repeated in the batch
    rejected: int = 0  # not in the caller's tenant
    message: str | None = None


class ActionResult(BaseModel):
    success: bool = False
    error: ActionError | None = None
    message: str | None = None

    @classmethod
    def ok(cls, message: str | None = None) -> ActionResult:
        return cls(success=True, message=message)

    @classmethod
    def fail(cls, error: ActionError, message: str) -> ActionResult:
        return cls(success=False, error=error, message=message)


class PriorityUpdate(BaseModel):
    priority: str | int


class OutcomeReport(BaseModel):
    """Report sent by the external dispatch worker after a call."""

    status: str
    outcome: str | None = None
    notes: str | None = None
    retry_at: datetime | None = None


class QueueStats(BaseModel):
    pending: int = 0
    in_progress: int = 0
    completed_today: int = 0
    failed_today: int = 0
    estimated_cost_today: float = 0.0


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class PipelineStage(BaseModel):
    id: str
    company_id: str
    name: str
    slug: str
    color: str = "#6b7280"
    position: int = 0
    is_closed_won: bool = False
    is_closed_lost: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.is_closed_won or self.is_closed_lost


class Deal(BaseModel):
    id: str
    company_id: str
    stage_id: str
    contact_id: str | None = None
    title: str
    value: float = Field(default=0.0, ge=0)
    priority: DealPriority = DealPriority.WARM
    source: DealSource = DealSource.MANUAL
    expected_close_date: date | None = None
    notes: str | None = None
    created_by: str | None = None
    assigned_to: str | None = None
    closed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    contact: ContactSummary | None = None  # joined on listings


class CreateDealRequest(BaseModel):
    title: str
    stage_id: str
    contact_id: str | None = None
    value: float = 0.0
    priority: DealPriority = DealPriority.WARM
    source: DealSource = DealSource.MANUAL
    expected_close_date: date | None = None
    notes: str | None = None
    assigned_to: str | None = None


class StageMove(BaseModel):
    from_stage_id: str | None = None
    to_stage_id: str


class DealFilters(BaseModel):
    stage_id: str | None = None
    priority: DealPriority | None = None
    source: DealSource | None = None
    created_since: datetime | None = None
    search: str | None = None
    limit: int = 500


class PipelineStats(BaseModel):
    total_deals: int = 0
    new_this_week: int = 0
    total_value: float = 0.0
    conversion_rate: int = 0  # percent of deals in closed-won stages


class DealBoard(BaseModel):
    """Deals grouped by stage id, as rendered by the kanban."""

    deals: dict[str, list[Deal]] = Field(default_factory=dict)
    stats: PipelineStats = Field(default_factory=PipelineStats)


class CreateDealResult(BaseModel):
    success: bool = False
    deal: Deal | None = None
    error: ActionError | None = None
    message: str | None = None


class ContactStatusUpdate(BaseModel):
    status: str


class ContactBoard(BaseModel):
    """Contacts grouped into the pipeline status columns."""

    contacts: dict[ContactStatus, list[Contact]] = Field(default_factory=dict)

    @property
    def counts(self) -> dict[ContactStatus, int]:
        return {status: len(self.contacts.get(status, [])) for status in PIPELINE_STATUSES}


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------

class ActivityEntry(BaseModel):
    id: str | None = None
    company_id: str
    user_id: str | None = None
    entity_type: EntityType
    entity_id: str
    action: str
    old_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    created_at: datetime | None = None
