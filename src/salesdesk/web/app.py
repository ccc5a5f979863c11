"""FastAPI application - JSON API for the AI call queue and the sales pipelines."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager

import asyncpg
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from salesdesk.activity import ActivityLog
from salesdesk.core.config import Settings
from salesdesk.core.database import NotConnectedError
from salesdesk.core.db_factory import backend_name, create_database
from salesdesk.core.models import (
    ActionError,
    ActionResult,
    ContactStatusUpdate,
    CreateDealRequest,
    DealFilters,
    DealPriority,
    DealSource,
    EnqueueRequest,
    EntityType,
    OutcomeReport,
    PriorityUpdate,
    QueueStatus,
    StageMove,
)
from salesdesk.dispatch import DispatchController
from salesdesk.item_store import InvalidInputError, ItemStore
from salesdesk.pipeline import DATE_RANGES, PipelineService, date_range_start
from salesdesk.stats import StatsAggregator
from salesdesk.tenancy import NotAuthorizedError, TenantResolver

logger = logging.getLogger(__name__)

settings = Settings()
db = create_database(settings)

# ActionError -> HTTP status for failed action results
ERROR_STATUS: dict[ActionError, int] = {
    ActionError.INVALID_INPUT: 400,
    ActionError.NOT_FOUND: 404,
    ActionError.NOT_AUTHORIZED: 404,
    ActionError.ALREADY_DISPATCHED: 409,
    ActionError.ATTEMPTS_EXHAUSTED: 409,
    ActionError.INVALID_STATE: 409,
    ActionError.STORAGE_UNAVAILABLE: 503,
}

STORAGE_ERRORS = (
    sqlite3.Error,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    NotConnectedError,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await db.connect()
    yield
    await db.close()


app = FastAPI(title="Salesdesk", version="0.1.0", lifespan=lifespan)


async def _storage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Storage error on %s %s", request.method, request.url.path, exc_info=exc)
    body = ActionResult.fail(
        ActionError.STORAGE_UNAVAILABLE, "Service temporarily unavailable"
    )
    return JSONResponse(status_code=503, content=body.model_dump(mode="json"))


for _exc in STORAGE_ERRORS:
    app.add_exception_handler(_exc, _storage_error_handler)


class Principal(BaseModel):
    """Authenticated user resolved to a company."""

    user_id: str
    company_id: str


async def get_principal(request: Request) -> Principal:
    user_id = request.headers.get(settings.user_id_header)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated"
        )
    try:
        company_id = await TenantResolver(db).resolve(user_id)
    except NotAuthorizedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    return Principal(user_id=user_id, company_id=company_id)


def _action_response(result: ActionResult) -> JSONResponse:
    code = 200 if result.success else ERROR_STATUS.get(result.error, 400)
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


def _clamp_limit(limit: int | None) -> int:
    if limit is None:
        return settings.list_limit_default
    return max(1, min(limit, settings.list_limit_max))


# =========================================================================
# API: Health
# =========================================================================


@app.get("/health")
async def health():
    return {"status": "ok", "backend": backend_name(settings)}


# =========================================================================
# API: Queue
# =========================================================================


@app.post("/api/queue")
async def api_enqueue(request: EnqueueRequest, who: Principal = Depends(get_principal)):
    store = ItemStore(db, settings)
    try:
        result = await store.create(who.company_id, request, user_id=who.user_id)
    except InvalidInputError as e:
        return _action_response(ActionResult.fail(ActionError.INVALID_INPUT, str(e)))
    return result.model_dump(mode="json")


@app.get("/api/queue")
async def api_list_queue(
    status_filter: str | None = Query(None, alias="status"),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    who: Principal = Depends(get_principal),
):
    status_enum: QueueStatus | None = None
    if status_filter:
        try:
            status_enum = QueueStatus(status_filter)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status_filter}")
    store = ItemStore(db, settings)
    items = await store.list_items(who.company_id, status_enum, _clamp_limit(limit), offset)
    return [i.model_dump(mode="json") for i in items]


@app.get("/api/queue/candidates")
async def api_queue_candidates(
    limit: int | None = Query(None, ge=1),
    who: Principal = Depends(get_principal),
):
    controller = DispatchController(db, settings)
    items = await controller.candidates(who.company_id, _clamp_limit(limit))
    return [i.model_dump(mode="json") for i in items]


@app.get("/api/queue/stats")
async def api_queue_stats(who: Principal = Depends(get_principal)):
    stats = await StatsAggregator(db, settings).get_stats(who.company_id)
    return stats.model_dump(mode="json")


@app.get("/api/queue/{item_id}")
async def api_get_item(item_id: str, who: Principal = Depends(get_principal)):
    item = await ItemStore(db, settings).get(who.company_id, item_id)
    if item is None:
        return _action_response(ActionResult.fail(ActionError.NOT_FOUND, "Item not found"))
    return item.model_dump(mode="json")


@app.post("/api/queue/{item_id}/dispatch")
async def api_dispatch(item_id: str, who: Principal = Depends(get_principal)):
    controller = DispatchController(db, settings)
    return _action_response(await controller.dispatch(who.company_id, item_id, who.user_id))


@app.post("/api/queue/{item_id}/priority")
async def api_set_priority(
    item_id: str, body: PriorityUpdate, who: Principal = Depends(get_principal)
):
    controller = DispatchController(db, settings)
    result = await controller.set_priority(who.company_id, item_id, body.priority, who.user_id)
    return _action_response(result)


@app.post("/api/queue/{item_id}/cancel")
async def api_cancel(item_id: str, who: Principal = Depends(get_principal)):
    controller = DispatchController(db, settings)
    return _action_response(await controller.cancel(who.company_id, item_id, who.user_id))


@app.delete("/api/queue/{item_id}")
async def api_remove(item_id: str, who: Principal = Depends(get_principal)):
    controller = DispatchController(db, settings)
    return _action_response(await controller.remove(who.company_id, item_id, who.user_id))


@app.post("/api/queue/{item_id}/outcome")
async def api_report_outcome(
    item_id: str, report: OutcomeReport, who: Principal = Depends(get_principal)
):
    """Called by the external dispatch worker after a call attempt."""
    controller = DispatchController(db, settings)
    return _action_response(await controller.report_outcome(who.company_id, item_id, report))


# =========================================================================
# API: Pipeline
# =========================================================================


@app.get("/api/pipeline/stages")
async def api_stages(who: Principal = Depends(get_principal)):
    stages = await PipelineService(db, settings).list_stages(who.company_id)
    return [s.model_dump(mode="json") for s in stages]


@app.post("/api/pipeline/stages/defaults")
async def api_seed_stages(who: Principal = Depends(get_principal)):
    stages = await PipelineService(db, settings).ensure_default_stages(who.company_id)
    return [s.model_dump(mode="json") for s in stages]


@app.get("/api/pipeline/deals")
async def api_deals(
    stage_id: str | None = Query(None),
    priority: DealPriority | None = Query(None),
    source: DealSource | None = Query(None),
    date_range: str | None = Query(None),
    search: str | None = Query(None),
    limit: int = Query(500, ge=1, le=500),
    who: Principal = Depends(get_principal),
):
    if date_range and date_range not in DATE_RANGES:
        raise HTTPException(status_code=400, detail=f"Invalid date range: {date_range}")
    filters = DealFilters(
        stage_id=stage_id,
        priority=priority,
        source=source,
        created_since=date_range_start(date_range, tz_name=settings.stats_timezone),
        search=search,
        limit=limit,
    )
    board = await PipelineService(db, settings).get_deals(who.company_id, filters)
    return board.model_dump(mode="json")


@app.post("/api/pipeline/deals")
async def api_create_deal(request: CreateDealRequest, who: Principal = Depends(get_principal)):
    result = await PipelineService(db, settings).create_deal(
        who.company_id, who.user_id, request
    )
    code = 200 if result.success else ERROR_STATUS.get(result.error, 400)
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


@app.post("/api/pipeline/deals/{deal_id}/move")
async def api_move_deal(deal_id: str, move: StageMove, who: Principal = Depends(get_principal)):
    result = await PipelineService(db, settings).move_stage(
        who.company_id, deal_id, move.to_stage_id, move.from_stage_id, who.user_id
    )
    return _action_response(result)


@app.delete("/api/pipeline/deals/{deal_id}")
async def api_delete_deal(deal_id: str, who: Principal = Depends(get_principal)):
    result = await PipelineService(db, settings).delete_deal(
        who.company_id, deal_id, who.user_id
    )
    return _action_response(result)


@app.get("/api/pipeline/contacts")
async def api_contacts_by_status(who: Principal = Depends(get_principal)):
    board = await PipelineService(db, settings).get_contacts_by_status(who.company_id)
    return board.model_dump(mode="json")


@app.post("/api/pipeline/contacts/{contact_id}/status")
async def api_update_contact_status(
    contact_id: str, body: ContactStatusUpdate, who: Principal = Depends(get_principal)
):
    result = await PipelineService(db, settings).update_contact_status(
        who.company_id, contact_id, body.status, who.user_id
    )
    return _action_response(result)


# =========================================================================
# API: Activity
# =========================================================================


@app.get("/api/activity")
async def api_activity(
    entity_type: EntityType | None = Query(None),
    entity_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    who: Principal = Depends(get_principal),
):
    entries = await ActivityLog(db).recent(who.company_id, entity_type, entity_id, limit)
    return [e.model_dump(mode="json") for e in entries]
