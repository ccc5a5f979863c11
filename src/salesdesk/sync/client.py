"""HTTP client for the salesdesk API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx

from salesdesk.core.config import Settings
from salesdesk.core.models import (
    ActionError,
    ActionResult,
    ActivityEntry,
    ContactBoard,
    CreateDealRequest,
    CreateDealResult,
    DealBoard,
    EnqueueResult,
    OutcomeReport,
    PipelineStage,
    QueueItem,
    QueueStats,
    QueueStatus,
)


class DashboardApiError(Exception):
    """A 4xx response to a read or create call."""

    def __init__(self, status_code: int, result: ActionResult):
        super().__init__(result.message or f"HTTP {status_code}")
        self.status_code = status_code
        self.result = result


def _result_from_response(resp: httpx.Response) -> ActionResult:
    """Parse an action response. 5xx raises httpx.HTTPStatusError."""
    if resp.status_code >= 500:
        resp.raise_for_status()
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if isinstance(data, dict) and "detail" in data and "success" not in data:
        # 401/403 from tenant resolution
        return ActionResult.fail(ActionError.NOT_AUTHORIZED, str(data["detail"]))
    if not isinstance(data, dict):
        data = {}
    result = ActionResult.model_validate(
        {k: data.get(k) for k in ("success", "error", "message") if k in data}
    )
    if resp.is_error and result.success:
        result = ActionResult(success=False, message=f"HTTP {resp.status_code}")
    return result


class DashboardClient:
    """Async client for the queue and pipeline endpoints.

    Action calls (dispatch, move, remove, ...) return an ActionResult for 4xx
    answers so the sync engine can revert with the server's message.
    """

    def __init__(
        self,
        user_id: str,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or Settings()
        self.api_url = self.settings.api_url.rstrip("/")
        self.user_id = user_id
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers={
                    self.settings.user_id_header: self.user_id,
                    "Content-Type": "application/json",
                },
                timeout=self.settings.http_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self.client.get(path, params=params)
        self._raise_for_error(resp)
        return resp.json()

    def _raise_for_error(self, resp: httpx.Response) -> None:
        if resp.status_code >= 500:
            resp.raise_for_status()
        if resp.is_error:
            raise DashboardApiError(resp.status_code, _result_from_response(resp))

    # -----------------------------------------------------------------------
    # Queue
    # -----------------------------------------------------------------------

    async def list_queue(
        self,
        status: QueueStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[QueueItem]:
        params: dict[str, Any] = {"offset": offset}
        if status is not None:
            params["status"] = status.value
        if limit is not None:
            params["limit"] = limit
        data = await self._get_json("/api/queue", params)
        return [QueueItem.model_validate(d) for d in data]

    async def get_item(self, item_id: str) -> QueueItem | None:
        resp = await self.client.get(f"/api/queue/{item_id}")
        if resp.status_code == 404:
            return None
        self._raise_for_error(resp)
        return QueueItem.model_validate(resp.json())

    async def candidates(self, limit: int | None = None) -> list[QueueItem]:
        params = {"limit": limit} if limit is not None else None
        data = await self._get_json("/api/queue/candidates", params)
        return [QueueItem.model_validate(d) for d in data]

    async def queue_stats(self) -> QueueStats:
        return QueueStats.model_validate(await self._get_json("/api/queue/stats"))

    async def enqueue(
        self,
        contact_ids: list[str],
        priority: str | None = None,
        scheduled_at: datetime | str | None = None,
    ) -> EnqueueResult:
        payload: dict[str, Any] = {"contact_ids": contact_ids}
        if priority is not None:
            payload["priority"] = priority
        if scheduled_at is not None:
            payload["scheduled_at"] = (
                scheduled_at.isoformat() if isinstance(scheduled_at, datetime) else scheduled_at
            )
        resp = await self.client.post("/api/queue", json=payload)
        self._raise_for_error(resp)
        return EnqueueResult.model_validate(resp.json())

    async def dispatch(self, item_id: str) -> ActionResult:
        return _result_from_response(await self.client.post(f"/api/queue/{item_id}/dispatch"))

    async def set_priority(self, item_id: str, priority: str | int) -> ActionResult:
        resp = await self.client.post(
            f"/api/queue/{item_id}/priority", json={"priority": priority}
        )
        return _result_from_response(resp)

    async def cancel(self, item_id: str) -> ActionResult:
        return _result_from_response(await self.client.post(f"/api/queue/{item_id}/cancel"))

    async def remove(self, item_id: str) -> ActionResult:
        return _result_from_response(await self.client.delete(f"/api/queue/{item_id}"))

    async def report_outcome(self, item_id: str, report: OutcomeReport) -> ActionResult:
        resp = await self.client.post(
            f"/api/queue/{item_id}/outcome", json=report.model_dump(mode="json")
        )
        return _result_from_response(resp)

    # -----------------------------------------------------------------------
    # Pipeline
    # -----------------------------------------------------------------------

    async def list_stages(self) -> list[PipelineStage]:
        data = await self._get_json("/api/pipeline/stages")
        return [PipelineStage.model_validate(d) for d in data]

    async def seed_default_stages(self) -> list[PipelineStage]:
        resp = await self.client.post("/api/pipeline/stages/defaults")
        self._raise_for_error(resp)
        return [PipelineStage.model_validate(d) for d in resp.json()]

    async def get_deals(self, **filters: Any) -> DealBoard:
        params = {k: v for k, v in filters.items() if v is not None}
        return DealBoard.model_validate(await self._get_json("/api/pipeline/deals", params))

    async def create_deal(self, request: CreateDealRequest) -> CreateDealResult:
        resp = await self.client.post(
            "/api/pipeline/deals", json=request.model_dump(mode="json")
        )
        if resp.status_code >= 500:
            resp.raise_for_status()
        return CreateDealResult.model_validate(resp.json())

    async def move_deal(
        self, deal_id: str, to_stage_id: str, from_stage_id: str | None = None
    ) -> ActionResult:
        resp = await self.client.post(
            f"/api/pipeline/deals/{deal_id}/move",
            json={"from_stage_id": from_stage_id, "to_stage_id": to_stage_id},
        )
        return _result_from_response(resp)

    async def delete_deal(self, deal_id: str) -> ActionResult:
        return _result_from_response(await self.client.delete(f"/api/pipeline/deals/{deal_id}"))

    async def contacts_by_status(self) -> ContactBoard:
        return ContactBoard.model_validate(await self._get_json("/api/pipeline/contacts"))

    async def update_contact_status(self, contact_id: str, status: str) -> ActionResult:
        resp = await self.client.post(
            f"/api/pipeline/contacts/{contact_id}/status", json={"status": status}
        )
        return _result_from_response(resp)

    # -----------------------------------------------------------------------
    # Activity
    # -----------------------------------------------------------------------

    async def activity(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[ActivityEntry]:
        params: dict[str, Any] = {"limit": limit}
        if entity_type:
            params["entity_type"] = entity_type
        if entity_id:
            params["entity_id"] = entity_id
        data = await self._get_json("/api/activity", params)
        return [ActivityEntry.model_validate(d) for d in data]
