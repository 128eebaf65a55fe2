"""Execution API endpoints: trigger runs, read records, stream live updates."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import timedelta

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import StreamingResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from promptwatch.core.config import settings
from promptwatch.core.dependencies import get_broker, get_runner, get_store
from promptwatch.core.exceptions import BadRequestError, NotFoundError
from promptwatch.core.rate_limit import REANALYZE_LIMIT, RUN_LIMIT, limiter
from promptwatch.db.postgres import get_db
from promptwatch.execution.broadcaster import UpdateBroker
from promptwatch.execution.errors import ValidationError
from promptwatch.execution.runner import ExecutionRunner
from promptwatch.execution.store import ExecutionStore
from promptwatch.models.business import Business
from promptwatch.models.prompt import Prompt
from promptwatch.models.provider_config import ProviderConfig
from promptwatch.schemas.common import MessageResponse
from promptwatch.schemas.execution import ExecutionRecordOut, ReanalyzeRequest, RunningStatus, RunRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/executions", tags=["executions"])


async def _require_business(db: AsyncSession, business_id: int) -> Business:
    business = await db.get(Business, business_id)
    if business is None:
        raise NotFoundError("Business not found")
    return business


@router.post("/run", response_model=MessageResponse, status_code=202)
@limiter.limit(RUN_LIMIT)
async def trigger_run(
    request: Request,
    body: RunRequest,
    db: AsyncSession = Depends(get_db),
    runner: ExecutionRunner = Depends(get_runner),
):
    """Start a run in the background: one prompt, or every prompt of the business."""
    await _require_business(db, body.business_id)

    if body.prompt_id is not None:
        prompt = await db.execute(
            select(Prompt.id).where(Prompt.id == body.prompt_id, Prompt.business_id == body.business_id)
        )
        if prompt.scalar_one_or_none() is None:
            raise NotFoundError("Prompt not found")

    provider_count = await db.execute(
        select(func.count())
        .select_from(ProviderConfig)
        .where(
            ProviderConfig.business_id == body.business_id,
            ProviderConfig.is_active == True,  # noqa: E712
        )
    )
    if provider_count.scalar() == 0:
        raise BadRequestError("Business has no active providers")

    if body.prompt_id is not None:
        runner.submit_single(body.business_id, body.prompt_id, force=body.force)
        return MessageResponse(message=f"Execution started for prompt {body.prompt_id}")

    runner.submit_all(body.business_id, force=body.force)
    return MessageResponse(message=f"Execution started for business {body.business_id}")


@router.post("/reanalyze", response_model=MessageResponse, status_code=202)
@limiter.limit(REANALYZE_LIMIT)
async def trigger_reanalysis(
    request: Request,
    body: ReanalyzeRequest,
    db: AsyncSession = Depends(get_db),
    runner: ExecutionRunner = Depends(get_runner),
):
    """Re-run extraction over stored answers with the current competitor list."""
    await _require_business(db, body.business_id)
    runner.submit_reanalysis(body.business_id, force_all=body.force_all)
    return MessageResponse(message=f"Reanalysis started for business {body.business_id}")


@router.get("", response_model=list[ExecutionRecordOut])
async def list_executions(
    business_id: int = Query(..., alias="businessId", gt=0),
    prompt_id: int | None = Query(None, alias="promptId"),
    platform_id: int | None = Query(None, alias="platformId"),
    limit: int = Query(100, ge=1, le=1000),
    store: ExecutionStore = Depends(get_store),
):
    records = await store.list_executions(business_id, prompt_id=prompt_id, platform_id=platform_id, limit=limit)
    return [ExecutionRecordOut.model_validate(r) for r in records]


@router.get("/latest", response_model=list[ExecutionRecordOut])
async def latest_executions(
    business_id: int = Query(..., alias="businessId", gt=0),
    store: ExecutionStore = Depends(get_store),
):
    """Newest completed record for each (prompt, provider) pair."""
    records = await store.latest_executions(business_id)
    return [ExecutionRecordOut.model_validate(r) for r in records]


@router.get("/status", response_model=RunningStatus)
async def running_status(
    business_id: int = Query(..., alias="businessId", gt=0),
    store: ExecutionStore = Depends(get_store),
):
    counts = await store.running_status(business_id, timedelta(minutes=settings.stale_execution_minutes))
    return RunningStatus(is_running=counts["running"] + counts["pending"] > 0, **counts)


@router.get("/stream")
async def stream_executions(
    request: Request,
    business_id: int = Query(..., alias="businessId", gt=0),
    broker: UpdateBroker = Depends(get_broker),
):
    """Server-Sent Events feed of execution updates for one business."""
    return StreamingResponse(
        execution_stream(broker, business_id, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.delete("/{execution_id}", status_code=204)
async def delete_execution(execution_id: int, store: ExecutionStore = Depends(get_store)):
    try:
        await store.delete(execution_id)
    except ValidationError:
        raise NotFoundError("Execution not found")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# SSE
# ---------------------------------------------------------------------------


def _sse(data: dict) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


async def execution_stream(
    broker: UpdateBroker,
    business_id: int,
    is_disconnected: Callable[[], Awaitable[bool]],
    ping_seconds: float | None = None,
) -> AsyncIterator[str]:
    """Frames for one subscriber: a connected frame, then updates and keep-alive pings.

    A subscriber dropped for falling behind gets its queued updates, then a
    ``resync`` frame, and the stream ends so the client reconnects.
    """
    ping_seconds = ping_seconds or settings.sse_ping_seconds
    async with broker.listen(business_id) as subscription:
        logger.info("SSE subscriber connected for business %d", business_id)
        yield _sse({"type": "connected"})
        try:
            while not await is_disconnected():
                if subscription.exhausted:
                    logger.warning("SSE subscriber for business %d fell behind, asking it to resync", business_id)
                    yield _sse({"type": "resync"})
                    break
                try:
                    payload = await asyncio.wait_for(subscription.get(), timeout=ping_seconds)
                except asyncio.TimeoutError:
                    yield ": ping\n\n"
                    continue
                yield _sse({"type": "execution_update", **payload})
        finally:
            logger.info("SSE subscriber disconnected for business %d", business_id)
