"""Celery tasks for prompt execution.

Each task runs on a fresh event loop with its own engine, store, broker and
dispatcher. The broker has no subscribers in a worker, so live updates are
only delivered for runs started through the API process.

Store failures (PersistenceError) are logged and reported as
{"status": "error"}. Celery-level retries are disabled: a re-run of the same
day resumes through the same-day record policy instead.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from promptwatch.core.config import settings
from promptwatch.execution.errors import PersistenceError, ValidationError
from promptwatch.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Run an async coroutine from sync Celery task context.

    Creates a fresh event loop each time to avoid conflicts with
    the module-level SQLAlchemy engine (which may be bound to a
    different loop created by uvicorn).
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _make_session_factory():
    """Create a fresh async engine + session factory for Celery worker context.

    The module-level engine from promptwatch.db.postgres is bound to uvicorn's
    event loop and cannot be reused in a new loop created by _run_async().
    """
    from promptwatch.db.postgres import make_engine, make_session_factory

    engine = make_engine()
    return make_session_factory(engine), engine


async def _with_dispatcher(work: Callable[[Any], Awaitable[Any]]) -> Any:
    from promptwatch.execution.broadcaster import UpdateBroker
    from promptwatch.execution.dispatcher import Dispatcher, global_semaphore_from_settings
    from promptwatch.execution.store import ExecutionStore

    session_factory, engine = _make_session_factory()
    try:
        dispatcher = Dispatcher(
            ExecutionStore(session_factory),
            UpdateBroker(),
            global_semaphore=global_semaphore_from_settings(),
        )
        return await work(dispatcher)
    finally:
        await engine.dispose()


async def _with_store(work: Callable[[Any], Awaitable[Any]]) -> Any:
    from promptwatch.execution.store import ExecutionStore

    session_factory, engine = _make_session_factory()
    try:
        return await work(ExecutionStore(session_factory))
    finally:
        await engine.dispose()


def _guarded(label: str, coro) -> dict:
    """Run ``coro`` and turn engine errors into a task result."""
    try:
        return _run_async(coro)
    except ValidationError as exc:
        logger.warning("%s skipped: %s", label, exc)
        return {"status": "skipped", "error": str(exc)}
    except PersistenceError as exc:
        logger.error("%s failed, execution store unavailable: %s", label, exc)
        return {"status": "error", "error": str(exc)}


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@celery_app.task(name="execute_all_prompts", max_retries=0)
def execute_all_prompts_task(business_id: int, force: bool = False, trigger: str = "scheduled"):
    """Run every prompt of a business against every active provider."""
    logger.info(
        "Starting run_all for business %d (trigger=%s)", business_id, trigger, extra={"business_id": business_id}
    )

    async def work(dispatcher):
        summary = await dispatcher.run_all(business_id, force=force, trigger=trigger)
        return {"status": "ok", **summary.to_dict()}

    return _guarded(f"run_all for business {business_id}", _with_dispatcher(work))


@celery_app.task(name="execute_single_prompt", max_retries=0)
def execute_single_prompt_task(business_id: int, prompt_id: int, force: bool = False):
    """Run one prompt against every active provider of its business."""
    logger.info(
        "Starting run_single for business %d prompt %d",
        business_id,
        prompt_id,
        extra={"business_id": business_id, "prompt_id": prompt_id},
    )

    async def work(dispatcher):
        summary = await dispatcher.run_single(business_id, prompt_id, force=force, trigger="task")
        return {"status": "ok", **summary.to_dict()}

    return _guarded(f"run_single for prompt {prompt_id}", _with_dispatcher(work))


@celery_app.task(name="reanalyze_executions", max_retries=0)
def reanalyze_executions_task(business_id: int, force_all: bool = False):
    """Re-run extraction over stored answers with the current competitor registry."""
    logger.info(
        "Starting reanalysis for business %d (force_all=%s)", business_id, force_all, extra={"business_id": business_id}
    )

    async def work(dispatcher):
        summary = await dispatcher.reanalyze(business_id, force_all=force_all)
        return {"status": "ok", **summary.to_dict()}

    return _guarded(f"reanalysis for business {business_id}", _with_dispatcher(work))


# ---------------------------------------------------------------------------
# Beat
# ---------------------------------------------------------------------------


@celery_app.task(name="dispatch_due_businesses")
def dispatch_due_businesses_task():
    """Beat dispatcher: claim businesses whose next run is due and fire their runs."""

    async def work(store):
        return await store.claim_due_businesses()

    result = _guarded("dispatch_due_businesses", _with_store(work))
    if isinstance(result, dict):
        return result
    if not result:
        return {"dispatched": 0}

    for business_id in result:
        execute_all_prompts_task.delay(business_id, trigger="scheduled")
        logger.info("Dispatched scheduled run for business %d", business_id)

    return {"dispatched": len(result), "business_ids": result}


@celery_app.task(name="sweep_stale_executions")
def sweep_stale_executions_task():
    """Fail pending/running records stuck longer than the staleness window."""
    max_age = timedelta(minutes=settings.stale_execution_minutes)

    async def work(store):
        return await store.sweep_stale(max_age)

    result = _guarded("sweep_stale_executions", _with_store(work))
    if isinstance(result, dict):
        return result
    return {"status": "ok", "failed": result}
