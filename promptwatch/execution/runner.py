"""Process-owned background runner for API-triggered work.

The API hands a trigger to the runner and answers 202 right away. The
runner keeps a reference to every task it starts, logs how each one ended,
and drains or cancels what is left at shutdown.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from promptwatch.execution.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class ExecutionRunner:
    def __init__(self, dispatcher: Dispatcher):
        self.dispatcher = dispatcher
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    def submit_all(self, business_id: int, force: bool = False) -> asyncio.Task:
        return self._spawn(f"run_all:{business_id}", self.dispatcher.run_all(business_id, force=force))

    def submit_single(self, business_id: int, prompt_id: int, force: bool = False) -> asyncio.Task:
        return self._spawn(
            f"run_single:{business_id}:{prompt_id}",
            self.dispatcher.run_single(business_id, prompt_id, force=force),
        )

    def submit_reanalysis(self, business_id: int, force_all: bool = False) -> asyncio.Task:
        return self._spawn(f"reanalyze:{business_id}", self.dispatcher.reanalyze(business_id, force_all=force_all))

    def _spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.info("Started background task %s (%d active)", name, len(self._tasks))
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)
        else:
            logger.info("Background task %s finished", task.get_name())

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Wait up to ``timeout`` seconds for running work, then cancel the rest."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        logger.info("Waiting for %d background task(s) before shutdown", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d background task(s) at shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
