"""Execution Store: durable execution records and registry reads.

Every write touches one record by primary key in its own short session.
Status updates are guarded by the expected current status, so a record
only moves forward (pending -> running -> completed | failed) and a
terminal write lands exactly once together with its payload.

Database failures surface as PersistenceError, which aborts the run.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from promptwatch.analysis.types import CompetitorRef
from promptwatch.core.encryption import decrypt_value
from promptwatch.execution.errors import PersistenceError, ValidationError
from promptwatch.execution.types import BusinessContext, ExecutionJob, PromptSnapshot
from promptwatch.models.business import Business
from promptwatch.models.competitor import Competitor
from promptwatch.models.execution import ExecutionRecord, ExecutionStatus
from promptwatch.models.prompt import Prompt
from promptwatch.models.provider_config import ProviderConfig
from promptwatch.providers.types import ProviderFamily, ProviderSettings

logger = logging.getLogger(__name__)

PROMPT_REMOVED = "prompt removed"
EXECUTION_TIMED_OUT = "execution timed out"

_IN_FLIGHT = tuple(s.value for s in ExecutionStatus if not s.is_terminal)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def provider_settings_from_row(row: ProviderConfig) -> ProviderSettings | None:
    """Snapshot a provider row with its credential decrypted. None for unknown families."""
    try:
        family = ProviderFamily(row.provider_family)
    except ValueError:
        logger.error("Provider %d has unknown family %r, excluded from runs", row.id, row.provider_family)
        return None
    return ProviderSettings(
        id=row.id,
        business_id=row.business_id,
        platform_id=row.platform_id,
        family=family,
        model=row.model,
        credential=decrypt_value(row.credential),
        is_primary=row.is_primary,
        is_active=row.is_active,
        budget_limit=row.budget_limit,
    )


class ExecutionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Execution store unavailable: {type(e).__name__}: {e}") from e

    # ------------------------------------------------------------------
    # Registry reads
    # ------------------------------------------------------------------

    async def load_context(self, business_id: int) -> BusinessContext:
        """Load the business with its prompts, active providers and competitors.

        Raises:
            ValidationError: the business does not exist.
        """
        async with self._session() as db:
            business = await db.get(Business, business_id)
            if business is None:
                raise ValidationError(f"Business {business_id} not found")

            prompts = (
                await db.execute(
                    select(Prompt)
                    .where(Prompt.business_id == business_id)
                    .order_by(Prompt.is_priority.desc(), Prompt.id)
                )
            ).scalars().all()
            providers = (
                await db.execute(
                    select(ProviderConfig)
                    .where(
                        ProviderConfig.business_id == business_id,
                        ProviderConfig.is_active == True,  # noqa: E712
                    )
                    .order_by(ProviderConfig.is_primary.desc(), ProviderConfig.id)
                )
            ).scalars().all()

            context = BusinessContext(
                business_id=business.id,
                name=business.name,
                website=business.website,
                prompts=[
                    PromptSnapshot(
                        id=p.id, business_id=p.business_id, text=p.text, topic_id=p.topic_id, is_priority=p.is_priority
                    )
                    for p in prompts
                ],
                providers=[s for s in (provider_settings_from_row(row) for row in providers) if s is not None],
            )

        context.competitors = await self.load_competitors(business_id)
        return context

    async def load_competitors(self, business_id: int) -> list[CompetitorRef]:
        """Current competitor registry, read fresh for every analysis."""
        async with self._session() as db:
            rows = (
                await db.execute(
                    select(Competitor)
                    .where(
                        Competitor.business_id == business_id,
                        Competitor.is_active == True,  # noqa: E712
                    )
                    .order_by(Competitor.id)
                )
            ).scalars().all()
            return [CompetitorRef(name=row.name, website=row.website) for row in rows]

    async def prompt_exists(self, business_id: int, prompt_id: int) -> bool:
        async with self._session() as db:
            return await self._prompt_exists(db, business_id, prompt_id)

    @staticmethod
    async def _prompt_exists(db: AsyncSession, business_id: int, prompt_id: int) -> bool:
        found = await db.execute(select(Prompt.id).where(Prompt.id == prompt_id, Prompt.business_id == business_id))
        return found.scalar_one_or_none() is not None

    # ------------------------------------------------------------------
    # State machine writes
    # ------------------------------------------------------------------

    async def begin_execution(self, job: ExecutionJob, force: bool = False) -> int | None:
        """Create the pending record for a job. Returns its id, or None when skipped.

        One record per (prompt, provider, refresh date):
          - pending / running for that day: skipped (already in flight)
          - completed: skipped unless ``force``
          - failed (or completed with ``force``): replaced by a fresh pending record
        """
        async with self._session() as db:
            existing = (
                await db.execute(
                    select(ExecutionRecord).where(
                        ExecutionRecord.prompt_id == job.prompt.id,
                        ExecutionRecord.platform_id == job.provider.id,
                        ExecutionRecord.refresh_date == job.refresh_date,
                    )
                )
            ).scalar_one_or_none()

            if existing is not None:
                keep = existing.status in _IN_FLIGHT or (
                    existing.status == ExecutionStatus.COMPLETED.value and not force
                )
                if keep:
                    logger.debug("Skipping %s: record %d is %s", job.label, existing.id, existing.status)
                    return None
                logger.info("Replacing %s record %d for %s", existing.status, existing.id, job.label)
                await db.delete(existing)
                await db.flush()

            record = ExecutionRecord(
                business_id=job.business_id,
                prompt_id=job.prompt.id,
                platform_id=job.provider.id,
                status=ExecutionStatus.PENDING.value,
                refresh_date=job.refresh_date,
            )
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                # another trigger created the same day's record first
                await db.rollback()
                logger.info("Skipping %s: record created concurrently", job.label)
                return None
            return record.id

    async def mark_running(self, record_id: int) -> bool:
        async with self._session() as db:
            res = await db.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.id == record_id, ExecutionRecord.status == ExecutionStatus.PENDING.value)
                .values(status=ExecutionStatus.RUNNING.value, started_at=_now())
            )
            await db.commit()
            return res.rowcount == 1

    async def complete(self, record_id: int, business_id: int, prompt_id: int, fields: dict[str, Any]) -> str | None:
        """Write the derived fields and ``completed`` in one transaction.

        The prompt is re-checked inside the same transaction. If it is gone,
        the record fails with "prompt removed" and no metric fields are written.
        Returns the status written, or None if the record was no longer running.
        """
        async with self._session() as db:
            guard = (ExecutionRecord.id == record_id, ExecutionRecord.status == ExecutionStatus.RUNNING.value)
            if not await self._prompt_exists(db, business_id, prompt_id):
                res = await db.execute(
                    update(ExecutionRecord)
                    .where(*guard)
                    .values(status=ExecutionStatus.FAILED.value, error_message=PROMPT_REMOVED, completed_at=_now())
                )
                written = ExecutionStatus.FAILED.value
            else:
                res = await db.execute(
                    update(ExecutionRecord)
                    .where(*guard)
                    .values(status=ExecutionStatus.COMPLETED.value, completed_at=_now(), error_message=None, **fields)
                )
                written = ExecutionStatus.COMPLETED.value
            await db.commit()
            return written if res.rowcount == 1 else None

    async def fail(
        self,
        record_id: int,
        error_message: str,
        result: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """Move a pending or running record to ``failed``. The raw answer is kept when given."""
        values: dict[str, Any] = {
            "status": ExecutionStatus.FAILED.value,
            "error_message": error_message,
            "completed_at": _now(),
            **(fields or {}),
        }
        if result is not None:
            values["result"] = result
        async with self._session() as db:
            res = await db.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.id == record_id, ExecutionRecord.status.in_(_IN_FLIGHT))
                .values(**values)
            )
            await db.commit()
            return res.rowcount == 1

    async def update_analysis(self, record_id: int, fields: dict[str, Any]) -> bool:
        """Replace the derived fields of a completed record. Status is unchanged."""
        async with self._session() as db:
            res = await db.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.id == record_id, ExecutionRecord.status == ExecutionStatus.COMPLETED.value)
                .values(**fields)
            )
            await db.commit()
            return res.rowcount == 1

    async def sweep_stale(self, max_age: timedelta) -> int:
        """Fail pending/running records older than ``max_age``. Returns how many were failed."""
        cutoff = _now() - max_age
        async with self._session() as db:
            res = await db.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.status.in_(_IN_FLIGHT), ExecutionRecord.created_at < cutoff)
                .values(status=ExecutionStatus.FAILED.value, error_message=EXECUTION_TIMED_OUT, completed_at=_now())
            )
            await db.commit()
        if res.rowcount:
            logger.warning("Failed %d stale execution(s) older than %s", res.rowcount, max_age)
        return res.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, record_id: int) -> ExecutionRecord | None:
        async with self._session() as db:
            return await db.get(ExecutionRecord, record_id)

    async def delete(self, record_id: int, business_id: int | None = None) -> None:
        """Delete one record by id.

        Raises:
            ValidationError: no such record (for this business, when given).
        """
        async with self._session() as db:
            stmt = delete(ExecutionRecord).where(ExecutionRecord.id == record_id)
            if business_id is not None:
                stmt = stmt.where(ExecutionRecord.business_id == business_id)
            res = await db.execute(stmt)
            if res.rowcount != 1:
                await db.rollback()
                raise ValidationError(f"Execution {record_id} not found")
            await db.commit()
        logger.info("Deleted execution %d", record_id)

    async def count_completed(self, prompt_id: int, platform_id: int) -> int:
        async with self._session() as db:
            res = await db.execute(
                select(func.count())
                .select_from(ExecutionRecord)
                .where(
                    ExecutionRecord.prompt_id == prompt_id,
                    ExecutionRecord.platform_id == platform_id,
                    ExecutionRecord.status == ExecutionStatus.COMPLETED.value,
                )
            )
            return res.scalar_one()

    async def list_executions(
        self,
        business_id: int,
        prompt_id: int | None = None,
        platform_id: int | None = None,
        limit: int = 100,
    ) -> list[ExecutionRecord]:
        async with self._session() as db:
            stmt = select(ExecutionRecord).where(ExecutionRecord.business_id == business_id)
            if prompt_id is not None:
                stmt = stmt.where(ExecutionRecord.prompt_id == prompt_id)
            if platform_id is not None:
                stmt = stmt.where(ExecutionRecord.platform_id == platform_id)
            stmt = stmt.order_by(ExecutionRecord.refresh_date.desc(), ExecutionRecord.id.desc()).limit(limit)
            return list((await db.execute(stmt)).scalars().all())

    async def latest_executions(self, business_id: int) -> list[ExecutionRecord]:
        """Newest completed record per (prompt, provider)."""
        latest_ids = (
            select(func.max(ExecutionRecord.id))
            .where(
                ExecutionRecord.business_id == business_id,
                ExecutionRecord.status == ExecutionStatus.COMPLETED.value,
            )
            .group_by(ExecutionRecord.prompt_id, ExecutionRecord.platform_id)
        )
        async with self._session() as db:
            res = await db.execute(
                select(ExecutionRecord)
                .where(ExecutionRecord.id.in_(latest_ids))
                .order_by(ExecutionRecord.prompt_id, ExecutionRecord.platform_id)
            )
            return list(res.scalars().all())

    async def completed_for_reanalysis(self, business_id: int, force_all: bool = False) -> list[ExecutionRecord]:
        async with self._session() as db:
            stmt = select(ExecutionRecord).where(
                ExecutionRecord.business_id == business_id,
                ExecutionRecord.status == ExecutionStatus.COMPLETED.value,
                ExecutionRecord.result.is_not(None),
            )
            if not force_all:
                stmt = stmt.where(ExecutionRecord.mention_analysis.is_(None))
            return list((await db.execute(stmt.order_by(ExecutionRecord.id))).scalars().all())

    async def running_status(self, business_id: int, window: timedelta) -> dict[str, int]:
        """Counts of pending / running records created within ``window``."""
        since = _now() - window
        async with self._session() as db:
            res = await db.execute(
                select(ExecutionRecord.status, func.count())
                .where(
                    ExecutionRecord.business_id == business_id,
                    ExecutionRecord.status.in_(_IN_FLIGHT),
                    ExecutionRecord.created_at >= since,
                )
                .group_by(ExecutionRecord.status)
            )
            counts = dict(res.all())
        return {
            "running": counts.get(ExecutionStatus.RUNNING.value, 0),
            "pending": counts.get(ExecutionStatus.PENDING.value, 0),
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def claim_due_businesses(self, now: datetime | None = None) -> list[int]:
        """Businesses whose next run is due. Their next run time is advanced in the same transaction."""
        now = now or _now()
        async with self._session() as db:
            rows = (
                await db.execute(
                    select(Business)
                    .where(Business.next_execution_time.is_not(None), Business.next_execution_time <= now)
                    .order_by(Business.id)
                )
            ).scalars().all()
            for business in rows:
                business.next_execution_time = now + timedelta(days=max(business.refresh_period_days or 1, 1))
            await db.commit()
            return [b.id for b in rows]
