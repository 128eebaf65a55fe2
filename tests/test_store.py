"""Tests for the execution store (SQLite via aiosqlite)."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from promptwatch.core.encryption import encrypt_value
from promptwatch.execution.errors import PersistenceError, ValidationError
from promptwatch.execution.store import EXECUTION_TIMED_OUT, PROMPT_REMOVED, ExecutionStore
from promptwatch.execution.types import ExecutionJob
from promptwatch.models import Business, Competitor, ExecutionRecord, ExecutionStatus, Prompt, ProviderConfig
from promptwatch.schemas.analysis import MentionAnalysis, Sentiment, SourceRecord, SourceType

TODAY = date(2026, 10, 19)


async def _job(store: ExecutionStore, business: Business, prompt_index: int = 0, provider_index: int = 0, day=TODAY):
    context = await store.load_context(business.id)
    return ExecutionJob(
        business_id=business.id,
        prompt=context.prompts[prompt_index],
        provider=context.providers[provider_index],
        refresh_date=day,
    )


async def _record(db, record_id: int) -> ExecutionRecord:
    db.expire_all()
    return await db.get(ExecutionRecord, record_id)


# =========================================================================
# Registry reads
# =========================================================================


class TestLoadContext:
    @pytest.mark.asyncio
    async def test_loads_everything(self, store, business):
        context = await store.load_context(business.id)
        assert context.name == "NordLayer"
        assert len(context.prompts) == 2
        assert context.prompts[0].is_priority  # priority prompts first
        assert [p.platform_id for p in context.providers] == ["gpt-4o", "claude-sonnet"]
        assert context.providers[0].credential == "sk-openai"
        assert context.primary_provider.platform_id == "gpt-4o"
        assert [c.name for c in context.competitors] == ["Perimeter 81", "Tailscale"]

    @pytest.mark.asyncio
    async def test_unknown_business(self, store):
        with pytest.raises(ValidationError):
            await store.load_context(999)

    @pytest.mark.asyncio
    async def test_inactive_rows_excluded(self, store, business, db):
        await db.execute(
            update(ProviderConfig).where(ProviderConfig.platform_id == "claude-sonnet").values(is_active=False)
        )
        await db.execute(update(Competitor).where(Competitor.name == "Tailscale").values(is_active=False))
        await db.commit()

        context = await store.load_context(business.id)
        assert [p.platform_id for p in context.providers] == ["gpt-4o"]
        assert [c.name for c in context.competitors] == ["Perimeter 81"]

    @pytest.mark.asyncio
    async def test_unknown_family_skipped(self, store, business, db):
        db.add(
            ProviderConfig(
                business_id=business.id,
                platform_id="mystery",
                provider_family="mistral",
                model="m",
                credential=encrypt_value("k"),
            )
        )
        await db.commit()
        context = await store.load_context(business.id)
        assert "mystery" not in [p.platform_id for p in context.providers]

    @pytest.mark.asyncio
    async def test_first_active_is_primary_when_none_flagged(self, store, business, db):
        await db.execute(update(ProviderConfig).values(is_primary=False))
        await db.commit()
        context = await store.load_context(business.id)
        assert context.primary_provider is context.providers[0]

    @pytest.mark.asyncio
    async def test_undecryptable_credential_is_empty(self, store, business, db):
        await db.execute(update(ProviderConfig).values(credential=b"not-a-fernet-token"))
        await db.commit()
        context = await store.load_context(business.id)
        assert all(p.credential == "" for p in context.providers)


# =========================================================================
# State machine
# =========================================================================


class TestBeginExecution:
    @pytest.mark.asyncio
    async def test_creates_pending(self, store, business, db):
        job = await _job(store, business)
        record_id = await store.begin_execution(job)
        record = await _record(db, record_id)
        assert record.status == ExecutionStatus.PENDING.value
        assert record.refresh_date == TODAY
        assert record.platform_id == job.provider.id

    @pytest.mark.asyncio
    async def test_same_day_pending_skipped(self, store, business):
        job = await _job(store, business)
        assert await store.begin_execution(job) is not None
        assert await store.begin_execution(job) is None

    @pytest.mark.asyncio
    async def test_same_day_completed_skipped_unless_forced(self, store, business, db):
        job = await _job(store, business)
        first = await store.begin_execution(job)
        await store.mark_running(first)
        await store.complete(first, business.id, job.prompt.id, {"result": "ok"})

        assert await store.begin_execution(job) is None
        replacement = await store.begin_execution(job, force=True)
        assert replacement is not None
        record = await _record(db, replacement)
        assert record.status == ExecutionStatus.PENDING.value
        assert record.result is None

    @pytest.mark.asyncio
    async def test_failed_record_replaced(self, store, business, db):
        job = await _job(store, business)
        first = await store.begin_execution(job)
        await store.fail(first, "timeout: slow")

        second = await store.begin_execution(job)
        assert second is not None
        record = await _record(db, second)
        assert record.status == ExecutionStatus.PENDING.value
        assert record.error_message is None

    @pytest.mark.asyncio
    async def test_next_day_gets_new_record(self, store, business):
        job = await _job(store, business)
        tomorrow = await _job(store, business, day=TODAY + timedelta(days=1))
        assert await store.begin_execution(job) is not None
        assert await store.begin_execution(tomorrow) is not None


class TestTransitions:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, store, business, db):
        job = await _job(store, business)
        record_id = await store.begin_execution(job)
        assert await store.mark_running(record_id)

        analysis = MentionAnalysis(brand_mentioned=True, overall_sentiment=Sentiment.POSITIVE, confidence=90)
        fields = {
            "result": "NordLayer is great",
            "brand_mentions": 1,
            "business_visibility": 1,
            "share_of_voice": 100.0,
            "competitors_mentioned": [],
            "mention_analysis": analysis,
            "competitor_visibilities": {"Perimeter 81": 0, "Tailscale": 0},
            "sources": [SourceRecord(domain="nordlayer.com", url="https://nordlayer.com", type=SourceType.YOU)],
        }
        status = await store.complete(record_id, business.id, job.prompt.id, fields)
        assert status == ExecutionStatus.COMPLETED.value

        record = await _record(db, record_id)
        assert record.status == "completed"
        assert record.completed_at is not None and record.started_at is not None
        assert isinstance(record.mention_analysis, MentionAnalysis)
        assert record.mention_analysis.overall_sentiment == Sentiment.POSITIVE
        assert record.sources[0].type == SourceType.YOU
        assert record.competitor_visibilities == {"Perimeter 81": 0, "Tailscale": 0}

    @pytest.mark.asyncio
    async def test_mark_running_only_from_pending(self, store, business):
        record_id = await store.begin_execution(await _job(store, business))
        assert await store.mark_running(record_id)
        assert not await store.mark_running(record_id)

    @pytest.mark.asyncio
    async def test_complete_requires_running(self, store, business):
        job = await _job(store, business)
        record_id = await store.begin_execution(job)
        assert await store.complete(record_id, business.id, job.prompt.id, {"result": "x"}) is None

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self, store, business, db):
        job = await _job(store, business)
        record_id = await store.begin_execution(job)
        await store.mark_running(record_id)
        await store.complete(record_id, business.id, job.prompt.id, {"result": "x"})

        assert not await store.fail(record_id, "late failure")
        assert (await _record(db, record_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_prompt_removed_before_completion(self, store, business, db):
        job = await _job(store, business)
        record_id = await store.begin_execution(job)
        await store.mark_running(record_id)

        prompt = await db.get(Prompt, job.prompt.id)
        await db.delete(prompt)
        await db.commit()

        status = await store.complete(record_id, business.id, job.prompt.id, {"result": "x", "business_visibility": 1})
        assert status == ExecutionStatus.FAILED.value
        record = await _record(db, record_id)
        assert record.error_message == PROMPT_REMOVED
        assert record.business_visibility is None
        assert record.result is None

    @pytest.mark.asyncio
    async def test_fail_keeps_raw_answer(self, store, business, db):
        record_id = await store.begin_execution(await _job(store, business))
        await store.mark_running(record_id)
        await store.fail(record_id, "analysis failed: bad json", result="raw answer", fields={"cost_usd": 0.01})
        record = await _record(db, record_id)
        assert record.status == "failed"
        assert record.result == "raw answer"
        assert record.cost_usd == 0.01


# =========================================================================
# Reads, deletion, sweep, schedule
# =========================================================================


class TestReads:
    async def _complete(self, store, business, prompt_index, provider_index, day=TODAY, result="answer"):
        job = await _job(store, business, prompt_index, provider_index, day)
        record_id = await store.begin_execution(job)
        await store.mark_running(record_id)
        await store.complete(record_id, business.id, job.prompt.id, {"result": result})
        return record_id

    @pytest.mark.asyncio
    async def test_count_completed(self, store, business):
        job = await _job(store, business)
        await self._complete(store, business, 0, 0)
        await self._complete(store, business, 0, 0, day=TODAY - timedelta(days=1))
        assert await store.count_completed(job.prompt.id, job.provider.id) == 2

    @pytest.mark.asyncio
    async def test_latest_per_pair(self, store, business):
        older = await self._complete(store, business, 0, 0, day=TODAY - timedelta(days=1))
        newer = await self._complete(store, business, 0, 0)
        other = await self._complete(store, business, 0, 1)
        latest = await store.latest_executions(business.id)
        ids = {r.id for r in latest}
        assert ids == {newer, other}
        assert older not in ids

    @pytest.mark.asyncio
    async def test_list_filters(self, store, business):
        await self._complete(store, business, 0, 0)
        await self._complete(store, business, 0, 1)
        job = await _job(store, business, 0, 1)
        rows = await store.list_executions(business.id, platform_id=job.provider.id)
        assert len(rows) == 1
        assert len(await store.list_executions(business.id, limit=1)) == 1
        assert len(await store.list_executions(business.id)) == 2

    @pytest.mark.asyncio
    async def test_running_status(self, store, business):
        first = await store.begin_execution(await _job(store, business, 0, 0))
        await store.begin_execution(await _job(store, business, 0, 1))
        await store.mark_running(first)
        counts = await store.running_status(business.id, timedelta(minutes=10))
        assert counts == {"running": 1, "pending": 1}

    @pytest.mark.asyncio
    async def test_delete(self, store, business, db):
        record_id = await self._complete(store, business, 0, 0)
        await store.delete(record_id)
        assert await _record(db, record_id) is None

    @pytest.mark.asyncio
    async def test_delete_missing_raises(self, store):
        with pytest.raises(ValidationError):
            await store.delete(12345)

    @pytest.mark.asyncio
    async def test_reanalysis_candidates(self, store, business):
        plain = await self._complete(store, business, 0, 0)
        analysed = await self._complete(store, business, 0, 1)
        await store.update_analysis(analysed, {"mention_analysis": MentionAnalysis()})

        assert [r.id for r in await store.completed_for_reanalysis(business.id)] == [plain]
        assert {r.id for r in await store.completed_for_reanalysis(business.id, force_all=True)} == {plain, analysed}


class TestSweepStale:
    @pytest.mark.asyncio
    async def test_old_in_flight_records_failed(self, store, business, db):
        stale = await store.begin_execution(await _job(store, business, 0, 0))
        fresh = await store.begin_execution(await _job(store, business, 0, 1))
        await store.mark_running(stale)
        await db.execute(
            update(ExecutionRecord)
            .where(ExecutionRecord.id == stale)
            .values(created_at=datetime.now(timezone.utc) - timedelta(minutes=30))
        )
        await db.commit()

        assert await store.sweep_stale(timedelta(minutes=10)) == 1
        assert (await _record(db, stale)).error_message == EXECUTION_TIMED_OUT
        assert (await _record(db, fresh)).status == "pending"


class TestClaimDueBusinesses:
    @pytest.mark.asyncio
    async def test_claims_and_advances(self, store, business, db, now):
        await db.execute(
            update(Business).where(Business.id == business.id).values(next_execution_time=now - timedelta(minutes=1))
        )
        db.add(Business(name="Later Co", next_execution_time=now + timedelta(hours=5)))
        db.add(Business(name="Unscheduled Co"))
        await db.commit()

        assert await store.claim_due_businesses(now) == [business.id]
        assert await store.claim_due_businesses(now) == []

        db.expire_all()
        refreshed = (await db.execute(select(Business).where(Business.id == business.id))).scalar_one()
        assert refreshed.next_execution_time.replace(tzinfo=timezone.utc) == now + timedelta(days=1)


class TestPersistenceErrors:
    @pytest.mark.asyncio
    async def test_database_errors_wrapped(self):
        factory = MagicMock(side_effect=OperationalError("SELECT 1", {}, Exception("database is locked")))
        store = ExecutionStore(factory)
        with pytest.raises(PersistenceError):
            await store.count_completed(1, 1)
