from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from promptwatch.db.base import Base
from promptwatch.db.types import Document
from promptwatch.schemas.analysis import MentionAnalysis, SourceRecord


class ExecutionStatus(str, Enum):
    """pending -> running -> completed | failed. Terminal states are final."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class ExecutionRecord(Base):
    """Outcome of running one prompt against one provider for one refresh date."""

    __tablename__ = "prompt_executions"
    __table_args__ = (
        UniqueConstraint("prompt_id", "platform_id", "refresh_date", name="uq_prompt_execution_day"),
        Index("ix_prompt_executions_business_status", "business_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # No FK: records outlive prompt deletion
    prompt_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    platform_id: Mapped[int] = mapped_column(Integer, nullable=False)  # provider_configs.id
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ExecutionStatus.PENDING.value)

    result: Mapped[str | None] = mapped_column(Text, nullable=True)  # raw model answer
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    model_version: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)

    refresh_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Derived on completion
    brand_mentions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    brand_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    analysis_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)  # 0..1
    business_visibility: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0 | 1
    share_of_voice: Mapped[float | None] = mapped_column(Float, nullable=True)  # 0..100
    competitors_mentioned: Mapped[list[str] | None] = mapped_column(Document(list[str]), nullable=True)
    mention_analysis: Mapped[MentionAnalysis | None] = mapped_column(Document(MentionAnalysis), nullable=True)
    competitor_share_of_voice: Mapped[dict[str, float] | None] = mapped_column(
        Document(dict[str, float]), nullable=True
    )
    competitor_visibilities: Mapped[dict[str, int] | None] = mapped_column(Document(dict[str, int]), nullable=True)
    sources: Mapped[list[SourceRecord] | None] = mapped_column(Document(list[SourceRecord]), nullable=True)
