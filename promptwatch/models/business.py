from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from promptwatch.db.base import Base


class Business(Base):
    """A tracked brand whose visibility is probed across language models."""

    __tablename__ = "businesses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    website: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Scheduled runs
    refresh_period_days: Mapped[int] = mapped_column(Integer, default=1)
    next_execution_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    topics: Mapped[list["Topic"]] = relationship(  # noqa: F821
        "Topic", back_populates="business", cascade="all, delete-orphan"
    )
    prompts: Mapped[list["Prompt"]] = relationship(  # noqa: F821
        "Prompt", back_populates="business", cascade="all, delete-orphan"
    )
    competitors: Mapped[list["Competitor"]] = relationship(  # noqa: F821
        "Competitor", back_populates="business", cascade="all, delete-orphan"
    )
    providers: Mapped[list["ProviderConfig"]] = relationship(  # noqa: F821
        "ProviderConfig", back_populates="business", cascade="all, delete-orphan"
    )
