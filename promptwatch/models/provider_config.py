from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from promptwatch.db.base import Base


class ProviderConfig(Base):
    """A business's configured model endpoint. Owned by the settings/billing side, read-only here."""

    __tablename__ = "provider_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    platform_id: Mapped[str] = mapped_column(String(50), nullable=False)  # e.g. "gpt-4o", "claude-sonnet"
    # openai | anthropic | google | xai | perplexity
    provider_family: Mapped[str] = mapped_column(String(20), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    credential: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)  # Fernet-encrypted API key
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    budget_limit: Mapped[float | None] = mapped_column(Float, nullable=True)  # USD, NULL = no limit
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    business: Mapped["Business"] = relationship("Business", back_populates="providers")  # noqa: F821
