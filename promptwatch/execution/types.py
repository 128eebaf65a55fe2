"""In-memory types of the execution engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date

from promptwatch.analysis.types import CompetitorRef
from promptwatch.providers.types import ProviderSettings


@dataclass(frozen=True)
class PromptSnapshot:
    id: int
    business_id: int
    text: str
    topic_id: int | None = None
    is_priority: bool = False


@dataclass
class BusinessContext:
    """Everything a run reads from the registries, loaded once per trigger."""

    business_id: int
    name: str
    website: str | None = None
    prompts: list[PromptSnapshot] = field(default_factory=list)
    providers: list[ProviderSettings] = field(default_factory=list)  # active only
    competitors: list[CompetitorRef] = field(default_factory=list)

    @property
    def primary_provider(self) -> ProviderSettings | None:
        """The provider used for analysis: the flagged primary, else the first active one."""
        for provider in self.providers:
            if provider.is_primary:
                return provider
        return self.providers[0] if self.providers else None


@dataclass(frozen=True)
class ExecutionJob:
    """One (prompt, provider) pair of a run. Never persisted directly."""

    business_id: int
    prompt: PromptSnapshot
    provider: ProviderSettings
    refresh_date: date

    @property
    def label(self) -> str:
        return f"prompt={self.prompt.id} platform={self.provider.id}"

    def log_context(self, execution_id: int | None = None) -> dict[str, int]:
        """``extra=`` fields for log records about this job."""
        context = {"business_id": self.business_id, "prompt_id": self.prompt.id, "platform_id": self.provider.id}
        if execution_id is not None:
            context["execution_id"] = execution_id
        return context


@dataclass
class JobOutcome:
    prompt_id: int
    platform_id: int
    status: str  # completed | failed | skipped
    execution_id: int | None = None
    error_message: str | None = None


@dataclass
class RunSummary:
    """Result of run_all / run_single: processed N jobs, with per-job outcomes."""

    business_id: int
    refresh_date: date | None = None
    outcomes: list[JobOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def completed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "completed")

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "failed")

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "skipped")

    @property
    def message(self) -> str:
        return f"processed {self.processed} jobs"

    def to_dict(self) -> dict:
        return {
            "business_id": self.business_id,
            "refresh_date": self.refresh_date.isoformat() if self.refresh_date else None,
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "message": self.message,
            "outcomes": [asdict(o) for o in self.outcomes],
        }


@dataclass
class ReanalysisSummary:
    business_id: int
    updated: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict:
        return asdict(self)
