from datetime import date, datetime
from typing import Literal

from pydantic import AliasGenerator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from promptwatch.schemas.analysis import MentionAnalysis, SourceRecord

# Accept snake_case or camelCase on input, emit camelCase
_camel_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RunRequest(BaseModel):
    business_id: int = Field(gt=0)
    prompt_id: int | None = Field(None, gt=0)
    force: bool = False  # replace records already completed today

    model_config = _camel_config


class ReanalyzeRequest(BaseModel):
    business_id: int = Field(gt=0)
    force_all: bool = False

    model_config = _camel_config


class ExecutionRecordOut(BaseModel):
    """External shape of an execution record."""

    id: int
    prompt_id: int
    platform_id: int
    status: str
    result: str | None
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    refresh_date: date
    brand_mentions: int | None
    competitors_mentioned: list[str] | None
    mention_analysis: MentionAnalysis | None = Field(serialization_alias="mentionAnalysisJson")
    analysis_confidence: float | None
    business_visibility: int | None
    share_of_voice: float | None
    competitor_share_of_voice: dict[str, float] | None = Field(serialization_alias="competitorShareOfVoiceJson")
    competitor_visibilities: dict[str, int] | None = Field(serialization_alias="competitorVisibilitiesJson")
    sources: list[SourceRecord] | None = Field(serialization_alias="sourcesJson")

    model_config = ConfigDict(from_attributes=True, alias_generator=AliasGenerator(serialization_alias=to_camel))


class RunningStatus(BaseModel):
    is_running: bool
    running: int
    pending: int

    model_config = ConfigDict(alias_generator=AliasGenerator(serialization_alias=to_camel))


class ExecutionEvent(BaseModel):
    """Live update pushed to subscribers.

    Only status, promptId, platformId and executionCount are guaranteed.
    The result fields are present on completed events only.
    """

    status: Literal["started", "completed", "failed"]
    prompt_id: int
    platform_id: int
    execution_id: int | None = None
    execution_count: int = 0
    result: str | None = None
    completed_at: datetime | None = None
    refresh_date: date | None = None
    brand_mentions: int | None = None
    competitors_mentioned: list[str] | None = None
    analysis_confidence: float | None = None
    business_visibility: int | None = None
    share_of_voice: float | None = None
    competitor_share_of_voice: dict[str, float] | None = None
    error_message: str | None = None

    model_config = _camel_config

    def to_payload(self) -> dict:
        """JSON-ready dict with camelCase keys and absent fields dropped."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
