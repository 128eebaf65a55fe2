from promptwatch.models.business import Business
from promptwatch.models.competitor import Competitor
from promptwatch.models.execution import ExecutionRecord, ExecutionStatus
from promptwatch.models.prompt import Prompt, Topic
from promptwatch.models.provider_config import ProviderConfig

__all__ = [
    "Business",
    "Competitor",
    "ExecutionRecord",
    "ExecutionStatus",
    "Prompt",
    "ProviderConfig",
    "Topic",
]
