"""Deterministic model routing by task and tier.

Every tier maps to exactly one named model per task family. There is no
"default" model; unknown tiers route as free.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from velto_credits.tiers import TIERS, Tier, coerce_tier

GEMINI_25_FLASH = "google/gemini-2.5-flash"
GEMINI_20_FLASH = "google/gemini-2.0-flash-001"
CLAUDE_35_HAIKU = "anthropic/claude-3.5-haiku"

RESEARCH_TEMPERATURE = 0.1
DEFAULT_TEMPERATURE = 0.7
BULK_MAX_OUTPUT_TOKENS = 4000
DEFAULT_MAX_OUTPUT_TOKENS = 2000


class TaskCategory(str, Enum):
    """Kind of content-generation request."""

    CONTENT_GENERATION = "content-generation"
    BULK_GENERATION = "bulk-generation"
    COACHING = "coaching"
    RESEARCH = "research"
    CUSTOM_RESEARCH = "custom-research"
    GENERAL_QA = "general-qa"

    @property
    def family(self) -> "TaskFamily":
        return _TASK_FAMILIES[self]


class TaskFamily(str, Enum):
    """Broad task family used for model selection."""

    CONTENT = "content"
    COACHING = "coaching"
    RESEARCH = "research"
    QA = "qa"


_TASK_FAMILIES: dict[TaskCategory, TaskFamily] = {
    TaskCategory.CONTENT_GENERATION: TaskFamily.CONTENT,
    TaskCategory.BULK_GENERATION: TaskFamily.CONTENT,
    TaskCategory.COACHING: TaskFamily.COACHING,
    TaskCategory.RESEARCH: TaskFamily.RESEARCH,
    TaskCategory.CUSTOM_RESEARCH: TaskFamily.RESEARCH,
    TaskCategory.GENERAL_QA: TaskFamily.QA,
}


def _tier_models(top: str) -> dict[Tier, str]:
    return {
        Tier.FREE: GEMINI_20_FLASH,
        Tier.STARTER: CLAUDE_35_HAIKU,
        Tier.INDUSTRY: CLAUDE_35_HAIKU,
        Tier.ULTRA: top,
        Tier.LIFETIME: top,
    }


ROUTING_TABLE: dict[TaskFamily, dict[Tier, str]] = {
    TaskFamily.CONTENT: _tier_models(GEMINI_25_FLASH),
    TaskFamily.COACHING: _tier_models(CLAUDE_35_HAIKU),
    TaskFamily.RESEARCH: _tier_models(GEMINI_25_FLASH),
    TaskFamily.QA: _tier_models(GEMINI_25_FLASH),
}

# Premium model -> cheaper, more available model used for one retry
FALLBACK_MODELS: dict[str, str] = {
    GEMINI_25_FLASH: GEMINI_20_FLASH,
}

# Status codes that mean "this model is not available here"
FALLBACK_STATUS_CODES = frozenset({400, 404})


@dataclass(frozen=True)
class ModelInfo:
    """Display information for the model a user's requests are routed to."""

    name: str
    provider: str
    tier: str


_MODEL_DISPLAY: dict[str, tuple[str, str]] = {
    GEMINI_25_FLASH: ("Gemini 2.5 Flash", "Google"),
    GEMINI_20_FLASH: ("Gemini 2.0 Flash", "Google"),
    CLAUDE_35_HAIKU: ("Claude 3.5 Haiku", "Anthropic"),
}


def coerce_task(task: TaskCategory | str) -> TaskCategory:
    """Parse a task category.

    Raises:
        ValueError: If the task is not a known category
    """
    if isinstance(task, TaskCategory):
        return task
    try:
        return TaskCategory(task)
    except ValueError:
        raise ValueError(f"Unknown task category: {task!r}") from None


def select_model(
    task: TaskCategory | str,
    tier: Any,
    model_override: str | None = None,
) -> str:
    """Pick the model for a request. An explicit override always wins."""
    if model_override:
        return model_override
    family = coerce_task(task).family
    return ROUTING_TABLE[family][coerce_tier(tier) or Tier.FREE]


def fallback_for(model: str) -> str | None:
    """The documented fallback for a premium model, if it has one."""
    return FALLBACK_MODELS.get(model)


def temperature_for(task: TaskCategory | str) -> float:
    """Sampling temperature: low for research reports, moderate otherwise."""
    if coerce_task(task) is TaskCategory.RESEARCH:
        return RESEARCH_TEMPERATURE
    return DEFAULT_TEMPERATURE


def max_output_tokens_for(task: TaskCategory | str) -> int:
    if coerce_task(task) is TaskCategory.BULK_GENERATION:
        return BULK_MAX_OUTPUT_TOKENS
    return DEFAULT_MAX_OUTPUT_TOKENS


def model_info(task: TaskCategory | str, tier: Any) -> ModelInfo:
    """Display name, vendor and tier label for the routed model."""
    resolved = coerce_tier(tier) or Tier.FREE
    name, provider = _MODEL_DISPLAY[select_model(task, resolved)]
    return ModelInfo(name=name, provider=provider, tier=TIERS[resolved].display_name)
