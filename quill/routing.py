"""Task-based model routing.

``select_model`` maps a prompt plus context flags to a task class, the task
class to a model id, and the model id to an ordered fallback list. It is a
pure function: no I/O, no randomness, and it never raises.
"""

import re
from dataclasses import dataclass
from enum import Enum

from quill.config import RoutingConfig


class TaskClass(str, Enum):
    """Task classes recognised by the router."""

    GENERAL = "general"
    RESEARCH = "research"
    CODING_LANDING = "coding_landing"
    SUMMARIZATION = "summarization"
    VISION = "vision"
    DATA_ANALYSIS = "data_analysis"


DEFAULT_MODELS: dict[TaskClass, str] = {
    TaskClass.GENERAL: "openai/gpt-oss-120b",
    TaskClass.RESEARCH: "openai/gpt-oss-120b",
    TaskClass.CODING_LANDING: "openai/gpt-oss-120b",
    TaskClass.SUMMARIZATION: "openai/gpt-4.1-nano",
    TaskClass.VISION: "openai/gpt-5",
    TaskClass.DATA_ANALYSIS: "openai/gpt-oss-120b",
}

# Same-provider siblings, in fallback priority order.
DEFAULT_FAMILIES: dict[str, list[str]] = {
    "openai": ["openai/gpt-oss-120b", "openai/gpt-4o", "openai/gpt-4o-mini"],
    "anthropic": ["anthropic/claude-3.5-sonnet", "anthropic/claude-3-haiku"],
    "groq": ["groq/llama-3.3-70b-versatile", "groq/llama-3.1-8b-instant"],
    "moonshotai": ["moonshotai/kimi-k2-instruct"],
}

DEFAULT_CROSS_PROVIDER = "anthropic/claude-3.5-sonnet"
SECONDARY_CROSS_PROVIDER = "openai/gpt-4o"

TASK_PARAMETERS: dict[TaskClass, dict[str, float | int]] = {
    TaskClass.GENERAL: {"temperature": 0.7, "max_tokens": 4000, "top_p": 0.9},
    TaskClass.RESEARCH: {"temperature": 0.3, "max_tokens": 8000, "top_p": 0.8},
    TaskClass.CODING_LANDING: {"temperature": 0.2, "max_tokens": 6000, "top_p": 0.85},
    TaskClass.SUMMARIZATION: {"temperature": 0.1, "max_tokens": 1000, "top_p": 0.7},
    TaskClass.VISION: {"temperature": 0.5, "max_tokens": 4000, "top_p": 0.9},
    TaskClass.DATA_ANALYSIS: {"temperature": 0.3, "max_tokens": 6000, "top_p": 0.8},
}


def _compile(patterns: list[str]) -> list[re.Pattern[str]]:
    return [re.compile(p) for p in patterns]


# Checked in this order; first family with a hit wins.
KEYWORD_FAMILIES: list[tuple[TaskClass, list[re.Pattern[str]]]] = [
    (TaskClass.DATA_ANALYSIS, _compile([
        r"analy[sz]e.*data", r"\bcsv\b", r"\bexcel\b", r"spreadsheet", r"data.*analysis",
        r"statistics", r"\btrends?\b", r"correlations?", r"dashboard", r"\bmetrics\b",
        r"\bkpis?\b", r"pivot", r"aggregate", r"summari[sz]e.*data",
    ])),
    (TaskClass.VISION, _compile([
        r"\bimages?\b", r"\bphotos?\b", r"\bpictures?\b", r"screenshot", r"describe.*image",
        r"\bocr\b", r"extract.*text", r"\bvisual\b", r"\bdiagram\b", r"\bchart\b",
        r"\billustration\b", r"\blogo\b",
    ])),
    (TaskClass.SUMMARIZATION, _compile([
        r"summari[sz]e", r"\bsummary\b", r"\btitle\b", r"headline", r"\brecap\b", r"digest",
        r"key points", r"main points", r"\btl;?dr\b", r"condensed", r"short version",
    ])),
    (TaskClass.CODING_LANDING, _compile([
        r"landing page", r"\bwebsite\b", r"\bwebpage\b", r"\bhtml\b", r"\bcss\b",
        r"(design|create|build).*page", r"marketing page", r"promotional page", r"sales page",
    ])),
    (TaskClass.CODING_LANDING, _compile([
        r"\bcode\b", r"programming", r"\bimplement", r"\bfunction\b", r"algorithm", r"\bdebug",
        r"refactor", r"typescript", r"javascript", r"\bpython\b", r"\breact\b", r"\bapi\b",
        r"\bsql\b", r"\bdatabase\b", r"frontend", r"backend", r"fix.*bug", r"write.*code",
    ])),
    (TaskClass.RESEARCH, _compile([
        r"research", r"\banaly[sz]e\b", r"\banalysis\b", r"investigate", r"\bcompare\b",
        r"\bevaluate\b", r"assessment", r"literature", r"academic", r"scientific",
        r"market research",
    ])),
]


@dataclass(frozen=True)
class RoutingContext:
    """Context flags that steer routing ahead of keyword matching."""

    has_data_files: bool = False
    has_images: bool = False
    is_title_generation: bool = False
    is_conversation_summary: bool = False
    is_landing_page: bool = False
    is_code_generation: bool = False
    is_research_task: bool = False
    preferred_model: str = ""
    temperature_override: float | None = None


@dataclass(frozen=True)
class ModelSelection:
    """Primary model, ordered fallbacks and resolved generation parameters."""

    primary: str
    fallbacks: tuple[str, ...] = ()
    task_class: TaskClass = TaskClass.GENERAL
    temperature: float = 0.7
    max_tokens: int = 4000
    top_p: float = 0.9

    @property
    def candidates(self) -> tuple[str, ...]:
        """Primary followed by fallbacks, in attempt order."""
        return (self.primary, *self.fallbacks)

    def generation_params(self) -> dict[str, float | int]:
        return {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
        }


def detect_task_class(prompt: str, context: RoutingContext | None = None) -> TaskClass:
    """Classify a prompt; explicit flags beat keyword families."""
    ctx = context or RoutingContext()

    if ctx.has_data_files:
        return TaskClass.DATA_ANALYSIS
    if ctx.has_images:
        return TaskClass.VISION
    if ctx.is_title_generation or ctx.is_conversation_summary:
        return TaskClass.SUMMARIZATION
    if ctx.is_landing_page or ctx.is_code_generation:
        return TaskClass.CODING_LANDING
    if ctx.is_research_task:
        return TaskClass.RESEARCH

    lowered = (prompt or "").strip().lower()
    if not lowered:
        return TaskClass.GENERAL

    for task_class, patterns in KEYWORD_FAMILIES:
        if any(pattern.search(lowered) for pattern in patterns):
            return task_class
    return TaskClass.GENERAL


def model_family(model_id: str) -> str:
    """Provider family of a model id (``openai/gpt-4o`` -> ``openai``)."""
    cleaned = (model_id or "").strip().lower()
    if "/" not in cleaned:
        return cleaned
    return cleaned.split("/", 1)[0]


def derive_fallbacks(
    primary: str,
    families: dict[str, list[str]] | None = None,
    cross_provider_default: str = "",
    max_fallbacks: int = 3,
) -> tuple[str, ...]:
    """Same-provider siblings first, then a cross-provider default; never the primary."""
    table = families if families is not None else DEFAULT_FAMILIES
    family = model_family(primary)

    if max_fallbacks <= 0:
        return ()

    cross = cross_provider_default or DEFAULT_CROSS_PROVIDER
    if model_family(cross) == family:
        cross = SECONDARY_CROSS_PROVIDER

    seen = {primary, cross}
    siblings: list[str] = []
    for model in table.get(family, []):
        if not model or model in seen:
            continue
        seen.add(model)
        siblings.append(model)

    # The cross-provider default always keeps the last slot.
    fallbacks = siblings[: max_fallbacks - 1]
    if cross != primary:
        fallbacks.append(cross)
    return tuple(fallbacks)


def select_model(
    prompt: str,
    context: RoutingContext | None = None,
    config: RoutingConfig | None = None,
) -> ModelSelection:
    """Pick the primary model, its fallbacks and generation parameters."""
    ctx = context or RoutingContext()
    task_class = detect_task_class(prompt, ctx)

    models = dict(DEFAULT_MODELS)
    families = DEFAULT_FAMILIES
    cross = ""
    max_fallbacks = 3
    if config is not None:
        for key, value in config.models.items():
            try:
                models[TaskClass(key)] = value
            except ValueError:
                continue
        if config.families:
            families = config.families
        cross = config.cross_provider_default
        max_fallbacks = config.max_fallbacks

    primary = ctx.preferred_model.strip() or models[task_class]
    params = dict(TASK_PARAMETERS[task_class])
    if ctx.temperature_override is not None:
        params["temperature"] = float(ctx.temperature_override)

    return ModelSelection(
        primary=primary,
        fallbacks=derive_fallbacks(primary, families, cross, max_fallbacks),
        task_class=task_class,
        temperature=float(params["temperature"]),
        max_tokens=int(params["max_tokens"]),
        top_p=float(params["top_p"]),
    )
