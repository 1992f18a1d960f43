from quill.config import RoutingConfig
from quill.routing import (
    DEFAULT_CROSS_PROVIDER,
    DEFAULT_MODELS,
    RoutingContext,
    TaskClass,
    derive_fallbacks,
    detect_task_class,
    select_model,
)


def test_empty_prompt_routes_to_general_model():
    for prompt in ("", "   ", "\n\t"):
        selection = select_model(prompt)
        assert selection.task_class == TaskClass.GENERAL
        assert selection.primary == DEFAULT_MODELS[TaskClass.GENERAL]


def test_keyword_families_pick_task_class():
    assert detect_task_class("Please summarize this article") == TaskClass.SUMMARIZATION
    assert detect_task_class("Build a landing page for my bakery") == TaskClass.CODING_LANDING
    assert detect_task_class("Help me debug this Python function") == TaskClass.CODING_LANDING
    assert detect_task_class("Analyze the sales data in this CSV") == TaskClass.DATA_ANALYSIS
    assert detect_task_class("Create an image of a cat") == TaskClass.VISION
    assert detect_task_class("Do some market research on e-bikes") == TaskClass.RESEARCH
    assert detect_task_class("How are you today?") == TaskClass.GENERAL


def test_context_flags_win_over_keywords():
    ctx = RoutingContext(is_title_generation=True)
    assert detect_task_class("Write python code for a landing page", ctx) == TaskClass.SUMMARIZATION

    ctx = RoutingContext(has_data_files=True, has_images=True)
    assert detect_task_class("describe this image", ctx) == TaskClass.DATA_ANALYSIS

    ctx = RoutingContext(is_research_task=True)
    assert detect_task_class("hello", ctx) == TaskClass.RESEARCH


def test_selection_is_deterministic_and_never_falls_back_to_primary():
    prompts = ["", "summarize this", "build a website", "research quantum dots", "hi there"]
    for prompt in prompts:
        first = select_model(prompt)
        second = select_model(prompt)
        assert first == second
        assert first.primary not in first.fallbacks
        assert len(set(first.fallbacks)) == len(first.fallbacks)


def test_fallbacks_siblings_first_then_cross_provider():
    fallbacks = derive_fallbacks("openai/gpt-4o", max_fallbacks=3)
    assert fallbacks == ("openai/gpt-oss-120b", "openai/gpt-4o-mini", DEFAULT_CROSS_PROVIDER)


def test_cross_provider_default_switches_when_same_family():
    fallbacks = derive_fallbacks("anthropic/claude-3.5-sonnet", max_fallbacks=3)
    assert "anthropic/claude-3.5-sonnet" not in fallbacks
    assert fallbacks[0] == "anthropic/claude-3-haiku"
    assert fallbacks[-1] == "openai/gpt-4o"


def test_max_fallbacks_keeps_cross_provider_slot():
    assert derive_fallbacks("openai/gpt-oss-120b", max_fallbacks=1) == (DEFAULT_CROSS_PROVIDER,)
    assert derive_fallbacks("openai/gpt-oss-120b", max_fallbacks=0) == ()


def test_unknown_family_gets_cross_provider_only():
    assert derive_fallbacks("mistral/large") == (DEFAULT_CROSS_PROVIDER,)


def test_task_parameters_and_overrides():
    selection = select_model("summarize the meeting")
    assert selection.generation_params() == {"temperature": 0.1, "max_tokens": 1000, "top_p": 0.7}

    ctx = RoutingContext(preferred_model="groq/llama-3.3-70b-versatile", temperature_override=1.1)
    selection = select_model("summarize the meeting", ctx)
    assert selection.primary == "groq/llama-3.3-70b-versatile"
    assert selection.fallbacks[0] == "groq/llama-3.1-8b-instant"
    assert selection.temperature == 1.1
    assert selection.max_tokens == 1000


def test_routing_config_overrides_model_table():
    config = RoutingConfig(
        models={"general": "acme/chat-large", "not-a-class": "ignored"},
        families={"acme": ["acme/chat-large", "acme/chat-small"]},
        cross_provider_default="openai/gpt-4o",
        max_fallbacks=2,
    )
    selection = select_model("hello", config=config)
    assert selection.primary == "acme/chat-large"
    assert selection.fallbacks == ("acme/chat-small", "openai/gpt-4o")
    assert selection.candidates == ("acme/chat-large", "acme/chat-small", "openai/gpt-4o")
