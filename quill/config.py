"""Configuration management for Quill."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.quill/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.quill/quill.db").expanduser()
LOCAL_CONFIG_FILENAME = "quill.yaml"


class EndpointConfig(BaseModel):
    """OpenAI-compatible endpoint selected by model id prefix."""

    prefix: str
    base_url: str
    api_key: str = ""
    api_key_env: str = ""
    strip_prefix: bool = True
    native_tools: bool = False


def _default_endpoints() -> list[EndpointConfig]:
    return [
        EndpointConfig(
            prefix="groq/",
            base_url="https://api.groq.com/openai/v1",
            api_key_env="GROQ_API_KEY",
        ),
        EndpointConfig(
            prefix="moonshotai/",
            base_url="https://api.groq.com/openai/v1",
            api_key_env="GROQ_API_KEY",
            strip_prefix=False,
        ),
    ]


class ProviderConfig(BaseModel):
    """LLM provider configuration."""

    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    api_key_env: str = "OPENROUTER_API_KEY"
    timeout: float = 120.0
    referer: str = "http://localhost:3000"
    title: str = "Quill Assistant"
    native_tools: bool = True
    endpoints: list[EndpointConfig] = Field(default_factory=_default_endpoints)


class RoutingConfig(BaseModel):
    """Task-class model table and fallback derivation."""

    models: dict[str, str] = Field(default_factory=dict)
    families: dict[str, list[str]] = Field(default_factory=dict)
    cross_provider_default: str = ""
    max_fallbacks: int = 3


class StreamingConfig(BaseModel):
    """Partial-write throttling and user-visible notices."""

    flush_chars: int = 50
    flush_interval: float = 1.0
    history_limit: int = 30
    default_timezone: str = "America/New_York"
    pause_notice: str = "⏸️ Paused. Resume the conversation to continue."
    error_notice: str = "❌ Sorry, I couldn't generate a response. Please try again."


class WebSearchToolConfig(BaseModel):
    """Web search tool configuration."""

    provider: str = "tavily"
    api_key: str = ""
    base_url: str = "https://api.tavily.com/search"
    max_results: int = 5
    timeout: int = 20
    search_depth: Literal["basic", "advanced"] = "basic"


class WebFetchToolConfig(BaseModel):
    """Content-enrichment fetch configuration."""

    reader_url: str = "https://r.jina.ai/"
    max_chars: int = 8000
    timeout: int = 20


class ImageToolConfig(BaseModel):
    """Image generation tool configuration."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    model: str = "gpt-image-1"
    default_size: str = "1024x1024"
    timeout: int = 90


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "web_search",
        "web_fetch",
        "generate_landing_page",
        "generate_document",
        "generate_image",
    ]
    web_search: WebSearchToolConfig = Field(default_factory=WebSearchToolConfig)
    web_fetch: WebFetchToolConfig = Field(default_factory=WebFetchToolConfig)
    image: ImageToolConfig = Field(default_factory=ImageToolConfig)


class SearchConfig(BaseModel):
    """Request-level auto-search configuration."""

    auto_search: bool = True
    enrich_count: int = 3
    enrich_concurrency: int = 3


class StoreConfig(BaseModel):
    """Backing store configuration."""

    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Quill."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="QUILL_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML values arrive as init kwargs; environment wins over them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; environment variables override YAML values."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)


# Global config instance, used by entry points only
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
