from enum import StrEnum

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class LLMProvider(StrEnum):
    OLLAMA = "ollama"
    CLAUDE = "claude"
    GEMINI = "gemini"
    OPENAI = "openai"


class DetailHint(StrEnum):
    LOW = "low"
    HIGH = "high"
    AUTO = "auto"


class Settings(BaseSettings):
    # Model gating
    model_allowlist: list[str] = Field(
        default_factory=lambda: ["gpt-4o", "gpt-4o-mini", "claude-sonnet-4-5-20250929", "gemini-2.0-flash"]
    )
    default_models: list[str] = Field(default_factory=lambda: ["gpt-4o-mini", "gpt-4o"])
    model_providers: dict[str, LLMProvider] = Field(default_factory=dict)  # explicit model -> provider

    # Ollama
    ollama_base_url: str = "http://ollama:11434"

    # Cloud providers (optional)
    openai_api_key: str = ""
    claude_api_key: str = ""
    gemini_api_key: str = ""

    # Provider request
    default_detail: DetailHint = DetailHint.AUTO
    temperature: float = 0.3
    max_tokens: int = 1024
    provider_timeout_seconds: float = 60.0

    # Retry / lease
    max_retries: int = 3
    backoff_base_seconds: float = 60.0
    backoff_cap_seconds: float = 900.0
    lease_timeout_seconds: float | None = None  # None = 2x provider timeout

    # Worker pool
    pool_size: int = 2
    poll_interval_seconds: float = 1.0
    reaper_interval_seconds: float = 30.0
    run_workers_in_api: bool = True

    # Database
    database_url: str = "sqlite+aiosqlite:///data/photo_ai.db"

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore", "protected_namespaces": ()}

    @model_validator(mode="after")
    def _default_lease(self):
        if self.lease_timeout_seconds is None:
            self.lease_timeout_seconds = 2 * self.provider_timeout_seconds
        return self


settings = Settings()
