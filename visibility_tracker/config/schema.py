"""
Configuration schema models for the visibility tracker.

Pydantic v2 models validating tracker.config.yaml. The YAML only names the
environment variables holding API keys; the loader resolves them into a
RuntimeConfig so secrets never live in version control.

Models:
    ProviderConfig: One conversational-AI backend (model, key env var)
    EngineSettings: Batch size and timeouts for the orchestrator
    QuotaSettings: Trial and plan prompt allowances
    SchedulerSettings: Poll interval and scheduled-trigger secret
    NotificationSettings: Optional completion webhook
    TrackerConfig: Root model (validates the entire YAML)
    RuntimeProvider: ProviderConfig with its resolved API key
    RuntimeConfig: Everything the engine needs at runtime
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import (
    MAX_RUN_SECONDS,
    PLAN_PROMPTS_PER_MONTH,
    PROMPT_BATCH_SIZE,
    PROVIDER_CALL_TIMEOUT,
    TRIAL_PROMPTS_PER_MONTH,
)

ProviderName = Literal["chatgpt", "claude", "gemini", "perplexity"]

DEFAULT_MODELS: dict[str, str] = {
    "chatgpt": "gpt-4o-mini",
    "claude": "claude-haiku-4-5-20251001",
    "gemini": "gemini-2.0-flash",
    "perplexity": "sonar",
}

DEFAULT_KEY_ENV: dict[str, str] = {
    "chatgpt": "OPENAI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "perplexity": "PERPLEXITY_API_KEY",
}


class ProviderConfig(BaseModel):
    """
    One provider entry from tracker.config.yaml.

    Attributes:
        provider: chatgpt, claude, gemini or perplexity
        model_name: Backend model identifier (defaults per provider)
        env_api_key: Environment variable holding the API key
        enabled: Disabled providers are skipped by every run
        max_tokens: Completion budget sent to backends that require one
    """

    provider: ProviderName
    model_name: str | None = None
    env_api_key: str | None = None
    enabled: bool = True
    max_tokens: int = 1024

    @model_validator(mode="after")
    def apply_provider_defaults(self) -> "ProviderConfig":
        if self.model_name is None:
            self.model_name = DEFAULT_MODELS[self.provider]
        if self.env_api_key is None:
            self.env_api_key = DEFAULT_KEY_ENV[self.provider]
        return self

    @field_validator("model_name", "env_api_key")
    @classmethod
    def validate_not_blank(cls, v: str | None) -> str | None:
        if v is not None and (not v or v.isspace()):
            raise ValueError("value cannot be empty")
        return v

    @field_validator("max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"max_tokens must be positive, got: {v}")
        return v


class EngineSettings(BaseModel):
    """Orchestrator settings."""

    batch_size: int = PROMPT_BATCH_SIZE
    call_timeout_seconds: float = PROVIDER_CALL_TIMEOUT
    max_run_seconds: float = MAX_RUN_SECONDS

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"batch_size must be at least 1, got: {v}")
        return v

    @field_validator("call_timeout_seconds", "max_run_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Timeout must be positive, got: {v}")
        return v


class QuotaSettings(BaseModel):
    """
    Monthly prompt allowances.

    Attributes:
        trial_prompts_per_month: Allowance for trial owners
        plans: Plan id -> allowance for paying owners
    """

    trial_prompts_per_month: int = TRIAL_PROMPTS_PER_MONTH
    plans: dict[str, int] = Field(default_factory=lambda: dict(PLAN_PROMPTS_PER_MONTH))

    @field_validator("trial_prompts_per_month")
    @classmethod
    def validate_trial(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"trial_prompts_per_month cannot be negative, got: {v}")
        return v

    @field_validator("plans")
    @classmethod
    def validate_plans(cls, v: dict[str, int]) -> dict[str, int]:
        negative = {plan: limit for plan, limit in v.items() if limit < 0}
        if negative:
            raise ValueError(f"Plan allowances cannot be negative: {negative}")
        return v


class SchedulerSettings(BaseModel):
    """
    Scheduler settings.

    Attributes:
        poll_seconds: How often the scheduler daemon looks for due configs
        cron_secret_env: Env var holding the bearer secret of the scheduled trigger
    """

    poll_seconds: int = 60
    cron_secret_env: str = "CRON_SECRET"

    @field_validator("poll_seconds")
    @classmethod
    def validate_poll(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"poll_seconds must be at least 1, got: {v}")
        return v


class NotificationSettings(BaseModel):
    """Completion notification settings; no webhook means log-only."""

    webhook_url: str | None = None

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"webhook_url must be an http(s) URL, got: {v}")
        return v


class TrackerConfig(BaseModel):
    """
    Root configuration model for tracker.config.yaml.

    Example:
        database_path: "./data/tracker.db"
        providers:
          - provider: chatgpt
          - provider: claude
            model_name: claude-haiku-4-5-20251001
          - provider: gemini
          - provider: perplexity
        engine:
          batch_size: 5
          call_timeout_seconds: 30
    """

    database_path: str = "./data/tracker.db"
    providers: list[ProviderConfig]
    engine: EngineSettings = Field(default_factory=EngineSettings)
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @field_validator("providers")
    @classmethod
    def validate_providers(cls, v: list[ProviderConfig]) -> list[ProviderConfig]:
        if not v:
            raise ValueError("At least one provider must be configured")

        names = [p.provider for p in v]
        if len(names) != len(set(names)):
            duplicates = {name for name in names if names.count(name) > 1}
            raise ValueError(f"Duplicate providers found: {duplicates}")

        if not any(p.enabled for p in v):
            raise ValueError("At least one provider must be enabled")

        return v


class RuntimeProvider(BaseModel):
    """Enabled provider with its API key resolved from the environment."""

    provider: ProviderName
    model_name: str
    api_key: str
    max_tokens: int = 1024


class RuntimeConfig(BaseModel):
    """
    Runtime configuration with resolved API keys.

    Never serialize this model: it carries secrets.
    """

    database_path: str
    providers: list[RuntimeProvider]
    engine: EngineSettings
    quota: QuotaSettings
    scheduler: SchedulerSettings
    notifications: NotificationSettings
